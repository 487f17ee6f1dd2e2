"""
Statically typed view of an inbound request.

The host-server adapter (``InboundRequest.from_request``) pulls everything
the forwarder needs out of the Starlette request and ASGI scope, so the
forwarder itself never inspects loosely typed scope values.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from fastapi import Request

from forward_proxy.utils import address_from_scope

HeaderItems = List[Tuple[str, str]]


def _has_body(headers: HeaderItems) -> bool:
    for name, value in headers:
        name = name.lower()
        if name == "transfer-encoding":
            return True
        if name == "content-length" and value.strip() not in ("", "0"):
            return True
    return False


@dataclass
class InboundRequest:
    method: str
    path: str
    headers: HeaderItems = field(default_factory=list)
    body: Optional[AsyncIterator[bytes]] = None
    remote_addr: str = ""
    local_addr: Optional[str] = None
    tls: bool = False
    url: str = ""
    # Resolves once the caller has gone away; None when that cannot be observed.
    wait_disconnected: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def user_agent(self) -> str:
        for name, value in self.headers:
            if name.lower() == "user-agent":
                return value
        return ""

    @property
    def protocol(self) -> str:
        return "HTTPS" if self.tls else "HTTP"

    @classmethod
    def from_request(cls, request: Request) -> "InboundRequest":
        scope = request.scope
        headers = [
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in request.headers.raw
        ]
        has_body = _has_body(headers)

        body_consumed = asyncio.Event()

        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in request.stream():
                    if chunk:
                        yield chunk
            finally:
                body_consumed.set()

        async def wait_disconnected() -> None:
            # receive() also delivers body chunks, so only listen once the body is drained.
            if has_body:
                await body_consumed.wait()
            while True:
                message = await request.receive()
                if message["type"] == "http.disconnect":
                    return

        return cls(
            method=request.method,
            path=request.url.path,
            headers=headers,
            body=body() if has_body else None,
            remote_addr=address_from_scope(scope.get("client")) or "",
            local_addr=address_from_scope(scope.get("server")),
            tls=scope.get("scheme") == "https",
            url=str(request.url),
            wait_disconnected=wait_disconnected,
        )
