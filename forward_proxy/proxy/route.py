import asyncio
import logging
import time
from contextlib import AsyncExitStack
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from forward_proxy.config import ProxyConfig, get_proxy_config
from forward_proxy.proxy.error_report import ErrorReport, error_response
from forward_proxy.proxy.errors import (
    BuildFailure,
    ProxyError,
    UpstreamDispatchFailure,
    UpstreamTimeout,
)
from forward_proxy.proxy.inbound import InboundRequest
from forward_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from forward_proxy.utils.traced_requests import traced_forward

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# The server and client layers derive these per hop; they are not ordinary fields
SERVER_MANAGED_HEADERS = {"host", "transfer-encoding"}

CLIENT_AGENT_HEADER = "X-Proxied-Client-Agent"
CLIENT_DESTINATION_HEADER = "X-Proxied-Client-Destination"
CLIENT_SOURCE_HEADER = "X-Proxied-Client-Source"
PROXY_NODE_HEADER = "X-Proxy-Node"
PROXY_POD_HEADER = "X-Proxy-Pod"
PROXY_HOST_HEADER = "X-Proxy-Host"


class Deadline:
    """Fixed point in time after which the outbound exchange is abandoned."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())


def build_target_url(config: ProxyConfig, path: str) -> str:
    """Target URL for a request path. Upstream is always plain HTTP; queries are not carried."""
    return f"http://{config.target_host}:{config.target_port}{path}"


def copy_headers(src: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Copy every header value in order, keeping duplicate names."""
    return [
        (name, value)
        for name, value in src
        if name.lower() not in SERVER_MANAGED_HEADERS
    ]


def relay_headers(raw: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Upstream response headers in wire form, for the downstream response."""
    return [
        (name, value)
        for name, value in raw
        if name.lower().decode("latin-1") not in SERVER_MANAGED_HEADERS
    ]


def add_custom_headers(
    headers: httpx.Headers, inbound: InboundRequest, config: ProxyConfig
) -> None:
    """
    Annotate the outbound request with client and proxy identity.

    Each header replaces any value already present under the same name;
    every other copied header is left untouched.
    """
    headers[CLIENT_AGENT_HEADER] = inbound.user_agent
    if inbound.local_addr:
        headers[CLIENT_DESTINATION_HEADER] = inbound.local_addr
    headers[CLIENT_SOURCE_HEADER] = inbound.remote_addr
    if config.node_name:
        headers[PROXY_NODE_HEADER] = config.node_name
    if config.pod_name:
        headers[PROXY_POD_HEADER] = config.pod_name
    if config.hostname:
        headers[PROXY_HOST_HEADER] = config.hostname


def build_outbound_request(
    client: httpx.AsyncClient,
    inbound: InboundRequest,
    config: ProxyConfig,
    target_url: str,
) -> httpx.Request:
    """Build the upstream request; raises BuildFailure without contacting the target."""
    try:
        # latin-1 keeps inbound header bytes as received
        headers = httpx.Headers(copy_headers(inbound.headers), encoding="latin-1")
        add_custom_headers(headers, inbound, config)
        return client.build_request(
            inbound.method,
            target_url,
            headers=headers,
            content=inbound.body,
        )
    except (httpx.InvalidURL, ValueError, TypeError) as e:
        logger.error(f"Could not build request for {target_url}: {format_exception_message(e)}")
        raise BuildFailure() from e


async def dispatch(
    client: httpx.AsyncClient,
    outbound: httpx.Request,
    inbound: InboundRequest,
    deadline: Deadline,
) -> httpx.Response:
    """
    Send the request and wait for the response headers.

    Whichever comes first wins: the upstream answer, the deadline, or the
    caller disconnecting. The losers are cancelled before returning.
    """
    send_task = asyncio.ensure_future(client.send(outbound, stream=True))
    waiters = {send_task}
    watch_task = None
    if inbound.wait_disconnected is not None:
        watch_task = asyncio.ensure_future(inbound.wait_disconnected())
        waiters.add(watch_task)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=deadline.remaining(),
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        pending = [task for task in waiters if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                # A send that completed while being cancelled still holds a connection
                if isinstance(result, httpx.Response):
                    await result.aclose()

    if send_task in done:
        try:
            return send_task.result()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout() from e
        except Exception as e:
            raise UpstreamDispatchFailure.from_error_text(format_exception_message(e)) from e

    if watch_task is not None and watch_task in done:
        raise UpstreamDispatchFailure.from_error_text(
            "client disconnected before the target server responded"
        )

    raise UpstreamTimeout()


async def relay_body(
    upstream: httpx.Response, deadline: Deadline, resources: AsyncExitStack
) -> AsyncIterator[bytes]:
    """
    Stream the upstream body verbatim, still bounded by the deadline.

    A failure here cannot change the status already sent, so it is logged
    and re-raised, which leaves the caller with a truncated body.
    """
    chunks = upstream.aiter_raw()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(
                    chunks.__anext__(), timeout=deadline.remaining()
                )
            except StopAsyncIteration:
                break
            yield chunk
    except asyncio.TimeoutError:
        logger.warning(
            f"Deadline of {deadline.timeout}s elapsed while relaying {upstream.request.url}; response truncated"
        )
        raise
    except httpx.HTTPError as e:
        log_exception_with_details(
            logger, f"[Proxy] Relaying {upstream.request.url} failed; response truncated.", e
        )
        raise
    finally:
        await resources.aclose()


async def forward_to_target(
    inbound: InboundRequest,
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Response:
    """
    Forward one inbound request to the configured target.

    Always returns exactly one response: the upstream's, streamed back with
    its status and headers, or a plain-text error report (500 when the
    request cannot be built, 504 on deadline, 502 on any other failure).
    """
    protocol = inbound.protocol
    target_url = build_target_url(config, inbound.path)
    deadline = Deadline(config.request_timeout)

    with traced_forward(
        tracer,
        operation="proxy_request",
        target_url=target_url,
        method=inbound.method,
        protocol=protocol,
        start_message=f"Received a {protocol} request: {inbound.method} {inbound.url or inbound.path}",
    ) as span:
        resources = AsyncExitStack()
        handed_off = False
        try:
            client = httpx.AsyncClient(
                transport=transport,
                timeout=httpx.Timeout(config.request_timeout),
                follow_redirects=False,
            )
            resources.push_async_callback(client.aclose)

            outbound = build_outbound_request(client, inbound, config, target_url)
            logger.debug(f"Forwarding {inbound.method} {inbound.path} -> {target_url}")

            upstream = await dispatch(client, outbound, inbound, deadline)
            resources.push_async_callback(upstream.aclose)
            handed_off = True
        except ProxyError as e:
            logger.error(f"Proxy {e.kind} for {target_url}: {e.message}")
            span.set_attribute("proxy.error", e.kind)
            span.set_attribute("proxy.status_code", e.status_code)
            report = ErrorReport.for_config(config, target_url, e.message)
            return error_response(report, e.status_code)
        finally:
            if not handed_off:
                await resources.aclose()

        span.set_attribute("proxy.status_code", upstream.status_code)
        response = StreamingResponse(
            relay_body(upstream, deadline, resources),
            status_code=upstream.status_code,
            # Runs even when the body stream is cancelled before it could clean up
            background=BackgroundTask(resources.aclose),
        )
        response.raw_headers = relay_headers(upstream.headers.raw)
        return response


def get_upstream_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport used for upstream calls; None selects the httpx default."""
    return None


def _provide(request: Request, provider):
    """Call a provider, honouring any FastAPI dependency override set on the app."""
    overrides = getattr(request.app, "dependency_overrides", None) or {}
    return overrides.get(provider, provider)()


class _ProxyApp:
    """Catch-all that forwards every request, whatever its method, to the target server."""

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return

        request = Request(scope, receive, send)
        config = _provide(request, get_proxy_config)
        transport = _provide(request, get_upstream_transport)
        response = await forward_to_target(
            InboundRequest.from_request(request), config, transport
        )
        await response(scope, receive, send)


# Raw ASGI app, so Starlette matches it for any method rather than a fixed list
proxy_app = _ProxyApp()
