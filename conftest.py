# Ensure tests import the package from this checkout first, even when an
# installed copy of forward_proxy is also on the path.
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from forward_proxy.config import ProxyConfig  # noqa: E402
from forward_proxy.proxy.inbound import InboundRequest  # noqa: E402

TEST_TARGET_HOST = "internal-app"
TEST_TARGET_PORT = "8080"


@pytest.fixture
def proxy_config():
    """Configuration without any optional identity fields."""
    return ProxyConfig(
        target_host=TEST_TARGET_HOST,
        target_port=TEST_TARGET_PORT,
        request_timeout=0.5,
    )


@pytest.fixture
def identified_config():
    """Configuration with node, pod and hostname set."""
    return ProxyConfig(
        target_host=TEST_TARGET_HOST,
        target_port=TEST_TARGET_PORT,
        request_timeout=0.5,
        node_name="node-a",
        pod_name="pod-1",
        hostname="proxy-host",
    )


@pytest.fixture
def make_inbound():
    """Build an InboundRequest the way the server adapter would."""

    def _make(
        method="GET",
        path="/test",
        headers=None,
        body=None,
        remote_addr="192.168.1.100:54321",
        local_addr="10.0.0.5:80",
        tls=False,
    ):
        stream = None
        if body is not None:

            async def stream_body():
                yield body

            stream = stream_body()
        return InboundRequest(
            method=method,
            path=path,
            headers=list(headers or [("user-agent", "test-agent")]),
            body=stream,
            remote_addr=remote_addr,
            local_addr=local_addr,
            tls=tls,
            url=f"http://proxy.example.com{path}",
        )

    return _make


@pytest.fixture
def upstream():
    """
    Recording MockTransport standing in for the target server.

    ``upstream.respond(handler)`` installs the handler; every request that
    reaches the transport is kept in ``upstream.requests``.
    """

    class _Upstream:
        def __init__(self):
            self.requests = []
            self.handler = lambda request: httpx.Response(
                200, stream=httpx.ByteStream(b"")
            )

        def respond(self, handler):
            self.handler = handler

        async def _handle(self, request: httpx.Request):
            body = await request.aread()
            self.requests.append((request, body))
            result = self.handler(request)
            if hasattr(result, "__await__"):
                result = await result
            return result

        @property
        def transport(self) -> httpx.MockTransport:
            return httpx.MockTransport(self._handle)

    return _Upstream()
