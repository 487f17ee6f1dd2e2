import asyncio

import pytest
from starlette.requests import Request

from forward_proxy.proxy.inbound import InboundRequest
from forward_proxy.utils import address_from_scope, join_host_port


def _scope(**overrides):
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/api/items",
        "raw_path": b"/api/items",
        "query_string": b"page=2",
        "root_path": "",
        "headers": [
            (b"host", b"proxy.example.com"),
            (b"user-agent", b"test-agent"),
            (b"accept", b"text/html"),
            (b"accept", b"application/json"),
        ],
        "client": ("192.168.1.100", 54321),
        "server": ("10.0.0.5", 80),
    }
    scope.update(overrides)
    return scope


def _receive_from(messages):
    queue = list(messages)

    async def receive():
        if queue:
            return queue.pop(0)
        await asyncio.sleep(3600)

    return receive


class TestAddresses:
    def test_ipv4(self):
        assert join_host_port("127.0.0.1", 80) == "127.0.0.1:80"

    def test_ipv6_bracketed(self):
        assert join_host_port("::1", 8080) == "[::1]:8080"

    def test_unix_socket_has_no_port(self):
        assert address_from_scope(("/run/proxy.sock", None)) == "/run/proxy.sock"

    def test_missing_entry(self):
        assert address_from_scope(None) is None


class TestFromRequest:
    def test_fields_extracted(self):
        request = Request(_scope(), _receive_from([]))

        inbound = InboundRequest.from_request(request)

        assert inbound.method == "GET"
        assert inbound.path == "/api/items"
        assert inbound.remote_addr == "192.168.1.100:54321"
        assert inbound.local_addr == "10.0.0.5:80"
        assert inbound.tls is False
        assert inbound.protocol == "HTTP"
        assert inbound.user_agent == "test-agent"
        assert inbound.url.endswith("/api/items?page=2")

    def test_duplicate_headers_kept_in_order(self):
        request = Request(_scope(), _receive_from([]))

        inbound = InboundRequest.from_request(request)

        assert [v for k, v in inbound.headers if k == "accept"] == [
            "text/html",
            "application/json",
        ]

    def test_https_detected(self):
        request = Request(_scope(scheme="https"), _receive_from([]))

        inbound = InboundRequest.from_request(request)

        assert inbound.tls is True
        assert inbound.protocol == "HTTPS"

    def test_missing_server_means_no_local_address(self):
        request = Request(_scope(server=None, client=None), _receive_from([]))

        inbound = InboundRequest.from_request(request)

        assert inbound.local_addr is None
        assert inbound.remote_addr == ""

    def test_no_body_without_length_or_encoding(self):
        request = Request(_scope(), _receive_from([]))

        assert InboundRequest.from_request(request).body is None

    def test_zero_content_length_has_no_body(self):
        scope = _scope(method="POST", headers=[(b"content-length", b"0")])
        request = Request(scope, _receive_from([]))

        assert InboundRequest.from_request(request).body is None

    @pytest.mark.asyncio
    async def test_body_streamed_once(self):
        scope = _scope(method="POST", headers=[(b"content-length", b"11")])
        request = Request(
            scope,
            _receive_from(
                [
                    {"type": "http.request", "body": b"hello ", "more_body": True},
                    {"type": "http.request", "body": b"world", "more_body": False},
                ]
            ),
        )

        inbound = InboundRequest.from_request(request)
        chunks = [chunk async for chunk in inbound.body]

        assert b"".join(chunks) == b"hello world"

    @pytest.mark.asyncio
    async def test_wait_disconnected_returns_on_disconnect(self):
        request = Request(
            _scope(),
            _receive_from(
                [
                    {"type": "http.request", "body": b"", "more_body": False},
                    {"type": "http.disconnect"},
                ]
            ),
        )

        inbound = InboundRequest.from_request(request)

        await asyncio.wait_for(inbound.wait_disconnected(), timeout=1)

    @pytest.mark.asyncio
    async def test_wait_disconnected_waits_for_body(self):
        scope = _scope(method="POST", headers=[(b"transfer-encoding", b"chunked")])
        request = Request(
            scope,
            _receive_from(
                [
                    {"type": "http.request", "body": b"data", "more_body": False},
                    {"type": "http.disconnect"},
                ]
            ),
        )
        inbound = InboundRequest.from_request(request)

        watcher = asyncio.ensure_future(inbound.wait_disconnected())
        await asyncio.sleep(0.01)
        # The watcher must not steal the body message
        assert not watcher.done()

        chunks = [chunk async for chunk in inbound.body]
        await asyncio.wait_for(watcher, timeout=1)

        assert chunks == [b"data"]
