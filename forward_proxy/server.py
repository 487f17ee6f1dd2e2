import logging
import sys
from typing import Sequence

import uvicorn
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from forward_proxy.config import get_proxy_config
from forward_proxy.proxy.route import proxy_app
from forward_proxy.vars import (
    LISTEN_HOST,
    LISTEN_PORT,
    LOG_LEVEL,
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")

# Every path belongs to the catch-all route, so FastAPI's own docs pages stay off
app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
instrumentator = Instrumentator()

instrumentator.instrument(app)
if METRICS_PATH:
    # Registered before the catch-all route so it takes precedence
    instrumentator.expose(app, endpoint=METRICS_PATH, include_in_schema=False)


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out ASGI body spans from streamed responses.
    Relayed bodies otherwise produce one tiny span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(fastapi_app: FastAPI) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )

    FastAPIInstrumentor.instrument_app(fastapi_app)


configure_tracing(app)

app_info = Info("forward_proxy_info", "Forward proxy instance")
app_info.info({"app_name": SERVICE_NAME})

app.add_route("/{path:path}", proxy_app, include_in_schema=False)


def setup_logging(log_level: str) -> None:
    """Configure logging for messages emitted before uvicorn takes over."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_server_config(host: str = LISTEN_HOST, port: int = LISTEN_PORT) -> uvicorn.Config:
    """
    Listener settings for the proxy.

    Responses carry only the target's own headers, and the client address is
    always the socket peer, never a value taken from X-Forwarded-* headers.
    """
    return uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=LOG_LEVEL,
        # Logging is set up by setup_logging
        log_config=None,
        proxy_headers=False,
        server_header=False,
        date_header=False,
    )


def main() -> None:
    """Serve until the listener fails, then report and return."""
    setup_logging(LOG_LEVEL)
    config = get_proxy_config()
    logger.info(f"Starting HTTP proxy server on port {LISTEN_PORT}...")
    logger.info(f"Forwarding to {config.destination} (timeout {config.request_timeout}s)")
    server = uvicorn.Server(build_server_config())
    try:
        server.run()
    except OSError as e:
        logger.error(f"HTTP server failed: {e}")
    except SystemExit as e:
        # uvicorn exits the process when it cannot bind
        logger.error(f"HTTP server failed: exit status {e.code}")


if __name__ == "__main__":
    main()
