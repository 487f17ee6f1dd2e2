import logging
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_forward(
    tracer: Tracer,
    operation: str,
    target_url: str,
    method: str,
    protocol: str,
    start_message: str,
):
    """Context manager to create a span, set the proxy attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.protocol", protocol)
        logger.info(start_message)
        yield span
