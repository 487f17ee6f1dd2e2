"""
Plain-text diagnostic body written for every failed forward.

The layout is a stable contract: destination, full URL, the optional
identity lines, a blank line, then the message.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi.responses import PlainTextResponse

from forward_proxy.config import ProxyConfig

LABEL_WIDTH = 23


def _line(label: str, value: str) -> str:
    return f"{label.ljust(LABEL_WIDTH)}: {value}\n"


@dataclass(frozen=True)
class ErrorReport:
    destination: str
    target_url: str
    message: str
    node_name: Optional[str] = None
    pod_name: Optional[str] = None
    hostname: Optional[str] = None

    @classmethod
    def for_config(
        cls, config: ProxyConfig, target_url: str, message: str
    ) -> "ErrorReport":
        return cls(
            destination=config.destination,
            target_url=target_url,
            message=message,
            node_name=config.node_name,
            pod_name=config.pod_name,
            hostname=config.hostname,
        )

    def render(self) -> str:
        body = _line("Destination Address", self.destination)
        body += _line("Full URL", self.target_url)
        if self.node_name:
            body += _line("Node Name", self.node_name)
        if self.pod_name:
            body += _line("Pod Name", self.pod_name)
        if self.hostname:
            body += _line("Hostname", self.hostname)
        body += f"\n{self.message}\n"
        return body


def error_response(report: ErrorReport, status_code: int) -> PlainTextResponse:
    """Write the report as the single response for this request."""
    return PlainTextResponse(report.render(), status_code=status_code)
