"""
Failure taxonomy of the forwarder.

Every failure that happens before upstream response headers arrive is
raised as one of these and converted into a diagnostic response at the
forwarder boundary. None of them are retried.
"""


class ProxyError(Exception):
    """Base class for terminal forwarding failures."""

    status_code = 502
    kind = "proxy_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BuildFailure(ProxyError):
    """The outbound request could not be constructed."""

    status_code = 500
    kind = "build_failed"

    def __init__(self, message: str = "Failed to create request"):
        super().__init__(message)


class UpstreamTimeout(ProxyError):
    """The per-request deadline elapsed before the upstream answered."""

    status_code = 504
    kind = "timeout"

    def __init__(self, message: str = "Request to target server timed out"):
        super().__init__(message)


class UpstreamDispatchFailure(ProxyError):
    """Any other failure reaching the upstream."""

    status_code = 502
    kind = "dispatch_failed"

    @classmethod
    def from_error_text(cls, error_text: str) -> "UpstreamDispatchFailure":
        return cls(f"Failed to forward request: {error_text}")
