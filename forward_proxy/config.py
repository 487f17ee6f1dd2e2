"""
Immutable configuration snapshot shared by every request handler.

The snapshot is built once from ``forward_proxy.vars`` before the listener
starts. It is a frozen dataclass and nothing mutates it afterwards, so
concurrent handlers read it without any locking.
"""

import logging
import socket
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from forward_proxy import vars as proxy_vars

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ProxyConfig:
    target_host: str
    target_port: str
    request_timeout: float
    # Accepted for compatibility with existing deployments; not emitted anywhere.
    proxy_node_name: str = "default-proxy-node"
    node_name: Optional[str] = None
    pod_name: Optional[str] = None
    hostname: Optional[str] = None

    @property
    def destination(self) -> str:
        """The configured upstream as ``host:port``."""
        return f"{self.target_host}:{self.target_port}"


def resolve_hostname() -> Optional[str]:
    """Return the OS hostname, or None when it cannot be resolved."""
    try:
        return socket.gethostname() or None
    except OSError as e:
        logger.warning(f"Could not resolve hostname: {e}")
        return None


def load_config() -> ProxyConfig:
    """Build a configuration snapshot from the current environment constants."""
    return ProxyConfig(
        target_host=proxy_vars.TARGET_DESTINATION,
        target_port=proxy_vars.TARGET_PORT,
        request_timeout=proxy_vars.REQUEST_TIMEOUT,
        proxy_node_name=proxy_vars.PROXY_NODE_NAME,
        node_name=proxy_vars.NODE_NAME or None,
        pod_name=proxy_vars.POD_NAME or None,
        hostname=resolve_hostname(),
    )


@lru_cache(maxsize=1)
def get_proxy_config() -> ProxyConfig:
    """FastAPI dependency returning the process-wide configuration snapshot."""
    return load_config()
