from typing import Optional, Sequence


def join_host_port(host: str, port: Optional[int]) -> str:
    """Format an address as ``host:port``, bracketing IPv6 hosts."""
    if port is None:
        return host
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def address_from_scope(entry: Optional[Sequence]) -> Optional[str]:
    """Turn an ASGI ``client``/``server`` scope entry into an address string."""
    if not entry:
        return None
    host, port = entry[0], entry[1] if len(entry) > 1 else None
    return join_host_port(str(host), port)
