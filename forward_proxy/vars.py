import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "forward-proxy")

# Upstream target
TARGET_PORT = os.environ.get("TARGET_PORT") or "8080"
TARGET_DESTINATION = os.environ.get("TARGET_DESTINATION") or "localhost"
REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT") or "3")

# Identity of this proxy instance
PROXY_NODE_NAME = os.environ.get("PROXY_NODE_NAME") or "default-proxy-node"
NODE_NAME = os.environ.get("NODE_NAME", "")
POD_NAME = os.environ.get("POD_NAME", "")

# Listener
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
LISTEN_PORT = int(os.environ.get("LISTEN_PORT") or "80")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Empty keeps every path forwarded; set to e.g. "/metrics" to expose Prometheus metrics
METRICS_PATH = os.getenv("METRICS_PATH", "")
