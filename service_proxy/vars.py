import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "service-proxy")
SERVICE_DISPLAY_NAME = os.getenv("SERVICE_DISPLAY_NAME", "Service Proxy Server")
SERVICE_VERSION = "1.0.0"

DEFAULT_HOST = os.environ.get("PROXY_HOST", "0.0.0.0")
DEFAULT_PORT = 9095
DEFAULT_HTTPS_PORT = 9443

DEFAULT_AM_TARGET_URL = "http://localhost:9001"
DEFAULT_SERVICES_TARGET_URL = "http://localhost:9002"

DEFAULT_KEYSTORE_PATH = "certs/keystore.p12"
DEFAULT_KEYSTORE_PASSWORD = "changeit"

# Seconds
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_KEEP_ALIVE_TIMEOUT = 5
DEFAULT_SHUTDOWN_GRACE_PERIOD = 10

PROPERTIES_FILE = os.getenv("PROXY_PROPERTIES_FILE", "application.properties")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
