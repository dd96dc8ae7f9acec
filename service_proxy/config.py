import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from service_proxy import vars as defaults
from service_proxy.errors import InvalidRuleError
from service_proxy.rules import validate_target_url
from service_proxy.tls import CredentialBundle

logger = logging.getLogger("uvicorn.error")


class BackendRoute(BaseModel):
    """A named backend reachable below a path prefix."""

    name: str
    path_prefix: str
    target_base_url: str

    @field_validator("path_prefix")
    @classmethod
    def _normalise_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("/"):
            raise ValueError(f"path prefix '{value}' must start with '/'")
        return value.rstrip("/") or "/"

    @field_validator("target_base_url")
    @classmethod
    def _check_target(cls, value: str) -> str:
        try:
            return validate_target_url(value)
        except InvalidRuleError as e:
            raise ValueError(str(e))

    @property
    def path_pattern(self) -> str:
        prefix = "" if self.path_prefix == "/" else self.path_prefix
        return f"{re.escape(prefix)}/.*"


def default_routes() -> List[BackendRoute]:
    return [
        BackendRoute(
            name="am", path_prefix="/am", target_base_url=defaults.DEFAULT_AM_TARGET_URL
        ),
        BackendRoute(
            name="services",
            path_prefix="/services",
            target_base_url=defaults.DEFAULT_SERVICES_TARGET_URL,
        ),
    ]


class ProxyConfig(BaseModel):
    host: str = defaults.DEFAULT_HOST
    listen_port: int = Field(defaults.DEFAULT_PORT, ge=0, le=65535)
    tls_listen_port: int = Field(defaults.DEFAULT_HTTPS_PORT, ge=0, le=65535)
    tls_enabled: bool = False
    credential_bundle: Optional[CredentialBundle] = None
    routes: List[BackendRoute] = Field(default_factory=default_routes)

    connect_timeout: float = Field(defaults.DEFAULT_CONNECT_TIMEOUT, gt=0)
    read_timeout: float = Field(defaults.DEFAULT_READ_TIMEOUT, gt=0)
    keep_alive_timeout: int = Field(defaults.DEFAULT_KEEP_ALIVE_TIMEOUT, gt=0)
    shutdown_grace_period: float = Field(defaults.DEFAULT_SHUTDOWN_GRACE_PERIOD, ge=0)

    service_name: str = defaults.SERVICE_NAME
    keystore_path: str = defaults.DEFAULT_KEYSTORE_PATH
    keystore_password: str = Field(defaults.DEFAULT_KEYSTORE_PASSWORD, repr=False)
    key_password: str = Field(defaults.DEFAULT_KEYSTORE_PASSWORD, repr=False)

    log_level: str = "INFO"
    logging_enabled: bool = True

    def route(self, name: str) -> Optional[BackendRoute]:
        for route in self.routes:
            if route.name == name:
                return route
        return None


def load_properties(path: Optional[str]) -> Dict[str, str]:
    """Parse a Java-style properties file. A missing file yields no properties."""
    properties: Dict[str, str] = {}
    if not path or not Path(path).is_file():
        return properties
    with open(path, encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line or line[0] in "#!":
                continue
            match = re.match(r"([^=:\s]+)\s*[=:\s]\s*(.*)", line)
            if match:
                properties[match.group(1)] = match.group(2).strip()
            else:
                properties[line] = ""
    logger.debug(f"[Config] Loaded {len(properties)} properties from {path}")
    return properties


class _Settings:
    """Looks a key up in the environment first, then the properties file."""

    def __init__(self, properties: Mapping[str, str], environ: Mapping[str, str]):
        self.properties = properties
        self.environ = environ

    def get(self, key: str, default: str) -> str:
        env_key = key.upper().replace(".", "_")
        for source, name in ((self.environ, env_key), (self.environ, key)):
            if name in source:
                return source[name]
        return self.properties.get(key, default)

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key, str(default))
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"[Config] Ignoring non-integer value for {key}: {value!r}")
            return default

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key, str(default))
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"[Config] Ignoring non-numeric value for {key}: {value!r}")
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        return self.get(key, str(default)).strip().lower() == "true"


def load_config(
    properties_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxyConfig:
    """
    Build a ProxyConfig from environment variables, an optional properties file
    and the built-in defaults, in that order of precedence.

    Environment variable names are the property keys upper-cased with dots
    replaced by underscores (``am.target.url`` -> ``AM_TARGET_URL``).
    """
    environ = os.environ if environ is None else environ
    path = properties_path or environ.get("PROXY_PROPERTIES_FILE", defaults.PROPERTIES_FILE)
    settings = _Settings(load_properties(path), environ)

    routes = [
        BackendRoute(
            name="am",
            path_prefix="/am",
            target_base_url=settings.get("am.target.url", defaults.DEFAULT_AM_TARGET_URL),
        ),
        BackendRoute(
            name="services",
            path_prefix="/services",
            target_base_url=settings.get(
                "services.target.url", defaults.DEFAULT_SERVICES_TARGET_URL
            ),
        ),
    ]

    return ProxyConfig(
        host=settings.get("server.host", defaults.DEFAULT_HOST),
        listen_port=settings.get_int("server.port", defaults.DEFAULT_PORT),
        tls_listen_port=settings.get_int("https.port", defaults.DEFAULT_HTTPS_PORT),
        tls_enabled=settings.get_bool("https.enabled", False),
        routes=routes,
        connect_timeout=settings.get_float(
            "proxy.connect.timeout", defaults.DEFAULT_CONNECT_TIMEOUT
        ),
        read_timeout=settings.get_float(
            "proxy.read.timeout", defaults.DEFAULT_READ_TIMEOUT
        ),
        keep_alive_timeout=settings.get_int(
            "server.keepalive.timeout", defaults.DEFAULT_KEEP_ALIVE_TIMEOUT
        ),
        shutdown_grace_period=settings.get_float(
            "server.shutdown.grace", defaults.DEFAULT_SHUTDOWN_GRACE_PERIOD
        ),
        keystore_path=settings.get("keystore.path", defaults.DEFAULT_KEYSTORE_PATH),
        keystore_password=settings.get(
            "keystore.password", defaults.DEFAULT_KEYSTORE_PASSWORD
        ),
        key_password=settings.get(
            "keystore.key.password", defaults.DEFAULT_KEYSTORE_PASSWORD
        ),
        log_level=settings.get("logging.level", environ.get("LOG_LEVEL", "INFO")).upper(),
        logging_enabled=settings.get_bool("logging.enabled", True),
    )
