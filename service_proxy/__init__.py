from .config import BackendRoute, ProxyConfig, load_config
from .errors import (
    BindError,
    InvalidRuleError,
    ServiceProxyError,
    StateError,
    TlsCredentialError,
    UpstreamUnavailable,
)
from .server import ServerState, ServiceProxyServer
from .tls import CredentialBundle

__all__ = [
    "BackendRoute",
    "ProxyConfig",
    "load_config",
    "BindError",
    "InvalidRuleError",
    "ServiceProxyError",
    "StateError",
    "TlsCredentialError",
    "UpstreamUnavailable",
    "ServerState",
    "ServiceProxyServer",
    "CredentialBundle",
]
