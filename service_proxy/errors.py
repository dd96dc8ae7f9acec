from typing import Optional

from service_proxy.utils.exception_logging import format_exception_message


class ServiceProxyError(Exception):
    pass


class BindError(ServiceProxyError):
    def __init__(self, host: str, port: int, reason: Optional[BaseException] = None):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Could not bind {host}:{port}: {format_exception_message(reason)}")


class InvalidRuleError(ServiceProxyError):
    """Raised when a routing rule cannot be registered."""

    def __init__(self, message: str, *, rule_id: Optional[str] = None):
        super().__init__(message)
        self.rule_id = rule_id


class UpstreamUnavailable(ServiceProxyError):
    """Raised when a backend cannot be reached or does not answer in time."""

    def __init__(self, target_url: str, reason: str):
        self.target_url = target_url
        self.reason = reason
        super().__init__(f"Upstream {target_url} unavailable: {reason}")


class TlsCredentialError(ServiceProxyError):
    pass


class StateError(ServiceProxyError):
    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        state_name = getattr(state, "value", state)
        super().__init__(f"Cannot {operation} while server is {state_name}")
