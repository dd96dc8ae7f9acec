"""
Service proxy lifecycle.

``ServiceProxyServer`` owns the rule table, the listener and the state
machine ``CREATED -> STARTING -> RUNNING -> STOPPING -> STOPPED``.
"""

import logging
import threading
import uuid
from enum import Enum
from typing import Optional

from service_proxy import vars as defaults
from service_proxy.config import ProxyConfig
from service_proxy.dispatcher import Dispatcher, create_app
from service_proxy.errors import StateError
from service_proxy.forwarder import Forwarder
from service_proxy.listener import Listener
from service_proxy.rules import (
    NORMAL_PRIORITY,
    HttpMethod,
    InfoAction,
    PathMatchKind,
    ProxyAction,
    RoutingRule,
    RuleTable,
    StaticResponseAction,
)
from service_proxy.tls import build_server_ssl_context
from service_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

HEALTH_RULE_ID = "builtin-health"
INFO_RULE_ID = "builtin-info"
HEALTH_BODY = b'{"status": "UP", "service": "service-proxy"}'


class ServerState(str, Enum):
    CREATED = "CREATED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


def default_rules(config: ProxyConfig) -> list[RoutingRule]:
    rules = [
        RoutingRule(
            id=HEALTH_RULE_ID,
            method=HttpMethod.GET,
            path_pattern="/health",
            path_kind=PathMatchKind.EXACT,
            action=StaticResponseAction(
                status=200,
                headers={"Content-Type": "application/json"},
                body=HEALTH_BODY,
            ),
        ),
        RoutingRule(
            id=INFO_RULE_ID,
            method=HttpMethod.GET,
            path_pattern="/",
            path_kind=PathMatchKind.EXACT,
            action=InfoAction(
                service=defaults.SERVICE_DISPLAY_NAME,
                version=defaults.SERVICE_VERSION,
                endpoints={"health": "/health", "info": "/"},
            ),
        ),
    ]
    for route in config.routes:
        rules.append(
            RoutingRule(
                id=f"backend-{route.name}",
                method=HttpMethod.ANY,
                path_pattern=route.path_pattern,
                action=ProxyAction(route.target_base_url),
            )
        )
    return rules


class ServiceProxyServer:
    """
    A reverse proxy instance.

    Each instance carries its own configuration and rule table, so several
    can run side by side in one process.
    """

    def __init__(self, config: Optional[ProxyConfig] = None):
        self.config = config or ProxyConfig()
        self.rule_table = RuleTable()
        self._state = ServerState.CREATED
        self._state_lock = threading.Lock()
        self._stopped = threading.Event()
        self._listener: Optional[Listener] = None

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> Optional[int]:
        """Port the listener is bound to, None unless running."""
        return self._listener.port if self._listener is not None else None

    @property
    def is_running(self) -> bool:
        return self._state is ServerState.RUNNING

    def start(
        self,
        port: Optional[int] = None,
        *,
        tls: Optional[bool] = None,
        blocking: bool = False,
    ) -> int:
        """
        Bind the listener, install the default rules and start serving.

        Args:
            port: Port to bind; defaults to the configured plain or TLS port.
                0 binds a free port.
            tls: Serve TLS with the configured credential bundle. Defaults
                to ``config.tls_enabled``.
            blocking: Park the caller until ``stop()`` or KeyboardInterrupt.

        Returns:
            The bound port.

        Raises:
            StateError: the server is not CREATED or STOPPED.
            TlsCredentialError: the credential bundle is unusable.
            BindError: the port is unavailable.
        """
        use_tls = self.config.tls_enabled if tls is None else tls
        if port is None:
            port = self.config.tls_listen_port if use_tls else self.config.listen_port

        with self._state_lock:
            if self._state not in (ServerState.CREATED, ServerState.STOPPED):
                raise StateError("start", self._state)
            self._state = ServerState.STARTING
            self._stopped.clear()

        listener = None
        try:
            ssl_context = None
            if use_tls:
                ssl_context = build_server_ssl_context(self.config.credential_bundle)
            forwarder = Forwarder(self.config.connect_timeout, self.config.read_timeout)
            listener = Listener(
                create_app(Dispatcher(self.rule_table, forwarder)),
                host=self.config.host,
                port=port,
                ssl_context=ssl_context,
                keep_alive_timeout=self.config.keep_alive_timeout,
                grace_period=self.config.shutdown_grace_period,
            )
            listener.bind()
            self._install_default_rules()
            listener.serve_in_background()
        except Exception:
            if listener is not None:
                listener.stop()
            with self._state_lock:
                self._state = ServerState.STOPPED
                self._stopped.set()
            raise

        with self._state_lock:
            self._listener = listener
            self._state = ServerState.RUNNING
        self._log_started(listener)

        if blocking:
            self.wait()
        return listener.port

    def start_non_blocking(self, port: Optional[int] = None) -> int:
        return self.start(port, tls=False)

    def start_with_https(self, port: Optional[int] = None, *, blocking: bool = False) -> int:
        return self.start(port, tls=True, blocking=blocking)

    def wait(self) -> None:
        """Block until the server stops; KeyboardInterrupt stops it."""
        try:
            while not self._stopped.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("[Lifecycle] Server interrupted, shutting down...")
            self.stop()

    def stop(self) -> None:
        """Stop serving. A no-op unless the server is RUNNING."""
        with self._state_lock:
            if self._state is not ServerState.RUNNING:
                return
            self._state = ServerState.STOPPING
            listener = self._listener

        try:
            if listener is not None:
                listener.stop()
        except Exception as e:
            log_exception_with_details(logger, "[Lifecycle] Error during shutdown:", e)
        finally:
            with self._state_lock:
                self._listener = None
                self._state = ServerState.STOPPED
                self._stopped.set()
        logger.info("[Lifecycle] Service Proxy Server stopped")

    def register_mapping(
        self,
        path_pattern: str,
        target_url: str,
        method: Optional[str] = None,
        *,
        priority: int = NORMAL_PRIORITY,
        rule_id: Optional[str] = None,
    ) -> RoutingRule:
        """
        Proxy requests whose path fully matches path_pattern to target_url.

        Raises:
            StateError: the server is not RUNNING.
            InvalidRuleError: the pattern or target URL is malformed.
        """
        if self._state is not ServerState.RUNNING:
            raise StateError("register a mapping", self._state)
        rule = self.rule_table.register(
            RoutingRule(
                id=rule_id or f"custom-{uuid.uuid4().hex[:12]}",
                method=HttpMethod.parse(method),
                path_pattern=path_pattern,
                action=ProxyAction(target_url),
                priority=priority,
            )
        )
        logger.info(f"[Lifecycle] Added custom mapping: {rule.describe()}")
        return rule

    def _install_default_rules(self) -> None:
        for rule in default_rules(self.config):
            self.rule_table.register_if_absent(rule)

    def _log_started(self, listener: Listener) -> None:
        mode = "HTTPS" if listener.scheme == "https" else "HTTP"
        logger.info(f"[Lifecycle] Service Proxy Server started with {mode} on port {listener.port}")
        logger.info("[Lifecycle] Proxy mappings:")
        for pattern, target in self.rule_table.proxy_mappings().items():
            logger.info(f"[Lifecycle]   {pattern} -> {target}")
