import logging
import socket
import ssl
import threading
import time
from typing import Optional

import uvicorn

from service_proxy.errors import BindError, ServiceProxyError
from service_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

STARTUP_TIMEOUT = 10.0


def bind_socket(host: str, port: int, backlog: int = 2048) -> socket.socket:
    """
    Bind and listen on host:port. Port 0 picks a free port.

    Raises:
        BindError: the address is unavailable.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise BindError(host, port, e)
    sock.set_inheritable(True)
    return sock


class Listener:
    """
    Serves an ASGI app on one plain or TLS socket.

    uvicorn runs on a dedicated thread with its own event loop; each accepted
    connection becomes a task that handles its requests one after another.
    """

    def __init__(
        self,
        app,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
        keep_alive_timeout: int = 5,
        grace_period: float = 10,
        backlog: int = 2048,
    ):
        self.app = app
        self.host = host
        self.requested_port = port
        self.ssl_context = ssl_context
        self.keep_alive_timeout = keep_alive_timeout
        self.grace_period = grace_period
        self.backlog = backlog

        self._socket: Optional[socket.socket] = None
        self._bound_port: Optional[int] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def scheme(self) -> str:
        return "https" if self.ssl_context is not None else "http"

    @property
    def port(self) -> Optional[int]:
        return self._bound_port

    def bind(self) -> int:
        self._socket = bind_socket(self.host, self.requested_port, self.backlog)
        self._bound_port = self._socket.getsockname()[1]
        return self._bound_port

    def _build_config(self) -> uvicorn.Config:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            http="h11",
            lifespan="on",
            log_config=None,
            access_log=False,
            backlog=self.backlog,
            timeout_keep_alive=self.keep_alive_timeout,
            timeout_graceful_shutdown=self.grace_period,
        )
        config.load()
        # uvicorn only builds contexts from files; the bundle is already in memory
        config.ssl = self.ssl_context
        return config

    def serve_in_background(self) -> None:
        """Start accepting on the bound socket; returns once the server is up."""
        if self._socket is None:
            self.bind()
        self._server = uvicorn.Server(self._build_config())
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [self._socket]},
            name=f"service-proxy-{self.port}",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if not self._thread.is_alive():
                self._close_socket()
                raise ServiceProxyError(f"Listener on port {self.port} failed to start")
            if time.monotonic() > deadline:
                self.stop()
                raise ServiceProxyError(
                    f"Listener on port {self.port} did not start within {STARTUP_TIMEOUT}s"
                )
            time.sleep(0.01)
        logger.info(f"[Listener] Accepting {self.scheme} connections on port {self.port}")

    def stop(self) -> None:
        """
        Stop accepting, close the listening socket and give in-flight requests
        the grace period to finish.
        """
        if self._server is not None and self._thread is not None:
            self._server.should_exit = True
            self._thread.join(self.grace_period + 5)
            if self._thread.is_alive():
                logger.warning(
                    f"[Listener] Port {self.port} still busy after grace period, forcing exit"
                )
                self._server.force_exit = True
                self._thread.join(5)
        self._close_socket()
        self._server = None
        self._thread = None

    def _close_socket(self) -> None:
        if self._socket is None:
            return
        try:
            self._socket.close()
        except OSError as e:
            log_exception_with_details(
                logger, "[Listener] Closing socket failed:", e, logging.WARNING
            )
        self._socket = None
