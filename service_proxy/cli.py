#!/usr/bin/env python3
"""
Run the service proxy.

Usage:
    python -m service_proxy [--port 9095] [--https [--https-port 9443]]
    python -m service_proxy --config application.properties --log-level DEBUG
"""

import argparse
import logging
import signal
import sys
import threading

from service_proxy import vars as defaults
from service_proxy.config import BackendRoute, ProxyConfig, load_config
from service_proxy.errors import ServiceProxyError
from service_proxy.server import ServiceProxyServer
from service_proxy.telemetry import configure_tracing
from service_proxy.tls import CredentialBundle

logger = logging.getLogger("uvicorn.error")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Reverse proxy for the am and services backends")
    parser.add_argument("--config", help="Path to an application.properties file")
    parser.add_argument("--port", type=int, help="Plain HTTP listen port")
    parser.add_argument("--https", action="store_true", help="Serve HTTPS instead of HTTP")
    parser.add_argument("--https-port", type=int, help="HTTPS listen port")
    parser.add_argument("--am-target", help="Base URL of the am backend")
    parser.add_argument("--services-target", help="Base URL of the services backend")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def configure_logging(level: str = "INFO", enabled: bool = True) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    if not enabled:
        logging.disable(logging.CRITICAL)


def apply_overrides(config: ProxyConfig, args) -> ProxyConfig:
    """Command-line flags win over the environment and the properties file."""
    updates = {}
    if args.port is not None:
        updates["listen_port"] = args.port
    if args.https_port is not None:
        updates["tls_listen_port"] = args.https_port
    if args.https:
        updates["tls_enabled"] = True
    if args.log_level:
        updates["log_level"] = args.log_level.upper()

    targets = {"am": args.am_target, "services": args.services_target}
    if any(targets.values()):
        updates["routes"] = [
            BackendRoute(
                name=route.name,
                path_prefix=route.path_prefix,
                target_base_url=targets.get(route.name) or route.target_base_url,
            )
            for route in config.routes
        ]
    # model_copy skips validation, so rebuild to validate the overrides
    return ProxyConfig(**{**config.model_dump(), **updates})


def load_credentials(config: ProxyConfig) -> ProxyConfig:
    if not config.tls_enabled or config.credential_bundle is not None:
        return config
    bundle = CredentialBundle.from_pkcs12(
        config.keystore_path, config.keystore_password, config.key_password
    )
    logger.info(f"[Bootstrap] Keystore path: {config.keystore_path}")
    return config.model_copy(update={"credential_bundle": bundle})


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = apply_overrides(load_config(args.config), args)
        configure_logging(config.log_level, config.logging_enabled)
        configure_tracing(config.service_name, defaults.OTLP_ENDPOINT, defaults.OTLP_HEADERS)
        config = load_credentials(config)
    except (ServiceProxyError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    server = ServiceProxyServer(config)

    def _shutdown(signum, frame):
        logger.info("[Bootstrap] Shutting down Service Proxy Server...")
        threading.Thread(target=server.stop, name="service-proxy-shutdown").start()

    signal.signal(signal.SIGTERM, _shutdown)

    mode = "HTTPS" if config.tls_enabled else "HTTP"
    logger.info(f"[Bootstrap] Starting server with {mode}")
    try:
        server.start(blocking=True)
    except ServiceProxyError as e:
        logger.error(f"[Bootstrap] Failed to start: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
