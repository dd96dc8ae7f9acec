"""
End-to-end tests for ServiceProxyServer.

Every test runs a real listener on 127.0.0.1 with a free port and talks to it
with requests, the way a client of the deployed proxy would.
"""

import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from service_proxy.config import BackendRoute, ProxyConfig
from service_proxy.errors import BindError, StateError, TlsCredentialError
from service_proxy.server import ServerState, ServiceProxyServer
from service_proxy.tls import CredentialBundle


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_config(am_target="http://127.0.0.1:9001", **overrides):
    settings = {
        "host": "127.0.0.1",
        "listen_port": 0,
        "tls_listen_port": 0,
        "connect_timeout": 1.0,
        "read_timeout": 5.0,
        "shutdown_grace_period": 1.0,
        "routes": [
            BackendRoute(name="am", path_prefix="/am", target_base_url=am_target),
            BackendRoute(
                name="services",
                path_prefix="/services",
                target_base_url=f"http://127.0.0.1:{free_port()}",
            ),
        ],
    }
    settings.update(overrides)
    return ProxyConfig(**settings)


@pytest.fixture
def slow_backend():
    """Backend that answers a second after the request arrives; yields URL and arrival event."""
    arrived = threading.Event()

    class SlowHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def do_GET(self):
            arrived.set()
            time.sleep(1.0)
            body = b"slow-done"
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass

    backend = ThreadingHTTPServer(("127.0.0.1", 0), SlowHandler)
    thread = threading.Thread(target=backend.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{backend.server_address[1]}", arrived
    backend.shutdown()
    backend.server_close()


@pytest.fixture
def servers():
    """Collects servers created by a test and stops them afterwards."""
    created = []

    def _make(config=None):
        server = ServiceProxyServer(config or make_config())
        created.append(server)
        return server

    yield _make
    for server in created:
        server.stop()


class TestLifecycle:
    def test_new_server_is_created(self, servers):
        server = servers()
        assert server.state is ServerState.CREATED
        assert server.port is None
        assert not server.is_running

    def test_start_serves_health_and_root(self, servers):
        server = servers()
        port = server.start_non_blocking()

        assert server.state is ServerState.RUNNING
        assert server.port == port
        assert port > 0

        health = requests.get(f"http://127.0.0.1:{port}/health", timeout=5)
        assert health.status_code == 200
        assert health.headers["Content-Type"] == "application/json"
        assert health.json() == {"status": "UP", "service": "service-proxy"}

        root = requests.get(f"http://127.0.0.1:{port}/", timeout=5)
        assert root.status_code == 200
        assert set(root.json()["proxies"]) == {"/am/.*", "/services/.*"}

    def test_stop_before_start_is_noop(self, servers):
        server = servers()
        server.stop()
        assert server.state is ServerState.CREATED

    def test_stop_twice_is_noop(self, servers):
        server = servers()
        server.start_non_blocking()
        server.stop()
        server.stop()
        assert server.state is ServerState.STOPPED

    def test_connections_refused_after_stop(self, servers):
        server = servers()
        port = server.start_non_blocking()
        server.stop()

        assert server.state is ServerState.STOPPED
        assert server.port is None
        with pytest.raises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{port}/health", timeout=2)

    def test_second_start_rejected_and_port_unchanged(self, servers):
        server = servers()
        port = server.start_non_blocking()

        with pytest.raises(StateError):
            server.start_non_blocking(free_port())

        assert server.port == port
        assert requests.get(f"http://127.0.0.1:{port}/health", timeout=5).status_code == 200

    def test_concurrent_starts_only_one_wins(self, servers):
        server = servers()
        barrier = threading.Barrier(4)
        results = []

        def attempt():
            barrier.wait()
            try:
                results.append(server.start_non_blocking())
            except StateError as e:
                results.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        ports = [r for r in results if isinstance(r, int)]
        errors = [r for r in results if isinstance(r, StateError)]
        assert len(ports) == 1
        assert len(errors) == 3
        assert server.port == ports[0]

    def test_restart_after_stop(self, servers):
        server = servers()
        server.start_non_blocking()
        server.stop()

        port = server.start_non_blocking()
        assert server.state is ServerState.RUNNING
        assert requests.get(f"http://127.0.0.1:{port}/health", timeout=5).status_code == 200

    def test_independent_instances(self, servers):
        first = servers()
        second = servers()
        first_port = first.start_non_blocking()
        second_port = second.start_non_blocking()

        first.register_mapping("/only-first/.*", "http://127.0.0.1:9100")

        assert first_port != second_port
        first_root = requests.get(f"http://127.0.0.1:{first_port}/", timeout=5).json()
        second_root = requests.get(f"http://127.0.0.1:{second_port}/", timeout=5).json()
        assert "/only-first/.*" in first_root["proxies"]
        assert "/only-first/.*" not in second_root["proxies"]


    def test_blocking_start_returns_after_stop(self, servers):
        server = servers()
        outcome = {}

        def run():
            outcome["port"] = server.start(blocking=True)

        runner = threading.Thread(target=run, daemon=True)
        runner.start()
        for _ in range(500):
            if server.is_running:
                break
            time.sleep(0.01)
        assert server.is_running
        assert runner.is_alive()

        port = server.port
        assert requests.get(f"http://127.0.0.1:{port}/health", timeout=5).status_code == 200

        server.stop()
        runner.join(5)

        assert not runner.is_alive()
        assert outcome["port"] == port
        assert server.state is ServerState.STOPPED

    def test_in_flight_request_finishes_during_stop(self, servers, slow_backend):
        backend_url, request_arrived = slow_backend
        server = servers(make_config(am_target=backend_url, shutdown_grace_period=5.0))
        port = server.start_non_blocking()
        outcome = {}

        def call():
            response = requests.get(f"http://127.0.0.1:{port}/am/slow", timeout=10)
            outcome["result"] = (response.status_code, response.text)

        caller = threading.Thread(target=call, daemon=True)
        caller.start()
        assert request_arrived.wait(5)

        server.stop()
        caller.join(10)

        assert outcome["result"] == (200, "slow-done")
        assert server.state is ServerState.STOPPED


class TestBindFailure:
    def test_occupied_port_raises_bind_error(self, servers):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as occupant:
            occupant.bind(("127.0.0.1", 0))
            occupant.listen(1)
            taken = occupant.getsockname()[1]

            server = servers()
            with pytest.raises(BindError) as exc_info:
                server.start_non_blocking(taken)

        assert exc_info.value.port == taken
        assert "in use" in str(exc_info.value)
        assert server.state is ServerState.STOPPED
        assert not server.is_running

        port = server.start_non_blocking(0)
        assert requests.get(f"http://127.0.0.1:{port}/health", timeout=5).status_code == 200


class TestMappings:
    def test_register_before_start_rejected(self, servers):
        server = servers()
        with pytest.raises(StateError):
            server.register_mapping("/x/.*", "http://127.0.0.1:9100")
        assert len(server.rule_table) == 0

    def test_register_after_stop_rejected(self, servers):
        server = servers()
        server.start_non_blocking()
        server.stop()
        with pytest.raises(StateError):
            server.register_mapping("/x/.*", "http://127.0.0.1:9100")

    def test_registered_mapping_takes_effect(self, servers, echo_backend):
        backend_url, received = echo_backend
        server = servers()
        port = server.start_non_blocking()

        rule = server.register_mapping("/custom/.*", backend_url, "GET")

        response = requests.get(f"http://127.0.0.1:{port}/custom/thing", timeout=5)
        assert response.status_code == 200
        assert response.json()["path"] == "/custom/thing"
        assert received == ["GET /custom/thing"]
        assert rule.id.startswith("custom-")

        root = requests.get(f"http://127.0.0.1:{port}/", timeout=5).json()
        assert root["proxies"]["/custom/.*"] == backend_url

    def test_method_restricted_mapping(self, servers, echo_backend):
        backend_url, _ = echo_backend
        server = servers()
        port = server.start_non_blocking()
        server.register_mapping("/reports/.*", backend_url, "GET")

        assert requests.post(f"http://127.0.0.1:{port}/reports/1", timeout=5).status_code == 404


class TestProxying:
    def test_post_forwarded_to_am_backend(self, servers, echo_backend):
        backend_url, received = echo_backend
        server = servers(make_config(am_target=backend_url))
        port = server.start_non_blocking()

        response = requests.post(
            f"http://127.0.0.1:{port}/am/foo?x=1",
            data=b'{"k": "v"}',
            headers={"Content-Type": "application/json", "X-Correlation-Id": "c-42"},
            timeout=5,
        )

        assert response.status_code == 200
        assert response.headers["X-Backend"] == "echo"
        echoed = response.json()
        assert echoed["method"] == "POST"
        assert echoed["path"] == "/am/foo?x=1"
        assert echoed["body"] == '{"k": "v"}'
        headers = dict(echoed["headers"])
        assert headers["host"] == backend_url.split("//", 1)[1]
        assert headers["x-correlation-id"] == "c-42"
        assert received == ["POST /am/foo?x=1"]

    def test_unknown_path_returns_404(self, servers, echo_backend):
        backend_url, received = echo_backend
        server = servers(make_config(am_target=backend_url))
        port = server.start_non_blocking()

        assert requests.get(f"http://127.0.0.1:{port}/amx/foo", timeout=5).status_code == 404
        assert received == []

    def test_unreachable_backend_returns_502(self, servers):
        server = servers(make_config(am_target=f"http://127.0.0.1:{free_port()}"))
        port = server.start_non_blocking()

        response = requests.get(f"http://127.0.0.1:{port}/am/foo", timeout=5)
        assert response.status_code == 502
        assert response.json()["error"] == "Bad gateway"

        # The listener keeps serving after an upstream failure
        assert requests.get(f"http://127.0.0.1:{port}/health", timeout=5).status_code == 200


class TestTls:
    def test_https_serves_health(self, servers, self_signed_bundle, tmp_path):
        ca_file = tmp_path / "ca.pem"
        ca_file.write_bytes(self_signed_bundle.cert_chain)
        server = servers(make_config(credential_bundle=self_signed_bundle))

        port = server.start_with_https(0)

        response = requests.get(f"https://127.0.0.1:{port}/health", verify=str(ca_file), timeout=5)
        assert response.status_code == 200
        assert response.json()["status"] == "UP"
        with pytest.raises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{port}/health", timeout=2)

    def test_tls_enabled_config_starts_https(self, servers, self_signed_bundle, tmp_path):
        ca_file = tmp_path / "ca.pem"
        ca_file.write_bytes(self_signed_bundle.cert_chain)
        server = servers(make_config(credential_bundle=self_signed_bundle, tls_enabled=True))

        port = server.start()

        response = requests.get(f"https://127.0.0.1:{port}/", verify=str(ca_file), timeout=5)
        assert response.status_code == 200

    def test_bad_credentials_fail_start(self, servers):
        bundle = CredentialBundle(cert_chain=b"not a certificate", private_key=b"not a key")
        server = servers(make_config(credential_bundle=bundle))

        with pytest.raises(TlsCredentialError):
            server.start_with_https(0)
        assert server.state is ServerState.STOPPED
        assert server.port is None

    def test_missing_credentials_fail_start(self, servers):
        server = servers()
        with pytest.raises(TlsCredentialError):
            server.start_with_https(0)
        assert server.state is ServerState.STOPPED

    def test_failed_handshake_leaves_listener_serving(
        self, servers, self_signed_bundle, tmp_path
    ):
        ca_file = tmp_path / "ca.pem"
        ca_file.write_bytes(self_signed_bundle.cert_chain)
        server = servers(make_config(credential_bundle=self_signed_bundle))
        port = server.start_with_https(0)

        with socket.create_connection(("127.0.0.1", port), timeout=5) as raw:
            raw.sendall(b"\x16\x03\x01\x00\x10" + b"\x00" * 16 + b"not tls at all\r\n\r\n")
            try:
                while raw.recv(4096):
                    pass
            except OSError:
                pass

        response = requests.get(f"https://127.0.0.1:{port}/health", verify=str(ca_file), timeout=5)
        assert response.status_code == 200
        assert server.state is ServerState.RUNNING
