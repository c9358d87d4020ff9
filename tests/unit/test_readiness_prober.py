"""
Unit tests for the readiness prober.
"""
import functools
import os
import socket
import subprocess
import sys
import threading
from http.client import InvalidURL
from http.server import HTTPServer, SimpleHTTPRequestHandler
from urllib.error import URLError

import pytest

from layerup.MANAGERS.readiness_prober import ReadinessProber
from layerup.MODELS.service_definition import CommandCheck, HttpCheck, NoCheck, TcpCheck
from layerup.UTILS.net import get_free_port
from layerup.exceptions import ProbeConfigError


class QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server(tmp_path):
    (tmp_path / "health").write_text("ok")
    handler = functools.partial(QuietHandler, directory=str(tmp_path))
    server = HTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(5)
    yield sock.getsockname()[1]
    sock.close()


class TestTcpProbe:
    def test_ready_when_listening(self, listener):
        prober = ReadinessProber(timeout=1.0)
        result = prober.probe(TcpCheck(host="127.0.0.1", port=listener))
        assert result.ready

    def test_not_ready_when_refused(self):
        prober = ReadinessProber(timeout=1.0)
        result = prober.probe(TcpCheck(host="127.0.0.1", port=get_free_port()))
        assert not result.ready
        assert "failed" in result.detail

    def test_injected_dial_gets_timeout(self):
        calls = []

        def dial(host, port, timeout):
            calls.append((host, port, timeout))
            raise ConnectionRefusedError("refused")

        prober = ReadinessProber(timeout=0.5, dial=dial)
        result = prober.probe(TcpCheck(host="db", port=5432), attempt=3)
        assert not result.ready
        assert "refused" in result.detail
        assert calls == [("db", 5432, 0.5)]


class TestHttpProbe:
    def test_real_server(self, http_server):
        prober = ReadinessProber(timeout=2.0)
        assert prober.probe(HttpCheck(url=f"{http_server}/health")).ready
        missing = prober.probe(HttpCheck(url=f"{http_server}/missing"))
        assert not missing.ready
        assert "404" in missing.detail

    @pytest.mark.parametrize("status,ready", [
        (200, True), (204, True), (302, True), (399, True),
        (400, False), (404, False), (500, False), (503, False),
    ])
    def test_status_range(self, status, ready):
        prober = ReadinessProber(http_get=lambda url, timeout: status)
        assert prober.probe(HttpCheck(url="http://web:8000/")).ready is ready

    def test_transport_failure_is_not_ready(self):
        def http_get(url, timeout):
            raise URLError("connection refused")

        prober = ReadinessProber(http_get=http_get)
        result = prober.probe(HttpCheck(url="http://web:8000/"))
        assert not result.ready
        assert "connection refused" in result.detail

    @pytest.mark.parametrize("url", [
        "not a url", "ftp://host/file", "http://", "localhost:8000",
        "http://web:notaport/", "http://web:99999/", "http://[::1/",
    ])
    def test_malformed_url_raises(self, url):
        prober = ReadinessProber(http_get=lambda u, t: 200)
        with pytest.raises(ProbeConfigError):
            prober.probe(HttpCheck(url=url))

    def test_invalid_url_from_client_raises(self):
        def http_get(url, timeout):
            raise InvalidURL("URL can't contain control characters")

        prober = ReadinessProber(http_get=http_get)
        with pytest.raises(ProbeConfigError):
            prober.probe(HttpCheck(url="http://web:8000/a b"))

    def test_bad_port_with_real_client(self):
        prober = ReadinessProber(timeout=1.0)
        with pytest.raises(ProbeConfigError):
            prober.probe(HttpCheck(url="http://127.0.0.1:notaport/health"))


class TestCommandProbe:
    def test_exit_zero_is_ready(self):
        prober = ReadinessProber(timeout=10)
        result = prober.probe(CommandCheck(command=[sys.executable, "-c", "raise SystemExit(0)"]))
        assert result.ready

    def test_non_zero_exit_is_not_ready(self):
        prober = ReadinessProber(timeout=10)
        result = prober.probe(CommandCheck(command=[sys.executable, "-c", "raise SystemExit(3)"]))
        assert not result.ready
        assert "exited 3" in result.detail

    def test_shell_string(self):
        prober = ReadinessProber(timeout=10)
        assert prober.probe(CommandCheck(command="exit 0")).ready
        assert not prober.probe(CommandCheck(command="exit 1")).ready

    def test_missing_executable_is_not_ready(self):
        prober = ReadinessProber(timeout=10)
        result = prober.probe(CommandCheck(command=["definitely-not-a-real-binary-4711"]))
        assert not result.ready
        assert "cannot run" in result.detail

    def test_environment_reaches_command(self):
        check = CommandCheck(command=[
            sys.executable, "-c",
            "import os, sys; sys.exit(os.environ.get('LAYERUP_TEST_DB_USER') != 'signbank')",
        ])
        env = dict(os.environ, LAYERUP_TEST_DB_USER="signbank")
        assert ReadinessProber(timeout=10, environment=env).probe(check).ready
        assert not ReadinessProber(timeout=10).probe(check).ready

    def test_timeout_is_not_ready(self):
        def run_command(command, timeout):
            raise subprocess.TimeoutExpired(command, timeout)

        prober = ReadinessProber(timeout=0.1, run_command=run_command)
        result = prober.probe(CommandCheck(command=["pg_isready"]))
        assert not result.ready
        assert "timed out" in result.detail

    @pytest.mark.parametrize("command", ["", "   ", []])
    def test_empty_command_raises(self, command):
        prober = ReadinessProber(run_command=lambda c, t: 0)
        with pytest.raises(ProbeConfigError):
            prober.probe(CommandCheck(command=command))


def test_no_check_is_ready():
    assert ReadinessProber().probe(NoCheck()).ready
