"""Tests for the command-line entry point."""

import os
import signal
import socket

from tlsshell import cli
from tlsshell.client import EXIT_ERROR
from tlsshell.server import ShellServer


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == EXIT_ERROR
        assert "serve" in capsys.readouterr().out

    def test_serve_with_missing_certificates_fails(self, tmp_path):
        code = cli.main(
            [
                "serve",
                "--host", "127.0.0.1",
                "--port", "0",
                "--cert", str(tmp_path / "server-cert.pem"),
                "--key", str(tmp_path / "server-key.pem"),
                "--ca", str(tmp_path / "ca-cert.pem"),
            ]
        )
        assert code == EXIT_ERROR

    def test_connect_without_server_fails(self, certs):
        code = cli.main(
            [
                "connect",
                "--host", "127.0.0.1",
                "--port", str(_free_port()),
                "--cert", certs["client_cert"],
                "--key", certs["client_key"],
                "--ca", certs["ca"],
            ]
        )
        assert code == EXIT_ERROR

    def test_connect_runs_interactive_session(self, tls_server, certs, monkeypatch, capsys):
        import io

        server = tls_server()
        host, port = server.address
        monkeypatch.setattr("sys.stdin", io.StringIO("echo from-cli\nexit\n"))

        code = cli.main(
            [
                "connect",
                "--host", host,
                "--port", str(port),
                "--cert", certs["client_cert"],
                "--key", certs["client_key"],
                "--ca", certs["ca"],
            ]
        )

        assert code == 0
        out = capsys.readouterr().out
        assert "from-cli\n" in out
        assert out.endswith("Exiting...\n")


class TestServeSignals:
    """serve() runs until SIGINT/SIGTERM, including one raised during start-up."""

    def _serve_args(self, certs, workdir):
        return [
            "serve",
            "--host", "127.0.0.1",
            "--port", "0",
            "--cert", certs["server_cert"],
            "--key", certs["server_key"],
            "--ca", certs["ca"],
            "--workdir", str(workdir),
        ]

    def _record_servers(self, monkeypatch, before_start=None, after_start=None):
        started = []
        real_start = ShellServer.start

        def start(self):
            if before_start:
                before_start()
            real_start(self)
            started.append(self)
            if after_start:
                after_start()

        monkeypatch.setattr(ShellServer, "start", start)
        return started

    def test_sigterm_stops_running_server(self, certs, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        started = self._record_servers(
            monkeypatch, after_start=lambda: os.kill(os.getpid(), signal.SIGTERM)
        )

        assert cli.main(self._serve_args(certs, tmp_path)) == 0
        assert len(started) == 1
        assert started[0].shutdown.is_set()

    def test_signal_during_start_is_handled(self, certs, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        started = self._record_servers(
            monkeypatch, before_start=lambda: os.kill(os.getpid(), signal.SIGINT)
        )

        assert cli.main(self._serve_args(certs, tmp_path)) == 0
        assert started[0].shutdown.is_set()

    def test_previous_handlers_are_restored(self, certs, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        before = signal.getsignal(signal.SIGTERM)
        self._record_servers(
            monkeypatch, after_start=lambda: os.kill(os.getpid(), signal.SIGTERM)
        )

        cli.main(self._serve_args(certs, tmp_path))
        assert signal.getsignal(signal.SIGTERM) is before
