import argparse
import logging
import os
import signal
import sys
import threading

from .client import EXIT_ERROR, Client, run_interactive
from .config import ClientConfig, ServerConfig
from .errors import SetupError
from .server import ShellServer
from .tls import create_client_context, create_server_context

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level=None):
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def serve(args) -> int:
    config = ServerConfig.from_env(
        host=args.host,
        port=args.port,
        cert_file=args.cert,
        key_file=args.key,
        ca_file=args.ca,
        session_lifetime=args.session_lifetime,
        cpu_seconds=args.cpu_seconds,
        workdir=args.workdir,
    )

    stop_requested = threading.Event()

    def on_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}")
        stop_requested.set()

    # Installed before start so a signal during start-up still stops cleanly
    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        try:
            ssl_context = create_server_context(config)
            server = ShellServer(config, ssl_context)
            server.start()
        except SetupError as e:
            logger.error(f"Error creating server: {e}")
            return EXIT_ERROR

        # Commands run relative to workdir, so change it only after the
        # (possibly relative) certificate paths have been read
        try:
            os.chdir(config.workdir)
        except OSError as e:
            logger.error(f"Error changing working directory: {e}")
            server.stop()
            return EXIT_ERROR

        stop_requested.wait()
        logger.info("Server will shut down")
        server.stop()
        logger.info("Server is shut down")
        return 0
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def connect(args) -> int:
    config = ClientConfig.from_env(
        host=args.host,
        port=args.port,
        cert_file=args.cert,
        key_file=args.key,
        ca_file=args.ca,
        check_hostname=True if args.check_hostname else None,
    )

    try:
        client = Client(config, create_client_context(config))
        client.connect()
    except SetupError as e:
        logger.error(f"Error trying to create client: {e}")
        return EXIT_ERROR

    try:
        return run_interactive(client, sys.stdin, sys.stdout)
    finally:
        client.close()


def _add_tls_arguments(parser):
    parser.add_argument("--host", type=str, help="Server host")
    parser.add_argument("--port", type=int, help="Server port")
    parser.add_argument("--cert", type=str, help="PEM certificate file")
    parser.add_argument("--key", type=str, help="PEM private key file")
    parser.add_argument("--ca", type=str, help="PEM CA bundle (trust anchor)")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Mutual-TLS remote shell")
    parser.add_argument("--log-level", type=str, help="Logging level (default: $LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the command server")
    _add_tls_arguments(serve_parser)
    serve_parser.add_argument("--session-lifetime", type=float, help="Seconds a session may last")
    serve_parser.add_argument("--cpu-seconds", type=int, help="CPU-time quota per command")
    serve_parser.add_argument("--workdir", type=str, help="Working directory for commands")

    connect_parser = subparsers.add_parser("connect", help="Open an interactive session")
    _add_tls_arguments(connect_parser)
    connect_parser.add_argument(
        "--check-hostname", action="store_true", help="Verify the server hostname"
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        return serve(args)
    elif args.command == "connect":
        return connect(args)
    else:
        parser.print_help()
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
