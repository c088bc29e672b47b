"""
Main application entry point
Starts the redirect proxy and keeps it running until interrupted
"""

import argparse
import atexit
import signal
import sys
import threading
from pathlib import Path
import structlog
from pydantic import ValidationError

from redirect_proxy.cli.certificate import show_ca_command
from redirect_proxy.controller import ProxyController
from redirect_proxy.core.config import ApplicationConfig, DEFAULT_CONFIG_FILE
from redirect_proxy.core.logging import configure_logging

logger = structlog.get_logger()

TITLE = "Redirect Proxy"


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description=TITLE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                Redirect to 127.0.0.1:8888, listen on 8080
  python main.py --redirect-port 21000          Redirect to another local gateway port
  python main.py --no-system-proxy              Do not touch OS proxy settings
  python main.py --show-ca                      Show the interception CA
        """
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"YAML configuration file (default: {DEFAULT_CONFIG_FILE})"
    )

    # Proxy Options
    parser.add_argument(
        "--listen-host",
        help="Address the proxy listens on (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--listen-port",
        type=int,
        help="Port the proxy listens on (default: 8080)"
    )

    parser.add_argument(
        "--redirect-host",
        help="Gateway host matching requests are sent to (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--redirect-port",
        type=int,
        help="Gateway port matching requests are sent to (default: 8888)"
    )

    parser.add_argument(
        "--gateway-host",
        help="Host whose gateway lookups are redirected (default: the redirect host)"
    )

    parser.add_argument(
        "--no-system-proxy",
        action="store_true",
        help="Do not register as the system HTTP/HTTPS proxy"
    )

    parser.add_argument(
        "--log-level",
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--show-ca",
        action="store_true",
        help="Show the interception CA certificate and how to trust it"
    )

    return parser.parse_args(argv)


def load_config(args) -> ApplicationConfig:
    proxy_overrides = {
        "listen_host": args.listen_host,
        "listen_port": args.listen_port,
        "redirect_host": args.redirect_host,
        "redirect_port": args.redirect_port,
        "gateway_host": args.gateway_host,
        "set_system_proxy": False if args.no_system_proxy else None,
    }
    logging_overrides = {"level": args.log_level}

    return ApplicationConfig(
        config_file=args.config,
        proxy_overrides=proxy_overrides,
        logging_overrides=logging_overrides
    )


def make_signal_handler(controller: ProxyController, stop_event: threading.Event):
    """Build a SIGINT/SIGTERM handler that stops the controller without raising"""

    def handle_signal(signum, frame):
        logger.info("Received signal, shutting down", signal=signal.Signals(signum).name)
        stop_event.set()
        try:
            controller.shutdown()
        except Exception as e:
            logger.error("Shutdown failed", error=str(e))

    return handle_signal


def run_proxy(config: ApplicationConfig) -> int:
    """Start the proxy and block until SIGINT/SIGTERM"""
    controller = ProxyController(config.proxy)
    stop_event = threading.Event()
    handle_signal = make_signal_handler(controller, stop_event)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    atexit.register(controller.shutdown)

    logger.info(f"Starting {TITLE}", **config.summary())

    try:
        controller.start()
    except OSError as e:
        logger.error("Failed to start proxy", error=str(e))
        return 1

    while not stop_event.wait(timeout=0.5):
        if not controller.get_status().get("running", False):
            logger.error("Proxy engine stopped unexpectedly")
            controller.shutdown()
            return 1

    controller.shutdown()
    return 0


def main(argv=None) -> int:
    args = parse_arguments(argv)

    try:
        config = load_config(args)
    except (ValidationError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        json_output=config.logging.json_output
    )

    if args.show_ca:
        return show_ca_command(config.proxy)

    return run_proxy(config)


if __name__ == "__main__":
    sys.exit(main())
