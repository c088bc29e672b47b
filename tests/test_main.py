"""
Test command line parsing and configuration wiring
"""

import signal
import threading

from structlog.testing import capture_logs

from main import load_config, main, make_signal_handler, parse_arguments


def test_cli_overrides(tmp_path):
    args = parse_arguments([
        "--config", str(tmp_path / "none.yaml"),
        "--redirect-port", "21000",
        "--gateway-host", "gate.example.com",
        "--no-system-proxy",
    ])

    config = load_config(args)

    assert config.proxy.redirect_port == 21000
    assert config.proxy.gateway_host == "gate.example.com"
    assert config.proxy.set_system_proxy is False
    assert config.proxy.listen_port == 8080


def test_system_proxy_stays_on_by_default(tmp_path):
    config = load_config(parse_arguments(["--config", str(tmp_path / "none.yaml")]))

    assert config.proxy.set_system_proxy is True


def test_invalid_configuration_exits_with_error(tmp_path, capsys):
    exit_code = main(["--config", str(tmp_path / "none.yaml"), "--listen-port", "0"])

    assert exit_code == 1
    assert "Invalid configuration" in capsys.readouterr().err


class FailingController:
    def __init__(self):
        self.calls = 0

    def shutdown(self):
        self.calls += 1
        raise OSError("networksetup failed")


def test_signal_handler_logs_shutdown_failure():
    controller = FailingController()
    stop_event = threading.Event()
    handle_signal = make_signal_handler(controller, stop_event)

    with capture_logs() as logs:
        handle_signal(signal.SIGTERM, None)

    assert stop_event.is_set()
    assert controller.calls == 1
    errors = [entry for entry in logs if entry["log_level"] == "error"]
    assert errors[0]["event"] == "Shutdown failed"
    assert errors[0]["error"] == "networksetup failed"
