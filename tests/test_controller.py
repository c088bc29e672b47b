"""
Test proxy lifecycle transitions with a fake engine and system proxy
"""

import threading

import pytest

from redirect_proxy.controller import ProxyController, RunState
from redirect_proxy.core.config import ProxyConfig
from redirect_proxy.interception.interceptor import RedirectInterceptor


class FakeEngine:
    def __init__(self, config, addon, start_error=None, events=None):
        self.config = config
        self.addon = addon
        self.start_error = start_error
        self.events = events if events is not None else []
        self.running = False

    def start(self):
        self.events.append("engine.start")
        if self.start_error is not None:
            raise self.start_error
        self.running = True

    def stop(self):
        self.events.append("engine.stop")
        self.running = False

    def get_status(self):
        return {"running": self.running}


class FakeSystemProxy:
    def __init__(self, events, enable_error=None):
        self.events = events
        self.enable_error = enable_error
        self.enabled_with = None

    def enable(self, host, port):
        self.events.append("proxy.enable")
        if self.enable_error is not None:
            raise self.enable_error
        self.enabled_with = (host, port)

    def disable(self):
        self.events.append("proxy.disable")


@pytest.fixture
def config(tmp_path):
    return ProxyConfig(
        listen_host="127.0.0.1",
        listen_port=18080,
        redirect_port=8888,
        ca_cert_dir=tmp_path
    )


def make_controller(config, start_error=None, enable_error=None):
    events = []
    engines = []

    def factory(cfg, addon):
        engine = FakeEngine(cfg, addon, start_error=start_error, events=events)
        engines.append(engine)
        return engine

    system_proxy = FakeSystemProxy(events, enable_error=enable_error)
    controller = ProxyController(config, engine_factory=factory, system_proxy=system_proxy)
    return controller, events, engines, system_proxy


def test_start_registers_addon_and_system_proxy(config):
    controller, events, engines, system_proxy = make_controller(config)

    controller.start()

    assert controller.state is RunState.RUNNING
    assert events == ["engine.start", "proxy.enable"]
    assert system_proxy.enabled_with == ("127.0.0.1", 18080)
    assert isinstance(engines[0].addon, RedirectInterceptor)
    assert controller.policy.should_intercept("api.bhsr.com")
    assert controller.get_status()["running"] is True


def test_double_start_is_refused(config):
    controller, events, engines, _ = make_controller(config)

    controller.start()
    controller.start()

    assert len(engines) == 1
    assert events.count("engine.start") == 1


def test_shutdown_stops_engine_and_deregisters(config):
    controller, events, engines, _ = make_controller(config)
    controller.start()

    controller.shutdown()

    assert controller.state is RunState.STOPPED
    assert events == ["engine.start", "proxy.enable", "proxy.disable", "engine.stop"]
    assert engines[0].running is False
    assert controller.get_status() == {"state": "stopped"}


def test_shutdown_twice_is_a_noop(config):
    controller, events, _, _ = make_controller(config)
    controller.start()

    controller.shutdown()
    controller.shutdown()

    assert controller.state is RunState.STOPPED
    assert events.count("engine.stop") == 1


def test_shutdown_before_start_is_a_noop(config):
    controller, events, _, _ = make_controller(config)

    controller.shutdown()

    assert controller.state is RunState.STOPPED
    assert events == []


def test_bind_failure_propagates(config):
    controller, events, _, _ = make_controller(
        config, start_error=OSError(98, "Address already in use")
    )

    with pytest.raises(OSError):
        controller.start()

    assert controller.state is RunState.STOPPED
    assert "proxy.enable" not in events


def test_system_proxy_failure_stops_engine(config):
    controller, events, engines, _ = make_controller(
        config, enable_error=PermissionError("denied")
    )

    with pytest.raises(PermissionError):
        controller.start()

    assert controller.state is RunState.STOPPED
    assert events == ["engine.start", "proxy.enable", "engine.stop"]


def test_restart_after_shutdown(config):
    controller, _, engines, _ = make_controller(config)

    controller.start()
    controller.shutdown()
    controller.start()

    assert controller.state is RunState.RUNNING
    assert len(engines) == 2


def test_shutdown_requested_during_start_is_honoured(config):
    events = []
    holder = {}

    class ReentrantEngine(FakeEngine):
        def start(self):
            super().start()
            # Simulates a signal handler firing while start() is in progress
            holder["controller"].shutdown()

    controller = ProxyController(
        config,
        engine_factory=lambda cfg, addon: ReentrantEngine(cfg, addon, events=events),
        system_proxy=FakeSystemProxy(events)
    )
    holder["controller"] = controller

    controller.start()

    assert controller.state is RunState.STOPPED
    assert events == ["engine.start", "proxy.enable", "proxy.disable", "engine.stop"]


def test_concurrent_starts_create_one_engine(config):
    controller, _, engines, _ = make_controller(config)
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        controller.start()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(engines) == 1
    assert controller.state is RunState.RUNNING


def test_default_system_proxy_respects_config(tmp_path):
    from redirect_proxy.interception.system_proxy import NullSystemProxy, PlatformSystemProxy

    disabled = ProxyController(ProxyConfig(set_system_proxy=False, ca_cert_dir=tmp_path))
    enabled = ProxyController(ProxyConfig(set_system_proxy=True, ca_cert_dir=tmp_path))

    assert isinstance(disabled.system_proxy, NullSystemProxy)
    assert isinstance(enabled.system_proxy, PlatformSystemProxy)
