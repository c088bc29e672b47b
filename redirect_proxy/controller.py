"""
Proxy Lifecycle Controller

Owns the proxy engine and the system proxy registration. start() and
shutdown() are the only operations the console entry point and its signal
handlers call.
"""

import threading
from enum import Enum
from typing import Callable, Optional
import structlog

from redirect_proxy.core.config import ProxyConfig
from redirect_proxy.interception.certificate_manager import CertificateManager
from redirect_proxy.interception.interceptor import RedirectInterceptor
from redirect_proxy.interception.policy import RedirectPolicy
from redirect_proxy.interception.proxy_server import ProxyServer
from redirect_proxy.interception.system_proxy import (
    NullSystemProxy,
    PlatformSystemProxy,
    SystemProxy,
)

logger = structlog.get_logger()

EngineFactory = Callable[[ProxyConfig, RedirectInterceptor], ProxyServer]


class RunState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProxyController:
    """
    Starts and stops the redirect proxy

    State transitions happen under a re-entrant lock that is never held
    while the engine starts or stops, so shutdown() can be called from a
    signal handler interrupting start() without deadlocking. A shutdown
    requested mid-start is honoured as soon as start() completes.
    """

    def __init__(
        self,
        config: ProxyConfig,
        engine_factory: EngineFactory = ProxyServer,
        system_proxy: Optional[SystemProxy] = None,
        certificate_manager: Optional[CertificateManager] = None
    ):
        self.config = config
        self.engine_factory = engine_factory

        if system_proxy is None:
            system_proxy = (
                PlatformSystemProxy(config.network_service)
                if config.set_system_proxy else NullSystemProxy()
            )
        self.system_proxy = system_proxy
        self.certificate_manager = certificate_manager or CertificateManager(config)
        self.logger = logger.bind(component="controller")

        self.policy: Optional[RedirectPolicy] = None
        self.interceptor: Optional[RedirectInterceptor] = None
        self._engine: Optional[ProxyServer] = None
        self._state = RunState.STOPPED
        self._shutdown_requested = False
        self._lock = threading.RLock()

    @property
    def state(self) -> RunState:
        return self._state

    def is_running(self) -> bool:
        return self._state is RunState.RUNNING

    def start(self):
        """
        Start intercepting and register as the system proxy

        Raises:
            OSError: The listener could not bind; nothing is left running
        """
        with self._lock:
            if self._state is not RunState.STOPPED:
                self.logger.warning("Proxy already started", state=self._state.value)
                return
            self._state = RunState.STARTING
            self._shutdown_requested = False

        try:
            policy = RedirectPolicy.from_config(self.config)
            interceptor = RedirectInterceptor(policy)
            engine = self.engine_factory(self.config, interceptor)
            engine.start()

            try:
                self.system_proxy.enable(self.config.listen_host, self.config.listen_port)
            except Exception:
                engine.stop()
                raise

        except BaseException:
            with self._lock:
                self._state = RunState.STOPPED
            raise

        with self._lock:
            self.policy = policy
            self.interceptor = interceptor
            self._engine = engine
            self._state = RunState.RUNNING
            shutdown_requested = self._shutdown_requested

        self.logger.info(
            "Redirect proxy running",
            listen=f"{self.config.listen_host}:{self.config.listen_port}",
            target=str(policy.target),
            domains=list(policy.domains)
        )
        self.certificate_manager.report()

        if shutdown_requested:
            self.shutdown()

    def shutdown(self):
        """
        Deregister the system proxy and stop the engine

        Idempotent: calling it while stopped (or already stopping) is a no-op.
        """
        with self._lock:
            if self._state is RunState.STARTING:
                self._shutdown_requested = True
                return
            if self._state is not RunState.RUNNING:
                return
            self._state = RunState.STOPPING
            engine = self._engine

        self.logger.info("Shutting down redirect proxy")
        disable_error = None
        try:
            try:
                self.system_proxy.disable()
            except Exception as e:
                self.logger.error("Failed to restore system proxy settings", error=str(e))
                disable_error = e

            if engine is not None:
                engine.stop()
        finally:
            with self._lock:
                self._engine = None
                self.interceptor = None
                self._state = RunState.STOPPED

        if disable_error is not None:
            raise disable_error

        self.logger.info("Redirect proxy stopped")

    def get_status(self) -> dict:
        status = {"state": self._state.value}
        engine = self._engine
        if engine is not None:
            status.update(engine.get_status())
        return status
