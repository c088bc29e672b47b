"""
Proxy Server for mitmproxy Lifecycle Management

Runs mitmproxy on a background thread with the redirect addon installed,
and reports bind failures back to the thread that started it.
"""

import asyncio
import threading
from typing import Optional
import structlog

logger = structlog.get_logger()


class _StartupProbe:
    """
    Reports whether mitmproxy's listeners came up

    Added after the default addons, so by the time its running hook fires
    the proxyserver addon has already tried to bind.
    """

    def __init__(self, server: "ProxyServer"):
        self.server = server

    def running(self):
        master = self.server._master
        proxyserver = master.addons.get("proxyserver") if master else None

        for instance in getattr(proxyserver, "servers", ()):
            error = getattr(instance, "last_exception", None)
            if error is not None:
                self.server._startup_error = error
                break

        self.server._ready.set()


class ProxyServer:
    """
    Manages the mitmproxy proxy server lifecycle

    The engine only validates upstream certificates (ssl_insecure=False);
    the addon decides which tunnels are decrypted.
    """

    def __init__(self, config, addon):
        """
        Initialize the proxy server

        Args:
            config: ProxyConfig with listener and timeout settings
            addon: mitmproxy addon receiving the engine hooks
        """
        self.config = config
        self.addon = addon
        self.logger = logger.bind(component="proxy_server")

        self._server_thread: Optional[threading.Thread] = None
        self._master = None
        self._running = False
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None

    def start(self):
        """
        Start the proxy server and wait until it listens

        Raises:
            OSError: The listener could not bind
            TimeoutError: The engine did not come up in time
        """
        if self._running:
            self.logger.warning("Proxy server already running")
            return

        self._ready.clear()
        self._startup_error = None

        self._server_thread = threading.Thread(
            target=self._run_proxy,
            daemon=True,
            name="mitmproxy-server"
        )
        self._server_thread.start()

        if not self._ready.wait(timeout=self.config.startup_timeout_seconds):
            self._stop_master()
            raise TimeoutError(
                f"Proxy engine did not start within {self.config.startup_timeout_seconds}s"
            )

        if self._startup_error is not None:
            error = self._startup_error
            self._stop_master()
            self.logger.error("Failed to start proxy server", error=str(error))
            raise error

        self._running = True
        self.logger.info(
            "Proxy server started",
            host=self.config.listen_host,
            port=self.config.listen_port,
            ca_cert_dir=str(self.config.ca_cert_dir)
        )

    def stop(self):
        """
        Stop the proxy server

        Waits for the engine thread at most shutdown_timeout_seconds.
        """
        if not self._running:
            self.logger.warning("Proxy server not running")
            return

        self.logger.info("Stopping proxy server...")
        self._stop_master()
        self._running = False
        self.logger.info("Proxy server stopped")

    def is_running(self) -> bool:
        """Check if proxy server is running"""
        return bool(self._running and self._server_thread and self._server_thread.is_alive())

    def get_status(self) -> dict:
        status = {
            "running": self.is_running(),
            "host": self.config.listen_host,
            "port": self.config.listen_port,
            "ca_cert_dir": str(self.config.ca_cert_dir),
        }

        if hasattr(self.addon, "get_stats"):
            status["statistics"] = self.addon.get_stats()

        return status

    def _stop_master(self):
        # Master.shutdown is thread-safe, but only while its loop is open;
        # after a failed startup asyncio.run has already closed it
        thread_alive = bool(self._server_thread and self._server_thread.is_alive())
        if self._master is not None and thread_alive:
            try:
                self._master.shutdown()
            except RuntimeError as e:
                self.logger.debug("Proxy event loop already closed", error=str(e))

        if self._server_thread and self._server_thread.is_alive():
            self._server_thread.join(timeout=self.config.shutdown_timeout_seconds)
            if self._server_thread.is_alive():
                self.logger.warning("Proxy thread did not exit in time")

        self._master = None
        self._server_thread = None

    def _run_proxy(self):
        """
        Run the proxy server

        This runs in a separate thread and blocks until shutdown.
        """
        try:
            self.logger.debug("Proxy thread starting...")
            asyncio.run(self._serve())
            self.logger.debug("Proxy thread stopped")
        except (Exception, SystemExit) as e:
            # mitmproxy's errorcheck addon exits when startup logged errors
            if not self._ready.is_set():
                self._startup_error = (
                    e if isinstance(e, Exception)
                    else OSError(
                        f"Proxy engine exited during startup (code {e.code}), "
                        f"is {self.config.listen_host}:{self.config.listen_port} in use?"
                    )
                )
            self.logger.error("Proxy thread error", error=str(e))
            self._running = False
        finally:
            if not self._ready.is_set():
                if self._startup_error is None:
                    self._startup_error = OSError("Proxy engine exited during startup")
                self._ready.set()

    async def _serve(self):
        # Import here to avoid issues if mitmproxy not installed
        from mitmproxy import options
        from mitmproxy.tools import dump

        opts = options.Options(
            listen_host=self.config.listen_host,
            listen_port=self.config.listen_port,
            confdir=str(self.config.ca_cert_dir),
            ssl_insecure=False,  # Validate upstream certs
        )

        # DumpMaster binds itself to the running loop
        self._master = dump.DumpMaster(
            opts,
            with_termlog=False,
            with_dumper=False
        )
        self._master.addons.add(self.addon)
        self._master.addons.add(_StartupProbe(self))

        await self._master.run()
