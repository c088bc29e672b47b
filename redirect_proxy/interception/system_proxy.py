"""
System Proxy Registration

Points the OS-wide HTTP and HTTPS proxy settings at the running proxy and
restores direct connections on shutdown. Registration is best effort: a
failing OS command is logged, the proxy keeps serving clients configured
explicitly.
"""

import subprocess
import sys
from typing import List, Protocol
import structlog

logger = structlog.get_logger()

INTERNET_SETTINGS = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"

WILDCARD_HOSTS = ("0.0.0.0", "::", "")


class SystemProxy(Protocol):
    """OS proxy registration as seen by the lifecycle controller"""

    def enable(self, host: str, port: int) -> None:
        ...

    def disable(self) -> None:
        ...


class NullSystemProxy:
    """Leaves OS proxy settings alone"""

    def enable(self, host: str, port: int) -> None:
        logger.debug("System proxy registration disabled", host=host, port=port)

    def disable(self) -> None:
        pass


class PlatformSystemProxy:
    """
    Cross-platform system proxy settings

    - Windows: Internet Settings registry key of the current user
    - macOS: networksetup web and secure web proxy of one network service
    - Linux: GNOME proxy settings through gsettings
    """

    def __init__(self, network_service: str = "Wi-Fi", platform: str = sys.platform):
        self.network_service = network_service
        self.platform = platform
        self.logger = logger.bind(component="system_proxy")
        self._enabled = False

    def enable(self, host: str, port: int) -> None:
        host = "127.0.0.1" if host in WILDCARD_HOSTS else host

        if self.platform == "win32":
            ok = self._set_windows_proxy(True, host, port)
        elif self.platform == "darwin":
            ok = self._run_all(self._macos_commands(True, host, port))
        elif self.platform.startswith("linux"):
            ok = self._run_all(self._gnome_commands(True, host, port))
        else:
            self.logger.info("System proxy configuration not supported", platform=self.platform)
            return

        self._enabled = ok
        if ok:
            self.logger.info("System HTTP/HTTPS proxy enabled", host=host, port=port)

    def disable(self) -> None:
        """Restore direct connections; no-op unless enable() succeeded"""
        if not self._enabled:
            return

        if self.platform == "win32":
            ok = self._set_windows_proxy(False)
        elif self.platform == "darwin":
            ok = self._run_all(self._macos_commands(False))
        else:
            ok = self._run_all(self._gnome_commands(False))

        self._enabled = False
        if ok:
            self.logger.info("System HTTP/HTTPS proxy disabled")

    def _macos_commands(self, enable: bool, host: str = "", port: int = 0) -> List[List[str]]:
        service = self.network_service
        if enable:
            return [
                ["networksetup", "-setwebproxy", service, host, str(port)],
                ["networksetup", "-setsecurewebproxy", service, host, str(port)],
            ]
        return [
            ["networksetup", "-setwebproxystate", service, "off"],
            ["networksetup", "-setsecurewebproxystate", service, "off"],
        ]

    @staticmethod
    def _gnome_commands(enable: bool, host: str = "", port: int = 0) -> List[List[str]]:
        if not enable:
            return [["gsettings", "set", "org.gnome.system.proxy", "mode", "none"]]

        commands = []
        for scheme in ("http", "https"):
            schema = f"org.gnome.system.proxy.{scheme}"
            commands.append(["gsettings", "set", schema, "host", host])
            commands.append(["gsettings", "set", schema, "port", str(port)])
        commands.append(["gsettings", "set", "org.gnome.system.proxy", "mode", "manual"])
        return commands

    def _run_all(self, commands: List[List[str]]) -> bool:
        try:
            for command in commands:
                subprocess.run(command, check=True, capture_output=True, timeout=10)
            return True
        except subprocess.CalledProcessError as e:
            self.logger.warning(
                "System proxy command failed",
                command=" ".join(e.cmd),
                stderr=(e.stderr or b"").decode(errors="replace").strip()
            )
        except subprocess.TimeoutExpired as e:
            self.logger.warning("System proxy command timed out", command=" ".join(e.cmd))
        except FileNotFoundError as e:
            self.logger.warning("System proxy tool not found", error=str(e))
        return False

    def _set_windows_proxy(self, enable: bool, host: str = "", port: int = 0) -> bool:
        import winreg

        proxy_server = f"http={host}:{port};https={host}:{port}"

        try:
            with winreg.OpenKey(
                winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS, 0, winreg.KEY_WRITE
            ) as key:
                if enable:
                    winreg.SetValueEx(key, "ProxyEnable", 0, winreg.REG_DWORD, 1)
                    winreg.SetValueEx(key, "ProxyServer", 0, winreg.REG_SZ, proxy_server)
                else:
                    winreg.SetValueEx(key, "ProxyEnable", 0, winreg.REG_DWORD, 0)
            return True
        except OSError as e:
            self.logger.warning("Failed to update Windows proxy settings", error=str(e))
            return False
