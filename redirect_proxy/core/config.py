"""
Configuration Management System
Handles proxy, redirect and logging settings from env, YAML and CLI
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings
import structlog

from redirect_proxy.interception.policy import (
    DEFAULT_GATEWAY_PATH_MARKER,
    DEFAULT_INTERCEPTED_DOMAINS,
)

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = Path("config/redirect-proxy.yaml")


class ProxyConfig(BaseSettings):
    """Listener, redirect target and interception settings"""

    # Listener the clients (and the OS proxy settings) point at
    listen_host: str = Field("0.0.0.0")
    listen_port: int = Field(8080)

    # Local gateway that matching traffic is rewritten to
    redirect_host: str = Field("127.0.0.1")
    redirect_port: int = Field(8888)

    # Gateway lookup rule: requests to gateway_host whose path contains the
    # marker are looped back to the redirect target
    gateway_host: Optional[str] = Field(None)
    gateway_path_marker: str = Field(DEFAULT_GATEWAY_PATH_MARKER)

    # Domain suffixes whose TLS is decrypted and whose requests are redirected
    intercepted_domains: List[str] = Field(
        default_factory=lambda: list(DEFAULT_INTERCEPTED_DOMAINS)
    )

    # Register as the OS-wide HTTP/HTTPS proxy while running
    set_system_proxy: bool = Field(True)
    network_service: str = Field("Wi-Fi")  # macOS networksetup service name

    # mitmproxy generates its CA here on first start
    ca_cert_dir: Path = Field(Path("~/.mitmproxy").expanduser())
    ca_cert_name: str = Field("mitmproxy-ca-cert")

    # Engine lifecycle bounds
    startup_timeout_seconds: float = Field(10.0, gt=0)
    shutdown_timeout_seconds: float = Field(5.0, gt=0)

    @field_validator("listen_port", "redirect_port", mode='after')
    @classmethod
    def validate_port(cls, v):
        """Ports must fit in an unsigned 16-bit field"""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port {v} out of range (1-65535)")
        return v

    @field_validator("listen_host", "redirect_host", mode='after')
    @classmethod
    def validate_host(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Host must not be empty")
        return v

    @field_validator("gateway_path_marker", mode='after')
    @classmethod
    def validate_marker(cls, v):
        if not v:
            raise ValueError("Gateway path marker must not be empty")
        return v

    @field_validator("intercepted_domains", mode='after')
    @classmethod
    def normalize_domains(cls, v):
        """Lowercase suffixes, drop blanks and duplicates, keep order"""
        domains = []
        for domain in v:
            domain = domain.strip().lower()
            if domain and domain not in domains:
                domains.append(domain)
        if not domains:
            raise ValueError("At least one intercepted domain suffix is required")
        return domains

    @model_validator(mode='after')
    def default_gateway_host(self):
        """The gateway lookup host defaults to the redirect host"""
        if not self.gateway_host:
            self.gateway_host = self.redirect_host
        self.gateway_host = self.gateway_host.strip().lower()
        return self

    model_config = {
        "env_prefix": "REDIRECT_PROXY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


class LoggingConfig(BaseSettings):
    """Console and optional file logging"""

    level: str = Field("INFO")
    directory: Optional[Path] = Field(None)  # no log files unless set
    json_output: bool = Field(False)

    @field_validator("level", mode='after')
    @classmethod
    def validate_level(cls, v):
        levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in levels:
            raise ValueError(f"Invalid log level. Choose from: {levels}")
        return v

    model_config = {
        "env_prefix": "REDIRECT_PROXY_LOG_",
        "env_file": ".env",
        "extra": "ignore"
    }


class ApplicationConfig:
    """
    Main configuration class that combines all config sections

    Precedence, highest first: explicit overrides (CLI), the YAML file,
    environment variables / .env, field defaults.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        proxy_overrides: Optional[Dict[str, Any]] = None,
        logging_overrides: Optional[Dict[str, Any]] = None
    ):
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.custom_config = self._load_custom_config()

        proxy_values = dict(self.custom_config.get("proxy") or {})
        proxy_values.update(_drop_none(proxy_overrides))

        logging_values = dict(self.custom_config.get("logging") or {})
        logging_values.update(_drop_none(logging_overrides))

        self.proxy = ProxyConfig(**proxy_values)
        self.logging = LoggingConfig(**logging_values)

    def _load_custom_config(self) -> Dict[str, Any]:
        """Load user-defined configuration from YAML if it exists"""
        if not self.config_file.exists():
            return {}

        with open(self.config_file, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{self.config_file} must contain a mapping")

        logger.debug("Loaded configuration file", path=str(self.config_file))
        return data

    def summary(self) -> Dict[str, Any]:
        """Settings worth printing at startup"""
        return {
            "listen": f"{self.proxy.listen_host}:{self.proxy.listen_port}",
            "redirect_target": f"{self.proxy.redirect_host}:{self.proxy.redirect_port}",
            "gateway_host": self.proxy.gateway_host,
            "intercepted_domains": self.proxy.intercepted_domains,
            "system_proxy": self.proxy.set_system_proxy,
        }


def _drop_none(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (values or {}).items() if v is not None}
