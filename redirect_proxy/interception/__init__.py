"""
Selective HTTP(S) Interception

Components:
- Policy: tunnel decryption and request rewrite decisions
- Certificate Policy: upstream certificate trust verdicts
- Interceptor: mitmproxy addon wiring engine hooks to the policies
- Proxy Server: mitmproxy lifecycle management
- System Proxy: OS proxy registration
- Certificate Manager: interception CA details
"""

from .policy import (
    InterceptedDomainSet,
    RedirectTarget,
    RewriteDecision,
    RedirectPolicy,
    InterceptedDomainRule,
    GatewayPathRule,
    build_rewrite,
    should_intercept,
)
from .certificate_policy import SslPolicyError, validate_upstream_certificate
from .interceptor import RedirectInterceptor
from .proxy_server import ProxyServer
from .system_proxy import NullSystemProxy, PlatformSystemProxy

__all__ = [
    "InterceptedDomainSet",
    "RedirectTarget",
    "RewriteDecision",
    "RedirectPolicy",
    "InterceptedDomainRule",
    "GatewayPathRule",
    "build_rewrite",
    "should_intercept",
    "SslPolicyError",
    "validate_upstream_certificate",
    "RedirectInterceptor",
    "ProxyServer",
    "NullSystemProxy",
    "PlatformSystemProxy",
]
