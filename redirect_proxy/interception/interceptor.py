"""
mitmproxy Addon for Selective Redirection

Hooks into mitmproxy's event system:
- tls_clienthello: decrypt only tunnels to intercepted domains
- tls_established_server / tls_failed_server: upstream certificate verdicts
- request: rewrite matching requests to the redirect target
"""

from typing import TYPE_CHECKING, Callable, Iterable, Optional
import structlog

from .certificate_policy import (
    SslPolicyError,
    classify_tls_error,
    validate_upstream_certificate,
)
from .policy import RedirectPolicy

if TYPE_CHECKING:
    from mitmproxy import http
    from mitmproxy.tls import ClientHelloData, TlsData

logger = structlog.get_logger()

TrustPolicy = Callable[[Iterable[SslPolicyError]], bool]


class RedirectInterceptor:
    """
    mitmproxy addon wiring engine hooks to the redirect policy

    Hook failures are logged and swallowed so a single bad flow never takes
    the proxy down; the flow then continues unmodified.
    """

    def __init__(
        self,
        policy: RedirectPolicy,
        trust_policy: TrustPolicy = validate_upstream_certificate
    ):
        self.policy = policy
        self.trust_policy = trust_policy
        self.logger = logger.bind(component="interceptor")

        self.stats = {
            "tunnels_intercepted": 0,
            "tunnels_passed_through": 0,
            "requests_rewritten": 0,
            "upstreams_trusted": 0,
            "upstreams_rejected": 0,
            "errors": 0
        }

    def load(self, loader):
        """Called when the addon is loaded"""
        self.logger.info(
            "RedirectInterceptor addon loaded",
            domains=list(self.policy.domains),
            target=str(self.policy.target)
        )

    def tls_clienthello(self, data: "ClientHelloData"):
        """
        Called before the client TLS handshake is answered

        Tunnels to hosts outside the intercepted set are ignored by mitmproxy,
        i.e. relayed as opaque TCP without decryption.
        """
        try:
            hostname = self._tunnel_hostname(data)
            if self.policy.should_intercept(hostname):
                self.stats["tunnels_intercepted"] += 1
                self.logger.debug("Decrypting tunnel", host=hostname)
                return

            data.ignore_connection = True
            self.stats["tunnels_passed_through"] += 1

        except Exception as e:
            self.logger.error("Error in tls_clienthello hook", error=str(e))
            self.stats["errors"] += 1

    def tls_established_server(self, data: "TlsData"):
        """Upstream handshake succeeded, mitmproxy found no violations"""
        self._record_upstream_verdict(data, ())

    def tls_failed_server(self, data: "TlsData"):
        """Upstream handshake failed, usually certificate validation"""
        error = getattr(data.conn, "error", None)
        self._record_upstream_verdict(data, classify_tls_error(error), error)

    def request(self, flow: "http.HTTPFlow"):
        """
        Called when a decrypted (or plain HTTP) request is about to be forwarded

        Args:
            flow: mitmproxy HTTP flow object
        """
        try:
            decision = self.policy.build_rewrite(
                flow.request.pretty_host,
                flow.request.pretty_url
            )
            if not decision.should_rewrite:
                return

            flow.request.url = decision.rewritten_url
            flow.metadata["redirect_rule"] = decision.rule
            self.stats["requests_rewritten"] += 1

        except Exception as e:
            self.logger.error("Error in request hook", error=str(e))
            self.stats["errors"] += 1

    def get_stats(self) -> dict:
        return dict(self.stats)

    def _record_upstream_verdict(self, data, policy_errors, error: Optional[str] = None):
        try:
            sni = getattr(data.conn, "sni", None)
            if self.trust_policy(policy_errors):
                self.stats["upstreams_trusted"] += 1
                self.logger.debug("Upstream certificate trusted", sni=sni)
            else:
                self.stats["upstreams_rejected"] += 1
                self.logger.warning(
                    "Upstream certificate rejected",
                    sni=sni,
                    policy_errors=sorted(e.value for e in policy_errors),
                    error=error
                )
        except Exception as e:
            self.logger.error("Error in certificate validation hook", error=str(e))
            self.stats["errors"] += 1

    @staticmethod
    def _tunnel_hostname(data) -> Optional[str]:
        """SNI when the client sent one, the CONNECT target otherwise"""
        sni = data.client_hello.sni
        if sni:
            return sni

        address = data.context.server.address
        if address:
            return address[0]
        return None
