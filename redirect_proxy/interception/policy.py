"""
Redirect Policy for Selective Interception

Decides which TLS tunnels get decrypted and which decrypted requests get
rewritten to the local redirect target. Everything here works on immutable
values built once at startup, so the engine can call it from any connection
concurrently without locking.

Rules are evaluated in order, first match wins:
- InterceptedDomainRule: hostname ends with an intercepted domain suffix
- GatewayPathRule: hostname is the gateway host and the path carries the marker
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple
from urllib.parse import SplitResult, urlsplit, urlunsplit
import structlog

logger = structlog.get_logger()

DEFAULT_INTERCEPTED_DOMAINS = (
    ".bhsr.com",
    ".starrails.com",
    ".hoyoverse.com",
    ".mihoyo.com",
)

DEFAULT_GATEWAY_PATH_MARKER = "query_gateway"

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class InterceptedDomainSet:
    """
    Ordered, immutable set of domain suffixes

    A suffix with a leading dot (".example.com") matches any subdomain and
    the bare apex ("example.com"), never "notexample.com". A suffix without
    a leading dot is compared literally.
    """

    suffixes: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(
            self, "suffixes", tuple(s.strip().lower() for s in self.suffixes if s and s.strip())
        )

    @classmethod
    def from_iterable(cls, domains: Iterable[str]) -> "InterceptedDomainSet":
        return cls(tuple(domains))

    def matches(self, hostname: Optional[str]) -> bool:
        if not hostname:
            return False

        host = hostname.lower()
        if host.endswith("."):
            host = host[:-1]
        if not host:
            return False

        for suffix in self.suffixes:
            if host.endswith(suffix):
                return True
            if suffix.startswith(".") and host == suffix[1:]:
                return True
        return False

    def __len__(self):
        return len(self.suffixes)

    def __iter__(self):
        return iter(self.suffixes)


@dataclass(frozen=True)
class RedirectTarget:
    """Local gateway that matching requests are sent to"""

    host: str
    port: int
    scheme: str = "http"

    @property
    def netloc(self) -> str:
        host = self.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        if DEFAULT_PORTS.get(self.scheme) == self.port:
            return host
        return f"{host}:{self.port}"

    def rebase(self, url: str, parts: SplitResult) -> str:
        """Swap scheme and authority, keep path, query and fragment verbatim"""
        return f"{self.scheme}://{self.netloc}{request_target(url, parts)}"

    def __str__(self):
        return f"{self.scheme}://{self.netloc}"


@dataclass(frozen=True)
class RewriteDecision:
    """Outcome of evaluating one request against the redirect rules"""

    should_rewrite: bool
    rewritten_url: Optional[str] = None
    rule: Optional[str] = None


NO_REWRITE = RewriteDecision(should_rewrite=False)


class RedirectRule(ABC):
    """A single redirect trigger"""

    name = "rule"

    @abstractmethod
    def matches(self, hostname: Optional[str], parts: SplitResult) -> bool:
        ...


@dataclass(frozen=True)
class InterceptedDomainRule(RedirectRule):
    """Redirect every request to an intercepted domain"""

    domains: InterceptedDomainSet
    name = "intercepted_domain"

    def matches(self, hostname: Optional[str], parts: SplitResult) -> bool:
        return self.domains.matches(hostname)


@dataclass(frozen=True)
class GatewayPathRule(RedirectRule):
    """Redirect gateway lookups on one specific host, other paths pass"""

    hostname: str
    marker: str = DEFAULT_GATEWAY_PATH_MARKER
    name = "gateway_path"

    def matches(self, hostname: Optional[str], parts: SplitResult) -> bool:
        if not hostname or hostname.lower() != self.hostname.lower():
            return False
        return self.marker in parts.path


def parse_absolute_url(url: str) -> SplitResult:
    """
    Split an absolute http(s) URL

    Raises:
        ValueError: URL is empty, relative, has no host or a malformed port
    """
    if not url:
        raise ValueError("Empty URL")

    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Not an absolute URL: {url!r}")
    if not parts.hostname:
        raise ValueError(f"URL has no host: {url!r}")

    parts.port  # raises ValueError on a non-numeric or out-of-range port
    return parts


def request_target(url: str, parts: SplitResult) -> str:
    """
    Everything after the authority, exactly as the client sent it

    Empty "?" and "#" delimiters survive; a missing path becomes "/".
    """
    authority = f"{parts.scheme}://{parts.netloc}"
    if url[:len(authority)].lower() == authority.lower():
        target = url[len(authority):]
    else:
        # urlsplit stripped whitespace or control characters
        target = urlunsplit(("", "", parts.path, parts.query, parts.fragment))

    if not target.startswith("/"):
        target = "/" + target
    return target


class RedirectPolicy:
    """
    Interception and rewrite decisions for the proxy hooks

    Holds only immutable state; safe to share between connections.
    """

    def __init__(
        self,
        domains: InterceptedDomainSet,
        target: RedirectTarget,
        gateway_host: Optional[str] = None,
        gateway_path_marker: str = DEFAULT_GATEWAY_PATH_MARKER,
        rules: Optional[Sequence[RedirectRule]] = None
    ):
        self.domains = domains
        self.target = target

        if rules is None:
            rules = (
                InterceptedDomainRule(domains),
                GatewayPathRule(gateway_host or target.host, gateway_path_marker),
            )
        self.rules: Tuple[RedirectRule, ...] = tuple(rules)
        self.logger = logger.bind(component="redirect_policy")

    @classmethod
    def from_config(cls, proxy_config) -> "RedirectPolicy":
        return cls(
            InterceptedDomainSet.from_iterable(proxy_config.intercepted_domains),
            RedirectTarget(proxy_config.redirect_host, proxy_config.redirect_port),
            gateway_host=proxy_config.gateway_host,
            gateway_path_marker=proxy_config.gateway_path_marker,
        )

    def should_intercept(self, hostname: Optional[str]) -> bool:
        """Whether a tunnel to this host must be decrypted"""
        return self.domains.matches(hostname)

    def build_rewrite(self, hostname: Optional[str], url: str) -> RewriteDecision:
        """
        Decide whether a request is redirected and to which URL

        Args:
            hostname: Host the request is addressed to
            url: Full request URL

        Returns:
            RewriteDecision; NO_REWRITE leaves the request untouched
        """
        try:
            parts = parse_absolute_url(url)
        except ValueError as e:
            self.logger.warning(
                "Cannot parse request URL, forwarding unchanged",
                host=hostname,
                url=url,
                error=str(e)
            )
            return NO_REWRITE

        for rule in self.rules:
            if not rule.matches(hostname, parts):
                continue

            rewritten_url = self.target.rebase(url, parts)
            self.logger.info(f"{hostname} => redirected => {rewritten_url}", rule=rule.name)
            return RewriteDecision(True, rewritten_url, rule.name)

        return NO_REWRITE


def should_intercept(
    hostname: Optional[str],
    domains: Iterable[str] = DEFAULT_INTERCEPTED_DOMAINS
) -> bool:
    return InterceptedDomainSet.from_iterable(domains).matches(hostname)


def build_rewrite(
    request_hostname: Optional[str],
    request_url: str,
    target_redirect_host: str,
    target_redirect_port: int,
    fixed_target_hostname: Optional[str] = None,
    fixed_gateway_path_marker: str = DEFAULT_GATEWAY_PATH_MARKER,
    domains: Iterable[str] = DEFAULT_INTERCEPTED_DOMAINS
) -> RewriteDecision:
    """One-shot rewrite decision without a long-lived policy"""
    policy = RedirectPolicy(
        InterceptedDomainSet.from_iterable(domains),
        RedirectTarget(target_redirect_host, target_redirect_port),
        gateway_host=fixed_target_hostname,
        gateway_path_marker=fixed_gateway_path_marker,
    )
    return policy.build_rewrite(request_hostname, request_url)
