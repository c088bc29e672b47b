"""
Upstream certificate trust policy

The proxy validates upstream certificates on behalf of intercepted clients.
Trust is granted only when no policy violation was detected; nothing is
pinned and no failure is overridden.
"""

from enum import Enum
from typing import FrozenSet, Iterable, Optional


class SslPolicyError(str, Enum):
    """Reasons an upstream certificate fails validation"""

    REMOTE_CERTIFICATE_NOT_AVAILABLE = "remote_certificate_not_available"
    REMOTE_CERTIFICATE_NAME_MISMATCH = "remote_certificate_name_mismatch"
    REMOTE_CERTIFICATE_CHAIN_ERRORS = "remote_certificate_chain_errors"


NAME_MISMATCH_MARKERS = ("hostname mismatch", "doesn't match", "does not match")

CHAIN_ERROR_MARKERS = (
    "certificate verify failed",
    "self-signed",
    "self signed",
    "unable to get local issuer",
    "certificate has expired",
    "certificate is not yet valid",
    "unable to verify",
)


def validate_upstream_certificate(policy_errors: Optional[Iterable[SslPolicyError]]) -> bool:
    """Trust the upstream certificate iff there are no policy errors"""
    if policy_errors is None:
        return True
    return not frozenset(policy_errors)


def classify_tls_error(message: Optional[str]) -> FrozenSet[SslPolicyError]:
    """
    Map an engine TLS failure message onto policy errors

    A failed upstream handshake always yields at least one error: when the
    message names neither a hostname nor a chain problem, no certificate
    could be validated at all.
    """
    text = (message or "").lower()

    # OpenSSL reports a name mismatch as "certificate verify failed" too
    if any(marker in text for marker in NAME_MISMATCH_MARKERS):
        return frozenset({SslPolicyError.REMOTE_CERTIFICATE_NAME_MISMATCH})
    if any(marker in text for marker in CHAIN_ERROR_MARKERS):
        return frozenset({SslPolicyError.REMOTE_CERTIFICATE_CHAIN_ERRORS})
    return frozenset({SslPolicyError.REMOTE_CERTIFICATE_NOT_AVAILABLE})
