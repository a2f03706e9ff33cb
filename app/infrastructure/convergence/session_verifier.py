"""
Adapter: HMAC-signed session cookie verification.

Cookie format: ``<email>.<hex HMAC-SHA256 of email>``, signed with the
server secret. Verification uses a constant-time comparison.
"""

import hashlib
import hmac
import logging
from typing import Optional

from app.domain.convergence.ports import SessionVerifierPort

logger = logging.getLogger(__name__)


def _digest(secret: str, email: str) -> str:
    return hmac.new(secret.encode("utf-8"), email.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_session(email: str, secret: str) -> str:
    """Return the signed cookie value for an email."""
    if not secret:
        raise ValueError("session secret is required for cookie signing")
    return f"{email}.{_digest(secret, email)}"


class HmacSessionVerifier(SessionVerifierPort):
    """Verifies cookies produced by sign_session.

    With no secret configured every cookie is rejected.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret
        if not secret:
            logger.warning("No session secret configured; all sessions will be rejected")

    def verify(self, cookie_value: Optional[str]) -> Optional[str]:
        if not cookie_value or not self._secret:
            return None
        email, dot, signature = cookie_value.rpartition(".")
        if not dot or not email:
            return None
        expected = _digest(self._secret, email)
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            return None
        return email
