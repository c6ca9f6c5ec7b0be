"""Identity tokens: ``{owner_id}:{tier}:{hmac}`` signed with the token secret.

The account service issues these; this service only verifies them and
reads the owner id and subscription tier they carry.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

KNOWN_TIERS = ("FREE", "PRO", "ENTERPRISE")


@dataclass(frozen=True)
class Identity:
    owner_id: str
    tier: str = "FREE"


class IdentityVerifier:
    """Issues and verifies HMAC-signed identity tokens."""

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode()

    def _sign(self, message: str) -> str:
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()

    def issue(self, owner_id: str, tier: str = "FREE") -> str:
        if ":" in owner_id:
            raise ValueError("owner_id must not contain ':'")
        message = f"{owner_id}:{tier.upper()}"
        return f"{message}:{self._sign(message)}"

    def verify(self, token: str | None) -> Identity | None:
        """Return the Identity a valid token carries, or None."""
        if not token or token.count(":") != 2:
            return None
        message, sig = token.rsplit(":", 1)
        if not hmac.compare_digest(sig, self._sign(message)):
            logger.debug("Rejected identity token with a bad signature")
            return None
        owner_id, tier = message.split(":", 1)
        if not owner_id:
            return None
        tier = tier.upper()
        # Tiers this service does not know are served with FREE limits
        if tier not in KNOWN_TIERS:
            tier = "FREE"
        return Identity(owner_id=owner_id, tier=tier)
