"""
Signed OAuth state tokens.

A state token carries the local account id through the HubSpot consent
redirect without server-side session storage:

    base64url(json{"a": account_id, "n": nonce, "t": issued_at})
    + "." + base64url(HMAC-SHA256(secret, payload))

The signature proves the token was issued here; the nonce lets the caller
reject a second use of the same token.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from collections.abc import Callable

from crm_dedupe.auth.errors import InvalidStateError

# Default lifetime of a state token in seconds
DEFAULT_STATE_MAX_AGE = 600


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class StateSigner:
    """
    Issues and verifies signed authorization state tokens.

    Usage:
        signer = StateSigner(secret)
        token, nonce = signer.issue("alice")
        account_id, nonce = signer.verify(token)
    """

    def __init__(
        self,
        secret: str,
        max_age: int = DEFAULT_STATE_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("A signing secret is required for OAuth state tokens")
        self._key = secret.encode("utf-8")
        self.max_age = max_age
        self._clock = clock

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(self, account_id: str) -> tuple[str, str]:
        """
        Issue a state token for an account.

        Returns:
            Tuple of (token, nonce)
        """
        nonce = secrets.token_urlsafe(16)
        body = json.dumps(
            {"a": account_id, "n": nonce, "t": int(self._clock())},
            separators=(",", ":"),
        )
        payload = _b64encode(body.encode("utf-8"))
        return f"{payload}.{self._sign(payload)}", nonce

    def verify(self, token: str) -> tuple[str, str]:
        """
        Verify a state token's signature and age.

        Returns:
            Tuple of (account_id, nonce)

        Raises:
            InvalidStateError: If the token is malformed, forged or expired
        """
        if not token or token.count(".") != 1:
            raise InvalidStateError("Malformed state token")

        payload, signature = token.split(".")
        expected = self._sign(payload).encode("ascii")
        if not hmac.compare_digest(signature.encode("utf-8"), expected):
            raise InvalidStateError("State token signature mismatch")

        try:
            data = json.loads(_b64decode(payload))
            account_id = str(data["a"])
            nonce = str(data["n"])
            issued_at = int(data["t"])
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidStateError("Malformed state token payload") from e

        age = self._clock() - issued_at
        if age > self.max_age or age < 0:
            raise InvalidStateError("State token has expired")

        return account_id, nonce
