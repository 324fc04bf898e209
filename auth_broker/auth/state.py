"""
Signed OAuth ``state`` tokens.

The value round-tripped through the IdP carries the PKCE state, the post-login
return path and the session identifier. It is an HS256 JWT so the callback
recovers typed fields and any tampering is detected before they are used.
"""
import time
from dataclasses import dataclass
from typing import Optional

import jwt

from auth_broker.auth.cipher import derive_key
from auth_broker.auth.errors import InvalidState

STATE_TOKEN_VERSION = 1
STATE_TOKEN_ALGORITHM = "HS256"
STATE_KEY_SALT = b"oauth-state-token-salt"


@dataclass(frozen=True)
class StateClaims:
    pkce_state: str
    return_to: str
    session_id: str
    issued_at: int
    expires_at: int

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class StateSigner:
    """Issues and verifies state tokens under a key derived from the auth secret."""

    def __init__(self, secret: str, ttl_seconds: int = 600):
        self._key = derive_key(secret, salt=STATE_KEY_SALT)
        self.ttl_seconds = ttl_seconds

    def __repr__(self) -> str:
        return f"StateSigner(ttl_seconds={self.ttl_seconds})"

    def issue(self, pkce_state: str, return_to: str, session_id: str, now: Optional[int] = None) -> str:
        if ":" in return_to:
            raise InvalidState("Return path must not contain ':'")
        issued_at = int(now if now is not None else time.time())
        payload = {
            "v": STATE_TOKEN_VERSION,
            "st": pkce_state,
            "rt": return_to,
            "sid": session_id,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(payload, self._key, algorithm=STATE_TOKEN_ALGORITHM)

    def verify(self, token: str) -> StateClaims:
        """
        Verify a state token and return its claims.

        Expiry is not enforced here. The caller compares the PKCE state first
        and only then checks ``StateClaims.is_expired``, so a mismatched token
        is always reported as an invalid state.

        Raises:
            InvalidState: Bad signature, unknown version or malformed claims.
        """
        if not token:
            raise InvalidState("Missing state token")
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[STATE_TOKEN_ALGORITHM],
                options={"require": ["exp", "iat"], "verify_exp": False},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidState("State token failed verification") from e

        if claims.get("v") != STATE_TOKEN_VERSION:
            raise InvalidState("Unsupported state token version")
        fields = [claims.get(name) for name in ("st", "rt", "sid")]
        if not all(isinstance(f, str) and f for f in fields):
            raise InvalidState("State token is missing required claims")
        pkce_state, return_to, session_id = fields
        if ":" in return_to:
            raise InvalidState("Return path must not contain ':'")

        return StateClaims(
            pkce_state=pkce_state,
            return_to=return_to,
            session_id=session_id,
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )
