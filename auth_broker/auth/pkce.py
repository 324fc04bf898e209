"""
OAuth2 PKCE (Proof Key for Code Exchange) implementation.

This module provides functions for generating cryptographically secure
code verifiers, code challenges and state values for the OAuth2 PKCE flow,
and the PKCE session record that is carried (encrypted) between the login
redirect and the callback.
"""
import base64
import hashlib
import os
import re
import time
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth_broker.auth.errors import EntropySourceUnavailable

DEFAULT_PKCE_SESSION_TTL_SECONDS = 600

_VERIFIER_PATTERN = re.compile(r'^[A-Za-z0-9\-._~]{43,128}$')


def _random_bytes(num_bytes: int) -> bytes:
    """
    Read from the operating system CSPRNG.

    Raises:
        EntropySourceUnavailable: If no secure random source exists. There is
            no fallback to a userspace PRNG.
    """
    try:
        return os.urandom(num_bytes)
    except (NotImplementedError, OSError) as e:
        raise EntropySourceUnavailable("Secure random source is unavailable") from e


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def generate_code_verifier(length: int = 128) -> str:
    """
    Generate a cryptographically secure code verifier for PKCE.

    The code verifier is a high-entropy random string using only
    characters [A-Z], [a-z], [0-9], "-", ".", "_", "~".

    Args:
        length: Length of the code verifier (43-128 chars). Default is 128.

    Returns:
        A random code verifier string.

    Raises:
        ValueError: If length is not between 43 and 128.
        EntropySourceUnavailable: If the secure random source is unavailable.
    """
    if not 43 <= length <= 128:
        raise ValueError("Code verifier length must be between 43 and 128 characters")

    # base64url yields 4 chars per 3 bytes; never draw fewer than 32 bytes
    num_bytes = max(32, -(-length * 3 // 4))
    code_verifier = _base64url(_random_bytes(num_bytes))

    return code_verifier[:length]


def generate_code_challenge(code_verifier: str) -> str:
    """
    Generate a code challenge from the code verifier using the S256 method.

    The code challenge is derived by taking the SHA-256 hash of the code
    verifier and then encoding it as base64url without padding.

    Args:
        code_verifier: The code verifier string to hash.

    Returns:
        The code challenge string.
    """
    code_challenge_digest = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return _base64url(code_challenge_digest)


def generate_state(num_bytes: int = 32) -> str:
    """Generate a random CSRF state value (base64url, unpadded)."""
    if num_bytes < 16:
        raise ValueError("State must carry at least 16 bytes of entropy")
    return _base64url(_random_bytes(num_bytes))


def generate_session_id() -> str:
    """Generate an opaque correlation identifier for one login attempt."""
    return str(uuid.UUID(bytes=_random_bytes(16), version=4))


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate a code verifier and code challenge pair for PKCE.

    Returns:
        A tuple of (code_verifier, code_challenge).
    """
    code_verifier = generate_code_verifier()
    code_challenge = generate_code_challenge(code_verifier)

    return code_verifier, code_challenge


def is_valid_code_verifier(code_verifier: str) -> bool:
    return bool(code_verifier) and _VERIFIER_PATTERN.match(code_verifier) is not None


class PKCESession(BaseModel):
    """Single-use record binding one login attempt to its verifier and state."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    code_verifier: str = Field(..., alias="codeVerifier", min_length=43, max_length=128)
    code_challenge: str = Field(..., alias="codeChallenge", min_length=43)
    state: str = Field(..., min_length=16)
    redirect_uri: str = Field(..., alias="redirectUri", min_length=1)
    created_at: float = Field(default_factory=time.time, alias="createdAt")

    @field_validator("code_verifier")
    @classmethod
    def _check_verifier_charset(cls, v: str) -> str:
        if not is_valid_code_verifier(v):
            raise ValueError("Code verifier contains characters outside the unreserved set")
        return v

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def is_expired(self, max_age_seconds: int = DEFAULT_PKCE_SESSION_TTL_SECONDS, now: Optional[float] = None) -> bool:
        """Check whether the session is older than its hard TTL."""
        return self.age_seconds(now) >= max_age_seconds

    def matches_challenge(self) -> bool:
        return generate_code_challenge(self.code_verifier) == self.code_challenge

    def to_payload(self) -> dict:
        """Serialise with the camelCase field names used in the cookie payload."""
        return self.model_dump(by_alias=True)


def create_pkce_session(redirect_uri: str) -> PKCESession:
    """
    Create a complete PKCE session with all required parameters.

    Args:
        redirect_uri: The redirect URI for the OAuth callback.

    Returns:
        PKCESession: Fresh verifier, challenge and state.

    Raises:
        EntropySourceUnavailable: If the secure random source is unavailable.
    """
    code_verifier, code_challenge = generate_pkce_pair()
    return PKCESession(
        code_verifier=code_verifier,
        code_challenge=code_challenge,
        state=generate_state(),
        redirect_uri=redirect_uri,
    )
