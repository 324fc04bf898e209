"""
Authenticated encryption for values the broker hands to the browser.

Payloads are encrypted with AES-256-GCM under a key derived once from the
configured secret (PBKDF2-HMAC-SHA256). A fresh 12-byte nonce is prepended to
each ciphertext and the result is urlsafe-base64 encoded so that it can be
stored in a cookie without further escaping.

Usage:
    cipher = SessionCipher(settings.auth_secret_value())
    token = cipher.encrypt_json({"state": "..."}, purpose="pkce_session")
    cipher.decrypt_json(token, purpose="pkce_session")
"""
import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auth_broker.auth.errors import ConfigurationError, DecryptionFailed, EntropySourceUnavailable

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000
KDF_SALT = b"pkce-session-salt"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def derive_key(secret: str, salt: bytes = KDF_SALT, length: int = KEY_LENGTH) -> bytes:
    """Derive a symmetric key from the application secret."""
    if not secret:
        raise ConfigurationError("A non-empty secret is required to derive the session key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class SessionCipher:
    """AES-256-GCM codec for cookie payloads."""

    encrypted = True

    def __init__(self, secret: str):
        self._aesgcm = AESGCM(derive_key(secret))

    def __repr__(self) -> str:
        return "SessionCipher(key=***)"

    def encrypt(self, plaintext: str, purpose: Optional[str] = None) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Value to protect.
            purpose: Optional associated data; decrypt must pass the same value.

        Returns:
            urlsafe base64 of nonce || ciphertext || tag
        """
        try:
            nonce = os.urandom(NONCE_LENGTH)
        except (NotImplementedError, OSError) as e:
            raise EntropySourceUnavailable("Secure random source is unavailable") from e
        aad = purpose.encode("utf-8") if purpose else None
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
        return _b64encode(nonce + ciphertext)

    def decrypt(self, token: str, purpose: Optional[str] = None) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            DecryptionFailed: On malformed input, a wrong key or purpose, or any
                modification of the ciphertext. No partial data is returned.
        """
        if not token:
            raise DecryptionFailed("Empty session payload")
        try:
            raw = _b64decode(token)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("Session payload is not valid base64") from e
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionFailed("Session payload is too short")

        nonce, ciphertext = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        aad = purpose.encode("utf-8") if purpose else None
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, aad)
        except InvalidTag as e:
            raise DecryptionFailed("Session payload failed authentication") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Session payload is not valid UTF-8") from e

    def encrypt_json(self, data: Dict[str, Any], purpose: Optional[str] = None) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":")), purpose)

    def decrypt_json(self, token: str, purpose: Optional[str] = None) -> Dict[str, Any]:
        return _loads_object(self.decrypt(token, purpose))


class PlaintextSessionCodec:
    """
    Development-only codec that stores payloads as base64 JSON.

    It offers no confidentiality or integrity; ``build_session_codec`` refuses
    to return it in production.
    """

    encrypted = False

    def encrypt(self, plaintext: str, purpose: Optional[str] = None) -> str:
        return _b64encode(plaintext.encode("utf-8"))

    def decrypt(self, token: str, purpose: Optional[str] = None) -> str:
        if not token:
            raise DecryptionFailed("Empty session payload")
        try:
            return _b64decode(token).decode("utf-8")
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("Session payload could not be decoded") from e

    def encrypt_json(self, data: Dict[str, Any], purpose: Optional[str] = None) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":")), purpose)

    def decrypt_json(self, token: str, purpose: Optional[str] = None) -> Dict[str, Any]:
        return _loads_object(self.decrypt(token, purpose))


def _loads_object(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecryptionFailed("Session payload is not valid JSON") from e
    if not isinstance(data, dict):
        raise DecryptionFailed("Session payload is not a JSON object")
    return data


def build_session_codec(settings):
    """
    Choose the cookie codec for the configured environment.

    Raises:
        ConfigurationError: If plaintext sessions are requested in production,
            or if no secret is available for the encrypted codec.
    """
    if settings.allow_plaintext_sessions:
        if settings.is_production:
            raise ConfigurationError("Plaintext sessions cannot be enabled in production")
        logger.warning("Session cookies are NOT encrypted (allow_plaintext_sessions is set)")
        return PlaintextSessionCodec()

    secret = settings.auth_secret_value()
    if not secret:
        raise ConfigurationError("AUTH_SECRET is required for session encryption")
    return SessionCipher(secret)
