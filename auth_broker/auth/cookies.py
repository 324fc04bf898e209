"""
Cookie-backed session storage.

``CookieJar`` is a framework independent view of the request cookies that
records the cookies to write on the response. ``CookieSessionStore`` layers
the auth cookie policy on top of it: names, flags, lifetimes and encryption.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from pydantic import ValidationError

from auth_broker.auth.errors import DecryptionFailed, InvalidPKCESession
from auth_broker.auth.pkce import PKCESession

logger = logging.getLogger(__name__)

REFRESH_TOKEN_COOKIE = "auth_refresh_token"
SESSION_ID_COOKIE = "auth_session_id"
PKCE_SESSION_COOKIE = "pkce_session"
# Short-lived token hand-off cookies written by earlier deployments
LEGACY_ACCESS_TOKEN_COOKIE = "access_token_temp"
LEGACY_ID_TOKEN_COOKIE = "id_token_temp"

AUTH_COOKIE_NAMES = (
    REFRESH_TOKEN_COOKIE,
    SESSION_ID_COOKIE,
    PKCE_SESSION_COOKIE,
    LEGACY_ACCESS_TOKEN_COOKIE,
    LEGACY_ID_TOKEN_COOKIE,
)

PKCE_PURPOSE = "pkce_session"
REFRESH_TOKEN_PURPOSE = "refresh_token"


@dataclass(frozen=True)
class CookieWrite:
    name: str
    value: str
    max_age: int
    http_only: bool = True
    secure: bool = True
    same_site: str = "lax"
    path: str = "/"

    @property
    def is_deletion(self) -> bool:
        return self.max_age <= 0


class CookieJar:
    """Request cookies plus the writes queued for the response."""

    def __init__(self, incoming: Optional[Mapping[str, str]] = None):
        self._incoming: Dict[str, str] = dict(incoming or {})
        self._writes: Dict[str, CookieWrite] = {}

    def get(self, name: str) -> Optional[str]:
        """Current value of a cookie, taking queued writes into account."""
        write = self._writes.get(name)
        if write is not None:
            return None if write.is_deletion else write.value
        return self._incoming.get(name) or None

    def set(self, write: CookieWrite) -> None:
        # Last write for a name wins, as it would in the browser
        self._writes.pop(write.name, None)
        self._writes[write.name] = write

    @property
    def writes(self) -> List[CookieWrite]:
        return list(self._writes.values())

    def write_for(self, name: str) -> Optional[CookieWrite]:
        return self._writes.get(name)


class CookieSessionStore:
    """Issues, reads, rotates and revokes the broker's auth cookies."""

    def __init__(self, jar: CookieJar, codec, settings):
        self.jar = jar
        self.codec = codec
        self.secure = settings.secure_cookies
        self.same_site = settings.cookie_same_site
        self.pkce_ttl_seconds = settings.pkce_session_ttl_seconds
        self.refresh_max_age_seconds = settings.refresh_cookie_max_age_seconds

    def _write(self, name: str, value: str, max_age: int) -> None:
        self.jar.set(
            CookieWrite(
                name=name,
                value=value,
                max_age=max_age,
                http_only=True,
                secure=self.secure,
                same_site=self.same_site,
                path="/",
            )
        )

    def _expire(self, name: str) -> None:
        self._write(name, "", 0)

    # Session identifier

    def set_session_cookie(self, session_id: str) -> None:
        # Only needs to outlive the IdP round trip
        self._write(SESSION_ID_COOKIE, session_id, self.pkce_ttl_seconds)

    def get_session_cookie(self) -> Optional[str]:
        return self.jar.get(SESSION_ID_COOKIE)

    def clear_session_cookie(self) -> None:
        self._expire(SESSION_ID_COOKIE)

    # PKCE session

    def set_pkce_session_cookie(self, session: PKCESession) -> None:
        payload = self.codec.encrypt_json(session.to_payload(), purpose=PKCE_PURPOSE)
        self._write(PKCE_SESSION_COOKIE, payload, self.pkce_ttl_seconds)

    def get_pkce_session_cookie(self) -> Optional[PKCESession]:
        """
        Decrypt and parse the pending PKCE session.

        Returns:
            The session, or None when no cookie is present.

        Raises:
            DecryptionFailed: The cookie could not be decrypted.
            InvalidPKCESession: The decrypted payload is not a PKCE session.
        """
        raw = self.jar.get(PKCE_SESSION_COOKIE)
        if not raw:
            return None
        data = self.codec.decrypt_json(raw, purpose=PKCE_PURPOSE)
        try:
            return PKCESession.model_validate(data)
        except ValidationError as e:
            raise InvalidPKCESession("Invalid PKCE session structure", {"error_count": e.error_count()}) from e

    def clear_pkce_session_cookie(self) -> None:
        self._expire(PKCE_SESSION_COOKIE)

    # Refresh token

    def set_refresh_token_cookie(self, refresh_token: str, ttl_seconds: Optional[int] = None) -> None:
        """Store the refresh token encrypted, for no longer than its own lifetime."""
        max_age = self.refresh_max_age_seconds
        if ttl_seconds is not None and ttl_seconds > 0:
            max_age = min(int(ttl_seconds), max_age)
        payload = self.codec.encrypt(refresh_token, purpose=REFRESH_TOKEN_PURPOSE)
        self._write(REFRESH_TOKEN_COOKIE, payload, max_age)

    def get_refresh_token_cookie(self) -> Optional[str]:
        """
        Returns:
            The decrypted refresh token, or None when no cookie is present.

        Raises:
            DecryptionFailed: The cookie is present but cannot be decrypted.
        """
        raw = self.jar.get(REFRESH_TOKEN_COOKIE)
        if not raw:
            return None
        token = self.codec.decrypt(raw, purpose=REFRESH_TOKEN_PURPOSE)
        if not token:
            raise DecryptionFailed("Refresh token cookie is empty after decryption")
        return token

    def has_refresh_token_cookie(self) -> bool:
        return bool(self.jar.get(REFRESH_TOKEN_COOKIE))

    def clear_refresh_token_cookie(self) -> None:
        self._expire(REFRESH_TOKEN_COOKIE)

    def clear_all_auth_cookies(self) -> None:
        """Expire every auth cookie name, whether or not the request carried it."""
        for name in AUTH_COOKIE_NAMES:
            self._expire(name)
        logger.debug("Cleared auth cookies", extra={"cookie_names": list(AUTH_COOKIE_NAMES)})
