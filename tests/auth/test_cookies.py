"""Tests for the cookie session store."""
import pytest

from auth_broker.auth.cipher import SessionCipher
from auth_broker.auth.cookies import (
    AUTH_COOKIE_NAMES,
    PKCE_SESSION_COOKIE,
    REFRESH_TOKEN_COOKIE,
    SESSION_ID_COOKIE,
    CookieJar,
    CookieSessionStore,
    CookieWrite,
)
from auth_broker.auth.errors import DecryptionFailed, InvalidPKCESession
from auth_broker.auth.pkce import create_pkce_session
from auth_broker.utils.config import Settings

SECRET = "cookie-store-secret-0123456789abcd"


@pytest.fixture(scope="module")
def codec():
    return SessionCipher(SECRET)


@pytest.fixture
def store_settings():
    return Settings(service_env="development", auth_secret=SECRET)


def make_store(codec, settings, cookies=None):
    return CookieSessionStore(CookieJar(cookies or {}), codec, settings)


class TestCookieJar:
    """Tests for the framework independent cookie jar."""

    def test_reads_incoming_cookies(self):
        jar = CookieJar({"a": "1"})
        assert jar.get("a") == "1"
        assert jar.get("missing") is None
        assert jar.writes == []

    def test_writes_shadow_incoming_values(self):
        jar = CookieJar({"a": "1"})
        jar.set(CookieWrite(name="a", value="2", max_age=60))
        assert jar.get("a") == "2"
        jar.set(CookieWrite(name="a", value="", max_age=0))
        assert jar.get("a") is None
        # Only the last write per name is sent
        assert len(jar.writes) == 1
        assert jar.write_for("a").is_deletion


class TestCookieSessionStore:
    """Tests for auth cookie policy."""

    def test_cookie_flags(self, codec, store_settings):
        store = make_store(codec, store_settings)
        store.set_session_cookie("sid-1")
        write = store.jar.write_for(SESSION_ID_COOKIE)
        assert write.http_only is True
        assert write.same_site == "lax"
        assert write.path == "/"
        assert write.max_age == 600
        # Development over plain http
        assert write.secure is False

    def test_secure_flag_in_production(self, codec):
        settings = Settings(
            service_env="production",
            auth_secret=SECRET,
            redirect_uri="https://app.example.com/auth/callback",
        )
        store = make_store(codec, settings)
        store.set_refresh_token_cookie("refresh", 3600)
        assert store.jar.write_for(REFRESH_TOKEN_COOKIE).secure is True

    def test_strict_same_site(self, codec):
        settings = Settings(service_env="development", auth_secret=SECRET, cookie_same_site="Strict")
        store = make_store(codec, settings)
        store.set_session_cookie("sid-1")
        assert store.jar.write_for(SESSION_ID_COOKIE).same_site == "strict"

    def test_pkce_session_round_trip_is_encrypted(self, codec, store_settings):
        session = create_pkce_session("http://testserver/auth/callback")
        store = make_store(codec, store_settings)
        store.set_pkce_session_cookie(session)

        raw = store.jar.get(PKCE_SESSION_COOKIE)
        assert session.code_verifier not in raw
        assert session.state not in raw
        assert store.jar.write_for(PKCE_SESSION_COOKIE).max_age == 600

        reader = make_store(codec, store_settings, {PKCE_SESSION_COOKIE: raw})
        assert reader.get_pkce_session_cookie().to_payload() == session.to_payload()

    def test_missing_pkce_session(self, codec, store_settings):
        assert make_store(codec, store_settings).get_pkce_session_cookie() is None

    def test_tampered_pkce_session(self, codec, store_settings):
        store = make_store(codec, store_settings, {PKCE_SESSION_COOKIE: "tampered-value-xxxxxxxxxxxxxxxxxxxxxxx"})
        with pytest.raises(DecryptionFailed):
            store.get_pkce_session_cookie()

    def test_malformed_pkce_payload(self, codec, store_settings):
        raw = codec.encrypt_json({"state": "only"}, purpose="pkce_session")
        store = make_store(codec, store_settings, {PKCE_SESSION_COOKIE: raw})
        with pytest.raises(InvalidPKCESession):
            store.get_pkce_session_cookie()

    def test_refresh_token_cookie_replayed_as_pkce_session(self, codec, store_settings):
        writer = make_store(codec, store_settings)
        writer.set_refresh_token_cookie("refresh-token", 3600)
        raw = writer.jar.get(REFRESH_TOKEN_COOKIE)
        reader = make_store(codec, store_settings, {PKCE_SESSION_COOKIE: raw})
        with pytest.raises(DecryptionFailed):
            reader.get_pkce_session_cookie()

    def test_refresh_token_round_trip(self, codec, store_settings):
        store = make_store(codec, store_settings)
        store.set_refresh_token_cookie("refresh-token-value", 3600)
        raw = store.jar.get(REFRESH_TOKEN_COOKIE)
        assert "refresh-token-value" not in raw
        assert store.get_refresh_token_cookie() == "refresh-token-value"
        assert store.has_refresh_token_cookie()

    def test_refresh_cookie_ttl_follows_token_lifetime(self, codec, store_settings):
        store = make_store(codec, store_settings)
        store.set_refresh_token_cookie("refresh", 3600)
        assert store.jar.write_for(REFRESH_TOKEN_COOKIE).max_age == 3600

        # Capped by the configured maximum
        store.set_refresh_token_cookie("refresh", 10 * 365 * 24 * 3600)
        assert store.jar.write_for(REFRESH_TOKEN_COOKIE).max_age == store_settings.refresh_cookie_max_age_seconds

        # No lifetime reported: use the maximum
        store.set_refresh_token_cookie("refresh")
        assert store.jar.write_for(REFRESH_TOKEN_COOKIE).max_age == store_settings.refresh_cookie_max_age_seconds

    def test_undecryptable_refresh_token(self, codec, store_settings):
        store = make_store(codec, store_settings, {REFRESH_TOKEN_COOKIE: "garbage"})
        with pytest.raises(DecryptionFailed):
            store.get_refresh_token_cookie()

    def test_clear_all_auth_cookies_expires_every_name(self, codec, store_settings):
        store = make_store(codec, store_settings, {REFRESH_TOKEN_COOKIE: "x"})
        store.clear_all_auth_cookies()

        cleared = {w.name: w for w in store.jar.writes}
        assert set(cleared) == set(AUTH_COOKIE_NAMES)
        assert set(AUTH_COOKIE_NAMES) >= {
            "auth_refresh_token", "auth_session_id", "access_token_temp", "id_token_temp", "pkce_session",
        }
        for write in cleared.values():
            assert write.max_age == 0
            assert write.value == ""
            assert write.path == "/"
        assert not store.has_refresh_token_cookie()

    def test_clear_refresh_token_cookie(self, codec, store_settings):
        store = make_store(codec, store_settings, {REFRESH_TOKEN_COOKIE: "x", SESSION_ID_COOKIE: "sid"})
        store.clear_refresh_token_cookie()
        assert store.jar.write_for(REFRESH_TOKEN_COOKIE).is_deletion
        assert store.jar.write_for(SESSION_ID_COOKIE) is None
        assert store.get_session_cookie() == "sid"
