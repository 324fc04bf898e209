"""Tests for the OAuth2 client."""
import json
import urllib.parse
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from auth_broker.auth.errors import TokenExchangeFailed, TokenRefreshFailed
from auth_broker.auth.oauth import OAuthClient, TokenResponse
from auth_broker.auth.pkce import create_pkce_session
from auth_broker.utils.config import Settings


@pytest.fixture
def oauth_settings():
    return Settings(
        service_env="development",
        idp_domain="https://myapp.auth.us-east-1.amazoncognito.com/",
        client_id="public-client",
        redirect_uri="https://app.example.com/auth/callback",
        request_timeout_seconds=5,
    )


@pytest.fixture
def pkce_session():
    return create_pkce_session("https://app.example.com/auth/callback")


def token_body(**overrides):
    body = {
        "access_token": "access-token",
        "id_token": "id-token",
        "refresh_token": "refresh-token",
        "token_type": "Bearer",
        "expires_in": 3600,
    }
    body.update(overrides)
    return {k: v for k, v in body.items() if v is not None}


class RecordingTransport:
    """Builds an httpx.MockTransport that records requests and replies with a fixed response."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def form(self, index=-1):
        return dict(urllib.parse.parse_qsl(self.requests[index].content.decode()))


class TestOauthUrls:
    """Tests for the OAuth2 URL building functionality."""

    def test_endpoints_derived_from_domain(self, oauth_settings):
        client = OAuthClient(oauth_settings)
        base = "https://myapp.auth.us-east-1.amazoncognito.com"
        assert client.endpoints == {
            "authorize": f"{base}/oauth2/authorize",
            "token": f"{base}/oauth2/token",
            "logout": f"{base}/logout",
        }

    def test_build_authorization_url(self, oauth_settings, pkce_session):
        url = OAuthClient(oauth_settings).build_authorization_url(pkce_session, "signed-state")

        parsed_url = urllib.parse.urlparse(url)
        query_params = dict(urllib.parse.parse_qsl(parsed_url.query))

        assert parsed_url.scheme == "https"
        assert parsed_url.path == "/oauth2/authorize"
        assert query_params == {
            "response_type": "code",
            "client_id": "public-client",
            "redirect_uri": "https://app.example.com/auth/callback",
            "scope": "openid email profile",
            "state": "signed-state",
            "code_challenge": pkce_session.code_challenge,
            "code_challenge_method": "S256",
        }

    def test_build_logout_url(self, oauth_settings):
        url = OAuthClient(oauth_settings).build_logout_url("https://app.example.com/login")
        parsed_url = urllib.parse.urlparse(url)
        assert parsed_url.path == "/logout"
        assert dict(urllib.parse.parse_qsl(parsed_url.query)) == {
            "client_id": "public-client",
            "logout_uri": "https://app.example.com/login",
        }

    def test_build_logout_url_requires_uri(self, oauth_settings):
        with pytest.raises(ValueError):
            OAuthClient(oauth_settings).build_logout_url("")


class TestTokenResponse:
    """Tests for the TokenResponse model."""

    def test_token_response_properties(self):
        now = datetime.now(timezone.utc)
        tokens = TokenResponse(**token_body(), issued_at=now)
        assert tokens.expires_at == now + timedelta(seconds=3600)
        assert not tokens.is_expired
        assert tokens.refresh_cookie_ttl == 3600

        expired = TokenResponse(**token_body(), issued_at=now - timedelta(seconds=3570))
        assert expired.is_expired

    def test_refresh_token_lifetime_preferred(self):
        tokens = TokenResponse(**token_body(refresh_token_expires_in=86400))
        assert tokens.refresh_cookie_ttl == 86400

    def test_tokens_hidden_from_repr(self):
        assert "access-token" not in repr(TokenResponse(**token_body()))


class TestTokenExchange:
    """Tests for the authorization code grant."""

    @pytest.mark.asyncio
    async def test_exchange_success(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(httpx.Response(200, json=token_body()))
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        tokens = await client.exchange_code_for_tokens("the-code", pkce_session)

        assert tokens.access_token == "access-token"
        assert tokens.refresh_token == "refresh-token"
        request = recorder.requests[0]
        assert str(request.url) == "https://myapp.auth.us-east-1.amazoncognito.com/oauth2/token"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert recorder.form() == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "redirect_uri": "https://app.example.com/auth/callback",
            "client_id": "public-client",
            "code_verifier": pkce_session.code_verifier,
        }

    @pytest.mark.asyncio
    async def test_no_client_secret_is_sent(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(httpx.Response(200, json=token_body()))
        client = OAuthClient(oauth_settings, transport=recorder.transport)
        await client.exchange_code_for_tokens("the-code", pkce_session)
        await client.refresh_access_token("refresh-token")
        for index in range(2):
            assert "client_secret" not in recorder.form(index)
            assert "authorization" not in recorder.requests[index].headers

    @pytest.mark.asyncio
    async def test_exchange_error_captures_idp_error(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code expired"})
        )
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("the-code", pkce_session)

        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.error_description == "Code expired"
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "token_exchange_failed"

    @pytest.mark.asyncio
    async def test_exchange_non_json_error(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(httpx.Response(502, content=b"<html>Bad gateway</html>"))
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("the-code", pkce_session)
        assert exc_info.value.error == "invalid_response"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        token_body(refresh_token=None),
        token_body(id_token=None),
        token_body(access_token=None),
    ])
    async def test_exchange_requires_complete_token_set(self, oauth_settings, pkce_session, body):
        recorder = RecordingTransport(httpx.Response(200, json=body))
        client = OAuthClient(oauth_settings, transport=recorder.transport)
        with pytest.raises(TokenExchangeFailed):
            await client.exchange_code_for_tokens("the-code", pkce_session)

    @pytest.mark.asyncio
    async def test_exchange_malformed_body(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(httpx.Response(200, content=b"not json"))
        client = OAuthClient(oauth_settings, transport=recorder.transport)
        with pytest.raises(TokenExchangeFailed):
            await client.exchange_code_for_tokens("the-code", pkce_session)

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(error=httpx.ReadTimeout("timed out"))
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("the-code", pkce_session)

        assert exc_info.value.error == "timeout"
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_network_error(self, oauth_settings, pkce_session):
        recorder = RecordingTransport(error=httpx.ConnectError("connection refused"))
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        with pytest.raises(TokenExchangeFailed) as exc_info:
            await client.exchange_code_for_tokens("the-code", pkce_session)
        assert exc_info.value.error == "network_error"

    def test_timeout_is_bounded(self, oauth_settings):
        client = OAuthClient(oauth_settings)
        assert client.timeout.read == 5


class TestTokenRefresh:
    """Tests for the refresh token grant."""

    @pytest.mark.asyncio
    async def test_refresh_success_without_rotation(self, oauth_settings):
        recorder = RecordingTransport(httpx.Response(200, json=token_body(refresh_token=None)))
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        tokens = await client.refresh_access_token("refresh-token")

        assert tokens.refresh_token is None
        assert recorder.form() == {
            "grant_type": "refresh_token",
            "client_id": "public-client",
            "refresh_token": "refresh-token",
        }

    @pytest.mark.asyncio
    async def test_refresh_with_rotation(self, oauth_settings):
        recorder = RecordingTransport(httpx.Response(200, json=token_body(refresh_token="rotated")))
        client = OAuthClient(oauth_settings, transport=recorder.transport)
        tokens = await client.refresh_access_token("refresh-token")
        assert tokens.refresh_token == "rotated"

    @pytest.mark.asyncio
    async def test_refresh_failure(self, oauth_settings):
        recorder = RecordingTransport(
            httpx.Response(400, content=json.dumps({"error": "invalid_grant"}).encode(),
                           headers={"content-type": "application/json"})
        )
        client = OAuthClient(oauth_settings, transport=recorder.transport)

        with pytest.raises(TokenRefreshFailed) as exc_info:
            await client.refresh_access_token("refresh-token")
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.code == "token_refresh_failed"
