"""Global test fixtures and configuration."""

import json
import os
import urllib.parse
from typing import Dict, List, Optional

import httpx
import pytest

# Set up environment variables for testing
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ.setdefault("SERVICE_ENV", "development")

from auth_broker.auth.broker import AuthBroker
from auth_broker.auth.context import RequestContext
from auth_broker.auth.cookies import CookieJar
from auth_broker.utils.config import Settings

TEST_SECRET = "test-auth-secret-0123456789abcdef"


class FakeIdP:
    """
    In-memory stand-in for the identity provider token endpoint.

    Authorization codes are single use and refresh tokens rotate on every
    refresh, like a real IdP with rotation enabled.
    """

    def __init__(self):
        self.requests: List[Dict[str, str]] = []
        self.codes: Dict[str, str] = {}
        self.valid_refresh_tokens = set()
        self.rotate_refresh_tokens = True
        self.fail_with: Optional[httpx.Response] = None
        self.raise_error: Optional[Exception] = None
        self._counter = 0

    def issue_code(self) -> str:
        self._counter += 1
        code = f"auth-code-{self._counter}"
        self.codes[code] = "issued"
        return code

    def _tokens(self, with_refresh: bool) -> Dict[str, object]:
        self._counter += 1
        body: Dict[str, object] = {
            "access_token": f"access-{self._counter}",
            "id_token": f"id-{self._counter}",
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        if with_refresh:
            refresh_token = f"refresh-{self._counter}"
            self.valid_refresh_tokens.add(refresh_token)
            body["refresh_token"] = refresh_token
        return body

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(urllib.parse.parse_qsl(request.content.decode()))
        self.requests.append(form)
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with is not None:
            return self.fail_with

        if form.get("grant_type") == "authorization_code":
            if self.codes.pop(form.get("code"), None) is None:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid code"})
            return httpx.Response(200, json=self._tokens(with_refresh=True))

        if form.get("grant_type") == "refresh_token":
            token = form.get("refresh_token")
            if token not in self.valid_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token revoked"})
            if self.rotate_refresh_tokens:
                self.valid_refresh_tokens.discard(token)
            return httpx.Response(200, json=self._tokens(with_refresh=self.rotate_refresh_tokens))

        return httpx.Response(400, content=json.dumps({"error": "unsupported_grant_type"}))

    @property
    def token_requests(self) -> int:
        return len(self.requests)


@pytest.fixture
def settings():
    """Settings for a development deployment behind http://testserver."""
    return Settings(
        service_env="development",
        auth_secret=TEST_SECRET,
        idp_domain="idp.example.com",
        client_id="test-client",
        redirect_uri="http://testserver/auth/callback",
        metrics_user="metrics",
        metrics_pass="metrics-pass",
    )


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def transport(idp):
    return httpx.MockTransport(idp.handler)


@pytest.fixture
def broker(settings, transport):
    return AuthBroker.from_settings(settings, transport=transport)


@pytest.fixture
def make_ctx():
    """Factory for request contexts with the given cookies and query."""
    def _make(cookies=None, query=None, identity="client-a", headers=None):
        return RequestContext(
            base_url="http://testserver/",
            query=query or {},
            headers=headers or {"user-agent": "pytest"},
            client_identity=identity,
            cookies=CookieJar(cookies or {}),
            request_id="req-1",
        )
    return _make


def carry_cookies(ctx: RequestContext, previous: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Apply a context's cookie writes to a cookie dict, as a browser would."""
    cookies = dict(previous or {})
    for write in ctx.cookies.writes:
        if write.is_deletion:
            cookies.pop(write.name, None)
        else:
            cookies[write.name] = write.value
    return cookies


@pytest.fixture
def carry():
    return carry_cookies
