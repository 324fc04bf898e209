"""
OAuth2 client for the identity provider.

This module builds authorization and logout URLs and performs the
authorization-code and refresh-token grants against the IdP token endpoint.
The broker is a public client: PKCE replaces the client secret, so no secret
is ever sent.
"""
import logging
import time
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auth_broker.auth.errors import TokenError, TokenExchangeFailed, TokenRefreshFailed
from auth_broker.auth.pkce import PKCESession
from auth_broker.metrics import idp_token_request_seconds

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """OAuth2 token response model."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1, repr=False)
    id_token: str = Field(..., min_length=1, repr=False)
    token_type: str = "Bearer"
    expires_in: int = Field(3600, gt=0)
    refresh_token: Optional[str] = Field(None, repr=False)
    refresh_token_expires_in: Optional[int] = None
    scope: Optional[str] = None

    # Add computed fields for expiration tracking
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        """Calculate when the access token will expire."""
        return self.issued_at + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        # Add a 60-second buffer to account for latency
        buffer_time = timedelta(seconds=60)
        return datetime.now(timezone.utc) >= (self.expires_at - buffer_time)

    @property
    def refresh_cookie_ttl(self) -> int:
        """Lifetime to give the refresh token cookie, in seconds."""
        return self.refresh_token_expires_in or self.expires_in


class OAuthClient:
    """
    Client for the IdP's OAuth2 endpoints.

    Args:
        settings: Application settings (IdP domain, client id, redirect URI,
            scopes and request timeout).
        transport: Optional httpx transport, used by tests to stand in for
            the IdP.
    """

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client_id = settings.client_id
        self.redirect_uri = settings.redirect_uri
        self.scopes = list(settings.scopes)
        self.endpoints: Dict[str, str] = settings.oauth_endpoints
        self.timeout = httpx.Timeout(settings.request_timeout_seconds)
        self._transport = transport

    def build_authorization_url(self, pkce_session: PKCESession, state: str) -> str:
        """
        Build the authorization URL for the code flow with PKCE.

        Args:
            pkce_session: Pending session providing the code challenge.
            state: Opaque state value to round-trip through the IdP.

        Returns:
            str: The complete authorization URL
        """
        params: Dict[str, str] = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": pkce_session.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": pkce_session.code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.endpoints['authorize']}?{urllib.parse.urlencode(params)}"

    def build_logout_url(self, logout_uri: str) -> str:
        """Build the IdP logout URL that returns the browser to ``logout_uri``."""
        if not logout_uri:
            raise ValueError("logout_uri is required")
        params = {"client_id": self.client_id, "logout_uri": logout_uri}
        return f"{self.endpoints['logout']}?{urllib.parse.urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str, pkce_session: PKCESession) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            pkce_session: The consumed PKCE session holding the code verifier

        Returns:
            TokenResponse: Access, ID and refresh tokens

        Raises:
            TokenExchangeFailed: On a non-2xx response, a network error or
                timeout, or a response without ``id_token``/``refresh_token``.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pkce_session.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": pkce_session.code_verifier,
        }
        tokens = await self._token_request(data, TokenExchangeFailed)
        if not tokens.refresh_token:
            raise TokenExchangeFailed("invalid_response", "Token response did not include a refresh token")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh the access token.

        The IdP may or may not rotate the refresh token; ``refresh_token`` in
        the result is set only when it did.

        Raises:
            TokenRefreshFailed: On any failure. The caller must not retry
                with the same refresh token.
        """
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_token,
        }
        return await self._token_request(data, TokenRefreshFailed)

    async def _token_request(self, data: Dict[str, str], error_cls: Type[TokenError]) -> TokenResponse:
        grant_type = data["grant_type"]
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoints["token"], data=data, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout during {grant_type} token request", extra={"grant_type": grant_type})
            raise error_cls("timeout", "Token endpoint did not respond in time") from e
        except httpx.RequestError as e:
            # Handle network errors
            logger.error(f"Network error during {grant_type} token request: {type(e).__name__}")
            raise error_cls("network_error", f"Request failed: {type(e).__name__}") from e
        finally:
            idp_token_request_seconds.labels(grant_type=grant_type).observe(time.perf_counter() - start)

        # Handle error responses
        if not response.is_success:
            try:
                error_data = response.json()
                error = error_data.get("error", "unknown_error")
                error_description = error_data.get("error_description")
            except (ValueError, AttributeError):
                # If unable to parse error JSON
                error = "invalid_response"
                error_description = f"Received status {response.status_code}"
            logger.warning(
                "Token endpoint rejected request",
                extra={
                    "grant_type": grant_type,
                    "status_code": response.status_code,
                    "idp_error": error,
                },
            )
            raise error_cls(error, error_description, response.status_code)

        try:
            token_data = response.json()
        except ValueError as e:
            raise error_cls("invalid_response", "Token response is not JSON", response.status_code) from e
        if not isinstance(token_data, dict):
            raise error_cls("invalid_response", "Token response is not a JSON object", response.status_code)

        try:
            return TokenResponse(**token_data)
        except ValidationError as e:
            logger.error(f"Failed to parse token response: {e.error_count()} validation error(s)")
            raise error_cls("invalid_response", "Token response is missing required fields", response.status_code) from e
