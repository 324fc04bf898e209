"""
Authentication broker.

Composes the PKCE generator, session cipher, cookie store, rate limiter and
OAuth client into the login, callback, refresh and logout flows. Every flow
takes a ``RequestContext`` and returns an ``AuthResult``; failures are turned
into redirects or JSON errors here and never reach the transport layer.
The one exception is ``EntropySourceUnavailable``, which is fatal.
"""
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urljoin

import httpx

from auth_broker import metrics
from auth_broker.auth.cipher import build_session_codec
from auth_broker.auth.context import RequestContext
from auth_broker.auth.cookies import CookieSessionStore
from auth_broker.auth.errors import (
    AuthError,
    AuthErrorCode,
    DecryptionFailed,
    EntropySourceUnavailable,
    InvalidPKCESession,
    InvalidSession,
    InvalidState,
    NoRefreshToken,
    RateLimitExceeded,
    SessionExpired,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from auth_broker.auth.oauth import OAuthClient
from auth_broker.auth.pkce import create_pkce_session, generate_session_id
from auth_broker.auth.rate_limiter import RateLimiter
from auth_broker.auth.state import StateSigner
from auth_broker.auth.validation import require_callback_params, validate_return_path
from auth_broker.utils.error_handling import log_level_for
from auth_broker.utils.logging_utils import AuthEventType, auth_event_extra

logger = logging.getLogger(__name__)

LOGIN_ROUTE = "/auth/login"
LOGOUT_ROUTE = "/auth/logout"
LOGIN_PAGE = "/login"
LOGOUT_FALLBACK_PATH = "/"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass
class AuthResult:
    """Outcome of a broker flow, translated into an HTTP response by the API layer."""

    status_code: int
    state: AuthState
    location: Optional[str] = None
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error_code: Optional[str] = None

    @property
    def is_redirect(self) -> bool:
        return self.location is not None


class AuthBroker:
    """
    Orchestrates the OAuth2 authorization code flow with PKCE.

    State transitions:
        UNAUTHENTICATED -> PENDING            (start_login)
        PENDING -> AUTHENTICATED              (complete_callback, success)
        PENDING -> UNAUTHENTICATED            (complete_callback, any failure)
        AUTHENTICATED -> REFRESHING -> AUTHENTICATED | UNAUTHENTICATED  (refresh)
        AUTHENTICATED -> UNAUTHENTICATED      (logout)
    """

    def __init__(
        self,
        settings,
        codec,
        oauth_client: OAuthClient,
        rate_limiter: RateLimiter,
        state_signer: StateSigner,
    ):
        self.settings = settings
        self.codec = codec
        self.oauth_client = oauth_client
        self.rate_limiter = rate_limiter
        self.state_signer = state_signer

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "AuthBroker":
        """Wire a broker and its collaborators from application settings."""
        return cls(
            settings=settings,
            codec=build_session_codec(settings),
            oauth_client=OAuthClient(settings, transport=transport),
            rate_limiter=RateLimiter(
                settings.rate_limit_policies(),
                enabled=settings.rate_limiting_enabled,
            ),
            state_signer=StateSigner(settings.auth_secret_value(), ttl_seconds=settings.pkce_session_ttl_seconds),
        )

    def _store(self, ctx: RequestContext) -> CookieSessionStore:
        return CookieSessionStore(ctx.cookies, self.codec, self.settings)

    async def _enforce_rate_limit(self, operation: str, ctx: RequestContext) -> None:
        decision = await self.rate_limiter.check_rate_limit(operation, ctx.client_identity)
        if not decision.allowed:
            metrics.auth_rate_limit_rejections_total.labels(operation=operation).inc()
            raise RateLimitExceeded(operation, decision.retry_after_seconds)

    def _return_path(self, value: Optional[str]) -> str:
        return validate_return_path(value, self.settings.allowed_return_paths, self.settings.default_return_path)

    # Login

    async def start_login(self, ctx: RequestContext, return_to: Optional[str] = None) -> AuthResult:
        """
        Begin a login: store a fresh PKCE session and redirect to the IdP.

        Raises:
            EntropySourceUnavailable: No secure random source; not recoverable.
        """
        try:
            await self._enforce_rate_limit("login", ctx)
        except RateLimitExceeded as e:
            metrics.auth_login_total.labels(outcome="rate_limited").inc()
            return self._login_error_redirect(ctx, e.code, retry_after=e.retry_after_seconds)

        safe_return_to = self._return_path(return_to)
        pkce_session = create_pkce_session(self.settings.redirect_uri)
        session_id = generate_session_id()

        try:
            state_token = self.state_signer.issue(pkce_session.state, safe_return_to, session_id)
            authorization_url = self.oauth_client.build_authorization_url(pkce_session, state_token)
            store = self._store(ctx)
            store.set_pkce_session_cookie(pkce_session)
            store.set_session_cookie(session_id)
        except EntropySourceUnavailable:
            raise
        except AuthError as e:
            logger.error(
                "Login initiation failed",
                extra=auth_event_extra(AuthEventType.LOGIN_FAILED, error_code=e.code, **ctx.log_extra()),
            )
            metrics.auth_login_total.labels(outcome="error").inc()
            return AuthResult(
                status_code=500,
                state=AuthState.UNAUTHENTICATED,
                body={"error": "Authentication initialization failed"},
                error_code=e.code,
            )

        logger.info(
            "Login initiated",
            extra=auth_event_extra(
                AuthEventType.LOGIN_INITIATED,
                return_to=safe_return_to,
                session_id=session_id,
                transition="unauthenticated->pending",
                **ctx.log_extra(),
            ),
        )
        metrics.auth_login_total.labels(outcome="redirected").inc()
        return AuthResult(status_code=302, state=AuthState.PENDING, location=authorization_url)

    def login_redirect_url(self, ctx: RequestContext, return_to: Optional[str] = None) -> AuthResult:
        """JSON variant of login: tell the client where to navigate."""
        query = urlencode({"returnTo": self._return_path(return_to)})
        return AuthResult(
            status_code=200,
            state=AuthState.UNAUTHENTICATED,
            body={"redirectUrl": f"{ctx.absolute_url(LOGIN_ROUTE)}?{query}"},
        )

    # Callback

    async def complete_callback(self, ctx: RequestContext) -> AuthResult:
        """Validate the IdP callback, exchange the code and store the refresh token."""
        store = self._store(ctx)
        try:
            await self._enforce_rate_limit("callback", ctx)

            idp_error = ctx.query.get("error")
            if idp_error:
                code = (
                    AuthErrorCode.ACCESS_DENIED.value
                    if idp_error == AuthErrorCode.ACCESS_DENIED.value
                    else AuthErrorCode.CALLBACK_FAILED.value
                )
                logger.warning(
                    "Identity provider returned an error",
                    extra=auth_event_extra(
                        AuthEventType.LOGIN_FAILED,
                        idp_error=idp_error,
                        idp_error_description=ctx.query.get("error_description"),
                        **ctx.log_extra(),
                    ),
                )
                return self._callback_failure(ctx, store, code)

            code, state_token = require_callback_params(ctx.query)

            try:
                pkce_session = store.get_pkce_session_cookie()
            except DecryptionFailed as e:
                raise InvalidPKCESession("Failed to decrypt PKCE session") from e
            if pkce_session is None:
                raise InvalidPKCESession("PKCE session cookie not found")

            claims = self.state_signer.verify(state_token)
            if not hmac.compare_digest(claims.pkce_state.encode("utf-8"), pkce_session.state.encode("utf-8")):
                logger.error(
                    "State parameter mismatch - possible CSRF attack",
                    extra=auth_event_extra(AuthEventType.CSRF_ATTACK_DETECTED, **ctx.log_extra()),
                )
                raise InvalidState("State parameter mismatch")

            session_id = store.get_session_cookie() or ""
            if not hmac.compare_digest(claims.session_id.encode("utf-8"), session_id.encode("utf-8")):
                logger.error(
                    "Session ID mismatch detected",
                    extra=auth_event_extra(AuthEventType.SECURITY_VIOLATION, has_session_cookie=bool(session_id), **ctx.log_extra()),
                )
                raise InvalidSession("Session ID mismatch")

            if claims.is_expired():
                raise SessionExpired("State token has expired")
            if pkce_session.is_expired(self.settings.pkce_session_ttl_seconds):
                raise SessionExpired("PKCE session has expired", {"age_seconds": int(pkce_session.age_seconds())})

            # Single use: the session is gone whatever the exchange outcome
            store.clear_pkce_session_cookie()
            tokens = await self.oauth_client.exchange_code_for_tokens(code, pkce_session)
            store.set_refresh_token_cookie(tokens.refresh_token, tokens.refresh_cookie_ttl)

        except RateLimitExceeded as e:
            return self._callback_failure(ctx, store, e.code, retry_after=e.retry_after_seconds)
        except TokenExchangeFailed as e:
            self._log_auth_error(e, AuthEventType.LOGIN_FAILED, ctx, idp_error=e.error, status_code=e.status_code)
            return self._callback_failure(ctx, store, AuthErrorCode.CALLBACK_FAILED.value)
        except EntropySourceUnavailable:
            raise
        except AuthError as e:
            event = {
                InvalidPKCESession.code: AuthEventType.PKCE_SESSION_INVALID,
                SessionExpired.code: AuthEventType.SESSION_EXPIRED,
            }.get(e.code, AuthEventType.LOGIN_FAILED)
            self._log_auth_error(e, event, ctx)
            return self._callback_failure(ctx, store, e.code)

        return_to = self._return_path(claims.return_to)
        logger.info(
            "Login completed",
            extra=auth_event_extra(
                AuthEventType.LOGIN_SUCCESS,
                return_to=return_to,
                session_id=claims.session_id,
                token_expiry=tokens.expires_in,
                transition="pending->authenticated",
                **ctx.log_extra(),
            ),
        )
        metrics.auth_callback_total.labels(outcome="success").inc()
        return AuthResult(status_code=302, state=AuthState.AUTHENTICATED, location=ctx.absolute_url(return_to))

    def _callback_failure(
        self,
        ctx: RequestContext,
        store: CookieSessionStore,
        error_code: str,
        retry_after: Optional[int] = None,
    ) -> AuthResult:
        store.clear_pkce_session_cookie()
        store.clear_session_cookie()
        metrics.auth_callback_total.labels(outcome=error_code).inc()
        return self._login_error_redirect(ctx, error_code, retry_after=retry_after)

    def _login_error_redirect(self, ctx: RequestContext, error_code: str, retry_after: Optional[int] = None) -> AuthResult:
        headers = {"Retry-After": str(retry_after)} if retry_after else {}
        location = urljoin(ctx.absolute_url(LOGIN_PAGE), "?" + urlencode({"error": error_code}))
        return AuthResult(
            status_code=302,
            state=AuthState.UNAUTHENTICATED,
            location=location,
            headers=headers,
            error_code=error_code,
        )

    # Refresh

    async def refresh(self, ctx: RequestContext) -> AuthResult:
        """Exchange the refresh token cookie for a new access token."""
        try:
            await self._enforce_rate_limit("refresh", ctx)
        except RateLimitExceeded as e:
            metrics.auth_refresh_total.labels(outcome="rate_limited").inc()
            return AuthResult(
                status_code=429,
                state=AuthState.UNAUTHENTICATED,
                body={"error": "Too many requests", "retryAfter": e.retry_after_seconds},
                headers={"Retry-After": str(e.retry_after_seconds)},
                error_code=e.code,
            )

        store = self._store(ctx)
        try:
            refresh_token = store.get_refresh_token_cookie()
        except DecryptionFailed as e:
            self._log_auth_error(e, AuthEventType.TOKEN_REFRESH_FAILED, ctx)
            store.clear_all_auth_cookies()
            return self._requires_login(AuthErrorCode.NO_REFRESH_TOKEN.value)
        if refresh_token is None:
            error = NoRefreshToken("Refresh attempted without a refresh token")
            self._log_auth_error(error, AuthEventType.TOKEN_REFRESH_FAILED, ctx)
            return self._requires_login(error.code)

        logger.debug("Refreshing tokens", extra={"transition": "authenticated->refreshing"})
        try:
            tokens = await self.oauth_client.refresh_access_token(refresh_token)
        except TokenRefreshFailed as e:
            # The old token is assumed dead; never retried
            self._log_auth_error(e, AuthEventType.TOKEN_REFRESH_FAILED, ctx, idp_error=e.error, status_code=e.status_code)
            store.clear_all_auth_cookies()
            return self._requires_login(AuthErrorCode.TOKEN_REFRESH_FAILED.value)

        rotated = bool(tokens.refresh_token) and tokens.refresh_token != refresh_token
        if rotated:
            store.set_refresh_token_cookie(tokens.refresh_token, tokens.refresh_cookie_ttl)

        logger.info(
            "Tokens refreshed",
            extra=auth_event_extra(
                AuthEventType.TOKEN_REFRESH_SUCCESS,
                rotated=rotated,
                token_expiry=tokens.expires_in,
                transition="refreshing->authenticated",
                **ctx.log_extra(),
            ),
        )
        metrics.auth_refresh_total.labels(outcome="success").inc()
        return AuthResult(
            status_code=200,
            state=AuthState.AUTHENTICATED,
            body={
                "accessToken": tokens.access_token,
                "idToken": tokens.id_token,
                "expiresIn": tokens.expires_in,
                "refreshed": True,
            },
        )

    def _requires_login(self, error_code: str) -> AuthResult:
        metrics.auth_refresh_total.labels(outcome=error_code).inc()
        return AuthResult(
            status_code=401,
            state=AuthState.UNAUTHENTICATED,
            body={"error": error_code, "requiresLogin": True},
            error_code=error_code,
        )

    def refresh_status(self, ctx: RequestContext) -> AuthResult:
        """Report whether a refresh token cookie is present, without using it."""
        has_token = self._store(ctx).has_refresh_token_cookie()
        return AuthResult(
            status_code=200,
            state=AuthState.AUTHENTICATED if has_token else AuthState.UNAUTHENTICATED,
            body={"hasRefreshToken": has_token, "authenticated": has_token},
        )

    # Logout

    def logout(self, ctx: RequestContext, return_to: Optional[str] = None) -> AuthResult:
        """
        Clear every auth cookie and redirect to the IdP logout endpoint.

        Cookie clearing happens unconditionally; if the logout URL cannot be
        built the browser is sent to ``/`` instead.
        """
        store = self._store(ctx)
        try:
            safe_return_to = validate_return_path(return_to, self.settings.allowed_logout_paths, LOGOUT_FALLBACK_PATH)
            logout_base = self.settings.logout_uri or ctx.base_url
            logout_uri = urljoin(logout_base.rstrip("/") + "/", safe_return_to.lstrip("/"))
            location = self.oauth_client.build_logout_url(logout_uri)
        except Exception as e:
            logger.error(
                f"Logout URL construction failed: {type(e).__name__}",
                extra=auth_event_extra(AuthEventType.SECURITY_VIOLATION, **ctx.log_extra()),
            )
            location = ctx.absolute_url(LOGOUT_FALLBACK_PATH)
        finally:
            store.clear_all_auth_cookies()

        logger.info(
            "Logged out",
            extra=auth_event_extra(AuthEventType.LOGOUT_SUCCESS, transition="authenticated->unauthenticated", **ctx.log_extra()),
        )
        metrics.auth_logout_total.inc()
        return AuthResult(status_code=302, state=AuthState.UNAUTHENTICATED, location=location)

    def logout_redirect_url(self, ctx: RequestContext, return_to: Optional[str] = None) -> AuthResult:
        """JSON variant of logout: tell the client where to navigate."""
        safe_return_to = validate_return_path(return_to, self.settings.allowed_logout_paths, LOGOUT_FALLBACK_PATH)
        query = urlencode({"returnTo": safe_return_to})
        return AuthResult(
            status_code=200,
            state=AuthState.UNAUTHENTICATED,
            body={"logoutUrl": f"{ctx.absolute_url(LOGOUT_ROUTE)}?{query}"},
        )

    def _log_auth_error(self, error: AuthError, event: AuthEventType, ctx: RequestContext, **metadata: Any) -> None:
        logger.log(
            log_level_for(error.severity),
            f"Authentication failure: {error.message}",
            extra=auth_event_extra(event, error_code=error.code, **metadata, **ctx.log_extra()),
        )
