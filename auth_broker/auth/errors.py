"""Error taxonomy for the PKCE authentication broker."""

from enum import Enum
from typing import Any, Dict, Optional

from auth_broker.utils.error_handling import BrokerError, ErrorSeverity


class AuthErrorCode(str, Enum):
    """Fixed vocabulary reported to clients in ``error=`` parameters and JSON bodies."""

    ACCESS_DENIED = "access_denied"
    MISSING_PARAMETERS = "missing_parameters"
    INVALID_PKCE_SESSION = "invalid_pkce_session"
    INVALID_STATE = "invalid_state"
    INVALID_SESSION = "invalid_session"
    SESSION_EXPIRED = "session_expired"
    CALLBACK_FAILED = "callback_failed"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    NO_REFRESH_TOKEN = "no_refresh_token"
    DECRYPTION_FAILED = "decryption_failed"
    RATE_LIMITED = "rate_limited"
    CONFIGURATION_ERROR = "configuration_error"
    ENTROPY_UNAVAILABLE = "entropy_unavailable"


class AuthError(BrokerError):
    """Base class for authentication flow failures."""

    code = AuthErrorCode.CALLBACK_FAILED.value


class EntropySourceUnavailable(AuthError):
    """The platform CSPRNG could not be used. Fatal: there is no weaker fallback."""

    code = AuthErrorCode.ENTROPY_UNAVAILABLE.value
    severity = ErrorSeverity.CRITICAL


class ConfigurationError(AuthError):
    """Configuration that would weaken session protection."""

    code = AuthErrorCode.CONFIGURATION_ERROR.value
    severity = ErrorSeverity.CRITICAL


class DecryptionFailed(AuthError):
    """A session payload failed authentication or could not be decoded."""

    code = AuthErrorCode.DECRYPTION_FAILED.value
    severity = ErrorSeverity.HIGH


class InvalidPKCESession(AuthError):
    """The PKCE session cookie is missing, undecryptable or malformed."""

    code = AuthErrorCode.INVALID_PKCE_SESSION.value


class InvalidState(AuthError):
    """The callback state does not match the pending PKCE session."""

    code = AuthErrorCode.INVALID_STATE.value
    severity = ErrorSeverity.HIGH


class InvalidSession(AuthError):
    """The session identifier in the state does not match the session cookie."""

    code = AuthErrorCode.INVALID_SESSION.value
    severity = ErrorSeverity.HIGH


class SessionExpired(AuthError):
    code = AuthErrorCode.SESSION_EXPIRED.value
    severity = ErrorSeverity.LOW


class MissingParameters(AuthError):
    code = AuthErrorCode.MISSING_PARAMETERS.value
    severity = ErrorSeverity.LOW


class NoRefreshToken(AuthError):
    """No refresh token cookie is present; the caller must log in again."""

    code = AuthErrorCode.NO_REFRESH_TOKEN.value
    severity = ErrorSeverity.LOW


class RateLimitExceeded(AuthError):
    code = AuthErrorCode.RATE_LIMITED.value

    def __init__(self, operation: str, retry_after_seconds: int):
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Rate limit exceeded", {"operation": operation, "retry_after": retry_after_seconds})


class TokenError(AuthError):
    """Exception raised when a request to the IdP token endpoint fails."""

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        message = f"Token error: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message, details)


class TokenExchangeFailed(TokenError):
    code = AuthErrorCode.TOKEN_EXCHANGE_FAILED.value


class TokenRefreshFailed(TokenError):
    code = AuthErrorCode.TOKEN_REFRESH_FAILED.value
