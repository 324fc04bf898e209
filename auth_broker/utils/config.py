"""Configuration utilities for the Auth Broker service."""

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from auth_broker.auth.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEV_SECRET_PLACEHOLDER = "dev-secret-key-change-in-production"

SUPPORTED_SAME_SITE = ("lax", "strict")


class AwsSecretsManager:
    """Utility class for retrieving secrets from AWS Secrets Manager."""

    def __init__(self, region_name: Optional[str] = None):
        """
        Initialize AWS Secrets Manager client.

        Args:
            region_name: AWS region name
        """
        self.region_name = region_name or os.environ.get("AWS_REGION", "us-east-1")
        # Use default credentials from environment or instance profile
        self.client = boto3.client(
            service_name="secretsmanager",
            region_name=self.region_name,
            endpoint_url=os.environ.get("AWS_SECRETSMANAGER_ENDPOINT"),
        )

    def get_secret(self, secret_name: str) -> Dict[str, Any]:
        """
        Retrieve a secret from AWS Secrets Manager.

        Args:
            secret_name: Name or ARN of the secret

        Returns:
            Dict[str, Any]: Secret values as a dictionary

        Raises:
            ClientError: If the secret cannot be retrieved
        """
        try:
            response = self.client.get_secret_value(SecretId=secret_name)
            if "SecretString" in response:
                return json.loads(response["SecretString"])
            else:
                # Binary secrets not yet supported
                raise ValueError("Binary secrets are not supported")
        except ClientError as e:
            # In development a missing secret is not fatal; the env/.env values apply
            if os.environ.get("SERVICE_ENV", "development") == "development":
                logger.warning(f"Could not retrieve secret {secret_name}: {e.response['Error'].get('Code')}")
                return {}
            raise


class Settings(BaseSettings):
    """Application settings loaded from environment variables and secrets."""

    # Service configuration
    service_env: str = Field("development", description="Service environment (development, staging, production)")
    log_level: str = Field("INFO", description="Logging level")
    log_output: str = Field("stdout", description="Log destination: stdout or file")
    log_file_path: Optional[str] = Field(None, description="Log file path when log_output is 'file'")
    cors_origins: List[str] = Field(["*"], description="CORS allowed origins")
    secret_name: Optional[str] = Field(None, description="AWS Secrets Manager secret name")
    aws_region: str = Field("us-east-1", description="AWS region")

    # Identity provider configuration
    idp_domain: str = Field("auth.example.com", description="IdP domain, e.g. myapp.auth.us-east-1.amazoncognito.com")
    client_id: str = Field("local-dev-client", description="Public OAuth client ID")
    redirect_uri: str = Field("http://localhost:3000/auth/callback", description="OAuth redirect URI registered at the IdP")
    logout_uri: Optional[str] = Field(None, description="Absolute URI the IdP returns to after logout")
    scopes: List[str] = Field(["openid", "email", "profile"], description="Requested OAuth scopes")
    request_timeout_seconds: float = Field(10.0, description="Timeout for IdP token requests in seconds")

    # Session protection
    auth_secret: Optional[SecretStr] = Field(None, description="Secret the cookie encryption key is derived from")
    allow_plaintext_sessions: bool = Field(False, description="Development only: store session cookies as plain JSON")
    cookie_secure: Optional[bool] = Field(None, description="Force the Secure cookie flag; defaults to production only")
    cookie_same_site: str = Field("lax", description="SameSite attribute for auth cookies (lax or strict)")
    pkce_session_ttl_seconds: int = Field(600, description="Lifetime of a pending PKCE session")
    refresh_cookie_max_age_seconds: int = Field(30 * 24 * 60 * 60, description="Upper bound for the refresh token cookie lifetime")

    # Redirect allow-lists
    default_return_path: str = Field("/dashboard", description="Where to send users when returnTo is rejected")
    allowed_return_paths: List[str] = Field(["/dashboard", "/orders", "/profile"], description="Post-login return paths")
    allowed_logout_paths: List[str] = Field(["/", "/login", "/register"], description="Post-logout return paths")

    # Rate limiting
    disable_rate_limiting: bool = Field(False, description="Development only: disable auth rate limiting")
    login_rate_limit: int = Field(10, description="Login attempts per window")
    login_rate_window_seconds: int = Field(900, description="Login rate window")
    login_block_seconds: int = Field(3600, description="Login block duration after exceeding the limit")
    callback_rate_limit: int = Field(20, description="Callback attempts per window")
    callback_rate_window_seconds: int = Field(300, description="Callback rate window")
    callback_block_seconds: int = Field(1800, description="Callback block duration after exceeding the limit")
    refresh_rate_limit: int = Field(30, description="Refresh attempts per window")
    refresh_rate_window_seconds: int = Field(300, description="Refresh rate window")
    refresh_block_seconds: int = Field(900, description="Refresh block duration after exceeding the limit")
    rate_limit_cleanup_interval_seconds: float = Field(60.0, description="How often expired rate limit buckets are evicted")

    # Metrics endpoint credentials
    metrics_user: str = Field("metrics", description="Basic auth user for /metrics")
    metrics_pass: SecretStr = Field(SecretStr("metrics"), description="Basic auth password for /metrics")

    # CORS Validation
    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """
        Validate CORS origins.

        Args:
            v: List of CORS origins

        Returns:
            List[str]: Validated list of CORS origins
        """
        if len(v) == 1 and v[0] == "*":
            return v

        # If we have a single comma-separated string, split it
        if len(v) == 1 and "," in v[0]:
            v = v[0].split(",")

        # Make sure all origins have a scheme
        validated = []
        for origin in v:
            if not origin.startswith(("http://", "https://")):
                origin = f"https://{origin}"
            validated.append(origin)
        return validated

    @field_validator("cookie_same_site")
    @classmethod
    def validate_same_site(cls, v: str) -> str:
        """Only lax or strict are accepted; SameSite=None would expose the cookies cross-site."""
        v = v.lower()
        if v not in SUPPORTED_SAME_SITE:
            raise ValueError(f"cookie_same_site must be one of {', '.join(SUPPORTED_SAME_SITE)}")
        return v

    @field_validator("idp_domain", "client_id", "redirect_uri")
    @classmethod
    def check_required_fields(cls, v: Optional[str], info: Any) -> str:
        """
        Validate that required fields are provided.

        Raises:
            ValueError: If the field is required but not provided
        """
        if not v:
            raise ValueError(f"{info.field_name} is required")
        return v

    @field_validator("idp_domain")
    @classmethod
    def strip_idp_scheme(cls, v: str) -> str:
        """Accept the domain with or without a scheme; endpoints are always https."""
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.service_env.lower() == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @property
    def oauth_endpoints(self) -> Dict[str, str]:
        """OAuth endpoint URLs on the configured IdP domain."""
        base_url = f"https://{self.idp_domain}"
        return {
            "authorize": f"{base_url}/oauth2/authorize",
            "token": f"{base_url}/oauth2/token",
            "logout": f"{base_url}/logout",
        }

    def auth_secret_value(self) -> Optional[str]:
        if self.auth_secret is None:
            return None
        return self.auth_secret.get_secret_value() or None

    def rate_limit_policies(self) -> Dict[str, Dict[str, int]]:
        """Rate-limit policy per broker operation."""
        return {
            "login": {
                "max_requests": self.login_rate_limit,
                "window_seconds": self.login_rate_window_seconds,
                "block_seconds": self.login_block_seconds,
            },
            "callback": {
                "max_requests": self.callback_rate_limit,
                "window_seconds": self.callback_rate_window_seconds,
                "block_seconds": self.callback_block_seconds,
            },
            "refresh": {
                "max_requests": self.refresh_rate_limit,
                "window_seconds": self.refresh_rate_window_seconds,
                "block_seconds": self.refresh_block_seconds,
            },
        }

    @property
    def rate_limiting_enabled(self) -> bool:
        # The kill switch is honoured in development only
        return not (self.disable_rate_limiting and self.service_env == "development")

    def validate_for_startup(self) -> None:
        """
        Fail fast on configuration that would weaken session protection.

        Raises:
            ConfigurationError: In production when the cookie secret is
                missing, still the development placeholder, or when plaintext
                sessions were requested.
        """
        if not self.is_production:
            return
        secret = self.auth_secret_value()
        if not secret or secret == DEV_SECRET_PLACEHOLDER:
            raise ConfigurationError("AUTH_SECRET must be set in production")
        if self.allow_plaintext_sessions:
            raise ConfigurationError("Plaintext sessions cannot be enabled in production")
        if not self.redirect_uri.startswith("https://"):
            raise ConfigurationError("REDIRECT_URI must use https in production")

    # Integration with AWS Secrets Manager
    def _load_secrets(self) -> None:
        """Load secrets from AWS Secrets Manager if configured."""
        if not self.secret_name or self.service_env == "development":
            return

        try:
            secrets_manager = AwsSecretsManager(self.aws_region)
            secrets = secrets_manager.get_secret(self.secret_name)

            # Apply secrets to our configuration
            for key, value in secrets.items():
                key_lower = key.lower()
                if hasattr(self, key_lower):
                    # Check if the field is a SecretStr type and wrap the value
                    field_info = self.__class__.model_fields.get(key_lower)
                    if field_info and SecretStr in _annotation_types(field_info.annotation) and isinstance(value, str):
                        value = SecretStr(value)
                    setattr(self, key_lower, value)
        except Exception as e:
            if self.service_env == "development":
                logger.warning(f"Failed to load secrets: {type(e).__name__}")
            else:
                raise

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    def __init__(self, *args, **kwargs):
        """Initialize settings with secrets."""
        super().__init__(*args, **kwargs)
        self._load_secrets()

        # Set development fallbacks
        if self.service_env == "development" and not self.auth_secret_value():
            self.auth_secret = SecretStr(DEV_SECRET_PLACEHOLDER)


def _annotation_types(annotation: Any) -> tuple:
    """Flatten Optional[...] annotations into their member types."""
    return getattr(annotation, "__args__", None) or (annotation,)


@lru_cache()
def get_settings() -> Settings:
    """
    Create and cache settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
