"""OAuth2 authorization code + PKCE broker service."""

__version__ = "0.1.0"
