"""PKCE flow, session protection and the authentication broker."""
