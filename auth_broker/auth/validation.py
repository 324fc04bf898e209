"""Input validation for redirect targets and callback parameters."""
import logging
from typing import Iterable, Mapping, Optional, Tuple
from urllib.parse import unquote

from auth_broker.auth.errors import MissingParameters

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 2048
MAX_STATE_LENGTH = 4096
MAX_RETURN_PATH_LENGTH = 512


def _is_safe_relative_path(path: str) -> bool:
    if not path.startswith("/") or path.startswith("//"):
        return False
    if ":" in path or "\\" in path:
        return False
    if any(ord(ch) < 0x20 or ch == "\x7f" for ch in path):
        return False
    return ".." not in path.split("/")


def _is_allowed(path: str, allowed_paths: Iterable[str]) -> bool:
    for allowed in allowed_paths:
        if path == allowed:
            return True
        if allowed != "/" and path.startswith(allowed.rstrip("/") + "/"):
            return True
    return False


def validate_return_path(value: Optional[str], allowed_paths: Iterable[str], default: str) -> str:
    """
    Resolve a caller supplied ``returnTo`` into a safe same-origin path.

    Only paths that are in the allow-list (or below an allow-listed prefix)
    are kept; anything else, including absolute URLs, scheme-relative URLs and
    values containing ':' falls back to ``default``. Query strings and
    fragments are dropped.

    Args:
        value: Raw value from the query string or request body.
        allowed_paths: Allow-listed path prefixes.
        default: Path used when ``value`` is rejected.

    Returns:
        str: A relative path beginning with a single '/'.
    """
    if not value or not isinstance(value, str) or len(value) > MAX_RETURN_PATH_LENGTH:
        return default

    candidate = value.strip()
    for separator in ("?", "#"):
        candidate = candidate.split(separator, 1)[0]

    # Reject encoded tricks such as %2F%2Fevil.example.com as well
    if not (_is_safe_relative_path(candidate) and _is_safe_relative_path(unquote(candidate))):
        logger.warning("Rejected unsafe return path", extra={"return_path": value[:100]})
        return default

    if len(candidate) > 1:
        candidate = candidate.rstrip("/")

    if not _is_allowed(candidate, allowed_paths):
        logger.info("Return path not in allow-list", extra={"return_path": candidate[:100]})
        return default

    return candidate


def require_callback_params(query: Mapping[str, str]) -> Tuple[str, str]:
    """
    Extract ``code`` and ``state`` from the callback query.

    Raises:
        MissingParameters: If either value is absent, empty or oversized.
    """
    code = query.get("code") or ""
    state = query.get("state") or ""
    if not code or not state:
        raise MissingParameters(
            "Missing authorization code or state parameter",
            {"has_code": bool(code), "has_state": bool(state)},
        )
    if len(code) > MAX_CODE_LENGTH or len(state) > MAX_STATE_LENGTH:
        raise MissingParameters("Callback parameter exceeds maximum length")
    return code, state
