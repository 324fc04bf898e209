"""
Logging utilities for structured JSON logs and redaction of auth secrets.

Example:
    from auth_broker.utils.logging_utils import redact_sensitive_data
    safe = redact_sensitive_data({'refresh_token': 'abc', 'returnTo': '/dashboard'})
    # safe == {'refresh_token': '***REDACTED***', 'returnTo': '/dashboard'}
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

SENSITIVE_KEYS = {
    'password', 'api_key', 'token', 'secret', 'access_token', 'refresh_token',
    'id_token', 'key', 'code', 'code_verifier', 'codeverifier', 'state',
    'authorization_code', 'auth_secret', 'cookie',
}

REDACTED = '***REDACTED***'

MAX_VALUE_LENGTH = 100

# LogRecord attributes that are not user supplied extras
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class AuthEventType(str, Enum):
    """Authentication events written to the audit log."""

    LOGIN_INITIATED = 'login_initiated'
    LOGIN_SUCCESS = 'login_success'
    LOGIN_FAILED = 'login_failed'
    LOGOUT_SUCCESS = 'logout_success'
    TOKEN_REFRESH_SUCCESS = 'token_refresh_success'
    TOKEN_REFRESH_FAILED = 'token_refresh_failed'
    SESSION_EXPIRED = 'session_expired'
    PKCE_SESSION_INVALID = 'pkce_session_invalid'
    CSRF_ATTACK_DETECTED = 'csrf_attack_detected'
    SECURITY_VIOLATION = 'security_violation'
    RATE_LIMITED = 'rate_limited'


def _is_sensitive(key: str) -> bool:
    k = key.lower()
    return k in SENSITIVE_KEYS or any(s in k for s in ('token', 'secret', 'verifier', 'password'))


def redact_sensitive_data(obj):
    """
    Recursively redacts sensitive fields in dicts/lists.
    Keys matched case-insensitively against SENSITIVE_KEYS, plus any key
    containing token, secret, verifier or password.
    """
    if isinstance(obj, dict):
        return {
            k: (REDACTED if isinstance(k, str) and _is_sensitive(k) else redact_sensitive_data(v))
            for k, v in obj.items()
        }
    elif isinstance(obj, list):
        return [redact_sensitive_data(i) for i in obj]
    else:
        return obj


def auth_event_extra(event: AuthEventType, **metadata: Any) -> Dict[str, Any]:
    """
    Build the ``extra`` mapping for an auth audit log line.

    Sensitive metadata is redacted and long strings are truncated so that a
    crafted query parameter cannot flood the log.
    """
    safe = redact_sensitive_data(metadata)
    for k, v in list(safe.items()):
        if isinstance(v, str) and len(v) > MAX_VALUE_LENGTH:
            safe[k] = f"{v[:MAX_VALUE_LENGTH]}... [TRUNCATED]"
    safe["log_type"] = "auth_event"
    safe["event_type"] = event.value
    return safe


class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON with standard fields.
    """
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        # Add extra fields if present
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_record:
                log_record[key] = value
        return json.dumps(redact_sensitive_data(log_record), default=str)


def setup_json_logging(level=logging.INFO, output='stdout', file_path=None):
    """
    Set up structured JSON logging for the app.
    Args:
        level: Logging level (default: INFO)
        output: 'stdout' or 'file'
        file_path: Path to log file if output is 'file'
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(level)
    # Remove existing handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
    if output == 'file' and file_path:
        handler = logging.FileHandler(file_path)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    return logger
