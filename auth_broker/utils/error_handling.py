import logging
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


class BrokerError(Exception):
    """Base class for auth broker errors."""

    code: str = "broker_error"
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
    ):
        self.message = message
        self.details = details or {}
        if severity is not None:
            self.severity = severity
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'severity': self.severity.value,
        }


def log_level_for(severity: ErrorSeverity) -> int:
    """Map an error severity onto a stdlib logging level."""
    return {
        ErrorSeverity.LOW: logging.INFO,
        ErrorSeverity.MEDIUM: logging.WARNING,
        ErrorSeverity.HIGH: logging.ERROR,
        ErrorSeverity.CRITICAL: logging.CRITICAL,
    }[severity]
