"""
Logging configuration for phiguard.

Provides structured JSON logging and typed security events. Key material,
plaintext and full identities never reach a log record.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from .util import mask_identity

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class SecurityLogger:
    """
    Specialized logger for security events.

    Every event carries an ``event_type`` so that fallbacks (unencrypted
    audit entries, lenient decrypts) can be told apart from normal traffic.
    """

    def __init__(self, name: str = "phiguard.security"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def encryption_failure(self, key_type: str, algorithm: str, reason: str) -> None:
        """Write-path failure; the caller receives an exception."""
        self._log(
            logging.ERROR,
            "ENCRYPTION_FAILURE",
            key_type=key_type,
            algorithm=algorithm,
            reason=reason,
            message=f"Encryption failed for key type {key_type}"
        )

    def algorithm_fallback(self, key_type: str, failed: str, used: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "ENCRYPTION_ALGORITHM_FALLBACK",
            key_type=key_type,
            failed_algorithm=failed,
            used_algorithm=used,
            reason=reason,
            message=f"{failed} encryption failed, using {used}"
        )

    def decryption_fallback(self, key_type: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "DECRYPTION_FALLBACK",
            key_type=key_type,
            reason=reason,
            message=f"Decryption degraded to best-effort decode: {reason}"
        )

    def audit_unencrypted(self, action: str, reason: str) -> None:
        """An audit entry was written without encryption."""
        self._log(
            logging.ERROR,
            "AUDIT_UNENCRYPTED_FALLBACK",
            action=action,
            reason=reason,
            message=f"Audit entry for {action} stored unencrypted"
        )

    def audit_checksum_mismatch(self, action: Optional[str], stored: str, computed: str) -> None:
        self._log(
            logging.WARNING,
            "AUDIT_CHECKSUM_MISMATCH",
            action=action,
            stored_checksum=stored,
            computed_checksum=computed,
            message="Audit entry checksum verification failed"
        )

    def failed_login(self, identity: str, attempt_count: int, attempts_remaining: int) -> None:
        self._log(
            logging.INFO,
            "FAILED_LOGIN",
            identity=mask_identity(identity),
            attempt_count=attempt_count,
            attempts_remaining=attempts_remaining,
            message=f"Failed login for {mask_identity(identity)}"
        )

    def account_locked(self, identity: str, locked_until: float) -> None:
        self._log(
            logging.WARNING,
            "ACCOUNT_LOCKED",
            identity=mask_identity(identity),
            locked_until=locked_until,
            message=f"Account {mask_identity(identity)} locked"
        )

    def lock_expired(self, identity: str) -> None:
        self._log(
            logging.INFO,
            "LOCK_EXPIRED",
            identity=mask_identity(identity),
            message=f"Lock expired for {mask_identity(identity)}"
        )

    def admin_override(self, operation: str, operator: str, reason: str, **details) -> None:
        """Log an administrative bypass of the lockout state machine."""
        self._log(
            logging.WARNING,
            "ADMIN_OVERRIDE",
            operation=operation,
            operator=operator,
            reason=reason,
            **details,
            message=f"Administrative override: {operation} by {operator}"
        )

    def audit_write_failure(self, operation: str, reason: str) -> None:
        self._log(
            logging.ERROR,
            "AUDIT_WRITE_FAILED",
            operation=operation,
            reason=reason,
            message=f"Audit entry for {operation} not written; override refused"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Global security logger instance
security_log = SecurityLogger()
