"""
Structured Security Logging

Single-line JSON records for operational security events that operators must
see even when the audit table itself is unreachable:
- storage fault while consulting the trust or block registries
- audit entry dropped after all retries
- storage handle recreated after an engine crash

Values under credential-like keys are always redacted.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class LogSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_REDACT_FRAGMENTS = ("password", "token", "secret", "key", "authorization", "cookie")


def _redact(key: str, value: Any) -> Any:
    lowered = key.lower()
    if any(fragment in lowered for fragment in _REDACT_FRAGMENTS) and not lowered.endswith("_id"):
        return "**REDACTED**"
    return value


class SecurityEventLogger:
    def __init__(self, logger_name: str = "schooladmin.security"):
        self.logger = logging.getLogger(logger_name)

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        component: str,
        message: Optional[str] = None,
        **extra: Any,
    ) -> dict:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "component": component,
        }
        if message:
            entry["message"] = message
        for key, value in extra.items():
            if value is not None:
                entry[key] = _redact(key, value)
        return entry

    def _log(self, entry: dict, severity: LogSeverity) -> None:
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    def storage_fault(self, component: str, operation: str, error: BaseException, **extra: Any) -> None:
        """A registry check could not reach storage and failed open."""
        entry = self._create_log_entry(
            event="storage_fault",
            severity=LogSeverity.ERROR,
            component=component,
            message=f"{operation} failed, continuing without it",
            operation=operation,
            error_type=error.__class__.__name__,
            **extra,
        )
        self._log(entry, LogSeverity.ERROR)

    def audit_write_dropped(self, action: str, resource: str, error: BaseException, **extra: Any) -> None:
        entry = self._create_log_entry(
            event="audit_write_dropped",
            severity=LogSeverity.ERROR,
            component="audit",
            message="Audit entry could not be persisted",
            action=action,
            resource=resource,
            error_type=error.__class__.__name__,
            **extra,
        )
        self._log(entry, LogSeverity.ERROR)

    def storage_recreated(self, component: str, generation: int) -> None:
        entry = self._create_log_entry(
            event="storage_recreated",
            severity=LogSeverity.WARN,
            component=component,
            generation=generation,
        )
        self._log(entry, LogSeverity.WARN)


security_logger = SecurityEventLogger()
