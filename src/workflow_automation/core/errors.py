"""Automation error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Recovered locally (audit, notification)
    MEDIUM = "medium"     # Retry with backoff
    HIGH = "high"         # Terminal for the execution
    CRITICAL = "critical" # Aborts the whole processing pass


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Store/network hiccup - will likely resolve
    PERMANENT = "permanent"       # Bad config, illegal transition - won't resolve
    NOT_FOUND = "not_found"       # Referenced entity missing
    EXTERNAL = "external"         # Workflow API rejected the request
    VALIDATION = "validation"     # Malformed rule or condition
    SIDE_CHANNEL = "side_channel" # Audit/notification recorder failure


class AutomationError(Exception):
    """Base exception for all automation errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("rule_id", "")),
            str(self.context.get("execution_id", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(AutomationError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class NotFoundError(AutomationError):
    """A referenced rule, template, transaction or execution is missing."""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        super().__init__(message, **kwargs)
        self.context["entity"] = entity
        self.context["entity_id"] = entity_id


class ValidationError(AutomationError):
    """Malformed rule or trigger condition."""

    def __init__(self, message: str, rule_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["rule_id"] = rule_id


class TransientError(AutomationError):
    """Store or network failure that is expected to clear on retry."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TRANSIENT)
        super().__init__(message, **kwargs)
        self.context["operation"] = operation


class InvalidTransitionError(AutomationError):
    """Execution state change not allowed by the lifecycle."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["execution_id"] = execution_id
        self.context["from_status"] = from_status
        self.context["to_status"] = to_status


class NotificationError(AutomationError):
    """Notification could not be recorded."""

    def __init__(self, message: str, user_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.SIDE_CHANNEL)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["user_id"] = user_id


class AuditError(AutomationError):
    """Audit entry could not be recorded."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        action: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.SIDE_CHANNEL)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["execution_id"] = execution_id
        self.context["action"] = action
