"""Core automation components."""

from .config import ConfigLoader, AutomationConfig
from .state import StateManager
from .errors import (
    AutomationError,
    ConfigError,
    NotFoundError,
    ValidationError,
    TransientError,
    InvalidTransitionError,
    NotificationError,
    AuditError,
)

__all__ = [
    "ConfigLoader",
    "AutomationConfig",
    "StateManager",
    "AutomationError",
    "ConfigError",
    "NotFoundError",
    "ValidationError",
    "TransientError",
    "InvalidTransitionError",
    "NotificationError",
    "AuditError",
]
