"""Best-effort audit and notification recorders."""

from typing import Any, Optional

import structlog

from .errors import AuditError, NotificationError
from .models import AuditStatus, Notification
from .state import StateManager


logger = structlog.get_logger()


class AuditSink:
    """Appends audit entries. Never raises to callers."""

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    async def append(
        self,
        execution_id: str,
        action: str,
        status: AuditStatus,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self.state.append_audit(
                execution_id=execution_id,
                action=action,
                status=status.value,
                details=details,
                error_message=error_message,
            )
        except Exception as e:
            error = AuditError(
                f"Failed to append audit entry: {e}",
                execution_id=execution_id,
                action=action,
            )
            logger.error("audit_append_failed", error=error.to_dict())


class NotificationSink:
    """Creates in-app notifications."""

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    async def send(self, user_id: str, transaction_id: str, message: str) -> Notification:
        """Insert an unread notification. Raises NotificationError on failure."""
        try:
            return await self.state.insert_notification(
                user_id=user_id,
                transaction_id=transaction_id,
                message=message,
                is_read=False,
            )
        except Exception as e:
            raise NotificationError(f"Failed to create notification: {e}", user_id=user_id) from e
