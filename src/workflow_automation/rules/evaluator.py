"""Trigger condition evaluation for the rules engine."""

import json
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from ..core.errors import ValidationError
from ..core.models import (
    ClosingDateOffsetCondition,
    ContractDateOffsetCondition,
    DocumentUploadedCondition,
    StatusChangeCondition,
    TaskCompletedCondition,
    TimeBasedCondition,
    TriggerContext,
    parse_condition,
)


logger = structlog.get_logger()


class ConditionEvaluator:
    """
    Evaluates a rule's trigger condition against a trigger context.

    Supports:
    - status_change (from/to wildcards)
    - contract_date_offset / closing_date_offset (calendar-day match)
    - task_completed (title substring, priority)
    - document_uploaded (file name substring)
    - time_based (day of week, time of day window)

    Never raises: malformed conditions and evaluation errors yield False.
    A time_based condition with neither days_of_week nor time_of_day
    matches on every evaluation.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        time_tolerance_seconds: int = 60,
    ):
        self._clock = clock or datetime.now
        self.time_tolerance = timedelta(seconds=time_tolerance_seconds)

        self._evaluators: dict[str, Callable[[Any, TriggerContext], bool]] = {
            "status_change": self._evaluate_status_change,
            "contract_date_offset": self._evaluate_contract_date,
            "closing_date_offset": self._evaluate_closing_date,
            "task_completed": self._evaluate_task_completion,
            "document_uploaded": self._evaluate_document_upload,
            "time_based": self._evaluate_time_based,
        }

    def evaluate(self, condition: Any, context: TriggerContext) -> bool:
        """Return True if the condition matches the context."""
        condition_type = self._condition_type(condition)

        handler = self._evaluators.get(condition_type)
        if handler is None:
            logger.warning(
                "unknown_condition_type",
                condition_type=condition_type,
                transaction_id=context.transaction_id,
            )
            return False

        try:
            return bool(handler(parse_condition(condition), context))
        except ValidationError as e:
            logger.warning(
                "invalid_condition",
                condition_type=condition_type,
                transaction_id=context.transaction_id,
                error=e.message,
            )
            return False
        except Exception:
            logger.exception(
                "condition_evaluation_error",
                condition_type=condition_type,
                transaction_id=context.transaction_id,
            )
            return False

    def _condition_type(self, condition: Any) -> Optional[str]:
        if isinstance(condition, (str, bytes)):
            try:
                condition = json.loads(condition)
            except json.JSONDecodeError:
                return None
        if isinstance(condition, Mapping):
            return condition.get("type")
        return getattr(condition, "type", None)

    # ==================== Per-type evaluation ====================

    def _evaluate_status_change(
        self,
        condition: StatusChangeCondition,
        context: TriggerContext,
    ) -> bool:
        old_status = context.trigger_data.get("old_status")
        new_status = context.trigger_data.get("new_status")

        from_matches = not condition.from_status or old_status == condition.from_status
        to_matches = not condition.to_status or new_status == condition.to_status
        return from_matches and to_matches

    def _evaluate_contract_date(
        self,
        condition: ContractDateOffsetCondition,
        context: TriggerContext,
    ) -> bool:
        return self._matches_date_offset(context.transaction.get("created_at"), condition)

    def _evaluate_closing_date(
        self,
        condition: ClosingDateOffsetCondition,
        context: TriggerContext,
    ) -> bool:
        return self._matches_date_offset(context.transaction.get("closing_date"), condition)

    def _matches_date_offset(self, reference: Any, condition: Any) -> bool:
        if not reference:
            return False

        reference_day = self._to_local_date(reference)
        offset = timedelta(days=condition.offset_days)
        if condition.offset_type == "after":
            target_day = reference_day + offset
        else:
            target_day = reference_day - offset

        return target_day == self._clock().date()

    def _evaluate_task_completion(
        self,
        condition: TaskCompletedCondition,
        context: TriggerContext,
    ) -> bool:
        task = context.trigger_data.get("task")
        if not task:
            return False

        if task.get("is_completed") is not True:
            return False

        if condition.task_title_contains:
            title = task.get("title") or ""
            if condition.task_title_contains.lower() not in title.lower():
                return False

        if condition.task_priority and task.get("priority") != condition.task_priority:
            return False

        return True

    def _evaluate_document_upload(
        self,
        condition: DocumentUploadedCondition,
        context: TriggerContext,
    ) -> bool:
        document = context.trigger_data.get("document")
        if not document:
            return False

        if condition.document_type:
            file_name = document.get("file_name") or ""
            return condition.document_type.lower() in file_name.lower()

        return True

    def _evaluate_time_based(
        self,
        condition: TimeBasedCondition,
        context: TriggerContext,
    ) -> bool:
        now = self._clock()

        if condition.days_of_week:
            # Sunday = 0
            weekday = (now.weekday() + 1) % 7
            if weekday not in condition.days_of_week:
                return False

        target = condition.target_time()
        if target is not None:
            hours, minutes = target
            target_time = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
            return abs(now - target_time) < self.time_tolerance

        if not condition.days_of_week:
            logger.debug(
                "time_condition_unconstrained",
                transaction_id=context.transaction_id,
            )
        return True

    # ==================== Helpers ====================

    def _to_local_date(self, value: Any) -> date:
        """Calendar day of a reference date, in the clock's timezone."""
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))

        if isinstance(value, datetime):
            if value.tzinfo is not None:
                now = self._clock()
                if now.tzinfo is not None:
                    value = value.astimezone(now.tzinfo)
                else:
                    value = value.astimezone().replace(tzinfo=None)
            return value.date()

        if isinstance(value, date):
            return value

        raise TypeError(f"Unsupported date value: {value!r}")
