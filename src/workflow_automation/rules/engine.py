"""Rules engine - loads active rules, evaluates conditions, dispatches matches."""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from ..core.errors import AutomationError, NotFoundError, ValidationError
from ..core.models import AutomationRule, ExecutionStatus, TriggerContext
from ..core.stores import RuleStore
from ..orchestrator.coordinator import ExecutionCoordinator, ExecutionOutcome
from .evaluator import ConditionEvaluator


logger = structlog.get_logger()


# trigger_data.trigger_type -> condition types evaluated for it
TRIGGER_RELEVANCE: dict[str, frozenset[str]] = {
    "status_change": frozenset({"status_change"}),
    "task_completed": frozenset({"task_completed"}),
    "document_uploaded": frozenset({"document_uploaded"}),
    "date_offset": frozenset({"contract_date_offset", "closing_date_offset"}),
    "contract_date_offset": frozenset({"contract_date_offset"}),
    "closing_date_offset": frozenset({"closing_date_offset"}),
    "time_based": frozenset({"time_based"}),
}


@dataclass
class RuleOutcome:
    """Per-rule result of one processing pass."""
    rule_id: str
    matched: bool
    execution_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    skipped: bool = False
    error: Optional[str] = None
    duration_ms: float = 0


@dataclass
class ProcessResult:
    """Aggregate result of RuleEngine.process."""
    transaction_id: str
    outcomes: list[RuleOutcome] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)

    @property
    def matched(self) -> list[RuleOutcome]:
        return [outcome for outcome in self.outcomes if outcome.matched]

    @property
    def failures(self) -> list[RuleOutcome]:
        return [outcome for outcome in self.outcomes if outcome.error]


class RuleEngine:
    """
    Evaluates every active rule against a trigger context.

    Flow:
    1. Fetch active rules from the store (fresh on every pass)
    2. Normalize rows, quarantining malformed ones
    3. Filter by trigger relevance
    4. Evaluate conditions
    5. Execute matches sequentially, each in its own error boundary

    A rule-store failure aborts the pass; a failing rule never affects
    the others.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        coordinator: ExecutionCoordinator,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.rules = rule_store
        self.coordinator = coordinator
        self.evaluator = evaluator or ConditionEvaluator()

    async def process(self, context: TriggerContext) -> ProcessResult:
        """
        Process a trigger context through all active rules.

        Args:
            context: The trigger snapshot

        Returns:
            ProcessResult with one outcome per evaluated rule
        """
        start_time = time.monotonic()
        result = ProcessResult(transaction_id=context.transaction_id)

        records = await self.rules.list_active_rules()

        for record in records:
            try:
                rule = AutomationRule.from_record(record)
            except ValidationError as e:
                logger.warning(
                    "rule_quarantined",
                    rule_id=e.context.get("rule_id"),
                    error=e.message,
                )
                result.quarantined.append(str(e.context.get("rule_id")))
                continue

            if not rule.is_active:
                continue

            if not self._is_relevant(rule, context):
                continue

            outcome = await self._process_rule(rule, context)
            result.outcomes.append(outcome)

        logger.info(
            "rule_processing_completed",
            transaction_id=context.transaction_id,
            trigger_type=context.trigger_type,
            rules_evaluated=len(result.outcomes),
            rules_matched=len(result.matched),
            failures=len(result.failures),
            quarantined=len(result.quarantined),
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )

        return result

    async def run_rule(self, rule_id: str, context: TriggerContext) -> ExecutionOutcome:
        """Execute one active rule directly, without evaluating its condition."""
        record = await self.rules.get_rule(rule_id)
        if record is None:
            raise NotFoundError(
                f"Active automation rule not found: {rule_id}",
                entity="rule",
                entity_id=rule_id,
                retryable=False,
            )

        rule = AutomationRule.from_record(record)
        if not rule.is_active:
            raise NotFoundError(
                f"Active automation rule not found: {rule_id}",
                entity="rule",
                entity_id=rule_id,
                retryable=False,
            )

        logger.info(
            "rule_run_requested",
            rule_id=rule_id,
            transaction_id=context.transaction_id,
            user_id=context.user_id,
        )
        return await self.coordinator.execute_rule(rule, context)

    async def _process_rule(self, rule: AutomationRule, context: TriggerContext) -> RuleOutcome:
        start_time = time.monotonic()

        try:
            if not self.evaluator.evaluate(rule.trigger_condition, context):
                return RuleOutcome(rule_id=rule.id, matched=False)

            logger.info(
                "rule_matched",
                rule_id=rule.id,
                rule_name=rule.name,
                transaction_id=context.transaction_id,
            )

            execution = await self.coordinator.execute_rule(rule, context)
            return RuleOutcome(
                rule_id=rule.id,
                matched=True,
                execution_id=execution.execution_id,
                status=execution.status,
                skipped=execution.skipped,
                error=execution.error,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        except Exception as e:
            logger.exception("rule_processing_error", rule_id=rule.id)
            return RuleOutcome(
                rule_id=rule.id,
                matched=True,
                error=e.message if isinstance(e, AutomationError) else str(e),
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

    def _is_relevant(self, rule: AutomationRule, context: TriggerContext) -> bool:
        trigger_type = context.trigger_type
        if not trigger_type:
            return True

        relevant = TRIGGER_RELEVANCE.get(trigger_type)
        if relevant is None:
            logger.debug("unknown_trigger_type", trigger_type=trigger_type)
            return True
        return rule.trigger_condition.type in relevant

    def describe_rules(self, records: list[Any]) -> list[dict[str, Any]]:
        """Summaries of rule rows for diagnostics; malformed rows included as errors."""
        summaries = []
        for record in records:
            try:
                rule = AutomationRule.from_record(record)
            except ValidationError as e:
                summaries.append({"id": e.context.get("rule_id"), "error": e.message})
                continue
            summaries.append({
                "id": rule.id,
                "name": rule.name,
                "trigger_event": rule.trigger_event.value,
                "template_id": rule.template_id,
                "is_active": rule.is_active,
            })
        return summaries
