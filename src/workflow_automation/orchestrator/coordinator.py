"""Workflow execution lifecycle: run, retry with linear backoff, fail."""

import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from ..core.config import AutomationConfig
from ..core.errors import AutomationError, InvalidTransitionError, NotFoundError, TransientError
from ..core.models import (
    AuditStatus,
    AutomationRule,
    ExecutionStatus,
    TriggerContext,
    WorkflowExecution,
)
from ..core.sinks import AuditSink, NotificationSink
from ..core.state import StateManager
from ..core.stores import EntityStore, RuleStore, TemplateStore, WorkflowApplier
from .scheduler import RetryScheduler


logger = structlog.get_logger()


ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.RETRYING,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.RETRYING,
        ExecutionStatus.FAILED,
    }),
    # failed only through cancellation
    ExecutionStatus.RETRYING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


@dataclass
class ExecutionOutcome:
    """Result of one execute_rule / retry_execution call."""
    rule_id: str
    execution_id: Optional[str]
    status: Optional[ExecutionStatus]
    error: Optional[str] = None
    skipped: bool = False
    duration_ms: float = 0


class ExecutionCoordinator:
    """
    Owns the WorkflowExecution state machine.

    pending -> running -> completed
    running -> retrying -> running   (while retry budget remains)
    running -> failed                (budget exhausted or non-retryable error)

    Retries reuse the execution id and are handed to the RetryScheduler;
    callers of execute_rule never wait for them.
    """

    def __init__(
        self,
        config: AutomationConfig,
        state_manager: StateManager,
        rule_store: RuleStore,
        template_store: TemplateStore,
        transaction_store: EntityStore,
        workflow_applier: WorkflowApplier,
        scheduler: RetryScheduler,
        audit: AuditSink,
        notifications: NotificationSink,
    ):
        self.config = config
        self.retry_config = config.retry
        self.state = state_manager
        self.rules = rule_store
        self.templates = template_store
        self.transactions = transaction_store
        self.applier = workflow_applier
        self.scheduler = scheduler
        self.audit = audit
        self.notifications = notifications

        self.scheduler.set_handler(self.retry_execution)

    async def execute_rule(
        self,
        rule: AutomationRule,
        context: TriggerContext,
        execution: Optional[WorkflowExecution] = None,
    ) -> ExecutionOutcome:
        """
        Apply a matched rule's template to the context's transaction.

        Pass `execution` to continue an existing execution (retry path).
        Errors after the execution row exists are routed to
        handle_execution_error; only a failed insert propagates.
        """
        start_time = time.monotonic()

        if execution is None:
            execution = WorkflowExecution.for_rule(rule, context, dedup=self.config.dedup.enabled)
            inserted = await self.state.insert_execution(execution)
            if not inserted:
                logger.info(
                    "duplicate_execution_skipped",
                    rule_id=rule.id,
                    transaction_id=context.transaction_id,
                    dedup_key=execution.dedup_key,
                )
                return ExecutionOutcome(
                    rule_id=rule.id,
                    execution_id=None,
                    status=None,
                    skipped=True,
                    duration_ms=(time.monotonic() - start_time) * 1000,
                )

        try:
            if execution.status is not ExecutionStatus.RUNNING:
                await self._transition(execution, ExecutionStatus.RUNNING)

            template = await self.templates.get_template(rule.template_id)
            if template is None:
                raise NotFoundError(
                    f"Template not found: {rule.template_id}",
                    entity="template",
                    entity_id=rule.template_id,
                )

            instance_id = execution.metadata.get("workflow_instance_id")
            if instance_id is None:
                instance_id = await self.applier.apply_template(
                    context.transaction_id,
                    rule.template_id,
                    context.user_id,
                )
                execution.metadata["workflow_instance_id"] = instance_id
                await self.state.update_execution(execution.id, metadata=execution.metadata)
            else:
                # Applied by an earlier attempt that failed afterwards
                logger.info(
                    "workflow_already_applied",
                    execution_id=execution.id,
                    workflow_instance_id=instance_id,
                )

            await self._notify(rule, context, execution)

            await self._transition(
                execution,
                ExecutionStatus.COMPLETED,
                completed_at=time.time(),
            )

        except Exception as e:
            logger.error(
                "rule_execution_error",
                rule_id=rule.id,
                rule_name=rule.name,
                execution_id=execution.id,
                transaction_id=context.transaction_id,
                error=str(e),
            )
            outcome = await self.handle_execution_error(execution, e)
            outcome.duration_ms = (time.monotonic() - start_time) * 1000
            return outcome

        await self.audit.append(
            execution.id,
            "workflow_applied",
            AuditStatus.SUCCESS,
            {
                "rule_name": rule.name,
                "template_id": rule.template_id,
                "workflow_instance_id": instance_id,
                "transaction_id": context.transaction_id,
                "applied_by": context.user_id or "system",
                "retry_count": execution.retry_count,
            },
        )

        logger.info(
            "rule_executed",
            rule_id=rule.id,
            rule_name=rule.name,
            execution_id=execution.id,
            transaction_id=context.transaction_id,
            workflow_instance_id=instance_id,
        )

        return ExecutionOutcome(
            rule_id=rule.id,
            execution_id=execution.id,
            status=ExecutionStatus.COMPLETED,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )

    async def handle_execution_error(
        self,
        execution: WorkflowExecution,
        error: Exception,
    ) -> ExecutionOutcome:
        """Schedule a retry while budget remains, otherwise fail terminally."""
        retry_count = execution.retry_count + 1
        message = error.message if isinstance(error, AutomationError) else str(error)
        retryable = getattr(error, "retryable", True)

        if retryable and retry_count < self.retry_config.max_retries:
            await self._transition(
                execution,
                ExecutionStatus.RETRYING,
                retry_count=retry_count,
                error_message=message,
            )

            delay = self.retry_config.base_delay_seconds * retry_count
            await self.audit.append(
                execution.id,
                "retry_scheduled",
                AuditStatus.SUCCESS,
                {
                    "retry_count": retry_count,
                    "delay_seconds": delay,
                    "error": message,
                },
                error_message=message,
            )
            await self.scheduler.schedule(
                execution.id,
                execution.rule_id,
                delay_seconds=delay,
                attempt=retry_count + 1,
            )

            logger.warning(
                "execution_retry_scheduled",
                execution_id=execution.id,
                retry_count=retry_count,
                delay_seconds=delay,
                error=message,
            )

        else:
            await self._transition(
                execution,
                ExecutionStatus.FAILED,
                retry_count=retry_count,
                error_message=message,
            )

            await self.audit.append(
                execution.id,
                "execution_failed",
                AuditStatus.FAILED,
                {
                    "retry_count": retry_count,
                    "error": message,
                    "retryable": retryable,
                    "rule_name": execution.metadata.get("rule_name"),
                },
                error_message=message,
            )

            logger.error(
                "execution_failed",
                execution_id=execution.id,
                retry_count=retry_count,
                error=message,
            )

        return ExecutionOutcome(
            rule_id=execution.rule_id,
            execution_id=execution.id,
            status=execution.status,
            error=message,
        )

    async def retry_execution(self, execution_id: str) -> ExecutionOutcome:
        """Reload an execution, its rule and transaction, and run it again."""
        execution = await self.state.get_execution(execution_id)

        if execution is None:
            # Nothing left to update; route a stand-in so the failure is audited
            logger.error("retry_execution_missing", execution_id=execution_id)
            return await self.handle_execution_error(
                WorkflowExecution.placeholder(execution_id),
                NotFoundError(
                    f"Execution not found for retry: {execution_id}",
                    entity="execution",
                    entity_id=execution_id,
                    retryable=False,
                ),
            )

        if execution.status is ExecutionStatus.RUNNING:
            # Jobs only fire for retrying executions; this attempt was cut off
            # by a shutdown before it could record its result
            logger.warning(
                "retry_attempt_interrupted",
                execution_id=execution_id,
                retry_count=execution.retry_count,
            )
            return await self.handle_execution_error(
                execution,
                TransientError(
                    f"Retry attempt interrupted: {execution_id}",
                    operation="retry_execution",
                ),
            )

        if execution.status is not ExecutionStatus.RETRYING:
            logger.info(
                "retry_skipped",
                execution_id=execution_id,
                status=execution.status.value,
            )
            return ExecutionOutcome(
                rule_id=execution.rule_id,
                execution_id=execution_id,
                status=execution.status,
                skipped=True,
            )

        logger.info(
            "retrying_execution",
            execution_id=execution_id,
            retry_count=execution.retry_count,
        )

        try:
            await self._transition(execution, ExecutionStatus.RUNNING)

            record = await self.rules.get_rule(execution.rule_id)
            if record is None:
                raise NotFoundError(
                    f"Rule not found for retry: {execution.rule_id}",
                    entity="rule",
                    entity_id=execution.rule_id,
                )
            rule = AutomationRule.from_record(record)

            transaction = await self.transactions.get_by_id(execution.transaction_id)
            if transaction is None:
                raise NotFoundError(
                    f"Transaction not found for retry: {execution.transaction_id}",
                    entity="transaction",
                    entity_id=execution.transaction_id,
                )

            context = TriggerContext.from_metadata(
                execution.metadata.get("trigger_context"),
                transaction=transaction,
                transaction_id=execution.transaction_id,
            )

        except Exception as e:
            logger.error(
                "retry_reload_failed",
                execution_id=execution_id,
                rule_id=execution.rule_id,
                error=str(e),
            )
            return await self.handle_execution_error(execution, e)

        if not rule.is_active:
            return await self._cancel(
                execution,
                f"Rule deactivated: {rule.id}",
            )

        return await self.execute_rule(rule, context, execution=execution)

    async def cancel_retries_for_rule(self, rule_id: str) -> list[str]:
        """
        Cancel queued retries of a rule and fail their executions.

        An attempt already in flight is cut off and left `running`; it is
        failed here like a queued one.
        """
        cancelled = []
        for execution_id in await self.scheduler.cancel_for_rule(rule_id):
            execution = await self.state.get_execution(execution_id)
            if execution is None or execution.status not in (
                ExecutionStatus.RETRYING,
                ExecutionStatus.RUNNING,
            ):
                continue
            await self._cancel(execution, f"Retry cancelled: rule {rule_id} deactivated")
            cancelled.append(execution_id)
        return cancelled

    async def _cancel(self, execution: WorkflowExecution, reason: str) -> ExecutionOutcome:
        await self._transition(execution, ExecutionStatus.FAILED, error_message=reason)
        await self.audit.append(
            execution.id,
            "retry_cancelled",
            AuditStatus.FAILED,
            {"retry_count": execution.retry_count, "reason": reason},
            error_message=reason,
        )
        logger.warning("execution_retry_cancelled", execution_id=execution.id, reason=reason)

        return ExecutionOutcome(
            rule_id=execution.rule_id,
            execution_id=execution.id,
            status=ExecutionStatus.FAILED,
            error=reason,
        )

    async def _notify(
        self,
        rule: AutomationRule,
        context: TriggerContext,
        execution: WorkflowExecution,
    ) -> None:
        """Tell the transaction's agent. Failures are logged and audited only."""
        recipient = context.transaction.get("agent_id")
        if not recipient:
            logger.warning(
                "notification_skipped",
                execution_id=execution.id,
                transaction_id=context.transaction_id,
                reason="no agent_id on transaction",
            )
            return

        subject = context.transaction.get("property_address") or context.transaction_id
        message = f'Workflow "{rule.name}" has been automatically applied to transaction {subject}'

        try:
            await self.notifications.send(str(recipient), context.transaction_id, message)
        except Exception as e:
            details: dict[str, Any] = {"recipient": recipient, "rule_name": rule.name}
            if isinstance(e, AutomationError):
                details["error"] = e.to_dict()
            logger.error(
                "notification_failed",
                rule_id=rule.id,
                execution_id=execution.id,
                error=str(e),
            )
            await self.audit.append(
                execution.id,
                "notification_failed",
                AuditStatus.FAILED,
                details,
                error_message=str(e),
            )
            return

        logger.info(
            "notification_sent",
            rule_id=rule.id,
            execution_id=execution.id,
            recipient=recipient,
        )

    async def _transition(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        **fields: Any,
    ) -> None:
        """Validate, persist and apply a status change."""
        if status not in ALLOWED_TRANSITIONS[execution.status]:
            raise InvalidTransitionError(
                f"Illegal transition {execution.status.value} -> {status.value}",
                execution_id=execution.id,
                from_status=execution.status.value,
                to_status=status.value,
            )

        await self.state.update_execution(execution.id, status=status, **fields)

        execution.status = status
        for name, value in fields.items():
            setattr(execution, name, value)
