"""Trigger detection - turns domain events and sweeps into rule processing passes."""

from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import structlog

from ..core.models import TriggerContext
from ..core.stores import EntityStore
from ..rules.engine import ProcessResult, RuleEngine


logger = structlog.get_logger()


class TriggerDetector:
    """
    Entry points called by the application's event hooks and sweep scheduler.

    Single-entity detectors fetch the referenced records first; a missing
    record is logged and never triggers automation. No entry point raises:
    engine failures are logged and reported as None.
    """

    def __init__(
        self,
        engine: RuleEngine,
        transactions: EntityStore,
        tasks: EntityStore,
        documents: EntityStore,
        sweep_statuses: Sequence[str] = ("intake", "active"),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.transactions = transactions
        self.tasks = tasks
        self.documents = documents
        self.sweep_statuses = list(sweep_statuses)
        self._clock = clock or datetime.now

    async def detect_status_change(
        self,
        transaction_id: str,
        old_status: Optional[str],
        new_status: Optional[str],
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Optional[ProcessResult]:
        logger.info(
            "status_change_detected",
            transaction_id=transaction_id,
            old_status=old_status,
            new_status=new_status,
        )

        try:
            transaction = await self.transactions.get_by_id(transaction_id)
            if transaction is None:
                logger.warning("trigger_record_missing", entity="transaction", entity_id=transaction_id)
                return None

            context = self._context(
                transaction_id,
                transaction,
                {
                    "old_status": old_status,
                    "new_status": new_status,
                    "trigger_type": "status_change",
                },
                user_id,
                event_id,
            )
            return await self.engine.process(context)

        except Exception:
            logger.exception("status_change_detection_error", transaction_id=transaction_id)
            return None

    async def detect_task_completion(
        self,
        task_id: str,
        transaction_id: str,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Optional[ProcessResult]:
        logger.info("task_completion_detected", task_id=task_id, transaction_id=transaction_id)

        try:
            task = await self.tasks.get_by_id(task_id)
            if task is None:
                logger.warning("trigger_record_missing", entity="task", entity_id=task_id)
                return None

            transaction = await self.transactions.get_by_id(transaction_id)
            if transaction is None:
                logger.warning("trigger_record_missing", entity="transaction", entity_id=transaction_id)
                return None

            context = self._context(
                transaction_id,
                transaction,
                {"task": task, "trigger_type": "task_completed"},
                user_id,
                event_id,
            )
            return await self.engine.process(context)

        except Exception:
            logger.exception(
                "task_completion_detection_error",
                task_id=task_id,
                transaction_id=transaction_id,
            )
            return None

    async def detect_document_upload(
        self,
        document_id: str,
        transaction_id: str,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Optional[ProcessResult]:
        logger.info("document_upload_detected", document_id=document_id, transaction_id=transaction_id)

        try:
            document = await self.documents.get_by_id(document_id)
            if document is None:
                logger.warning("trigger_record_missing", entity="document", entity_id=document_id)
                return None

            transaction = await self.transactions.get_by_id(transaction_id)
            if transaction is None:
                logger.warning("trigger_record_missing", entity="transaction", entity_id=transaction_id)
                return None

            context = self._context(
                transaction_id,
                transaction,
                {"document": document, "trigger_type": "document_uploaded"},
                user_id,
                event_id,
            )
            return await self.engine.process(context)

        except Exception:
            logger.exception(
                "document_upload_detection_error",
                document_id=document_id,
                transaction_id=transaction_id,
            )
            return None

    async def detect_date_based_triggers(self) -> int:
        """Sweep open transactions for date-offset rules. Returns transactions processed."""
        logger.info("date_sweep_started", statuses=self.sweep_statuses)

        def build(transaction: dict[str, Any]) -> Optional[dict[str, Any]]:
            if not transaction.get("created_at") and not transaction.get("closing_date"):
                return None
            return {
                "trigger_type": "date_offset",
                "contract_date": transaction.get("created_at"),
                "closing_date": transaction.get("closing_date"),
            }

        return await self._sweep("date", build)

    async def detect_time_based_triggers(self) -> int:
        """Sweep open transactions for time-based rules. Returns transactions processed."""
        logger.info("time_sweep_started", statuses=self.sweep_statuses)

        def build(transaction: dict[str, Any]) -> Optional[dict[str, Any]]:
            return {
                "current_time": self._clock().isoformat(),
                "trigger_type": "time_based",
            }

        return await self._sweep("time", build)

    async def _sweep(
        self,
        kind: str,
        build_trigger_data: Callable[[dict[str, Any]], Optional[dict[str, Any]]],
    ) -> int:
        try:
            transactions = await self.transactions.list_by_status(self.sweep_statuses)
        except Exception:
            logger.exception("sweep_fetch_error", kind=kind)
            return 0

        processed = 0
        errors = 0
        for transaction in transactions:
            transaction_id = str(transaction.get("id"))
            try:
                trigger_data = build_trigger_data(transaction)
                if trigger_data is None:
                    continue

                await self.engine.process(self._context(transaction_id, transaction, trigger_data))
                processed += 1

            except Exception:
                errors += 1
                logger.exception("sweep_transaction_error", kind=kind, transaction_id=transaction_id)

        logger.info(
            "sweep_completed",
            kind=kind,
            transactions=len(transactions),
            processed=processed,
            errors=errors,
        )
        return processed

    def _context(
        self,
        transaction_id: str,
        transaction: dict[str, Any],
        trigger_data: dict[str, Any],
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> TriggerContext:
        if event_id:
            trigger_data = {**trigger_data, "event_id": event_id}
        return TriggerContext(
            transaction_id=transaction_id,
            transaction=transaction,
            trigger_data=trigger_data,
            user_id=user_id,
            occurred_at=self._clock(),
        )
