"""Shared fixtures: temp state databases, fixed clocks and a wired engine."""

import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from workflow_automation.core.config import AutomationConfig, RetryConfig
from workflow_automation.core.models import TriggerContext, WorkflowTemplate
from workflow_automation.core.sinks import AuditSink, NotificationSink
from workflow_automation.core.state import StateManager
from workflow_automation.core.stores import (
    InMemoryEntityStore,
    InMemoryRuleStore,
    InMemoryTemplateStore,
    InMemoryWorkflowApplier,
)
from workflow_automation.orchestrator.coordinator import ExecutionCoordinator
from workflow_automation.orchestrator.scheduler import RetryScheduler
from workflow_automation.rules.engine import RuleEngine
from workflow_automation.rules.evaluator import ConditionEvaluator
from workflow_automation.triggers.detector import TriggerDetector


# Monday, 09:00 local time
NOW = datetime(2024, 3, 4, 9, 0, 0)


def fixed_clock(value: datetime = NOW) -> Callable[[], datetime]:
    return lambda: value


def make_rule(
    rule_id: str = "R1",
    condition: Optional[dict[str, Any]] = None,
    template_id: str = "T1",
    is_active: bool = True,
    **extra: Any,
) -> dict[str, Any]:
    """A rule store row as the application would return it."""
    condition = condition or {"type": "status_change", "from_status": "intake", "to_status": "active"}
    return {
        "id": rule_id,
        "name": extra.pop("name", f"Rule {rule_id}"),
        "trigger_event": condition["type"],
        "trigger_condition": condition,
        "template_id": template_id,
        "is_active": is_active,
        "created_by": "admin",
        **extra,
    }


def make_transaction(transaction_id: str = "txn-1", **fields: Any) -> dict[str, Any]:
    row = {
        "id": transaction_id,
        "property_address": "12 Harbor View Dr",
        "status": "active",
        "agent_id": "agent-7",
        "created_at": "2024-02-01T10:00:00",
        "closing_date": "2024-04-15",
    }
    row.update(fields)
    return row


def status_change_context(
    transaction: dict[str, Any],
    old_status: str = "intake",
    new_status: str = "active",
    user_id: Optional[str] = "user-1",
) -> TriggerContext:
    return TriggerContext(
        transaction_id=transaction["id"],
        transaction=transaction,
        trigger_data={
            "old_status": old_status,
            "new_status": new_status,
            "trigger_type": "status_change",
        },
        user_id=user_id,
        occurred_at=NOW,
    )


@dataclass
class Harness:
    """All engine services wired against in-memory stores and a temp database."""
    config: AutomationConfig
    state: StateManager
    rules: InMemoryRuleStore
    templates: InMemoryTemplateStore
    transactions: InMemoryEntityStore
    tasks: InMemoryEntityStore
    documents: InMemoryEntityStore
    applier: Any
    scheduler: RetryScheduler
    coordinator: ExecutionCoordinator
    evaluator: ConditionEvaluator
    engine: RuleEngine
    detector: TriggerDetector

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.state.close()


async def build_harness(
    db_path: str,
    base_delay_seconds: float = 0.0,
    applier: Any = None,
    notifications: Any = None,
    clock: Callable[[], datetime] = fixed_clock(),
) -> Harness:
    config = AutomationConfig(retry=RetryConfig(max_retries=3, base_delay_seconds=base_delay_seconds))

    state = StateManager(db_path)
    await state.initialize()

    rules = InMemoryRuleStore()
    templates = InMemoryTemplateStore([
        WorkflowTemplate(id="T1", name="Active checklist", tasks=[{"title": "Order title search"}]),
    ])
    transactions = InMemoryEntityStore()
    tasks = InMemoryEntityStore()
    documents = InMemoryEntityStore()
    applier = applier or InMemoryWorkflowApplier()

    scheduler = RetryScheduler(state)
    coordinator = ExecutionCoordinator(
        config=config,
        state_manager=state,
        rule_store=rules,
        template_store=templates,
        transaction_store=transactions,
        workflow_applier=applier,
        scheduler=scheduler,
        audit=AuditSink(state),
        notifications=notifications or NotificationSink(state),
    )
    evaluator = ConditionEvaluator(clock=clock)
    engine = RuleEngine(rules, coordinator, evaluator)
    detector = TriggerDetector(engine, transactions, tasks, documents, clock=clock)

    return Harness(
        config=config,
        state=state,
        rules=rules,
        templates=templates,
        transactions=transactions,
        tasks=tasks,
        documents=documents,
        applier=applier,
        scheduler=scheduler,
        coordinator=coordinator,
        evaluator=evaluator,
        engine=engine,
        detector=detector,
    )


@pytest.fixture
async def state_manager(tmp_path):
    """Create a temporary state manager."""
    manager = StateManager(str(tmp_path / "state.db"))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def harness(tmp_path):
    """Engine with zero retry delay."""
    h = await build_harness(str(tmp_path / "automation.db"))
    yield h
    await h.close()
