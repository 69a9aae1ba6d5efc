"""
Interfaces to the transaction application's stores.

The engine reads rules, templates and domain entities and asks the
application to apply templates. These live outside the engine; the
in-memory implementations back local mode and tests.
"""

import uuid
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Protocol

from .models import AutomationRule, WorkflowTemplate


class RuleStore(Protocol):
    """Source of automation rules."""

    async def list_active_rules(self) -> list[Any]:
        """Rows with is_active = true, as mappings or AutomationRule instances."""
        ...

    async def get_rule(self, rule_id: str) -> Optional[Any]:
        ...


class TemplateStore(Protocol):
    """Source of workflow templates."""

    async def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        ...


class EntityStore(Protocol):
    """Transactions, tasks or documents."""

    async def get_by_id(self, entity_id: str) -> Optional[dict[str, Any]]:
        ...

    async def list_by_status(self, statuses: list[str]) -> list[dict[str, Any]]:
        ...


class WorkflowApplier(Protocol):
    """The application's "apply workflow template" operation."""

    async def apply_template(
        self,
        transaction_id: str,
        template_id: str,
        applied_by: Optional[str],
    ) -> str:
        """Returns the workflow instance id. Raises on failure."""
        ...


class InMemoryRuleStore:
    """Rule store holding raw rows in insertion order."""

    def __init__(self, rules: Iterable[Any] = ()):
        self._rules: dict[str, Any] = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: Any) -> None:
        """Add or replace a rule row (mapping or AutomationRule)."""
        rule_id = rule.id if isinstance(rule, AutomationRule) else rule["id"]
        self._rules[rule_id] = rule

    def set_active(self, rule_id: str, is_active: bool) -> None:
        rule = self._rules[rule_id]
        if isinstance(rule, AutomationRule):
            self._rules[rule_id] = rule.model_copy(update={"is_active": is_active})
        else:
            self._rules[rule_id] = {**rule, "is_active": is_active}

    async def list_active_rules(self) -> list[Any]:
        return [rule for rule in self._rules.values() if self._is_active(rule)]

    async def get_rule(self, rule_id: str) -> Optional[Any]:
        return self._rules.get(rule_id)

    def _is_active(self, rule: Any) -> bool:
        if isinstance(rule, AutomationRule):
            return rule.is_active
        return bool(rule.get("is_active", False))


class InMemoryTemplateStore:
    """Template store keyed by template id."""

    def __init__(self, templates: Iterable[WorkflowTemplate] = ()):
        self._templates = {template.id: template for template in templates}

    def add(self, template: WorkflowTemplate) -> None:
        self._templates[template.id] = template

    async def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        return self._templates.get(template_id)


class InMemoryEntityStore:
    """Entity store for transactions, tasks or documents."""

    def __init__(self, rows: Iterable[Mapping[str, Any]] = ()):
        self._rows: dict[str, dict[str, Any]] = {}
        for row in rows:
            self.add(row)

    def add(self, row: Mapping[str, Any]) -> None:
        self._rows[str(row["id"])] = dict(row)

    def remove(self, entity_id: str) -> None:
        self._rows.pop(entity_id, None)

    async def get_by_id(self, entity_id: str) -> Optional[dict[str, Any]]:
        row = self._rows.get(entity_id)
        return dict(row) if row is not None else None

    async def list_by_status(self, statuses: list[str]) -> list[dict[str, Any]]:
        return [dict(row) for row in self._rows.values() if row.get("status") in statuses]


class InMemoryWorkflowApplier:
    """Records template applications locally instead of calling the application."""

    def __init__(self):
        self.applied: list[dict[str, Any]] = []

    async def apply_template(
        self,
        transaction_id: str,
        template_id: str,
        applied_by: Optional[str],
    ) -> str:
        instance_id = f"wi_{uuid.uuid4().hex[:12]}"
        self.applied.append({
            "instance_id": instance_id,
            "transaction_id": transaction_id,
            "template_id": template_id,
            "applied_by": applied_by,
        })
        return instance_id
