"""Tests for application wiring and the HTTP hook server."""

import pytest
from aiohttp import test_utils

from conftest import fixed_clock

from workflow_automation.core.config import AutomationConfig, ServerConfig
from workflow_automation.core.stores import InMemoryWorkflowApplier
from workflow_automation.main import Application, AutomationServer


RULES_YAML = """
rules:
  - id: R1
    name: Kick off checklist
    trigger_event: status_change
    trigger_condition: {type: status_change, from_status: intake, to_status: active}
    template_id: T1
    created_at: 2024-01-01T00:00:00
  - id: R_missing_template
    name: Broken template
    trigger_event: task_completed
    trigger_condition: {type: task_completed}
    template_id: T_missing
    created_at: 2024-01-02T00:00:00
"""

TEMPLATES_YAML = """
templates:
  - id: T1
    name: Checklist
    tasks:
      - {title: Order title search}
"""

ENTITIES_YAML = """
transactions:
  - {id: txn-1, status: active, agent_id: agent-7, property_address: 12 Harbor View Dr, closing_date: "2024-04-15"}
tasks:
  - {id: task-1, title: Inspection, is_completed: true}
"""


@pytest.fixture
async def application(tmp_path, monkeypatch):
    """Application seeded from temp config files, server and retries idle."""
    monkeypatch.delenv("DATA_DIR", raising=False)

    (tmp_path / "rules").mkdir()
    (tmp_path / "rules" / "rules.yaml").write_text(RULES_YAML)
    (tmp_path / "templates").mkdir()
    (tmp_path / "templates" / "templates.yaml").write_text(TEMPLATES_YAML)
    (tmp_path / "entities.yaml").write_text(ENTITIES_YAML)

    config = AutomationConfig(
        server=ServerConfig(enabled=False),
        rules_directory=str(tmp_path / "rules"),
        templates_directory=str(tmp_path / "templates"),
        entities_file=str(tmp_path / "entities.yaml"),
        data_directory=str(tmp_path / "data"),
    )
    config.retry.base_delay_seconds = 60

    app = Application(config=config, clock=fixed_clock())
    await app.start()
    yield app
    await app.stop()


@pytest.fixture
async def client(application):
    server = AutomationServer(application)
    async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as test_client:
        yield test_client


class TestApplication:
    """Test service wiring."""

    @pytest.mark.asyncio
    async def test_start_loads_stores(self, application):
        assert isinstance(application.applier, InMemoryWorkflowApplier)
        assert [rule.id for rule in await application.rule_store.list_active_rules()] == ["R1", "R_missing_template"]
        assert await application.template_store.get_template("T1") is not None
        assert (await application.transactions.get_by_id("txn-1"))["agent_id"] == "agent-7"
        assert application.server is None

    @pytest.mark.asyncio
    async def test_restart_resumes_pending_retries(self, application, tmp_path):
        await application.detector.detect_task_completion("task-1", "txn-1")
        assert application.scheduler.pending_count() == 1

        await application.stop()

        restarted = Application(config=application.config, clock=fixed_clock())
        await restarted.start()
        try:
            assert restarted.scheduler.pending_count() == 1
            jobs = await restarted.state_manager.list_retry_jobs(rule_id="R_missing_template")
            assert len(jobs) == 1
        finally:
            await restarted.stop()


class TestAutomationServer:
    """Test HTTP hooks."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status == 200
        assert (await response.json())["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_status_change_hook(self, client, application):
        response = await client.post("/events/status-change", json={
            "transaction_id": "txn-1",
            "old_status": "intake",
            "new_status": "active",
            "user_id": "user-1",
        })

        assert response.status == 200
        body = await response.json()
        assert body["processed"]
        assert body["matched"] == ["R1"]

        executions = await application.state_manager.list_executions(rule_id="R1")
        response = await client.get(f"/executions/{executions[0].id}")
        body = await response.json()
        assert body["status"] == "completed"
        assert [entry["action"] for entry in body["audit"]] == ["workflow_applied"]

    @pytest.mark.asyncio
    async def test_hook_for_unknown_transaction(self, client):
        response = await client.post("/events/status-change", json={
            "transaction_id": "txn-404",
            "new_status": "active",
        })

        assert response.status == 200
        assert (await response.json()) == {"processed": False}

    @pytest.mark.asyncio
    async def test_hook_validates_body(self, client):
        response = await client.post("/events/task-completed", json={"task_id": "task-1"})
        assert response.status == 400

        response = await client.post("/events/document-uploaded", data="not json")
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_sweeps(self, client):
        response = await client.post("/sweeps/date")
        assert (await response.json()) == {"processed": 1}

        response = await client.post("/sweeps/time")
        assert (await response.json()) == {"processed": 1}

    @pytest.mark.asyncio
    async def test_list_rules(self, client):
        response = await client.get("/rules")
        rules = (await response.json())["rules"]

        assert [rule["id"] for rule in rules] == ["R1", "R_missing_template"]

    @pytest.mark.asyncio
    async def test_execute_rule(self, client, application):
        response = await client.post("/rules/R1/execute", json={"transaction_id": "txn-1", "user_id": "user-1"})

        assert response.status == 200
        body = await response.json()
        assert body["status"] == "completed"
        assert application.applier.applied[0]["applied_by"] == "user-1"

    @pytest.mark.asyncio
    async def test_execute_unknown_rule_or_transaction(self, client):
        response = await client.post("/rules/R404/execute", json={"transaction_id": "txn-1"})
        assert response.status == 404

        response = await client.post("/rules/R1/execute", json={"transaction_id": "txn-404"})
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_cancel_retries(self, client, application):
        await application.detector.detect_task_completion("task-1", "txn-1")
        execution = (await application.state_manager.list_executions(rule_id="R_missing_template"))[0]

        response = await client.post("/rules/R_missing_template/cancel-retries")

        assert (await response.json())["cancelled"] == [execution.id]
        response = await client.get(f"/executions/{execution.id}")
        assert (await response.json())["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unknown_execution(self, client):
        response = await client.get("/executions/exec_404")
        assert response.status == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
