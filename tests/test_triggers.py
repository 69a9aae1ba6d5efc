"""Tests for trigger detection and sweeps."""

from datetime import datetime

import pytest

from conftest import build_harness, fixed_clock, make_rule, make_transaction

from workflow_automation.core.errors import TransientError
from workflow_automation.core.models import ExecutionStatus


class BrokenRuleStore:
    async def list_active_rules(self):
        raise TransientError("rule store unavailable")

    async def get_rule(self, rule_id):
        return None


class TestEventDetectors:
    """Test the single-entity detectors."""

    @pytest.mark.asyncio
    async def test_status_change(self, harness):
        harness.transactions.add(make_transaction())
        harness.rules.add(make_rule("R1"))

        result = await harness.detector.detect_status_change("txn-1", "intake", "active", user_id="user-1")

        assert [o.rule_id for o in result.matched] == ["R1"]
        execution = (await harness.state.list_executions(rule_id="R1"))[0]
        assert execution.status == ExecutionStatus.COMPLETED
        trigger_data = execution.metadata["trigger_context"]["trigger_data"]
        assert trigger_data == {"old_status": "intake", "new_status": "active", "trigger_type": "status_change"}
        assert execution.metadata["trigger_context"]["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_status_change_repeated_with_event_ids(self, harness):
        """A transition that happens twice in one day runs twice when events carry ids."""
        harness.transactions.add(make_transaction())
        harness.rules.add(make_rule("R1"))

        await harness.detector.detect_status_change("txn-1", "intake", "active", event_id="evt-1")
        await harness.detector.detect_status_change("txn-1", "intake", "active", event_id="evt-2")
        redelivered = await harness.detector.detect_status_change("txn-1", "intake", "active", event_id="evt-1")

        assert redelivered.matched[0].skipped
        executions = await harness.state.list_executions(rule_id="R1")
        assert len(executions) == 2
        assert executions[0].metadata["trigger_context"]["trigger_data"]["event_id"] in ("evt-1", "evt-2")

    @pytest.mark.asyncio
    async def test_status_change_missing_transaction(self, harness):
        """Missing data never triggers automation."""
        harness.rules.add(make_rule("R1"))

        result = await harness.detector.detect_status_change("txn-404", "intake", "active")

        assert result is None
        assert await harness.state.list_executions() == []

    @pytest.mark.asyncio
    async def test_task_completion(self, harness):
        harness.transactions.add(make_transaction())
        harness.tasks.add({"id": "task-1", "title": "Final walkthrough", "priority": "high", "is_completed": True})
        harness.rules.add(make_rule("R_task", {"type": "task_completed", "task_title_contains": "walkthrough"}))
        harness.rules.add(make_rule("R_status"))

        result = await harness.detector.detect_task_completion("task-1", "txn-1")

        assert [o.rule_id for o in result.outcomes] == ["R_task"]
        assert result.matched[0].status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_task_completion_missing_records(self, harness):
        harness.transactions.add(make_transaction())
        harness.tasks.add({"id": "task-1", "title": "Walkthrough", "is_completed": True})
        harness.rules.add(make_rule("R_task", {"type": "task_completed"}))

        assert await harness.detector.detect_task_completion("task-404", "txn-1") is None
        assert await harness.detector.detect_task_completion("task-1", "txn-404") is None
        assert await harness.state.list_executions() == []

    @pytest.mark.asyncio
    async def test_document_upload(self, harness):
        harness.transactions.add(make_transaction())
        harness.documents.add({"id": "doc-1", "file_name": "home_inspection_report.pdf"})
        harness.rules.add(make_rule("R_doc", {"type": "document_uploaded", "document_type": "inspection"}))
        harness.rules.add(make_rule("R_appraisal", {"type": "document_uploaded", "document_type": "appraisal"}))

        result = await harness.detector.detect_document_upload("doc-1", "txn-1", user_id="user-1")

        assert [o.rule_id for o in result.matched] == ["R_doc"]
        assert harness.applier.applied[0]["applied_by"] == "user-1"

    @pytest.mark.asyncio
    async def test_document_upload_missing_document(self, harness):
        harness.transactions.add(make_transaction())
        harness.rules.add(make_rule("R_doc", {"type": "document_uploaded"}))

        assert await harness.detector.detect_document_upload("doc-404", "txn-1") is None
        assert await harness.state.list_executions() == []

    @pytest.mark.asyncio
    async def test_engine_errors_are_contained(self, harness):
        """A rule store outage is logged, never raised to the event handler."""
        harness.transactions.add(make_transaction())
        harness.engine.rules = BrokenRuleStore()

        result = await harness.detector.detect_status_change("txn-1", "intake", "active")

        assert result is None


class TestSweeps:
    """Test the date and time sweeps."""

    @pytest.mark.asyncio
    async def test_date_sweep(self, harness):
        harness.transactions.add(make_transaction("txn-1", status="active", closing_date="2024-03-11"))
        harness.transactions.add(make_transaction("txn-2", status="intake", closing_date="2024-05-01"))
        harness.transactions.add(make_transaction("txn-3", status="closed", closing_date="2024-03-11"))
        harness.transactions.add(make_transaction("txn-4", status="active", created_at=None, closing_date=None))
        harness.rules.add(make_rule("R_closing", {"type": "closing_date_offset", "offset_days": 7, "offset_type": "before"}))

        processed = await harness.detector.detect_date_based_triggers()

        assert processed == 2
        executions = await harness.state.list_executions(rule_id="R_closing")
        assert [e.transaction_id for e in executions] == ["txn-1"]

    @pytest.mark.asyncio
    async def test_date_sweep_runs_once_per_day(self, harness):
        harness.transactions.add(make_transaction("txn-1", closing_date="2024-03-11"))
        harness.rules.add(make_rule("R_closing", {"type": "closing_date_offset", "offset_days": 7, "offset_type": "before"}))

        await harness.detector.detect_date_based_triggers()
        await harness.detector.detect_date_based_triggers()

        assert len(await harness.state.list_executions(rule_id="R_closing")) == 1
        assert len(harness.applier.applied) == 1

    @pytest.mark.asyncio
    async def test_date_sweep_ignores_other_rule_types(self, harness):
        harness.transactions.add(make_transaction("txn-1"))
        harness.rules.add(make_rule("R_time", {"type": "time_based"}))

        await harness.detector.detect_date_based_triggers()

        assert await harness.state.list_executions() == []

    @pytest.mark.asyncio
    async def test_time_sweep(self, harness):
        harness.transactions.add(make_transaction("txn-1", status="active"))
        harness.transactions.add(make_transaction("txn-2", status="intake"))
        harness.rules.add(make_rule("R_monday", {"type": "time_based", "days_of_week": [1], "time_of_day": "09:00"}))
        harness.rules.add(make_rule("R_friday", {"type": "time_based", "days_of_week": [5]}))

        processed = await harness.detector.detect_time_based_triggers()

        assert processed == 2
        executions = await harness.state.list_executions()
        assert sorted(e.transaction_id for e in executions) == ["txn-1", "txn-2"]
        assert {e.rule_id for e in executions} == {"R_monday"}
        trigger_data = executions[0].metadata["trigger_context"]["trigger_data"]
        assert trigger_data["trigger_type"] == "time_based"
        assert trigger_data["current_time"].startswith("2024-03-04T09:00")

    @pytest.mark.asyncio
    async def test_time_sweep_deduplicates_within_day(self, tmp_path):
        """Sweeps a minute apart on the same day do not re-apply a template."""
        times = iter([datetime(2024, 3, 4, 9, 0, 0), datetime(2024, 3, 4, 9, 0, 30)])
        current = {"now": next(times)}
        harness = await build_harness(str(tmp_path / "automation.db"), clock=lambda: current["now"])
        try:
            harness.transactions.add(make_transaction("txn-1"))
            harness.rules.add(make_rule("R_nine", {"type": "time_based", "time_of_day": "09:00"}))

            await harness.detector.detect_time_based_triggers()
            current["now"] = next(times)
            await harness.detector.detect_time_based_triggers()

            assert len(await harness.state.list_executions(rule_id="R_nine")) == 1
        finally:
            await harness.close()

    @pytest.mark.asyncio
    async def test_sweep_isolates_transactions(self, tmp_path):
        """One transaction failing does not stop the sweep."""
        harness = await build_harness(str(tmp_path / "automation.db"), clock=fixed_clock())
        try:
            harness.transactions.add(make_transaction("txn-1"))
            harness.transactions.add(make_transaction("txn-2"))
            harness.rules.add(make_rule("R_time", {"type": "time_based"}))

            original = harness.engine.process
            seen = []

            async def process(context):
                seen.append(context.transaction_id)
                if context.transaction_id == "txn-1":
                    raise TransientError("rule store unavailable")
                return await original(context)

            harness.engine.process = process

            processed = await harness.detector.detect_time_based_triggers()

            assert seen == ["txn-1", "txn-2"]
            assert processed == 1
            executions = await harness.state.list_executions()
            assert [e.transaction_id for e in executions] == ["txn-2"]
        finally:
            await harness.close()

    @pytest.mark.asyncio
    async def test_sweep_statuses_configurable(self, harness):
        harness.transactions.add(make_transaction("txn-1", status="pending"))
        harness.rules.add(make_rule("R_time", {"type": "time_based"}))
        harness.detector.sweep_statuses = ["pending"]

        assert await harness.detector.detect_time_based_triggers() == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
