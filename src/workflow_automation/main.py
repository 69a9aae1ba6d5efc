"""
Main entry point for the workflow automation engine.

Wires the services, starts the hook/health server, resumes persisted
retries and (optionally) runs the date/time sweep poller.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from .core.config import AutomationConfig, ConfigLoader
from .core.errors import AutomationError, NotFoundError
from .core.models import TriggerContext
from .core.sinks import AuditSink, NotificationSink
from .core.state import StateManager
from .core.stores import (
    InMemoryEntityStore,
    InMemoryRuleStore,
    InMemoryTemplateStore,
    InMemoryWorkflowApplier,
)
from .core.workflow_api import WorkflowApiClient
from .orchestrator.coordinator import ExecutionCoordinator
from .orchestrator.scheduler import RetryScheduler
from .rules.engine import RuleEngine
from .rules.evaluator import ConditionEvaluator
from .triggers.detector import TriggerDetector


logger = structlog.get_logger()


def configure_logging() -> None:
    """Configure structured logging (console, or JSON when LOG_FORMAT=json)."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=lambda obj: json.dumps(obj, default=str))


class AutomationServer:
    """HTTP hooks for domain events, sweeps and operations, plus health."""

    def __init__(self, app: "Application", host: str = "0.0.0.0", port: int = 8080):
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        web_app = web.Application()
        web_app.router.add_get("/health", self._health_handler)
        web_app.router.add_post("/events/status-change", self._status_change_handler)
        web_app.router.add_post("/events/task-completed", self._task_completed_handler)
        web_app.router.add_post("/events/document-uploaded", self._document_uploaded_handler)
        web_app.router.add_post("/sweeps/date", self._date_sweep_handler)
        web_app.router.add_post("/sweeps/time", self._time_sweep_handler)
        web_app.router.add_get("/rules", self._rules_handler)
        web_app.router.add_post("/rules/{rule_id}/execute", self._execute_rule_handler)
        web_app.router.add_post("/rules/{rule_id}/cancel-retries", self._cancel_retries_handler)
        web_app.router.add_get("/executions/{execution_id}", self._execution_handler)
        return web_app

    async def start(self) -> None:
        """Start the server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info("automation_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("automation_server_stopped")

    # ==================== Handlers ====================

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Liveness plus pending retry count."""
        return _json_response({
            "status": "healthy",
            "pending_retries": self.app.scheduler.pending_count(),
        })

    async def _status_change_handler(self, request: web.Request) -> web.Response:
        body = await self._read_body(request, "transaction_id", "new_status")
        result = await self.app.detector.detect_status_change(
            str(body["transaction_id"]),
            body.get("old_status"),
            body["new_status"],
            user_id=body.get("user_id"),
            event_id=body.get("event_id"),
        )
        return _json_response(self._summarize(result))

    async def _task_completed_handler(self, request: web.Request) -> web.Response:
        body = await self._read_body(request, "task_id", "transaction_id")
        result = await self.app.detector.detect_task_completion(
            str(body["task_id"]),
            str(body["transaction_id"]),
            user_id=body.get("user_id"),
            event_id=body.get("event_id"),
        )
        return _json_response(self._summarize(result))

    async def _document_uploaded_handler(self, request: web.Request) -> web.Response:
        body = await self._read_body(request, "document_id", "transaction_id")
        result = await self.app.detector.detect_document_upload(
            str(body["document_id"]),
            str(body["transaction_id"]),
            user_id=body.get("user_id"),
            event_id=body.get("event_id"),
        )
        return _json_response(self._summarize(result))

    async def _date_sweep_handler(self, request: web.Request) -> web.Response:
        processed = await self.app.detector.detect_date_based_triggers()
        return _json_response({"processed": processed})

    async def _time_sweep_handler(self, request: web.Request) -> web.Response:
        processed = await self.app.detector.detect_time_based_triggers()
        return _json_response({"processed": processed})

    async def _rules_handler(self, request: web.Request) -> web.Response:
        records = await self.app.rule_store.list_active_rules()
        return _json_response({"rules": self.app.engine.describe_rules(records)})

    async def _execute_rule_handler(self, request: web.Request) -> web.Response:
        """Run one rule directly against a transaction."""
        rule_id = request.match_info["rule_id"]
        body = await self._read_body(request, "transaction_id")
        transaction_id = str(body["transaction_id"])

        transaction = await self.app.transactions.get_by_id(transaction_id)
        if transaction is None:
            return _json_response({"error": f"Transaction not found: {transaction_id}"}, status=404)

        context = TriggerContext(
            transaction_id=transaction_id,
            transaction=transaction,
            trigger_data=dict(body.get("trigger_data") or {}),
            user_id=body.get("user_id"),
        )

        try:
            outcome = await self.app.engine.run_rule(rule_id, context)
        except NotFoundError as e:
            return _json_response({"error": e.message}, status=404)
        except AutomationError as e:
            return _json_response({"error": e.to_dict()}, status=422)

        return _json_response({
            "rule_id": outcome.rule_id,
            "execution_id": outcome.execution_id,
            "status": outcome.status.value if outcome.status else None,
            "skipped": outcome.skipped,
            "error": outcome.error,
        })

    async def _cancel_retries_handler(self, request: web.Request) -> web.Response:
        rule_id = request.match_info["rule_id"]
        cancelled = await self.app.coordinator.cancel_retries_for_rule(rule_id)
        return _json_response({"rule_id": rule_id, "cancelled": cancelled})

    async def _execution_handler(self, request: web.Request) -> web.Response:
        execution_id = request.match_info["execution_id"]
        execution = await self.app.state_manager.get_execution(execution_id)
        if execution is None:
            return _json_response({"error": f"Execution not found: {execution_id}"}, status=404)

        audit = await self.app.state_manager.list_audit(execution_id=execution_id)
        return _json_response({
            "id": execution.id,
            "rule_id": execution.rule_id,
            "transaction_id": execution.transaction_id,
            "status": execution.status.value,
            "retry_count": execution.retry_count,
            "error_message": execution.error_message,
            "metadata": execution.metadata,
            "created_at": execution.created_at,
            "completed_at": execution.completed_at,
            "audit": [
                {"action": entry.action, "status": entry.status, "details": entry.details}
                for entry in audit
            ],
        })

    # ==================== Helpers ====================

    async def _read_body(self, request: web.Request, *required: str) -> dict[str, Any]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(text="Request body must be JSON")

        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="Request body must be a JSON object")

        missing = [name for name in required if body.get(name) in (None, "")]
        if missing:
            raise web.HTTPBadRequest(text=f"Missing fields: {', '.join(missing)}")
        return body

    def _summarize(self, result: Any) -> dict[str, Any]:
        if result is None:
            return {"processed": False}
        return {
            "processed": True,
            "transaction_id": result.transaction_id,
            "matched": [outcome.rule_id for outcome in result.matched],
            "failures": [
                {"rule_id": outcome.rule_id, "error": outcome.error}
                for outcome in result.failures
            ],
            "quarantined": result.quarantined,
        }


class Application:
    """Main application container. Builds one instance of each service."""

    def __init__(
        self,
        config: Optional[AutomationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self._clock = clock

        self.state_manager: Optional[StateManager] = None
        self.rule_store: Optional[InMemoryRuleStore] = None
        self.template_store: Optional[InMemoryTemplateStore] = None
        self.transactions: Optional[InMemoryEntityStore] = None
        self.tasks: Optional[InMemoryEntityStore] = None
        self.documents: Optional[InMemoryEntityStore] = None
        self.applier: Any = None
        self.scheduler: Optional[RetryScheduler] = None
        self.coordinator: Optional[ExecutionCoordinator] = None
        self.engine: Optional[RuleEngine] = None
        self.detector: Optional[TriggerDetector] = None
        self.server: Optional[AutomationServer] = None

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting")

        if self.config is None:
            self.config = self._load_config()
        config = self.config

        data_dir = os.getenv("DATA_DIR", config.data_directory)
        self.state_manager = StateManager(str(Path(data_dir) / "automation.db"))
        await self.state_manager.initialize()

        self._load_stores()

        if config.workflow_api.base_url:
            self.applier = WorkflowApiClient(config.workflow_api)
        else:
            logger.info("workflow_api_disabled", reason="no base_url configured")
            self.applier = InMemoryWorkflowApplier()

        self.scheduler = RetryScheduler(self.state_manager)
        self.coordinator = ExecutionCoordinator(
            config=config,
            state_manager=self.state_manager,
            rule_store=self.rule_store,
            template_store=self.template_store,
            transaction_store=self.transactions,
            workflow_applier=self.applier,
            scheduler=self.scheduler,
            audit=AuditSink(self.state_manager),
            notifications=NotificationSink(self.state_manager),
        )
        self.engine = RuleEngine(
            self.rule_store,
            self.coordinator,
            ConditionEvaluator(
                clock=self._clock,
                time_tolerance_seconds=config.conditions.time_tolerance_seconds,
            ),
        )
        self.detector = TriggerDetector(
            self.engine,
            transactions=self.transactions,
            tasks=self.tasks,
            documents=self.documents,
            sweep_statuses=config.sweep.statuses,
            clock=self._clock,
        )

        resumed = await self.scheduler.resume()

        if config.server.enabled:
            port = int(os.getenv("SERVER_PORT", config.server.port))
            self.server = AutomationServer(self, host=config.server.host, port=port)
            await self.server.start()

        if config.sweep.interval_seconds:
            self._sweep_task = asyncio.create_task(self._sweep_loop(config.sweep.interval_seconds))

        logger.info(
            "application_started",
            config_hash=config.config_hash(),
            retries_resumed=resumed,
        )

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        if self.server:
            await self.server.stop()

        if self.scheduler:
            await self.scheduler.shutdown()

        if isinstance(self.applier, WorkflowApiClient):
            await self.applier.close()

        if self.state_manager:
            await self.state_manager.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    def _load_config(self) -> AutomationConfig:
        config_path = os.getenv("CONFIG_PATH", "./config/automation.yaml")
        if not os.path.exists(config_path):
            logger.info("config_defaults_used", config_path=config_path)
            return AutomationConfig()

        loader = ConfigLoader(os.path.dirname(config_path) or ".")
        return loader.load_config(config_path)

    def _load_stores(self) -> None:
        """Seed the in-memory stores from the configured rule, template and entity files."""
        loader = ConfigLoader()
        config = self.config

        rules = loader.load_rules(config.rules_directory)
        templates = loader.load_templates(config.templates_directory)
        self.rule_store = InMemoryRuleStore(rules)
        self.template_store = InMemoryTemplateStore(templates)

        entities: dict[str, list[dict[str, Any]]] = {}
        if config.entities_file:
            entities = loader.load_entities(config.entities_file)

        self.transactions = InMemoryEntityStore(entities.get("transactions", []))
        self.tasks = InMemoryEntityStore(entities.get("tasks", []))
        self.documents = InMemoryEntityStore(entities.get("documents", []))

        logger.info(
            "stores_loaded",
            rules=len(rules),
            templates=len(templates),
            transactions=len(entities.get("transactions", [])),
        )

    async def _sweep_loop(self, interval_seconds: int) -> None:
        """Run date and time sweeps on a fixed interval."""
        while True:
            await self.detector.detect_date_based_triggers()
            await self.detector.detect_time_based_triggers()
            await asyncio.sleep(interval_seconds)


async def main() -> None:
    """Main entry point."""
    load_dotenv()
    configure_logging()

    app = Application()

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
