"""Persistent engine state using SQLite: executions, audit log, notifications, retry jobs."""

import asyncio
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .models import (
    AuditEntry,
    ExecutionStatus,
    Notification,
    RetryJob,
    WorkflowExecution,
)


# Columns update_execution may touch
_EXECUTION_UPDATABLE = frozenset({
    "status",
    "retry_count",
    "error_message",
    "metadata",
    "completed_at",
})


class StateManager:
    """Manages persistent engine records in SQLite for restart resilience."""

    def __init__(self, db_path: str = "./data/automation.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            -- One row per rule-match occurrence; retries reuse the row
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                status TEXT NOT NULL,
                retry_count INTEGER DEFAULT 0,
                error_message TEXT,
                metadata_json TEXT,
                dedup_key TEXT,
                created_at REAL NOT NULL,
                completed_at REAL
            );

            -- Automation audit trail
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                details_json TEXT,
                error_message TEXT,
                created_at REAL NOT NULL
            );

            -- In-app notifications
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                message TEXT NOT NULL,
                is_read INTEGER DEFAULT 0,
                created_at REAL NOT NULL
            );

            -- Pending retries, re-armed on restart
            CREATE TABLE IF NOT EXISTS retry_jobs (
                job_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                run_at REAL NOT NULL,
                attempt INTEGER NOT NULL,
                created_at REAL NOT NULL
            );

            -- At most one live (non-failed) execution per logical occurrence
            CREATE UNIQUE INDEX IF NOT EXISTS idx_executions_dedup
                ON workflow_executions(dedup_key)
                WHERE dedup_key IS NOT NULL AND status != 'failed';
            CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions(status);
            CREATE INDEX IF NOT EXISTS idx_executions_rule ON workflow_executions(rule_id, transaction_id);
            CREATE INDEX IF NOT EXISTS idx_audit_execution ON audit_logs(execution_id);
            CREATE INDEX IF NOT EXISTS idx_retry_jobs_rule ON retry_jobs(rule_id);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Executions ====================

    async def insert_execution(self, execution: WorkflowExecution) -> bool:
        """
        Insert a new execution row.

        Returns False (and writes nothing) when a live execution with the
        same dedup key already exists.
        """
        async with self._lock:
            try:
                await self._db.execute("""
                    INSERT INTO workflow_executions
                    (id, rule_id, transaction_id, status, retry_count, error_message,
                     metadata_json, dedup_key, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    execution.id,
                    execution.rule_id,
                    execution.transaction_id,
                    execution.status.value,
                    execution.retry_count,
                    execution.error_message,
                    json.dumps(execution.metadata, default=str),
                    execution.dedup_key,
                    execution.created_at,
                    execution.completed_at,
                ))
            except sqlite3.IntegrityError:
                await self._db.rollback()
                return False

            await self._db.commit()
            return True

    async def update_execution(self, execution_id: str, **fields: Any) -> None:
        """Update selected execution columns."""
        unknown = set(fields) - _EXECUTION_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update execution fields: {sorted(unknown)}")
        if not fields:
            return

        columns = []
        values: list[Any] = []
        for name, value in fields.items():
            if name == "status" and isinstance(value, ExecutionStatus):
                value = value.value
            if name == "metadata":
                name = "metadata_json"
                value = json.dumps(value, default=str)
            columns.append(f"{name} = ?")
            values.append(value)
        values.append(execution_id)

        async with self._lock:
            await self._db.execute(
                f"UPDATE workflow_executions SET {', '.join(columns)} WHERE id = ?",
                values,
            )
            await self._db.commit()

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get an execution by id."""
        cursor = await self._db.execute(
            "SELECT * FROM workflow_executions WHERE id = ?",
            (execution_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        rule_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        """List executions, oldest first, with optional filters."""
        query = "SELECT * FROM workflow_executions WHERE 1=1"
        params: list[Any] = []

        if rule_id:
            query += " AND rule_id = ?"
            params.append(rule_id)
        if transaction_id:
            query += " AND transaction_id = ?"
            params.append(transaction_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY created_at ASC"

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_execution(row) for row in rows]

    def _row_to_execution(self, row: aiosqlite.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            rule_id=row["rule_id"],
            transaction_id=row["transaction_id"],
            status=ExecutionStatus(row["status"]),
            retry_count=row["retry_count"] or 0,
            error_message=row["error_message"],
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            dedup_key=row["dedup_key"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    # ==================== Audit Log ====================

    async def append_audit(
        self,
        execution_id: str,
        action: str,
        status: str,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> AuditEntry:
        """Append an audit entry."""
        async with self._lock:
            now = time.time()
            details = details or {}
            cursor = await self._db.execute("""
                INSERT INTO audit_logs
                (execution_id, action, status, details_json, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                execution_id,
                action,
                status,
                json.dumps(details, default=str),
                error_message,
                now,
            ))
            await self._db.commit()

            return AuditEntry(
                id=cursor.lastrowid,
                execution_id=execution_id,
                action=action,
                status=status,
                details=details,
                error_message=error_message,
                created_at=now,
            )

    async def list_audit(
        self,
        execution_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> list[AuditEntry]:
        """List audit entries in insertion order."""
        query = "SELECT * FROM audit_logs WHERE 1=1"
        params: list[Any] = []

        if execution_id:
            query += " AND execution_id = ?"
            params.append(execution_id)
        if action:
            query += " AND action = ?"
            params.append(action)

        query += " ORDER BY id ASC"

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            AuditEntry(
                id=row["id"],
                execution_id=row["execution_id"],
                action=row["action"],
                status=row["status"],
                details=json.loads(row["details_json"]) if row["details_json"] else {},
                error_message=row["error_message"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ==================== Notifications ====================

    async def insert_notification(
        self,
        user_id: str,
        transaction_id: str,
        message: str,
        is_read: bool = False,
    ) -> Notification:
        """Insert an in-app notification."""
        async with self._lock:
            now = time.time()
            cursor = await self._db.execute("""
                INSERT INTO notifications (user_id, transaction_id, message, is_read, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, transaction_id, message, int(is_read), now))
            await self._db.commit()

            return Notification(
                id=cursor.lastrowid,
                user_id=user_id,
                transaction_id=transaction_id,
                message=message,
                is_read=is_read,
                created_at=now,
            )

    async def list_notifications(
        self,
        user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> list[Notification]:
        """List notifications in insertion order."""
        query = "SELECT * FROM notifications WHERE 1=1"
        params: list[Any] = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if transaction_id:
            query += " AND transaction_id = ?"
            params.append(transaction_id)

        query += " ORDER BY id ASC"

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                transaction_id=row["transaction_id"],
                message=row["message"],
                is_read=bool(row["is_read"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ==================== Retry Jobs ====================

    async def save_retry_job(self, job: RetryJob) -> None:
        """Persist a retry job."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO retry_jobs
                (job_id, execution_id, rule_id, run_at, attempt, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                job.job_id,
                job.execution_id,
                job.rule_id,
                job.run_at,
                job.attempt,
                job.created_at,
            ))
            await self._db.commit()

    async def delete_retry_job(self, job_id: str) -> bool:
        """Remove a retry job once it has fired or been cancelled."""
        async with self._lock:
            result = await self._db.execute(
                "DELETE FROM retry_jobs WHERE job_id = ?",
                (job_id,)
            )
            await self._db.commit()
            return result.rowcount > 0

    async def list_retry_jobs(
        self,
        rule_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> list[RetryJob]:
        """List pending retry jobs, earliest first."""
        query = "SELECT * FROM retry_jobs WHERE 1=1"
        params: list[Any] = []

        if rule_id:
            query += " AND rule_id = ?"
            params.append(rule_id)
        if execution_id:
            query += " AND execution_id = ?"
            params.append(execution_id)

        query += " ORDER BY run_at ASC"

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            RetryJob(
                job_id=row["job_id"],
                execution_id=row["execution_id"],
                rule_id=row["rule_id"],
                run_at=row["run_at"],
                attempt=row["attempt"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
