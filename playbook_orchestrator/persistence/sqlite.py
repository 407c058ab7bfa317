"""SQLite implementation of the playbook repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import PlaybookDefinition, RunStatus
from .models import (
    AuditEntry,
    IdempotencyRecord,
    Run,
    StepInstance,
    TaskAssignment,
    TaskStatus,
)
from .repository import PlaybookRepository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_instances (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        status TEXT NOT NULL,
        claimed_by TEXT,
        claimed_until TEXT,
        data TEXT NOT NULL,
        UNIQUE (run_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS playbook_definitions (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL,
        operation TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_entries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        run_id TEXT,
        event TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_assignments (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        assignee TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_steps_run ON step_instances (run_id)",
    "CREATE INDEX IF NOT EXISTS idx_idem_key ON idempotency_records (key, operation, organization_id)",
)


class SQLitePlaybookRepository(PlaybookRepository):
    """Persist orchestration state using SQLite.

    Records are stored as JSON documents next to the columns needed for
    filtering. Step leases live only in the ``claimed_by``/``claimed_until``
    columns so that :meth:`claim_step` can be a single conditional UPDATE.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _executemany(self, query: str, rows: list[tuple]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.executemany(query, rows)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _in_clause(column: str, values: list[str]) -> str:
        return f"{column} IN ({', '.join('?' for _ in values)})"

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepInstance:
        step = StepInstance.model_validate_json(row["data"])
        step.claimed_by = row["claimed_by"]
        step.claimed_until = (
            datetime.fromisoformat(row["claimed_until"]) if row["claimed_until"] else None
        )
        return step

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (id, organization_id, status, created_at, data) VALUES (?, ?, ?, ?, ?)",
            run.id,
            run.organization_id,
            run.status.value,
            run.created_at.isoformat(),
            run.model_dump_json(),
        )

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM runs WHERE id = ?", run_id
        )
        return Run.model_validate_json(row["data"]) if row else None

    async def save_run(self, run: Run) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, data = ? WHERE id = ?",
            run.status.value,
            run.model_dump_json(),
            run.id,
        )

    async def list_runs(
        self,
        statuses: Optional[Iterable[RunStatus]] = None,
        organization_ids: Optional[Iterable[str]] = None,
    ) -> list[Run]:
        clauses: list[str] = []
        params: list[str] = []
        status_values = [RunStatus(s).value for s in statuses] if statuses else []
        org_values = list(organization_ids) if organization_ids else []
        if status_values:
            clauses.append(self._in_clause("status", status_values))
            params.extend(status_values)
        if org_values:
            clauses.append(self._in_clause("organization_id", org_values))
            params.extend(org_values)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM runs{where} ORDER BY created_at",
            *params,
        )
        return [Run.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Step instances
    async def create_steps(self, steps: list[StepInstance]) -> None:
        await asyncio.to_thread(
            self._executemany,
            """
            INSERT INTO step_instances (id, run_id, organization_id, sequence, status, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    s.id,
                    s.run_id,
                    s.organization_id,
                    s.sequence,
                    s.status.value,
                    s.model_dump_json(exclude={"claimed_by", "claimed_until"}),
                )
                for s in steps
            ],
        )

    async def get_steps(self, run_id: str) -> list[StepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data, claimed_by, claimed_until FROM step_instances WHERE run_id = ? ORDER BY sequence",
            run_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def get_step(self, step_id: str) -> StepInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data, claimed_by, claimed_until FROM step_instances WHERE id = ?",
            step_id,
        )
        return self._step_from_row(row) if row else None

    async def save_step(self, step: StepInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE step_instances SET status = ?, data = ? WHERE id = ?",
            step.status.value,
            step.model_dump_json(exclude={"claimed_by", "claimed_until"}),
            step.id,
        )

    async def claim_step(
        self, step_id: str, owner: str, until: datetime, now: datetime
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_instances SET claimed_by = ?, claimed_until = ?
            WHERE id = ?
              AND (claimed_by IS NULL OR claimed_by = ? OR claimed_until IS NULL OR claimed_until <= ?)
            """,
            owner,
            until.isoformat(),
            step_id,
            owner,
            now.isoformat(),
        )
        return updated == 1

    async def release_step(self, step_id: str, owner: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE step_instances SET claimed_by = NULL, claimed_until = NULL WHERE id = ? AND claimed_by = ?",
            step_id,
            owner,
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO playbook_definitions (id, organization_id, data) VALUES (?, ?, ?)",
            definition.id,
            definition.organization_id,
            definition.model_dump_json(),
        )

    async def get_definition(self, playbook_id: str) -> PlaybookDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM playbook_definitions WHERE id = ?",
            playbook_id,
        )
        return PlaybookDefinition.model_validate_json(row["data"]) if row else None

    async def list_definitions(
        self, organization_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        if organization_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT data FROM playbook_definitions ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM playbook_definitions WHERE organization_id = ? ORDER BY id",
                organization_id,
            )
        return [PlaybookDefinition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Idempotency records
    async def create_idempotency_record(self, record: IdempotencyRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO idempotency_records (id, key, operation, organization_id, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            record.id,
            record.key,
            record.operation,
            record.organization_id,
            record.created_at.isoformat(),
            record.model_dump_json(),
        )

    async def find_idempotency_record(
        self, key: str, operation: str, organization_id: str
    ) -> IdempotencyRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT data FROM idempotency_records
            WHERE key = ? AND operation = ? AND organization_id = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            key,
            operation,
            organization_id,
        )
        return IdempotencyRecord.model_validate_json(row["data"]) if row else None

    async def get_idempotency_record(self, record_id: str) -> IdempotencyRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM idempotency_records WHERE id = ?",
            record_id,
        )
        return IdempotencyRecord.model_validate_json(row["data"]) if row else None

    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE idempotency_records SET data = ? WHERE id = ?",
            record.model_dump_json(),
            record.id,
        )

    # ------------------------------------------------------------------
    # Audit
    async def add_audit_entry(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit_entries (id, run_id, event, data) VALUES (?, ?, ?, ?)",
            entry.id,
            entry.run_id,
            entry.event,
            entry.model_dump_json(),
        )

    async def list_audit_entries(
        self, run_id: Optional[str] = None, event: Optional[str] = None
    ) -> list[AuditEntry]:
        clauses: list[str] = []
        params: list[str] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if event is not None:
            clauses.append("event = ?")
            params.append(event)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM audit_entries{where} ORDER BY seq", *params
        )
        return [AuditEntry.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Human tasks
    async def create_task(self, task: TaskAssignment) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO task_assignments (id, organization_id, run_id, assignee, status, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            task.id,
            task.organization_id,
            task.run_id,
            task.assignee,
            task.status.value,
            task.created_at.isoformat(),
            task.model_dump_json(),
        )

    async def get_task(self, task_id: str) -> TaskAssignment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM task_assignments WHERE id = ?", task_id
        )
        return TaskAssignment.model_validate_json(row["data"]) if row else None

    async def save_task(self, task: TaskAssignment) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE task_assignments SET assignee = ?, status = ?, data = ? WHERE id = ?",
            task.assignee,
            task.status.value,
            task.model_dump_json(),
            task.id,
        )

    async def list_tasks(
        self,
        organization_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        run_id: Optional[str] = None,
    ) -> list[TaskAssignment]:
        clauses: list[str] = []
        params: list[str] = []
        for column, value in (
            ("organization_id", organization_id),
            ("assignee", assignee),
            ("status", TaskStatus(status).value if status else None),
            ("run_id", run_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM task_assignments{where} ORDER BY created_at",
            *params,
        )
        return [TaskAssignment.model_validate_json(r["data"]) for r in rows]
