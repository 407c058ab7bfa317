"""PostgreSQL implementation of the playbook repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

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
        created_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
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
        claimed_until TIMESTAMPTZ,
        data JSONB NOT NULL,
        UNIQUE (run_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS playbook_definitions (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        id TEXT PRIMARY KEY,
        seq BIGSERIAL,
        key TEXT NOT NULL,
        operation TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_entries (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL,
        run_id TEXT,
        event TEXT NOT NULL,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_assignments (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        assignee TEXT,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
    )
    """,
)

_STEP_DOC_EXCLUDE = {"claimed_by", "claimed_until"}


class PostgresPlaybookRepository(PlaybookRepository):
    """Persist orchestration state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepInstance:
        step = StepInstance.model_validate_json(row["data"])
        step.claimed_by = row["claimed_by"]
        step.claimed_until = row["claimed_until"]
        return step

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        await self._execute(
            "INSERT INTO runs (id, organization_id, status, created_at, data) VALUES ($1, $2, $3, $4, $5)",
            run.id,
            run.organization_id,
            run.status.value,
            run.created_at,
            run.model_dump_json(),
        )

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._fetchrow("SELECT data FROM runs WHERE id = $1", run_id)
        return Run.model_validate_json(row["data"]) if row else None

    async def save_run(self, run: Run) -> None:
        await self._execute(
            "UPDATE runs SET status = $1, data = $2 WHERE id = $3",
            run.status.value,
            run.model_dump_json(),
            run.id,
        )

    async def list_runs(
        self,
        statuses: Optional[Iterable[RunStatus]] = None,
        organization_ids: Optional[Iterable[str]] = None,
    ) -> list[Run]:
        status_values = [RunStatus(s).value for s in statuses] if statuses else None
        org_values = list(organization_ids) if organization_ids else None
        rows = await self._fetch(
            """
            SELECT data FROM runs
            WHERE ($1::text[] IS NULL OR status = ANY($1::text[]))
              AND ($2::text[] IS NULL OR organization_id = ANY($2::text[]))
            ORDER BY created_at
            """,
            status_values,
            org_values,
        )
        return [Run.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_steps(self, steps: list[StepInstance]) -> None:
        conn = await self._connect()
        try:
            await conn.executemany(
                """
                INSERT INTO step_instances (id, run_id, organization_id, sequence, status, data)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                [
                    (
                        s.id,
                        s.run_id,
                        s.organization_id,
                        s.sequence,
                        s.status.value,
                        s.model_dump_json(exclude=_STEP_DOC_EXCLUDE),
                    )
                    for s in steps
                ],
            )
        finally:
            await conn.close()

    async def get_steps(self, run_id: str) -> list[StepInstance]:
        rows = await self._fetch(
            "SELECT data, claimed_by, claimed_until FROM step_instances WHERE run_id = $1 ORDER BY sequence",
            run_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def get_step(self, step_id: str) -> StepInstance | None:
        row = await self._fetchrow(
            "SELECT data, claimed_by, claimed_until FROM step_instances WHERE id = $1",
            step_id,
        )
        return self._step_from_row(row) if row else None

    async def save_step(self, step: StepInstance) -> None:
        await self._execute(
            "UPDATE step_instances SET status = $1, data = $2 WHERE id = $3",
            step.status.value,
            step.model_dump_json(exclude=_STEP_DOC_EXCLUDE),
            step.id,
        )

    async def claim_step(
        self, step_id: str, owner: str, until: datetime, now: datetime
    ) -> bool:
        status = await self._execute(
            """
            UPDATE step_instances SET claimed_by = $1, claimed_until = $2
            WHERE id = $3
              AND (claimed_by IS NULL OR claimed_by = $1 OR claimed_until IS NULL OR claimed_until <= $4)
            """,
            owner,
            until,
            step_id,
            now,
        )
        return status.endswith(" 1")

    async def release_step(self, step_id: str, owner: str) -> None:
        await self._execute(
            "UPDATE step_instances SET claimed_by = NULL, claimed_until = NULL WHERE id = $1 AND claimed_by = $2",
            step_id,
            owner,
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        await self._execute(
            """
            INSERT INTO playbook_definitions (id, organization_id, data) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET organization_id = EXCLUDED.organization_id, data = EXCLUDED.data
            """,
            definition.id,
            definition.organization_id,
            definition.model_dump_json(),
        )

    async def get_definition(self, playbook_id: str) -> PlaybookDefinition | None:
        row = await self._fetchrow(
            "SELECT data FROM playbook_definitions WHERE id = $1", playbook_id
        )
        return PlaybookDefinition.model_validate_json(row["data"]) if row else None

    async def list_definitions(
        self, organization_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        rows = await self._fetch(
            """
            SELECT data FROM playbook_definitions
            WHERE ($1::text IS NULL OR organization_id = $1) ORDER BY id
            """,
            organization_id,
        )
        return [PlaybookDefinition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_idempotency_record(self, record: IdempotencyRecord) -> None:
        await self._execute(
            """
            INSERT INTO idempotency_records (id, key, operation, organization_id, created_at, data)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            record.id,
            record.key,
            record.operation,
            record.organization_id,
            record.created_at,
            record.model_dump_json(),
        )

    async def find_idempotency_record(
        self, key: str, operation: str, organization_id: str
    ) -> IdempotencyRecord | None:
        row = await self._fetchrow(
            """
            SELECT data FROM idempotency_records
            WHERE key = $1 AND operation = $2 AND organization_id = $3
            ORDER BY created_at DESC, seq DESC LIMIT 1
            """,
            key,
            operation,
            organization_id,
        )
        return IdempotencyRecord.model_validate_json(row["data"]) if row else None

    async def get_idempotency_record(self, record_id: str) -> IdempotencyRecord | None:
        row = await self._fetchrow(
            "SELECT data FROM idempotency_records WHERE id = $1", record_id
        )
        return IdempotencyRecord.model_validate_json(row["data"]) if row else None

    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        await self._execute(
            "UPDATE idempotency_records SET data = $1 WHERE id = $2",
            record.model_dump_json(),
            record.id,
        )

    # ------------------------------------------------------------------
    async def add_audit_entry(self, entry: AuditEntry) -> None:
        await self._execute(
            "INSERT INTO audit_entries (id, run_id, event, data) VALUES ($1, $2, $3, $4)",
            entry.id,
            entry.run_id,
            entry.event,
            entry.model_dump_json(),
        )

    async def list_audit_entries(
        self, run_id: Optional[str] = None, event: Optional[str] = None
    ) -> list[AuditEntry]:
        rows = await self._fetch(
            """
            SELECT data FROM audit_entries
            WHERE ($1::text IS NULL OR run_id = $1) AND ($2::text IS NULL OR event = $2)
            ORDER BY seq
            """,
            run_id,
            event,
        )
        return [AuditEntry.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_task(self, task: TaskAssignment) -> None:
        await self._execute(
            """
            INSERT INTO task_assignments (id, organization_id, run_id, assignee, status, created_at, data)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            task.id,
            task.organization_id,
            task.run_id,
            task.assignee,
            task.status.value,
            task.created_at,
            task.model_dump_json(),
        )

    async def get_task(self, task_id: str) -> TaskAssignment | None:
        row = await self._fetchrow(
            "SELECT data FROM task_assignments WHERE id = $1", task_id
        )
        return TaskAssignment.model_validate_json(row["data"]) if row else None

    async def save_task(self, task: TaskAssignment) -> None:
        await self._execute(
            "UPDATE task_assignments SET assignee = $1, status = $2, data = $3 WHERE id = $4",
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
        rows = await self._fetch(
            """
            SELECT data FROM task_assignments
            WHERE ($1::text IS NULL OR organization_id = $1)
              AND ($2::text IS NULL OR assignee = $2)
              AND ($3::text IS NULL OR status = $3)
              AND ($4::text IS NULL OR run_id = $4)
            ORDER BY created_at
            """,
            organization_id,
            assignee,
            TaskStatus(status).value if status else None,
            run_id,
        )
        return [TaskAssignment.model_validate_json(r["data"]) for r in rows]
