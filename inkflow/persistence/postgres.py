"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..events import AutomationEvent
from ..fsm.states import WorkflowState
from .models import (
    ApplyOutcome,
    ApprovalRecord,
    ApprovalType,
    Document,
    DocumentStatus,
    Section,
    StepArtifact,
    StepEffects,
    UsageRecord,
    WorkflowInstance,
    utcnow,
)
from .repository import WorkflowRepository


def _dump(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _load(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``'UPDATE 1'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class _KeyExists(Exception):
    """Rolls back a completion whose idempotency key is already stored."""


async def _write_event(conn: asyncpg.Connection, event: AutomationEvent) -> None:
    await conn.execute(
        "INSERT INTO event_outbox (event_id, name, workflow_id, data, created_at) VALUES ($1, $2, $3, $4, $5)",
        event.event_id,
        event.name,
        event.workflow_id,
        json.dumps(event.data),
        event.created_at,
    )


async def _write_document(
    conn: asyncpg.Connection, document: Document, sections: list[Section]
) -> None:
    await conn.execute(
        "INSERT INTO documents (id, workflow_id, organization_id, title, keyword, status, error_details, created_at, updated_at, completed_at, lease_expires_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
        document.id,
        document.workflow_id,
        document.organization_id,
        document.title,
        document.keyword,
        document.status.value,
        _dump(document.error_details),
        document.created_at,
        document.updated_at,
        document.completed_at,
        document.lease_expires_at,
    )
    await conn.executemany(
        "INSERT INTO sections (id, document_id, section_order, header, status, research_payload, content, error_details, created_at, updated_at, completed_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
        [
            (
                s.id,
                s.document_id,
                s.order,
                s.header,
                s.status.value,
                _dump(s.research_payload),
                s.content,
                _dump(s.error_details),
                s.created_at,
                s.updated_at,
                s.completed_at,
            )
            for s in sections
        ],
    )


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

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
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                state TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS event_outbox (
                event_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                dispatched_at TIMESTAMPTZ
            );
            CREATE TABLE IF NOT EXISTS approvals (
                workflow_id TEXT NOT NULL,
                approval_type TEXT NOT NULL,
                decision TEXT NOT NULL,
                approver_id TEXT,
                feedback TEXT,
                approved_items JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_id, approval_type)
            );
            CREATE TABLE IF NOT EXISTS step_artifacts (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS usage_records (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                units INTEGER NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                title TEXT NOT NULL,
                keyword TEXT,
                status TEXT NOT NULL,
                error_details JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                lease_expires_at TIMESTAMPTZ
            );
            CREATE TABLE IF NOT EXISTS sections (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL,
                section_order INTEGER NOT NULL,
                header TEXT NOT NULL,
                status TEXT NOT NULL,
                research_payload JSONB,
                content TEXT,
                error_details JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                UNIQUE (document_id, section_order)
            );
            ALTER TABLE documents ADD COLUMN IF NOT EXISTS lease_expires_at TIMESTAMPTZ;
            CREATE UNIQUE INDEX IF NOT EXISTS usage_records_idempotency_key
                ON usage_records (idempotency_key);
            """
        )

    @staticmethod
    def _row_to_workflow(row: asyncpg.Record) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            organization_id=row["organization_id"],
            state=row["state"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_document(row: asyncpg.Record) -> Document:
        return Document(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            title=row["title"],
            keyword=row["keyword"],
            status=row["status"],
            error_details=_load(row["error_details"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            lease_expires_at=row["lease_expires_at"],
        )

    @staticmethod
    def _row_to_section(row: asyncpg.Record) -> Section:
        return Section(
            id=row["id"],
            document_id=row["document_id"],
            order=row["section_order"],
            header=row["header"],
            status=row["status"],
            research_payload=_load(row["research_payload"]),
            content=row["content"],
            error_details=_load(row["error_details"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_approval(row: asyncpg.Record) -> ApprovalRecord:
        return ApprovalRecord(
            workflow_id=row["workflow_id"],
            approval_type=row["approval_type"],
            decision=row["decision"],
            approver_id=row["approver_id"],
            feedback=row["feedback"],
            approved_items=_load(row["approved_items"]),
            created_at=row["created_at"],
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        await self._execute(
            "INSERT INTO workflows (id, organization_id, state, created_at, updated_at) VALUES ($1, $2, $3, $4, $5)",
            workflow.id,
            workflow.organization_id,
            workflow.state.value,
            workflow.created_at,
            workflow.updated_at,
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT id, organization_id, state, created_at, updated_at FROM workflows WHERE id = $1",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        if organization_id is None:
            rows = await self._fetch(
                "SELECT id, organization_id, state, created_at, updated_at FROM workflows ORDER BY created_at"
            )
        else:
            rows = await self._fetch(
                "SELECT id, organization_id, state, created_at, updated_at FROM workflows WHERE organization_id = $1 ORDER BY created_at",
                organization_id,
            )
        return [self._row_to_workflow(r) for r in rows]

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent | None = None,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    "UPDATE workflows SET state = $1, updated_at = $2 WHERE id = $3 AND state = $4",
                    WorkflowState(new).value,
                    utcnow(),
                    workflow_id,
                    WorkflowState(expected).value,
                )
                if _affected(status) != 1:
                    return False
                if event is not None:
                    await _write_event(conn, event)
            return True
        finally:
            await conn.close()

    async def list_pending_events(self, limit: int = 100) -> list[AutomationEvent]:
        rows = await self._fetch(
            "SELECT event_id, name, workflow_id, data, created_at FROM event_outbox WHERE dispatched_at IS NULL ORDER BY created_at LIMIT $1",
            limit,
        )
        return [
            AutomationEvent(
                event_id=r["event_id"],
                name=r["name"],
                workflow_id=r["workflow_id"],
                data=_load(r["data"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def mark_event_dispatched(self, event_id: str) -> None:
        await self._execute(
            "UPDATE event_outbox SET dispatched_at = $1 WHERE event_id = $2 AND dispatched_at IS NULL",
            utcnow(),
            event_id,
        )

    # ------------------------------------------------------------------
    async def upsert_approval(self, record: ApprovalRecord) -> None:
        await self._execute(
            """
            INSERT INTO approvals (workflow_id, approval_type, decision, approver_id, feedback, approved_items, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (workflow_id, approval_type) DO UPDATE SET
                decision = EXCLUDED.decision,
                approver_id = EXCLUDED.approver_id,
                feedback = EXCLUDED.feedback,
                approved_items = EXCLUDED.approved_items,
                created_at = EXCLUDED.created_at
            """,
            record.workflow_id,
            ApprovalType(record.approval_type).value,
            record.decision.value,
            record.approver_id,
            record.feedback,
            _dump(record.approved_items),
            record.created_at,
        )

    async def get_approval(
        self, workflow_id: str, approval_type: ApprovalType
    ) -> ApprovalRecord | None:
        row = await self._fetchrow(
            "SELECT * FROM approvals WHERE workflow_id = $1 AND approval_type = $2",
            workflow_id,
            ApprovalType(approval_type).value,
        )
        return self._row_to_approval(row) if row else None

    async def list_approvals(self, workflow_id: str) -> list[ApprovalRecord]:
        rows = await self._fetch(
            "SELECT * FROM approvals WHERE workflow_id = $1", workflow_id
        )
        return [self._row_to_approval(r) for r in rows]

    async def save_artifacts(
        self, workflow_id: str, step_name: str, payloads: list[dict]
    ) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.executemany(
                "INSERT INTO step_artifacts (workflow_id, step_name, payload, created_at) VALUES ($1, $2, $3, $4)",
                [(workflow_id, step_name, json.dumps(p), now) for p in payloads],
            )
        finally:
            await conn.close()

    async def list_artifacts(
        self, workflow_id: str, step_name: Optional[str] = None
    ) -> list[StepArtifact]:
        if step_name is None:
            rows = await self._fetch(
                "SELECT workflow_id, step_name, payload, created_at FROM step_artifacts WHERE workflow_id = $1 ORDER BY id",
                workflow_id,
            )
        else:
            rows = await self._fetch(
                "SELECT workflow_id, step_name, payload, created_at FROM step_artifacts WHERE workflow_id = $1 AND step_name = $2 ORDER BY id",
                workflow_id,
                step_name,
            )
        return [
            StepArtifact(
                workflow_id=r["workflow_id"],
                step_name=r["step_name"],
                payload=_load(r["payload"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def record_usage(self, record: UsageRecord) -> None:
        await self._execute(
            "INSERT INTO usage_records (workflow_id, organization_id, step_name, units, idempotency_key, created_at) VALUES ($1, $2, $3, $4, $5, $6)",
            record.workflow_id,
            record.organization_id,
            record.step_name,
            record.units,
            record.idempotency_key,
            record.created_at,
        )

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        rows = await self._fetch(
            "SELECT * FROM usage_records WHERE workflow_id = $1 ORDER BY id",
            workflow_id,
        )
        return [
            UsageRecord(
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                step_name=r["step_name"],
                units=r["units"],
                idempotency_key=r["idempotency_key"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def apply_completion(
        self,
        key: str,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent,
        effects: StepEffects,
    ) -> ApplyOutcome:
        conn = await self._connect()
        try:
            try:
                async with conn.transaction():
                    status = await conn.execute(
                        "UPDATE workflows SET state = $1, updated_at = $2 WHERE id = $3 AND state = $4",
                        WorkflowState(new).value,
                        utcnow(),
                        workflow_id,
                        WorkflowState(expected).value,
                    )
                    if _affected(status) != 1:
                        exists = await conn.fetchval(
                            "SELECT 1 FROM idempotency_keys WHERE key = $1", key
                        )
                        return (
                            ApplyOutcome.ALREADY_APPLIED
                            if exists
                            else ApplyOutcome.NOT_APPLIED
                        )
                    status = await conn.execute(
                        "INSERT INTO idempotency_keys (key, created_at) VALUES ($1, $2) ON CONFLICT (key) DO NOTHING",
                        key,
                        utcnow(),
                    )
                    if _affected(status) != 1:
                        raise _KeyExists(key)
                    await conn.executemany(
                        "INSERT INTO step_artifacts (workflow_id, step_name, payload, created_at) VALUES ($1, $2, $3, $4)",
                        [
                            (workflow_id, effects.step_name, json.dumps(p), utcnow())
                            for p in effects.artifacts
                        ],
                    )
                    if effects.usage_units > 0:
                        await conn.execute(
                            "INSERT INTO usage_records (workflow_id, organization_id, step_name, units, idempotency_key, created_at) VALUES ($1, $2, $3, $4, $5, $6)",
                            workflow_id,
                            effects.organization_id,
                            effects.step_name,
                            effects.usage_units,
                            key,
                            utcnow(),
                        )
                    for document in effects.documents:
                        await _write_document(
                            conn,
                            document,
                            [s for s in effects.sections if s.document_id == document.id],
                        )
                    await _write_event(conn, event)
            except _KeyExists:
                return ApplyOutcome.ALREADY_APPLIED
            return ApplyOutcome.APPLIED
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_document(self, document: Document, sections: list[Section]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await _write_document(conn, document, sections)
        finally:
            await conn.close()

    async def get_document(self, document_id: str) -> Document | None:
        row = await self._fetchrow("SELECT * FROM documents WHERE id = $1", document_id)
        return self._row_to_document(row) if row else None

    async def list_documents(self, workflow_id: str) -> list[Document]:
        rows = await self._fetch(
            "SELECT * FROM documents WHERE workflow_id = $1 ORDER BY created_at",
            workflow_id,
        )
        return [self._row_to_document(r) for r in rows]

    async def update_document(self, document: Document) -> None:
        await self._execute(
            "UPDATE documents SET status = $1, error_details = $2, updated_at = $3, completed_at = $4, lease_expires_at = $5 WHERE id = $6",
            document.status.value,
            _dump(document.error_details),
            utcnow(),
            document.completed_at,
            document.lease_expires_at,
            document.id,
        )

    async def acquire_document(
        self, document_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        status = await self._execute(
            """
            UPDATE documents
            SET status = $1, error_details = NULL, lease_expires_at = $2, updated_at = $3
            WHERE id = $4
              AND (status = ANY($5::text[])
                   OR (status = $1 AND (lease_expires_at IS NULL OR lease_expires_at < $3)))
            """,
            DocumentStatus.GENERATING.value,
            lease_expires_at,
            now,
            document_id,
            [DocumentStatus.QUEUED.value, DocumentStatus.FAILED.value],
        )
        return _affected(status) == 1

    async def renew_document_lease(
        self, document_id: str, lease_expires_at: datetime
    ) -> None:
        await self._execute(
            "UPDATE documents SET lease_expires_at = $1 WHERE id = $2 AND status = $3",
            lease_expires_at,
            document_id,
            DocumentStatus.GENERATING.value,
        )

    async def list_sections(self, document_id: str) -> list[Section]:
        rows = await self._fetch(
            "SELECT * FROM sections WHERE document_id = $1 ORDER BY section_order",
            document_id,
        )
        return [self._row_to_section(r) for r in rows]

    async def update_section(self, section: Section) -> None:
        await self._execute(
            """
            UPDATE sections
            SET status = $1, research_payload = $2, content = $3, error_details = $4, updated_at = $5, completed_at = $6
            WHERE id = $7
            """,
            section.status.value,
            _dump(section.research_payload),
            section.content,
            _dump(section.error_details),
            utcnow(),
            section.completed_at,
            section.id,
        )
