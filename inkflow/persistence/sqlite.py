"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


def _load(value: str | None) -> Any:
    return json.loads(value) if value else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    All statements run through one connection guarded by a thread lock;
    conditional updates rely on the affected row count.
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
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS event_outbox (
                    event_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    dispatched_at TEXT
                );
                CREATE TABLE IF NOT EXISTS approvals (
                    workflow_id TEXT NOT NULL,
                    approval_type TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    approver_id TEXT,
                    feedback TEXT,
                    approved_items TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, approval_type)
                );
                CREATE TABLE IF NOT EXISTS step_artifacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    units INTEGER NOT NULL,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    key TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    keyword TEXT,
                    status TEXT NOT NULL,
                    error_details TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    lease_expires_at TEXT
                );
                CREATE TABLE IF NOT EXISTS sections (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    section_order INTEGER NOT NULL,
                    header TEXT NOT NULL,
                    status TEXT NOT NULL,
                    research_payload TEXT,
                    content TEXT,
                    error_details TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    UNIQUE (document_id, section_order)
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return cur.rowcount

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

    def _transition(
        self,
        workflow_id: str,
        expected: str,
        new: str,
        event: AutomationEvent | None,
    ) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            try:
                if not self._set_state(cur, workflow_id, expected, new):
                    self._conn.rollback()
                    return False
                if event is not None:
                    self._write_event(cur, event)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return True

    def _complete(
        self,
        key: str,
        workflow_id: str,
        expected: str,
        new: str,
        event: AutomationEvent,
        effects: StepEffects,
    ) -> ApplyOutcome:
        now = _ts(utcnow())
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("SELECT 1 FROM idempotency_keys WHERE key = ?", (key,))
                if cur.fetchone() is not None:
                    return ApplyOutcome.ALREADY_APPLIED
                if not self._set_state(cur, workflow_id, expected, new):
                    self._conn.rollback()
                    return ApplyOutcome.NOT_APPLIED
                cur.execute(
                    "INSERT INTO idempotency_keys (key, created_at) VALUES (?, ?)",
                    (key, now),
                )
                cur.executemany(
                    "INSERT INTO step_artifacts (workflow_id, step_name, payload, created_at) VALUES (?, ?, ?, ?)",
                    [
                        (workflow_id, effects.step_name, json.dumps(p), now)
                        for p in effects.artifacts
                    ],
                )
                if effects.usage_units > 0:
                    cur.execute(
                        "INSERT INTO usage_records (workflow_id, organization_id, step_name, units, idempotency_key, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            workflow_id,
                            effects.organization_id,
                            effects.step_name,
                            effects.usage_units,
                            key,
                            now,
                        ),
                    )
                for document in effects.documents:
                    self._write_document(
                        cur,
                        document,
                        [s for s in effects.sections if s.document_id == document.id],
                    )
                self._write_event(cur, event)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return ApplyOutcome.APPLIED

    def _acquire(
        self, document_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT status, lease_expires_at FROM documents WHERE id = ?",
                (document_id,),
            )
            row = cur.fetchone()
            if row is None:
                return False
            status = DocumentStatus(row["status"])
            lease = _parse_ts(row["lease_expires_at"])
            stale = status is DocumentStatus.GENERATING and (lease is None or lease < now)
            if status not in (DocumentStatus.QUEUED, DocumentStatus.FAILED) and not stale:
                return False
            # Guarded by the values read above; other connections may write too.
            cur.execute(
                """
                UPDATE documents
                SET status = ?, error_details = NULL, lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND lease_expires_at IS ?
                """,
                (
                    DocumentStatus.GENERATING.value,
                    _ts(lease_expires_at),
                    _ts(now),
                    document_id,
                    row["status"],
                    row["lease_expires_at"],
                ),
            )
            self._conn.commit()
            return cur.rowcount == 1

    def _insert_document(self, document: Document, sections: list[Section]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                self._write_document(cur, document, sections)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    @staticmethod
    def _set_state(cur: sqlite3.Cursor, workflow_id: str, expected: str, new: str) -> bool:
        cur.execute(
            "UPDATE workflows SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
            (new, _ts(utcnow()), workflow_id, expected),
        )
        return cur.rowcount == 1

    @staticmethod
    def _write_event(cur: sqlite3.Cursor, event: AutomationEvent) -> None:
        cur.execute(
            "INSERT INTO event_outbox (event_id, name, workflow_id, data, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                event.event_id,
                event.name,
                event.workflow_id,
                json.dumps(event.data),
                _ts(event.created_at),
            ),
        )

    @staticmethod
    def _write_document(
        cur: sqlite3.Cursor, document: Document, sections: list[Section]
    ) -> None:
        cur.execute(
            "INSERT INTO documents (id, workflow_id, organization_id, title, keyword, status, error_details, created_at, updated_at, completed_at, lease_expires_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                document.id,
                document.workflow_id,
                document.organization_id,
                document.title,
                document.keyword,
                document.status.value,
                _dump(document.error_details),
                _ts(document.created_at),
                _ts(document.updated_at),
                _ts(document.completed_at),
                _ts(document.lease_expires_at),
            ),
        )
        cur.executemany(
            "INSERT INTO sections (id, document_id, section_order, header, status, research_payload, content, error_details, created_at, updated_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
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
                    _ts(s.created_at),
                    _ts(s.updated_at),
                    _ts(s.completed_at),
                )
                for s in sections
            ],
        )

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            organization_id=row["organization_id"],
            state=row["state"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            title=row["title"],
            keyword=row["keyword"],
            status=row["status"],
            error_details=_load(row["error_details"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
        )

    @staticmethod
    def _row_to_section(row: sqlite3.Row) -> Section:
        return Section(
            id=row["id"],
            document_id=row["document_id"],
            order=row["section_order"],
            header=row["header"],
            status=row["status"],
            research_payload=_load(row["research_payload"]),
            content=row["content"],
            error_details=_load(row["error_details"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflows (id, organization_id, state, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            workflow.id,
            workflow.organization_id,
            workflow.state.value,
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, organization_id, state, created_at, updated_at FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        if organization_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id, organization_id, state, created_at, updated_at FROM workflows ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id, organization_id, state, created_at, updated_at FROM workflows WHERE organization_id = ? ORDER BY created_at",
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
        return await asyncio.to_thread(
            self._transition,
            workflow_id,
            WorkflowState(expected).value,
            WorkflowState(new).value,
            event,
        )

    async def list_pending_events(self, limit: int = 100) -> list[AutomationEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT event_id, name, workflow_id, data, created_at FROM event_outbox WHERE dispatched_at IS NULL ORDER BY created_at LIMIT ?",
            limit,
        )
        return [
            AutomationEvent(
                event_id=r["event_id"],
                name=r["name"],
                workflow_id=r["workflow_id"],
                data=json.loads(r["data"]),
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    async def mark_event_dispatched(self, event_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE event_outbox SET dispatched_at = ? WHERE event_id = ? AND dispatched_at IS NULL",
            _ts(utcnow()),
            event_id,
        )

    async def upsert_approval(self, record: ApprovalRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO approvals (workflow_id, approval_type, decision, approver_id, feedback, approved_items, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id, approval_type) DO UPDATE SET
                decision = excluded.decision,
                approver_id = excluded.approver_id,
                feedback = excluded.feedback,
                approved_items = excluded.approved_items,
                created_at = excluded.created_at
            """,
            record.workflow_id,
            ApprovalType(record.approval_type).value,
            record.decision.value,
            record.approver_id,
            record.feedback,
            _dump(record.approved_items),
            _ts(record.created_at),
        )

    async def get_approval(
        self, workflow_id: str, approval_type: ApprovalType
    ) -> ApprovalRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM approvals WHERE workflow_id = ? AND approval_type = ?",
            workflow_id,
            ApprovalType(approval_type).value,
        )
        return self._row_to_approval(row) if row else None

    async def list_approvals(self, workflow_id: str) -> list[ApprovalRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM approvals WHERE workflow_id = ?",
            workflow_id,
        )
        return [self._row_to_approval(r) for r in rows]

    @staticmethod
    def _row_to_approval(row: sqlite3.Row) -> ApprovalRecord:
        return ApprovalRecord(
            workflow_id=row["workflow_id"],
            approval_type=row["approval_type"],
            decision=row["decision"],
            approver_id=row["approver_id"],
            feedback=row["feedback"],
            approved_items=_load(row["approved_items"]),
            created_at=_parse_ts(row["created_at"]),
        )

    async def save_artifacts(
        self, workflow_id: str, step_name: str, payloads: list[dict]
    ) -> None:
        now = _ts(utcnow())

        def _insert() -> None:
            with self._lock:
                self._conn.executemany(
                    "INSERT INTO step_artifacts (workflow_id, step_name, payload, created_at) VALUES (?, ?, ?, ?)",
                    [(workflow_id, step_name, json.dumps(p), now) for p in payloads],
                )
                self._conn.commit()

        await asyncio.to_thread(_insert)

    async def list_artifacts(
        self, workflow_id: str, step_name: Optional[str] = None
    ) -> list[StepArtifact]:
        query = "SELECT workflow_id, step_name, payload, created_at FROM step_artifacts WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if step_name is not None:
            query += " AND step_name = ?"
            params.append(step_name)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", *params)
        return [
            StepArtifact(
                workflow_id=r["workflow_id"],
                step_name=r["step_name"],
                payload=json.loads(r["payload"]),
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    async def record_usage(self, record: UsageRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO usage_records (workflow_id, organization_id, step_name, units, idempotency_key, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            record.workflow_id,
            record.organization_id,
            record.step_name,
            record.units,
            record.idempotency_key,
            _ts(record.created_at),
        )

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM usage_records WHERE workflow_id = ? ORDER BY id",
            workflow_id,
        )
        return [
            UsageRecord(
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                step_name=r["step_name"],
                units=r["units"],
                idempotency_key=r["idempotency_key"],
                created_at=_parse_ts(r["created_at"]),
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
        return await asyncio.to_thread(
            self._complete,
            key,
            workflow_id,
            WorkflowState(expected).value,
            WorkflowState(new).value,
            event,
            effects,
        )

    async def create_document(self, document: Document, sections: list[Section]) -> None:
        await asyncio.to_thread(self._insert_document, document, sections)

    async def get_document(self, document_id: str) -> Document | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM documents WHERE id = ?", document_id
        )
        return self._row_to_document(row) if row else None

    async def list_documents(self, workflow_id: str) -> list[Document]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM documents WHERE workflow_id = ? ORDER BY created_at",
            workflow_id,
        )
        return [self._row_to_document(r) for r in rows]

    async def update_document(self, document: Document) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE documents SET status = ?, error_details = ?, updated_at = ?, completed_at = ?, lease_expires_at = ? WHERE id = ?",
            document.status.value,
            _dump(document.error_details),
            _ts(utcnow()),
            _ts(document.completed_at),
            _ts(document.lease_expires_at),
            document.id,
        )

    async def acquire_document(
        self, document_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        return await asyncio.to_thread(self._acquire, document_id, lease_expires_at, now)

    async def renew_document_lease(
        self, document_id: str, lease_expires_at: datetime
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE documents SET lease_expires_at = ? WHERE id = ? AND status = ?",
            _ts(lease_expires_at),
            document_id,
            DocumentStatus.GENERATING.value,
        )

    async def list_sections(self, document_id: str) -> list[Section]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM sections WHERE document_id = ? ORDER BY section_order",
            document_id,
        )
        return [self._row_to_section(r) for r in rows]

    async def update_section(self, section: Section) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE sections
            SET status = ?, research_payload = ?, content = ?, error_details = ?, updated_at = ?, completed_at = ?
            WHERE id = ?
            """,
            section.status.value,
            _dump(section.research_payload),
            section.content,
            _dump(section.error_details),
            _ts(utcnow()),
            _ts(section.completed_at),
            section.id,
        )
