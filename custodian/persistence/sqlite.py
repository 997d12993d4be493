"""SQLite implementation of the request repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any

from ..audit import verify_append_only
from ..contracts import WorkflowDefinition
from ..errors import ConcurrencyViolationError, RequestNotFoundError
from ..models import AuditEntry, RequestFilter, WorkflowRequest
from .repository import RequestRepository


class SQLiteRequestRepository(RequestRepository):
    """Persist request state using SQLite.

    Audit entries live in their own append-only table and are kept when a
    request is evicted by retention.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS requests (
                request_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                process_type TEXT NOT NULL,
                status TEXT NOT NULL,
                submitted_at TEXT NOT NULL,
                completed_at TEXT,
                version INTEGER NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
                request_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                action TEXT NOT NULL,
                document TEXT NOT NULL,
                PRIMARY KEY (request_id, sequence)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                key TEXT PRIMARY KEY,
                document TEXT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _document(request: WorkflowRequest) -> str:
        return request.model_dump_json(exclude={"audit_trail"})

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _load_audit(self, request_id: str) -> list[AuditEntry]:
        rows = self._fetchall(
            "SELECT document FROM audit_entries WHERE request_id = ? ORDER BY sequence",
            request_id,
        )
        return [AuditEntry.model_validate_json(r["document"]) for r in rows]

    def _hydrate(self, row: sqlite3.Row) -> WorkflowRequest:
        request = WorkflowRequest.model_validate_json(row["document"])
        request.audit_trail = self._load_audit(request.request_id)
        request.version = row["version"]
        return request

    def _insert_audit(self, cur: sqlite3.Cursor, entries: list[AuditEntry]) -> None:
        cur.executemany(
            "INSERT INTO audit_entries (request_id, sequence, timestamp, action, document) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (
                    e.request_id,
                    e.sequence,
                    e.timestamp.isoformat(),
                    e.action.value,
                    e.model_dump_json(),
                )
                for e in entries
            ],
        )

    def _create(self, request: WorkflowRequest) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "INSERT INTO requests (request_id, subject_id, tenant_id, process_type, "
                    "status, submitted_at, completed_at, version, document) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        request.request_id,
                        request.subject_id,
                        request.tenant_id,
                        request.process_type,
                        request.status.value,
                        request.submitted_at.isoformat(),
                        request.completed_at.isoformat() if request.completed_at else None,
                        request.version,
                        self._document(request),
                    ),
                )
                self._insert_audit(cur, request.audit_trail)
            except Exception:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _update(self, request: WorkflowRequest) -> None:
        stored_audit = self._load_audit(request.request_id)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "SELECT version FROM requests WHERE request_id = ?",
                    (request.request_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise RequestNotFoundError(request.request_id)
                if row["version"] != request.version:
                    raise ConcurrencyViolationError(
                        f"Stale write for request {request.request_id}: "
                        f"stored version {row['version']}, got {request.version}"
                    )
                verify_append_only(
                    stored_audit, request.audit_trail, request.request_id
                )
                cur.execute(
                    "UPDATE requests SET status = ?, completed_at = ?, version = ?, "
                    "document = ? WHERE request_id = ?",
                    (
                        request.status.value,
                        request.completed_at.isoformat() if request.completed_at else None,
                        request.version + 1,
                        self._document(request),
                        request.request_id,
                    ),
                )
                self._insert_audit(cur, request.audit_trail[len(stored_audit):])
            except Exception:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            self._conn.execute(query, params)

    # ------------------------------------------------------------------
    # Repository API
    async def create(self, request: WorkflowRequest) -> None:
        await asyncio.to_thread(self._create, request)

    async def get(self, request_id: str) -> WorkflowRequest | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document, version FROM requests WHERE request_id = ?",
            request_id,
        )
        if not rows:
            return None
        return await asyncio.to_thread(self._hydrate, rows[0])

    async def list(self, filter: RequestFilter | None = None) -> list[WorkflowRequest]:
        filter = filter or RequestFilter()
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("subject_id", filter.subject_id),
            ("tenant_id", filter.tenant_id),
            ("process_type", filter.process_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if filter.statuses is not None:
            if not filter.statuses:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in filter.statuses)})")
            params.extend(s.value for s in filter.statuses)
        query = "SELECT document, version FROM requests"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        requests = [await asyncio.to_thread(self._hydrate, row) for row in rows]
        requests = [r for r in requests if filter.matches(r)]
        requests.sort(key=lambda r: r.submitted_at, reverse=True)
        if filter.limit is not None:
            requests = requests[: filter.limit]
        return requests

    async def update(self, request: WorkflowRequest) -> WorkflowRequest:
        await asyncio.to_thread(self._update, request)
        request.version += 1
        return request

    async def delete(self, request_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM requests WHERE request_id = ?", request_id
        )

    async def audit_history(self, request_id: str) -> list[AuditEntry]:
        """Audit entries of a request, including evicted ones."""
        return await asyncio.to_thread(self._load_audit, request_id)

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO definitions (key, document) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET document = excluded.document",
            definition.key,
            definition.model_dump_json(),
        )

    async def get_definition(self, key: str) -> WorkflowDefinition | None:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM definitions WHERE key = ?", key
        )
        if not rows:
            return None
        return WorkflowDefinition.model_validate_json(rows[0]["document"])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM definitions ORDER BY key"
        )
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]
