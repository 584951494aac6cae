"""PostgreSQL storage for durable batch logs.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the per-item details of a batch.
- Durable log: the record that survives after the fast store forgets a task.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import BatchLog, TaskStatus


class BatchLogStorage(Protocol):
    def migrate(self) -> None: ...

    def create_batch_log(self, batch_log: BatchLog) -> BatchLog: ...

    def get_batch_log(self, uuid: str) -> BatchLog | None: ...

    def update_batch_log(
        self,
        uuid: str,
        *,
        status: TaskStatus | None = None,
        success_count: int | None = None,
        failed_count: int | None = None,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> BatchLog: ...

    def list_batch_logs(
        self,
        user_id: str,
        *,
        type: str | None = None,
        status: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[BatchLog]: ...

    def count_batch_logs(
        self, user_id: str, *, type: str | None = None, status: str | None = None
    ) -> int: ...

    def delete_batch_logs(self, user_id: str, *, statuses: tuple[str, ...]) -> int: ...


class PostgresBatchLogStorage:
    """Thread-safe PostgreSQL-backed storage for BatchLog records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS batch_logs (
                    uuid TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL,
                    total_count INTEGER NOT NULL,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_batch_logs_user_created
                ON batch_logs(user_id, created_at DESC)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_batch_logs_status
                ON batch_logs(status)
                """)
            conn.commit()

    def create_batch_log(self, batch_log: BatchLog) -> BatchLog:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO batch_logs (
                    uuid,
                    user_id,
                    type,
                    title,
                    status,
                    total_count,
                    success_count,
                    failed_count,
                    details,
                    error_message,
                    created_at,
                    updated_at,
                    completed_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    batch_log.uuid,
                    batch_log.user_id,
                    batch_log.type,
                    batch_log.title,
                    batch_log.status,
                    batch_log.total_count,
                    batch_log.success_count,
                    batch_log.failed_count,
                    self._json_wrapper(batch_log.details),
                    batch_log.error_message,
                    batch_log.created_at,
                    batch_log.updated_at,
                    batch_log.completed_at,
                ),
            )
            conn.commit()
        return batch_log

    def get_batch_log(self, uuid: str) -> BatchLog | None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM batch_logs WHERE uuid = %s", (uuid,)).fetchone()
        if row is None:
            return None
        return self._row_to_batch_log(row)

    def update_batch_log(
        self,
        uuid: str,
        *,
        status: TaskStatus | None = None,
        success_count: int | None = None,
        failed_count: int | None = None,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> BatchLog:
        """Update selected fields while keeping unspecified fields unchanged."""
        current = self.get_batch_log(uuid)
        if current is None:
            raise KeyError(f"Batch log {uuid} does not exist")

        updated = current.model_copy(
            update={
                key: value
                for key, value in {
                    "status": status,
                    "success_count": success_count,
                    "failed_count": failed_count,
                    "details": details,
                    "error_message": error_message,
                    "completed_at": completed_at,
                }.items()
                if value is not None
            }
        )
        updated.updated_at = datetime.now(tz=UTC)

        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE batch_logs
                SET status = %s,
                    success_count = %s,
                    failed_count = %s,
                    details = %s,
                    error_message = %s,
                    updated_at = %s,
                    completed_at = %s
                WHERE uuid = %s
                """,
                (
                    updated.status,
                    updated.success_count,
                    updated.failed_count,
                    self._json_wrapper(updated.details),
                    updated.error_message,
                    updated.updated_at,
                    updated.completed_at,
                    uuid,
                ),
            )
            conn.commit()
        return updated

    def list_batch_logs(
        self,
        user_id: str,
        *,
        type: str | None = None,
        status: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[BatchLog]:
        where, params = self._filters(user_id, type=type, status=status)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM batch_logs WHERE {where} "
                "ORDER BY created_at DESC OFFSET %s LIMIT %s",
                (*params, offset, limit),
            ).fetchall()
        return [self._row_to_batch_log(row) for row in rows]

    def count_batch_logs(
        self, user_id: str, *, type: str | None = None, status: str | None = None
    ) -> int:
        where, params = self._filters(user_id, type=type, status=status)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM batch_logs WHERE {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0

    def delete_batch_logs(self, user_id: str, *, statuses: tuple[str, ...]) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM batch_logs WHERE user_id = %s AND status = ANY(%s)",
                (user_id, list(statuses)),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    @staticmethod
    def _filters(
        user_id: str, *, type: str | None, status: str | None
    ) -> tuple[str, tuple[Any, ...]]:
        clauses = ["user_id = %s"]
        params: list[Any] = [user_id]
        if type:
            clauses.append("type = %s")
            params.append(type)
        if status:
            clauses.append("status = %s")
            params.append(status)
        return " AND ".join(clauses), tuple(params)

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @classmethod
    def _row_to_batch_log(cls, row: Any) -> BatchLog:
        return BatchLog(
            uuid=str(row["uuid"]),
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            status=row["status"],
            total_count=row["total_count"],
            success_count=row["success_count"],
            failed_count=row["failed_count"],
            details=cls._parse_json_object(row["details"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )
