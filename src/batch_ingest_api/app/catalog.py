"""Content-catalog collaborator: categories, resources, and tags.

The catalog belongs to the wider platform; the pipeline only reads categories,
inserts resources, attaches tags, and writes back AI review fields.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import Category, PersistedResource, ResourceStatus, ReviewOutcome

MAX_TAGS_PER_RESOURCE = 5


class CatalogStore(Protocol):
    def list_categories(self) -> list[Category]: ...

    def insert_resource(self, resource: PersistedResource) -> PersistedResource: ...

    def add_resource_tags(self, resource_id: int, tags: list[str]) -> None: ...

    def update_resource_review(
        self, uuid: str, outcome: ReviewOutcome, *, status: ResourceStatus
    ) -> None: ...

    def get_resource(self, uuid: str) -> PersistedResource | None: ...


class PostgresCatalogStore:
    """Catalog tables accessed through psycopg."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row = self._load_psycopg()

    def migrate(self) -> None:
        """Create catalog tables for standalone deployments."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS categories (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    parent_id INTEGER
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resources (
                    id BIGSERIAL PRIMARY KEY,
                    uuid TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    file_url TEXT NOT NULL,
                    category_id INTEGER NOT NULL,
                    author_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_free BOOLEAN NOT NULL DEFAULT TRUE,
                    credits INTEGER NOT NULL DEFAULT 0,
                    ai_risk_score INTEGER,
                    ai_review_result TEXT,
                    ai_reviewed_at TIMESTAMPTZ,
                    auto_approved BOOLEAN,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    id BIGSERIAL PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resource_tags (
                    resource_id BIGINT NOT NULL,
                    tag_id BIGINT NOT NULL,
                    PRIMARY KEY (resource_id, tag_id)
                )
                """)
            conn.commit()

    def list_categories(self) -> list[Category]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, parent_id FROM categories ORDER BY id"
            ).fetchall()
        return [Category(id=row["id"], name=row["name"], parent_id=row["parent_id"]) for row in rows]

    def insert_resource(self, resource: PersistedResource) -> PersistedResource:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO resources (
                    uuid, title, description, content, file_url, category_id,
                    author_id, status, is_free, credits, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    resource.uuid,
                    resource.title,
                    resource.description,
                    resource.content,
                    resource.file_url,
                    resource.category_id,
                    resource.author_id,
                    resource.status,
                    resource.is_free,
                    resource.credits,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        return resource.model_copy(update={"id": int(row["id"])})

    def add_resource_tags(self, resource_id: int, tags: list[str]) -> None:
        names = [tag for tag in tags if tag][:MAX_TAGS_PER_RESOURCE]
        if not names:
            return
        with self._lock, self._connect() as conn:
            for name in names:
                tag_row = conn.execute(
                    """
                    INSERT INTO tags (name) VALUES (%s)
                    ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                    RETURNING id
                    """,
                    (name,),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO resource_tags (resource_id, tag_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (resource_id, tag_row["id"]),
                )
            conn.commit()

    def update_resource_review(
        self, uuid: str, outcome: ReviewOutcome, *, status: ResourceStatus
    ) -> None:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE resources
                SET ai_risk_score = %s,
                    ai_review_result = %s,
                    ai_reviewed_at = %s,
                    auto_approved = %s,
                    status = %s,
                    updated_at = %s
                WHERE uuid = %s
                """,
                (
                    outcome.risk_score,
                    outcome.reasoning,
                    now,
                    outcome.auto_approved,
                    status,
                    now,
                    uuid,
                ),
            )
            conn.commit()

    def get_resource(self, uuid: str) -> PersistedResource | None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM resources WHERE uuid = %s", (uuid,)).fetchone()
        if row is None:
            return None
        return PersistedResource(
            id=row["id"],
            uuid=row["uuid"],
            title=row["title"],
            description=row["description"],
            content=row["content"],
            file_url=row["file_url"],
            category_id=row["category_id"],
            author_id=row["author_id"],
            status=row["status"],
            is_free=row["is_free"],
            credits=row["credits"],
            ai_risk_score=row["ai_risk_score"],
            ai_review_result=row["ai_review_result"],
            ai_reviewed_at=row["ai_reviewed_at"],
            auto_approved=row["auto_approved"],
        )

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row
