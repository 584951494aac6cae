"""Pydantic models shared across API, pipeline, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
- Transition: a status change; task and subtask statuses only move forward.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import InvalidTransitionError

# Lifecycle states shared by MainTask, Subtask, and the durable batch log.
TaskStatus = Literal["pending", "processing", "completed", "failed"]
ResourceStatus = Literal["pending", "approved", "rejected"]

# Allowed forward moves; anything else raises InvalidTransitionError.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def check_transition(kind: str, uuid: str, current: str, target: str) -> None:
    if current == target:
        return
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(f"{kind} {uuid} cannot move from {current} to {target}")


class ResourceItem(BaseModel):
    """One submitted link, already sanitized."""

    name: str
    link: str


class ItemResult(BaseModel):
    """Outcome of one item: created resource uuid or error text."""

    name: str
    success: bool
    uuid: str | None = None
    error: str | None = None


class MainTask(BaseModel):
    """Top-level ingestion job as stored in the fast store."""

    uuid: str
    user_id: str
    title: str
    status: TaskStatus = "pending"
    total_resources: int
    total_batches: int
    completed_batches: int = 0
    success_count: int = 0
    failed_count: int = 0
    batch_size: int = 1
    created_at: datetime
    updated_at: datetime


class Subtask(BaseModel):
    """One fixed-size slice of a MainTask, processed per invocation."""

    uuid: str
    parent_task_uuid: str
    batch_index: int = Field(ge=1)
    status: TaskStatus = "pending"
    resources: list[ResourceItem] = Field(default_factory=list)
    results: list[ItemResult] = Field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    unprocessed_count: int = 0
    # Set when this subtask carries the unprocessed tail of another one.
    continuation_of: str | None = None
    created_at: datetime
    # Last hand-off to the chain; a pending subtask with this set is waiting for a worker.
    dispatched_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TaskProgress(BaseModel):
    """Live progress snapshot kept next to the MainTask for cheap polling."""

    total_batches: int
    completed_batches: int
    success_count: int
    failed_count: int
    progress_percentage: int
    status: TaskStatus
    last_updated: datetime


class Category(BaseModel):
    id: int
    name: str
    parent_id: int | None = None


class EnrichedResource(BaseModel):
    """Metadata completed by the enricher (AI or deterministic fallback)."""

    title: str
    description: str
    link: str
    category_id: int
    tags: list[str] = Field(default_factory=list, max_length=5)
    source: Literal["ai", "fallback"] = "fallback"


class PersistedResource(BaseModel):
    """Catalog row created for each successful item."""

    uuid: str
    title: str
    description: str
    content: str = ""
    file_url: str
    category_id: int
    author_id: str
    status: ResourceStatus = "pending"
    is_free: bool = True
    credits: int = 0
    id: int | None = None
    ai_risk_score: int | None = None
    ai_review_result: str | None = None
    ai_reviewed_at: datetime | None = None
    auto_approved: bool | None = None


class ReviewOutcome(BaseModel):
    risk_score: int = Field(ge=0, le=100)
    reasoning: str
    auto_approved: bool


class BatchLog(BaseModel):
    """Durable record of one batch upload; outlives the fast-store state."""

    uuid: str
    user_id: str
    type: str = "batch_upload"
    title: str
    status: TaskStatus = "pending"
    total_count: int
    success_count: int = 0
    failed_count: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class Caller(BaseModel):
    """Identity forwarded by the gateway."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ---------------------------------------------------------------------------
# HTTP request/response bodies
# ---------------------------------------------------------------------------


class SubmitBatchRequest(BaseModel):
    """Request body for POST /batch-upload/submit.

    Items stay loosely typed here so the submitter can report every malformed
    entry by position instead of failing on the first schema error.
    """

    title: str | None = None
    total_resources: int | None = None
    resources: Any = None


class BatchPlanEntry(BaseModel):
    batch_index: int
    size: int


class SubmitBatchResponse(BaseModel):
    task_uuid: str
    total_batches: int
    batch_size: int
    total_count: int
    status: TaskStatus = "pending"
    batches: list[BatchPlanEntry] = Field(default_factory=list)
    message: str = ""


class ProcessSubtaskRequest(BaseModel):
    subtask_uuid: str = Field(min_length=1)


class SubtaskOutcome(BaseModel):
    subtask_uuid: str
    batch_index: int
    status: TaskStatus
    success_count: int = 0
    failed_count: int = 0
    unprocessed_count: int = 0
    processing_time_s: float = 0.0
    finalized: bool = False
    skipped: bool = False


class RecoverRequest(BaseModel):
    task_uuid: str | None = Field(default=None, pattern=r"^[a-zA-Z0-9_-]{20,50}$")


class RecoveryAction(BaseModel):
    task_uuid: str
    action: Literal["finalized", "retriggered", "abandoned_subtask", "skipped", "locked"]
    subtask_uuid: str | None = None
    reason: str = ""


class ParseTextRequest(BaseModel):
    text: str = ""


class ParseStats(BaseModel):
    total: int
    success: int
    failed: int
    method: Literal["regex", "ai"]


class ParseTextResponse(BaseModel):
    total_resources: int
    resources: list[ResourceItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    stats: ParseStats
