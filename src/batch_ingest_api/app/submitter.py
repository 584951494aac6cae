"""Accept a bulk submission, split it into subtasks, and start the chain.

Beginner terms:
- Batch: a fixed-size slice of the submitted list; one subtask processes one batch.
- Sanitize: normalize a name so it is safe to store and display.
"""

from __future__ import annotations

import logging
import re
import uuid as uuid_lib
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

from .chain import SubtaskChain
from .errors import OrchestrationStall, SubmissionValidationError
from .fast_store import RedisTaskStateStore
from .models import (
    BatchLog,
    BatchPlanEntry,
    Caller,
    MainTask,
    ResourceItem,
    SubmitBatchRequest,
    SubmitBatchResponse,
    Subtask,
)
from .storage import BatchLogStorage

logger = logging.getLogger(__name__)

_LINE_BREAKS_RE = re.compile(r"[\r\n\t]+")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_name(raw: str, max_length: int = 100) -> str:
    name = _LINE_BREAKS_RE.sub(" ", raw)
    name = _CONTROL_CHARS_RE.sub("", name)
    name = name.replace('"', "").replace("\\", "")
    name = _WHITESPACE_RE.sub(" ", name).strip()
    return name[:max_length].rstrip()


def is_valid_link(link: str) -> bool:
    try:
        parts = urlsplit(link)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.hostname)


def split_batches(items: list[ResourceItem], batch_size: int) -> list[list[ResourceItem]]:
    return [items[start : start + batch_size] for start in range(0, len(items), batch_size)]


class TaskSubmitter:
    def __init__(
        self,
        *,
        store: RedisTaskStateStore,
        logs: BatchLogStorage,
        chain: SubtaskChain,
        batch_size: int = 1,
        max_resources: int = 500,
        max_name_length: int = 100,
    ) -> None:
        self.store = store
        self.logs = logs
        self.chain = chain
        self.batch_size = batch_size
        self.max_resources = max_resources
        self.max_name_length = max_name_length

    def submit(self, payload: SubmitBatchRequest, caller: Caller) -> SubmitBatchResponse:
        items = self.validate(payload.resources)
        if payload.total_resources is not None and payload.total_resources != len(items):
            logger.warning(
                "submit event=count_mismatch declared=%d actual=%d user_id=%s",
                payload.total_resources,
                len(items),
                caller.user_id,
            )

        now = datetime.now(tz=UTC)
        task_uuid = str(uuid_lib.uuid4())
        title = (payload.title or "").strip() or f"Batch upload {now:%Y-%m-%d %H:%M:%S}"
        batches = split_batches(items, self.batch_size)

        self.logs.create_batch_log(
            BatchLog(
                uuid=task_uuid,
                user_id=caller.user_id,
                title=title,
                total_count=len(items),
                details={
                    "batch_size": self.batch_size,
                    "total_batches": len(batches),
                    "resources": [
                        {"index": index, "name": item.name, "link": item.link}
                        for index, item in enumerate(items, start=1)
                    ],
                },
                created_at=now,
                updated_at=now,
            )
        )

        task = MainTask(
            uuid=task_uuid,
            user_id=caller.user_id,
            title=title,
            total_resources=len(items),
            total_batches=len(batches),
            batch_size=self.batch_size,
            created_at=now,
            updated_at=now,
        )
        subtasks = [
            Subtask(
                uuid=str(uuid_lib.uuid4()),
                parent_task_uuid=task_uuid,
                batch_index=index,
                resources=batch,
                created_at=now,
            )
            for index, batch in enumerate(batches, start=1)
        ]
        try:
            self.store.create_task(task, subtasks)
        except Exception as exc:
            logger.error("submit event=fast_store_failed task_uuid=%s reason=%s", task_uuid, exc)
            self._mark_log_failed(task_uuid, f"Could not create task state: {exc}")
            raise

        logger.info(
            "submit event=created task_uuid=%s user_id=%s total=%d batches=%d",
            task_uuid,
            caller.user_id,
            len(items),
            len(batches),
        )
        try:
            self.chain.trigger_next(task_uuid)
        except OrchestrationStall:
            logger.exception("submit event=stalled task_uuid=%s", task_uuid)

        return SubmitBatchResponse(
            task_uuid=task_uuid,
            total_batches=len(batches),
            batch_size=self.batch_size,
            total_count=len(items),
            batches=[
                BatchPlanEntry(batch_index=index, size=len(batch))
                for index, batch in enumerate(batches, start=1)
            ],
            message=f"Accepted {len(items)} resources in {len(batches)} batches",
        )

    def validate(self, resources: Any) -> list[ResourceItem]:
        """Return sanitized items or raise with every per-item problem listed."""
        if not isinstance(resources, list) or not resources:
            raise SubmissionValidationError("resources must be a non-empty list")
        if len(resources) > self.max_resources:
            raise SubmissionValidationError(
                f"too many resources: {len(resources)} (max {self.max_resources})"
            )

        items: list[ResourceItem] = []
        errors: list[str] = []
        for position, raw in enumerate(resources, start=1):
            if not isinstance(raw, dict):
                errors.append(f"resource #{position}: must be an object with name and link")
                continue
            raw_name = raw.get("name")
            raw_link = raw.get("link")
            name = sanitize_name(raw_name, self.max_name_length) if isinstance(raw_name, str) else ""
            link = raw_link.strip() if isinstance(raw_link, str) else ""
            item_errors: list[str] = []
            if not name:
                item_errors.append(f"resource #{position}: name is required")
            if not link:
                item_errors.append(f"resource #{position}: link is required")
            elif not is_valid_link(link):
                item_errors.append(f"resource #{position}: link must be an absolute http(s) URL")
            if item_errors:
                errors.extend(item_errors)
                continue
            items.append(ResourceItem(name=name, link=link))

        if errors:
            raise SubmissionValidationError(
                f"{len(errors)} invalid resource entries", errors=errors
            )
        return items

    def _mark_log_failed(self, task_uuid: str, message: str) -> None:
        try:
            self.logs.update_batch_log(task_uuid, status="failed", error_message=message)
        except Exception:  # noqa: BLE001
            logger.exception("submit event=log_update_failed task_uuid=%s", task_uuid)
