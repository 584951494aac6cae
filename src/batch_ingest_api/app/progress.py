"""Read side: live progress from the fast store, history from the durable log."""

from __future__ import annotations

import logging
import math
from typing import Any

from .errors import AuthorizationError, NotFoundError
from .fast_store import RedisTaskStateStore
from .models import BatchLog, Caller, MainTask, TaskProgress
from .storage import BatchLogStorage

logger = logging.getLogger(__name__)

FINISHED_STATUSES = ("completed", "failed")
MAX_PAGE_LIMIT = 100


class ProgressService:
    def __init__(
        self,
        *,
        store: RedisTaskStateStore,
        logs: BatchLogStorage,
        max_active_listed: int = 50,
    ) -> None:
        self.store = store
        self.logs = logs
        self.max_active_listed = max_active_listed

    def get_progress(self, task_uuid: str, caller: Caller) -> dict[str, Any]:
        """Live view while the task is active, durable view once it retired."""
        progress = self.store.get_progress(task_uuid)
        task = self.store.get_main_task(task_uuid) if progress is not None else None
        if progress is not None and task is not None:
            _check_owner(task.user_id, caller, task_uuid)
            return self._live_view(task, progress)

        batch_log = self.logs.get_batch_log(task_uuid)
        if batch_log is None:
            raise NotFoundError(f"Task {task_uuid} not found")
        _check_owner(batch_log.user_id, caller, task_uuid)
        return _durable_view(batch_log)

    def get_log(self, uuid: str, caller: Caller) -> BatchLog:
        batch_log = self.logs.get_batch_log(uuid)
        if batch_log is None:
            raise NotFoundError(f"Batch log {uuid} not found")
        _check_owner(batch_log.user_id, caller, uuid)
        return batch_log

    def list_logs(
        self,
        caller: Caller,
        *,
        type: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Merge active tasks with durable logs; active entries win on duplicates."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValueError("page must be >= 1 and limit between 1 and 100")

        active = [
            task
            for task in self.store.list_user_active_tasks(
                caller.user_id, limit=self.max_active_listed
            )
            if (type in (None, "", "batch_upload")) and (not status or task.status == status)
        ]
        window = page * limit
        durable = self.logs.list_batch_logs(
            caller.user_id, type=type, status=status, offset=0, limit=window
        )
        durable_total = self.logs.count_batch_logs(caller.user_id, type=type, status=status)

        durable_uuids = {batch_log.uuid for batch_log in durable}
        # Active tasks without a durable row (outside the window or never written).
        extra_active = sum(
            1
            for task in active
            if task.uuid not in durable_uuids and self.logs.get_batch_log(task.uuid) is None
        )

        merged: dict[str, dict[str, Any]] = {
            batch_log.uuid: _durable_entry(batch_log) for batch_log in durable
        }
        for task in active:
            merged[task.uuid] = _active_entry(task)
        entries = sorted(
            merged.values(),
            key=lambda entry: (entry["created_at"], entry["is_active"]),
            reverse=True,
        )

        offset = (page - 1) * limit
        total = durable_total + extra_active
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "logs": entries[offset : offset + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }

    def clear_logs(self, caller: Caller) -> int:
        """Delete the caller's finished logs; active tasks are left alone."""
        deleted = self.logs.delete_batch_logs(caller.user_id, statuses=FINISHED_STATUSES)
        logger.info("logs event=cleared user_id=%s deleted=%d", caller.user_id, deleted)
        return deleted

    def _live_view(self, task: MainTask, progress: TaskProgress) -> dict[str, Any]:
        return {
            "source": "live",
            "is_active": True,
            "task_info": _task_info(task),
            "progress": {
                "total_batches": progress.total_batches,
                "completed_batches": progress.completed_batches,
                "remaining_batches": max(0, progress.total_batches - progress.completed_batches),
                "success_count": progress.success_count,
                "failed_count": progress.failed_count,
                "total_resources": task.total_resources,
                "progress_percentage": progress.progress_percentage,
                "last_updated": progress.last_updated.isoformat(),
            },
            "queue_info": {
                "remaining_subtasks": self.store.remaining_subtask_count(task.uuid),
                "is_processing": task.status == "processing",
            },
        }


def _check_owner(owner_id: str, caller: Caller, uuid: str) -> None:
    if owner_id != caller.user_id:
        raise AuthorizationError(f"Task {uuid} belongs to another user")


def _task_info(task: MainTask) -> dict[str, Any]:
    return {
        "uuid": task.uuid,
        "title": task.title,
        "status": task.status,
        "total_resources": task.total_resources,
        "batch_size": task.batch_size,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
    }


def _durable_view(batch_log: BatchLog) -> dict[str, Any]:
    processed = batch_log.success_count + batch_log.failed_count
    percentage = round(processed / batch_log.total_count * 100) if batch_log.total_count else 0
    return {
        "source": "durable",
        "is_active": False,
        "task_info": {
            "uuid": batch_log.uuid,
            "title": batch_log.title,
            "status": batch_log.status,
            "type": batch_log.type,
            "created_at": batch_log.created_at.isoformat(),
            "completed_at": batch_log.completed_at.isoformat() if batch_log.completed_at else None,
            "error_message": batch_log.error_message,
        },
        "progress": {
            "total_count": batch_log.total_count,
            "success_count": batch_log.success_count,
            "failed_count": batch_log.failed_count,
            "progress_percentage": percentage,
            "last_updated": batch_log.updated_at.isoformat(),
        },
        "details": batch_log.details,
    }


def _active_entry(task: MainTask) -> dict[str, Any]:
    percentage = 0
    if task.total_batches:
        percentage = round(task.completed_batches / task.total_batches * 100)
    return {
        "uuid": task.uuid,
        "type": "batch_upload",
        "title": task.title,
        "status": task.status,
        "total_count": task.total_resources,
        "success_count": task.success_count,
        "failed_count": task.failed_count,
        "progress_percentage": percentage,
        "error_message": None,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "completed_at": None,
        "is_active": True,
    }


def _durable_entry(batch_log: BatchLog) -> dict[str, Any]:
    processed = batch_log.success_count + batch_log.failed_count
    percentage = round(processed / batch_log.total_count * 100) if batch_log.total_count else 0
    return {
        "uuid": batch_log.uuid,
        "type": batch_log.type,
        "title": batch_log.title,
        "status": batch_log.status,
        "total_count": batch_log.total_count,
        "success_count": batch_log.success_count,
        "failed_count": batch_log.failed_count,
        "progress_percentage": percentage,
        "error_message": batch_log.error_message,
        "created_at": batch_log.created_at,
        "updated_at": batch_log.updated_at,
        "completed_at": batch_log.completed_at,
        "is_active": False,
    }
