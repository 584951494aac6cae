"""Redis-backed fast store for live batch state.

Beginner terms:
- Fast store: low-latency, short-lived state that active tasks mutate often.
- Key layout: every record lives under a ``batch:`` key with a TTL, so abandoned
  tasks age out on their own.
- Queue: a Redis list of pending subtask uuids; ``LPUSH`` + ``RPOP`` gives FIFO.
- WATCH/MULTI: optimistic transaction; the write is retried if another client
  touched the watched key in between.
"""

from __future__ import annotations

import json
import logging
import uuid as uuid_lib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import redis
from redis.exceptions import WatchError

from .errors import InvalidTransitionError, NotFoundError
from .models import MainTask, Subtask, TaskProgress, TaskStatus, check_transition
from .settings import Settings

logger = logging.getLogger(__name__)


class BatchKeys:
    """Key names used in Redis."""

    ACTIVE_TASKS = "batch:active"
    REVIEW_DEAD_LETTER = "batch:review:dead-letter"

    @staticmethod
    def main_task(task_uuid: str) -> str:
        return f"batch:main:{task_uuid}"

    @staticmethod
    def subtask(subtask_uuid: str) -> str:
        return f"batch:sub:{subtask_uuid}"

    @staticmethod
    def queue(task_uuid: str) -> str:
        return f"batch:queue:{task_uuid}"

    @staticmethod
    def subtask_index(task_uuid: str) -> str:
        return f"batch:subtasks:{task_uuid}"

    @staticmethod
    def progress(task_uuid: str) -> str:
        return f"batch:progress:{task_uuid}"

    @staticmethod
    def user_active(user_id: str) -> str:
        return f"user:active:{user_id}"

    @staticmethod
    def lock(name: str) -> str:
        return f"batch:lock:{name}"


DEAD_LETTER_MAX_ENTRIES = 1000


class RedisTaskStateStore:
    """MainTask/Subtask records, the pending-subtask queue, and activity indexes."""

    def __init__(
        self,
        client: Any,
        *,
        task_ttl_s: int = 7 * 24 * 3600,
        progress_ttl_s: int = 3 * 24 * 3600,
        retired_task_ttl_s: int = 3600,
        max_user_active_tasks: int = 50,
    ) -> None:
        self._client = client
        self.task_ttl_s = task_ttl_s
        self.progress_ttl_s = progress_ttl_s
        self.retired_task_ttl_s = retired_task_ttl_s
        self.max_user_active_tasks = max_user_active_tasks

    @classmethod
    def from_settings(cls, settings: Settings) -> RedisTaskStateStore:
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(
            client,
            task_ttl_s=settings.task_ttl_s,
            progress_ttl_s=settings.progress_ttl_s,
            retired_task_ttl_s=settings.retired_task_ttl_s,
            max_user_active_tasks=settings.max_user_active_tasks,
        )

    def ping(self) -> bool:
        return bool(self._client.ping())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_task(self, task: MainTask, subtasks: list[Subtask]) -> None:
        """Store the MainTask, its subtasks, and the FIFO queue in one transaction."""
        score = task.created_at.timestamp()
        queue_key = BatchKeys.queue(task.uuid)
        index_key = BatchKeys.subtask_index(task.uuid)
        user_key = BatchKeys.user_active(task.user_id)

        pipe = self._client.pipeline(transaction=True)
        pipe.set(BatchKeys.main_task(task.uuid), task.model_dump_json(), ex=self.task_ttl_s)
        pipe.set(
            BatchKeys.progress(task.uuid),
            _progress_for(task).model_dump_json(),
            ex=self.progress_ttl_s,
        )
        pipe.zadd(user_key, {task.uuid: score})
        pipe.zremrangebyrank(user_key, 0, -(self.max_user_active_tasks + 1))
        pipe.zadd(BatchKeys.ACTIVE_TASKS, {task.uuid: score})
        for subtask in sorted(subtasks, key=lambda item: item.batch_index):
            pipe.set(BatchKeys.subtask(subtask.uuid), subtask.model_dump_json(), ex=self.task_ttl_s)
            pipe.lpush(queue_key, subtask.uuid)
            pipe.rpush(index_key, subtask.uuid)
        pipe.expire(queue_key, self.task_ttl_s)
        pipe.expire(index_key, self.task_ttl_s)
        pipe.execute()
        logger.info(
            "fast_store event=task_created task_uuid=%s user_id=%s total_batches=%d",
            task.uuid,
            task.user_id,
            task.total_batches,
        )

    def push_continuation(self, subtask: Subtask) -> None:
        """Queue ``subtask`` so it is the next one popped for its parent."""
        task_uuid = subtask.parent_task_uuid
        pipe = self._client.pipeline(transaction=True)
        pipe.set(BatchKeys.subtask(subtask.uuid), subtask.model_dump_json(), ex=self.task_ttl_s)
        pipe.rpush(BatchKeys.queue(task_uuid), subtask.uuid)
        pipe.rpush(BatchKeys.subtask_index(task_uuid), subtask.uuid)
        pipe.expire(BatchKeys.queue(task_uuid), self.task_ttl_s)
        pipe.execute()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_main_task(self, task_uuid: str) -> MainTask | None:
        raw = self._client.get(BatchKeys.main_task(task_uuid))
        if raw is None:
            return None
        return MainTask.model_validate_json(raw)

    def get_subtask(self, subtask_uuid: str) -> Subtask | None:
        raw = self._client.get(BatchKeys.subtask(subtask_uuid))
        if raw is None:
            return None
        return Subtask.model_validate_json(raw)

    def get_progress(self, task_uuid: str) -> TaskProgress | None:
        raw = self._client.get(BatchKeys.progress(task_uuid))
        if raw is None:
            return None
        return TaskProgress.model_validate_json(raw)

    def list_subtasks(self, task_uuid: str) -> list[Subtask]:
        """All subtasks of a task in batch order (continuations last)."""
        subtask_uuids = self._client.lrange(BatchKeys.subtask_index(task_uuid), 0, -1)
        if not subtask_uuids:
            return []
        raws = self._client.mget([BatchKeys.subtask(item) for item in subtask_uuids])
        subtasks = [Subtask.model_validate_json(raw) for raw in raws if raw is not None]
        return sorted(subtasks, key=lambda item: item.batch_index)

    def remaining_subtask_count(self, task_uuid: str) -> int:
        return int(self._client.llen(BatchKeys.queue(task_uuid)))

    def list_user_active_tasks(self, user_id: str, limit: int = 20) -> list[MainTask]:
        task_uuids = self._client.zrevrange(BatchKeys.user_active(user_id), 0, limit - 1)
        tasks: list[MainTask] = []
        for task_uuid in task_uuids:
            task = self.get_main_task(task_uuid)
            if task is not None:
                tasks.append(task)
        return tasks

    def list_active_task_uuids(self) -> list[str]:
        return list(self._client.zrange(BatchKeys.ACTIVE_TASKS, 0, -1))

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def pop_next_subtask_uuid(self, task_uuid: str) -> str | None:
        return self._client.rpop(BatchKeys.queue(task_uuid))

    def remove_from_queue(self, task_uuid: str, subtask_uuid: str) -> int:
        return int(self._client.lrem(BatchKeys.queue(task_uuid), 0, subtask_uuid))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def transition_subtask(
        self, subtask_uuid: str, status: TaskStatus, **changes: Any
    ) -> Subtask:
        """Move a subtask forward and apply ``changes`` in the same write.

        The status check and the write share one WATCH transaction, so two
        invocations racing to claim the same pending subtask cannot both win.
        """

        def mutate(current: Subtask) -> Subtask:
            if current.status == status:
                raise InvalidTransitionError(f"subtask {subtask_uuid} is already {status}")
            check_transition("subtask", subtask_uuid, current.status, status)
            return current.model_copy(update={**changes, "status": status})

        updated = self._mutate_subtask(subtask_uuid, mutate)
        logger.info(
            "fast_store event=subtask_updated subtask_uuid=%s status=%s",
            subtask_uuid,
            status,
        )
        return updated

    def mark_dispatched(self, subtask_uuid: str) -> Subtask | None:
        """Stamp a pending subtask as handed to the chain and touch its task."""
        if self.get_subtask(subtask_uuid) is None:
            return None

        def mutate(current: Subtask) -> Subtask:
            if current.status != "pending":
                return current
            return current.model_copy(update={"dispatched_at": _utc_now()})

        subtask = self._mutate_subtask(subtask_uuid, mutate)
        if self.get_main_task(subtask.parent_task_uuid) is not None:
            self.touch_main_task(subtask.parent_task_uuid)
        return subtask

    def _mutate_subtask(
        self, subtask_uuid: str, mutate: Callable[[Subtask], Subtask]
    ) -> Subtask:
        key = BatchKeys.subtask(subtask_uuid)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        raise NotFoundError(f"Subtask {subtask_uuid} does not exist")
                    updated = mutate(Subtask.model_validate_json(raw))
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), ex=self.task_ttl_s)
                    pipe.execute()
                    return updated
                except WatchError:
                    logger.info("fast_store event=watch_retry subtask_uuid=%s", subtask_uuid)
                    continue

    def set_main_status(self, task_uuid: str, status: TaskStatus) -> MainTask:
        def mutate(task: MainTask) -> MainTask:
            check_transition("task", task_uuid, task.status, status)
            return task.model_copy(update={"status": status})

        return self._mutate_main_task(task_uuid, mutate)

    def record_batch_completion(
        self,
        task_uuid: str,
        *,
        success_count: int,
        failed_count: int,
        added_batches: int = 0,
    ) -> MainTask:
        """Atomically add one finished batch and its counts to the MainTask."""

        def mutate(task: MainTask) -> MainTask:
            completed = task.completed_batches + 1
            total_batches = task.total_batches + added_batches
            successes = task.success_count + success_count
            failures = task.failed_count + failed_count
            if completed > total_batches:
                raise InvalidTransitionError(
                    f"Task {task_uuid} would exceed its batch count ({completed}/{total_batches})"
                )
            if successes + failures > task.total_resources:
                raise InvalidTransitionError(
                    f"Task {task_uuid} would count more items than it holds "
                    f"({successes + failures}/{task.total_resources})"
                )
            return task.model_copy(
                update={
                    "completed_batches": completed,
                    "total_batches": total_batches,
                    "success_count": successes,
                    "failed_count": failures,
                }
            )

        return self._mutate_main_task(task_uuid, mutate)

    def touch_main_task(self, task_uuid: str) -> MainTask:
        """Refresh ``updated_at`` so reconciliation sees the task as alive."""
        return self._mutate_main_task(task_uuid, lambda task: task)

    def _mutate_main_task(
        self, task_uuid: str, mutate: Callable[[MainTask], MainTask]
    ) -> MainTask:
        key = BatchKeys.main_task(task_uuid)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        raise NotFoundError(f"Task {task_uuid} does not exist")
                    updated = mutate(MainTask.model_validate_json(raw))
                    updated = updated.model_copy(update={"updated_at": _utc_now()})
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), ex=self.task_ttl_s)
                    pipe.set(
                        BatchKeys.progress(task_uuid),
                        _progress_for(updated).model_dump_json(),
                        ex=self.progress_ttl_s,
                    )
                    pipe.execute()
                    return updated
                except WatchError:
                    logger.info("fast_store event=watch_retry task_uuid=%s", task_uuid)
                    continue

    def retire_task(self, task: MainTask) -> None:
        """Drop a finished task from the active indexes and let its keys age out."""
        subtask_uuids = self._client.lrange(BatchKeys.subtask_index(task.uuid), 0, -1)
        ttl = self.retired_task_ttl_s
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(BatchKeys.user_active(task.user_id), task.uuid)
        pipe.zrem(BatchKeys.ACTIVE_TASKS, task.uuid)
        pipe.delete(BatchKeys.progress(task.uuid))
        pipe.expire(BatchKeys.main_task(task.uuid), ttl)
        pipe.expire(BatchKeys.queue(task.uuid), ttl)
        pipe.expire(BatchKeys.subtask_index(task.uuid), ttl)
        for subtask_uuid in subtask_uuids:
            pipe.expire(BatchKeys.subtask(subtask_uuid), ttl)
        pipe.execute()
        logger.info("fast_store event=task_retired task_uuid=%s ttl_s=%d", task.uuid, ttl)

    # ------------------------------------------------------------------
    # Locks and dead letters
    # ------------------------------------------------------------------

    def acquire_lock(self, name: str, ttl_s: int) -> str | None:
        """Take ``name`` for ``ttl_s`` seconds; returns the owner token, or None if held."""
        token = str(uuid_lib.uuid4())
        if self._client.set(BatchKeys.lock(name), token, nx=True, ex=ttl_s):
            return token
        return None

    def release_lock(self, name: str, token: str) -> bool:
        """Delete the lock only while ``token`` still owns it."""
        key = BatchKeys.lock(name)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                return True
            except WatchError:
                return False

    def record_dead_letter(self, entry: dict[str, Any]) -> None:
        pipe = self._client.pipeline(transaction=True)
        pipe.lpush(BatchKeys.REVIEW_DEAD_LETTER, json.dumps(entry, default=str))
        pipe.ltrim(BatchKeys.REVIEW_DEAD_LETTER, 0, DEAD_LETTER_MAX_ENTRIES - 1)
        pipe.execute()

    def list_dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        raws = self._client.lrange(BatchKeys.REVIEW_DEAD_LETTER, 0, limit - 1)
        return [json.loads(raw) for raw in raws]


def _progress_for(task: MainTask) -> TaskProgress:
    percentage = 0
    if task.total_batches > 0:
        percentage = round(task.completed_batches / task.total_batches * 100)
    return TaskProgress(
        total_batches=task.total_batches,
        completed_batches=task.completed_batches,
        success_count=task.success_count,
        failed_count=task.failed_count,
        progress_percentage=percentage,
        status=task.status,
        last_updated=task.updated_at,
    )


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
