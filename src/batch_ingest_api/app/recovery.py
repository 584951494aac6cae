"""Restart chains that stopped moving.

Beginner terms:
- Orphaned chain: a task whose next subtask was never triggered (crashed process,
  lost self-call). Nothing else would ever pick it up.
- Sweep: one pass over every active task, acting only on stuck ones.
- Recovery lock: short Redis lock so two sweeps never repair the same task at once.
- Waiting subtask: dispatched but not started yet (for example queued behind other
  tasks on the worker thread). It is re-sent, never skipped over.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from .chain import SubtaskChain
from .errors import NotFoundError, OrchestrationStall
from .executor import SubtaskExecutor
from .fast_store import RedisTaskStateStore
from .models import RecoveryAction, Subtask
from .storage import BatchLogStorage

logger = logging.getLogger(__name__)


class ChainReconciler:
    def __init__(
        self,
        *,
        store: RedisTaskStateStore,
        logs: BatchLogStorage,
        executor: SubtaskExecutor,
        chain: SubtaskChain,
        inactivity_s: float = 300.0,
        stale_subtask_s: float = 70.0,
        dispatch_grace_s: float = 900.0,
        lock_ttl_s: int = 300,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.logs = logs
        self.executor = executor
        self.chain = chain
        self.inactivity_s = inactivity_s
        # A processing subtask younger than this is assumed to be still running.
        self.stale_subtask_s = stale_subtask_s
        self.dispatch_grace_s = dispatch_grace_s
        self.lock_ttl_s = lock_ttl_s
        self._now = now or (lambda: datetime.now(tz=UTC))

    def sweep(self) -> list[RecoveryAction]:
        actions: list[RecoveryAction] = []
        for task_uuid in self.store.list_active_task_uuids():
            try:
                actions.extend(self._recover(task_uuid, force=False))
            except Exception as exc:  # noqa: BLE001
                logger.exception("recovery event=task_failed task_uuid=%s", task_uuid)
                actions.append(
                    RecoveryAction(task_uuid=task_uuid, action="skipped", reason=str(exc))
                )
        logger.info("recovery event=sweep_done actions=%d", len(actions))
        return actions

    def recover_task(self, task_uuid: str) -> list[RecoveryAction]:
        """Recover one task now, ignoring the inactivity threshold.

        A subtask that is still running, or that waits for a worker, is never
        abandoned or skipped over; a waiting one is dispatched again.
        """
        if self.store.get_main_task(task_uuid) is None:
            if self.logs.get_batch_log(task_uuid) is None:
                raise NotFoundError(f"Task {task_uuid} not found")
            return [
                RecoveryAction(
                    task_uuid=task_uuid, action="skipped", reason="task is no longer active"
                )
            ]
        return self._recover(task_uuid, force=True)

    def _recover(self, task_uuid: str, *, force: bool) -> list[RecoveryAction]:
        lock_name = f"recover:{task_uuid}"
        token = self.store.acquire_lock(lock_name, self.lock_ttl_s)
        if token is None:
            return [
                RecoveryAction(
                    task_uuid=task_uuid, action="locked", reason="recovery already running"
                )
            ]
        try:
            return self._repair(task_uuid, force=force)
        finally:
            self.store.release_lock(lock_name, token)

    def _repair(self, task_uuid: str, *, force: bool) -> list[RecoveryAction]:
        task = self.store.get_main_task(task_uuid)
        if task is None:
            return [RecoveryAction(task_uuid=task_uuid, action="skipped", reason="task expired")]

        now = self._now()
        idle_s = (now - task.updated_at).total_seconds()
        if not force and idle_s < self.inactivity_s:
            return [
                RecoveryAction(
                    task_uuid=task_uuid,
                    action="skipped",
                    reason=f"active {idle_s:.0f}s ago",
                )
            ]

        subtasks = self.store.list_subtasks(task_uuid)
        processing = [subtask for subtask in subtasks if subtask.status == "processing"]
        for subtask in processing:
            running_s = _seconds_since(now, subtask.started_at)
            if running_s is not None and running_s < self.stale_subtask_s:
                return [
                    RecoveryAction(
                        task_uuid=task_uuid,
                        action="skipped",
                        subtask_uuid=subtask.uuid,
                        reason=f"subtask running for {running_s:.0f}s",
                    )
                ]

        logger.warning(
            "recovery event=repairing task_uuid=%s idle_s=%.0f status=%s batches=%d/%d",
            task_uuid,
            idle_s,
            task.status,
            task.completed_batches,
            task.total_batches,
        )
        actions: list[RecoveryAction] = []
        for subtask in processing:
            task = self.executor.abandon_subtask(
                subtask.uuid, reason=f"no progress for {idle_s:.0f}s"
            )
            actions.append(
                RecoveryAction(
                    task_uuid=task_uuid,
                    action="abandoned_subtask",
                    subtask_uuid=subtask.uuid,
                    reason="subtask stopped mid-batch",
                )
            )

        if task.completed_batches >= task.total_batches:
            finalized = self.executor.finalize(task_uuid)
            actions.append(
                RecoveryAction(
                    task_uuid=task_uuid,
                    action="finalized" if finalized else "skipped",
                    reason="" if finalized else "durable write failed",
                )
            )
            return actions

        waiting = self._waiting_subtask(task_uuid)
        if waiting is not None and not force:
            waiting_s = _seconds_since(now, waiting.dispatched_at) or 0.0
            if waiting_s < self.dispatch_grace_s:
                actions.append(
                    RecoveryAction(
                        task_uuid=task_uuid,
                        action="skipped",
                        subtask_uuid=waiting.uuid,
                        reason=f"subtask dispatched {waiting_s:.0f}s ago, waiting for a worker",
                    )
                )
                return actions

        dispatched = self._retrigger(task_uuid, waiting.uuid if waiting is not None else None)
        if dispatched is None:
            actions.append(
                RecoveryAction(task_uuid=task_uuid, action="skipped", reason="no pending subtask")
            )
        else:
            actions.append(
                RecoveryAction(task_uuid=task_uuid, action="retriggered", subtask_uuid=dispatched)
            )
        return actions

    def _waiting_subtask(self, task_uuid: str) -> Subtask | None:
        """The pending subtask the chain already handed off, if any."""
        waiting = [
            subtask
            for subtask in self.store.list_subtasks(task_uuid)
            if subtask.status == "pending" and subtask.dispatched_at is not None
        ]
        return min(waiting, key=lambda subtask: subtask.dispatched_at, default=None)

    def _retrigger(self, task_uuid: str, waiting_uuid: str | None) -> str | None:
        # Re-send the lost hand-off itself so the chain never forks past it.
        if waiting_uuid is not None:
            self.chain.trigger_subtask(waiting_uuid)
            return waiting_uuid

        try:
            dispatched = self.chain.trigger_next(task_uuid)
        except OrchestrationStall:
            logger.exception("recovery event=trigger_failed task_uuid=%s", task_uuid)
            dispatched = None
        if dispatched is not None:
            return dispatched

        # The queue lost the entry; pick the first pending subtask in batch order.
        for subtask in self.store.list_subtasks(task_uuid):
            if subtask.status == "pending":
                self.chain.trigger_subtask(subtask.uuid)
                return subtask.uuid
        return None


def _seconds_since(now: datetime, moment: datetime | None) -> float | None:
    if moment is None:
        return None
    return (now - moment).total_seconds()
