from __future__ import annotations

import logging
import time
import uuid as uuid_lib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .catalog import CatalogStore
from .category_cache import CategoryCache
from .chain import SubtaskChain
from .enricher import ResourceEnricher
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    OrchestrationStall,
    PartialBatchTimeout,
    UpstreamTimeout,
)
from .fast_store import RedisTaskStateStore
from .models import ItemResult, MainTask, PersistedResource, ResourceItem, Subtask, SubtaskOutcome
from .reviewer import ContentReviewer
from .settings import PartialTimeoutPolicy
from .storage import BatchLogStorage
from .timeouts import run_with_timeout

logger = logging.getLogger(__name__)

NOT_PROCESSED_ERROR = "not processed: subtask time budget exceeded"


class ResourceItemProcessor:
    """Enrich, insert, tag, and queue review for a single item.

    Every failure, including the per-item timeout, becomes a failed ItemResult;
    nothing raised here reaches the batch loop.
    """

    def __init__(
        self,
        *,
        enricher: ResourceEnricher,
        catalog: CatalogStore,
        reviewer: ContentReviewer | None,
        resource_timeout_s: float = 25.0,
    ) -> None:
        self.enricher = enricher
        self.catalog = catalog
        self.reviewer = reviewer
        self.resource_timeout_s = resource_timeout_s

    def process(
        self, item: ResourceItem, category_map: dict[str, int], user_id: str
    ) -> ItemResult:
        try:
            resource_uuid = run_with_timeout(
                lambda: self._run_pipeline(item, category_map, user_id),
                timeout_s=self.resource_timeout_s,
                label="resource processing",
            )
        except UpstreamTimeout:
            logger.warning(
                "item event=timeout name=%r timeout_s=%s", item.name, self.resource_timeout_s
            )
            return ItemResult(
                name=item.name,
                success=False,
                error=f"resource processing timed out after {self.resource_timeout_s:g}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("item event=failed name=%r reason=%s", item.name, exc)
            return ItemResult(name=item.name, success=False, error=str(exc) or type(exc).__name__)
        return ItemResult(name=item.name, success=True, uuid=resource_uuid)

    def _run_pipeline(
        self, item: ResourceItem, category_map: dict[str, int], user_id: str
    ) -> str:
        enriched = self.enricher.enrich(item, category_map)
        created = self.catalog.insert_resource(
            PersistedResource(
                uuid=str(uuid_lib.uuid4()),
                title=enriched.title,
                description=enriched.description,
                file_url=enriched.link,
                category_id=enriched.category_id,
                author_id=user_id,
            )
        )
        if enriched.tags and created.id is not None:
            self.catalog.add_resource_tags(created.id, enriched.tags)
        if self.reviewer is not None:
            try:
                self.reviewer.submit(created, user_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "item event=review_not_queued resource_uuid=%s reason=%s", created.uuid, exc
                )
        logger.info(
            "item event=created resource_uuid=%s name=%r source=%s",
            created.uuid,
            item.name,
            enriched.source,
        )
        return created.uuid


class SubtaskExecutor:
    """Run one subtask inside its time budget, then continue or finalize the chain."""

    def __init__(
        self,
        *,
        store: RedisTaskStateStore,
        logs: BatchLogStorage,
        category_cache: CategoryCache,
        item_processor: ResourceItemProcessor,
        chain: SubtaskChain,
        max_processing_time_s: float = 45.0,
        partial_timeout_policy: PartialTimeoutPolicy = "requeue",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.logs = logs
        self.category_cache = category_cache
        self.item_processor = item_processor
        self.chain = chain
        self.max_processing_time_s = max_processing_time_s
        self.partial_timeout_policy = partial_timeout_policy
        self._clock = clock

    def run(self, subtask_uuid: str) -> SubtaskOutcome:
        subtask = self.store.get_subtask(subtask_uuid)
        if subtask is None:
            raise NotFoundError(f"Subtask {subtask_uuid} does not exist")
        task = self.store.get_main_task(subtask.parent_task_uuid)
        if task is None:
            raise NotFoundError(f"Task {subtask.parent_task_uuid} does not exist")

        if subtask.status != "pending":
            logger.info(
                "subtask_run event=skipped subtask_uuid=%s status=%s",
                subtask_uuid,
                subtask.status,
            )
            return _skipped(subtask)

        running = [
            other.uuid
            for other in self.store.list_subtasks(task.uuid)
            if other.status == "processing" and other.uuid != subtask.uuid
        ]
        if running:
            # One subtask in flight per task; the running one continues the chain.
            logger.warning(
                "subtask_run event=task_busy subtask_uuid=%s running=%s",
                subtask_uuid,
                ",".join(running),
            )
            return _skipped(subtask)

        started = self._clock()
        try:
            subtask = self.store.transition_subtask(
                subtask.uuid, "processing", started_at=_utc_now()
            )
        except InvalidTransitionError:
            logger.info("subtask_run event=already_claimed subtask_uuid=%s", subtask_uuid)
            return _skipped(self.store.get_subtask(subtask_uuid) or subtask)
        # Direct dispatch (recovery, self-call retries) may leave the uuid queued.
        self.store.remove_from_queue(task.uuid, subtask.uuid)
        if task.status == "pending":
            task = self.store.set_main_status(task.uuid, "processing")
            self._write_milestone(task)
        else:
            task = self.store.touch_main_task(task.uuid)
        logger.info(
            "subtask_run event=start task_uuid=%s subtask_uuid=%s batch_index=%d items=%d",
            task.uuid,
            subtask.uuid,
            subtask.batch_index,
            len(subtask.resources),
        )

        category_map = self.category_cache.get_map()
        results: list[ItemResult] = []
        unprocessed: list[ResourceItem] = []
        batch_error: Exception | None = None
        try:
            for position, item in enumerate(subtask.resources):
                elapsed = self._clock() - started
                if position > 0 and elapsed >= self.max_processing_time_s:
                    unprocessed = list(subtask.resources[position:])
                    timeout = PartialBatchTimeout(
                        subtask.uuid, processed=position, unprocessed=len(unprocessed)
                    )
                    logger.warning(
                        "subtask_run event=partial_timeout elapsed_s=%.2f policy=%s %s",
                        elapsed,
                        self.partial_timeout_policy,
                        timeout,
                    )
                    break
                results.append(self.item_processor.process(item, category_map, task.user_id))
        except Exception as exc:  # noqa: BLE001
            batch_error = exc
            logger.exception(
                "subtask_run event=batch_failed subtask_uuid=%s processed=%d",
                subtask.uuid,
                len(results),
            )
            results.extend(
                ItemResult(name=item.name, success=False, error=f"not processed: batch failed: {exc}")
                for item in subtask.resources[len(results) :]
            )

        closed = self._close_subtask(
            task,
            subtask,
            results=results,
            unprocessed=unprocessed,
            status="failed" if batch_error is not None else "completed",
        )
        if closed is None:
            return _skipped(self.store.get_subtask(subtask.uuid) or subtask)
        task, subtask = closed

        finalized = False
        if task.completed_batches >= task.total_batches:
            finalized = self.finalize(task.uuid)
        else:
            self._continue_chain(task.uuid)

        processing_time_s = round(self._clock() - started, 3)
        logger.info(
            "subtask_run event=completed task_uuid=%s subtask_uuid=%s status=%s success=%d "
            "failed=%d unprocessed=%d processing_time_s=%.3f finalized=%s",
            task.uuid,
            subtask.uuid,
            subtask.status,
            subtask.success_count,
            subtask.failed_count,
            subtask.unprocessed_count,
            processing_time_s,
            finalized,
        )
        return SubtaskOutcome(
            subtask_uuid=subtask.uuid,
            batch_index=subtask.batch_index,
            status=subtask.status,
            success_count=subtask.success_count,
            failed_count=subtask.failed_count,
            unprocessed_count=subtask.unprocessed_count,
            processing_time_s=processing_time_s,
            finalized=finalized,
        )

    def abandon_subtask(self, subtask_uuid: str, *, reason: str) -> MainTask:
        """Fail a subtask whose invocation died mid-batch; its items follow the policy."""
        subtask = self.store.get_subtask(subtask_uuid)
        if subtask is None:
            raise NotFoundError(f"Subtask {subtask_uuid} does not exist")
        task = self.store.get_main_task(subtask.parent_task_uuid)
        if task is None:
            raise NotFoundError(f"Task {subtask.parent_task_uuid} does not exist")
        logger.warning(
            "subtask_run event=abandoned subtask_uuid=%s reason=%s", subtask_uuid, reason
        )
        closed = self._close_subtask(
            task,
            subtask,
            results=list(subtask.results),
            unprocessed=list(subtask.resources[len(subtask.results) :]),
            status="failed",
        )
        return closed[0] if closed is not None else task

    def finalize(self, task_uuid: str) -> bool:
        """Write the final durable record, then retire the task from the fast store.

        Returns False when the durable write failed; the task then stays active so
        reconciliation can finalize it again.
        """
        task = self.store.get_main_task(task_uuid)
        if task is None:
            raise NotFoundError(f"Task {task_uuid} does not exist")
        if task.status == "pending":
            task = self.store.set_main_status(task_uuid, "processing")
        if task.status == "processing":
            task = self.store.set_main_status(task_uuid, "completed")

        subtasks = self.store.list_subtasks(task_uuid)
        completed_at = _utc_now()
        try:
            current = self.logs.get_batch_log(task_uuid)
            details = dict(current.details) if current is not None else {}
            details.update(build_final_details(task, subtasks, completed_at=completed_at))
            self.logs.update_batch_log(
                task_uuid,
                status=task.status,
                success_count=task.success_count,
                failed_count=task.failed_count,
                details=details,
                completed_at=completed_at,
            )
        except Exception:  # noqa: BLE001
            logger.exception("subtask_run event=finalize_failed task_uuid=%s", task_uuid)
            return False

        self.store.retire_task(task)
        logger.info(
            "subtask_run event=finalized task_uuid=%s success=%d failed=%d",
            task_uuid,
            task.success_count,
            task.failed_count,
        )
        return True

    def _close_subtask(
        self,
        task: MainTask,
        subtask: Subtask,
        *,
        results: list[ItemResult],
        unprocessed: list[ResourceItem],
        status: str,
    ) -> tuple[MainTask, Subtask] | None:
        """Record the outcome of a processing subtask; None if it was closed already."""
        continuation: Subtask | None = None
        unprocessed_count = 0
        if unprocessed:
            if self.partial_timeout_policy == "fail":
                results = results + [
                    ItemResult(name=item.name, success=False, error=NOT_PROCESSED_ERROR)
                    for item in unprocessed
                ]
            else:
                unprocessed_count = len(unprocessed)
                latest = self.store.get_main_task(task.uuid) or task
                continuation = Subtask(
                    uuid=str(uuid_lib.uuid4()),
                    parent_task_uuid=task.uuid,
                    batch_index=latest.total_batches + 1,
                    resources=unprocessed,
                    continuation_of=subtask.uuid,
                    created_at=_utc_now(),
                )

        success_count = sum(1 for result in results if result.success)
        failed_count = len(results) - success_count
        try:
            subtask = self.store.transition_subtask(
                subtask.uuid,
                status,
                results=results,
                success_count=success_count,
                failed_count=failed_count,
                unprocessed_count=unprocessed_count,
                completed_at=_utc_now(),
            )
        except InvalidTransitionError:
            # Reconciliation abandoned this run and already requeued its items.
            logger.warning(
                "subtask_run event=superseded subtask_uuid=%s processed=%d",
                subtask.uuid,
                len(results),
            )
            return None
        if continuation is not None:
            self.store.push_continuation(continuation)
            logger.info(
                "subtask_run event=requeued subtask_uuid=%s continuation_uuid=%s items=%d",
                subtask.uuid,
                continuation.uuid,
                len(continuation.resources),
            )
        task = self.store.record_batch_completion(
            task.uuid,
            success_count=success_count,
            failed_count=failed_count,
            added_batches=1 if continuation is not None else 0,
        )
        self._write_milestone(task)
        return task, subtask

    def _continue_chain(self, task_uuid: str) -> None:
        try:
            dispatched = self.chain.trigger_next(task_uuid)
        except OrchestrationStall:
            logger.exception("subtask_run event=stalled task_uuid=%s", task_uuid)
            return
        if dispatched is None:
            logger.error(
                "subtask_run event=stalled task_uuid=%s reason=no queued subtask", task_uuid
            )

    def _write_milestone(self, task: MainTask) -> None:
        try:
            self.logs.update_batch_log(
                task.uuid,
                status="processing",
                success_count=task.success_count,
                failed_count=task.failed_count,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "subtask_run event=milestone_failed task_uuid=%s reason=%s", task.uuid, exc
            )


def build_final_details(
    task: MainTask, subtasks: list[Subtask], *, completed_at: datetime
) -> dict[str, Any]:
    """Durable outcome of a task: batch metadata, per-batch summaries, item results."""
    results = [result for subtask in subtasks for result in subtask.results]
    failed = [{"name": result.name, "error": result.error} for result in results if not result.success]
    total = task.total_resources
    success_rate = round(task.success_count / total * 100, 2) if total else 0.0
    return {
        "batch_info": {
            "task_uuid": task.uuid,
            "title": task.title,
            "total_resources": total,
            "total_batches": task.total_batches,
            "batch_size": task.batch_size,
            "created_at": task.created_at.isoformat(),
            "completed_at": completed_at.isoformat(),
        },
        "batches": [
            {
                "batch_index": subtask.batch_index,
                "subtask_uuid": subtask.uuid,
                "status": subtask.status,
                "success_count": subtask.success_count,
                "failed_count": subtask.failed_count,
                "unprocessed_count": subtask.unprocessed_count,
                "continuation_of": subtask.continuation_of,
                "started_at": subtask.started_at.isoformat() if subtask.started_at else None,
                "completed_at": subtask.completed_at.isoformat() if subtask.completed_at else None,
            }
            for subtask in subtasks
        ],
        "results": [result.model_dump() for result in results],
        "failed_resources": failed,
        "summary": {
            "total": total,
            "success": task.success_count,
            "failed": task.failed_count,
            "success_rate": success_rate,
            "duration_s": round((completed_at - task.created_at).total_seconds(), 3),
        },
    }


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _skipped(subtask: Subtask) -> SubtaskOutcome:
    return SubtaskOutcome(
        subtask_uuid=subtask.uuid,
        batch_index=subtask.batch_index,
        status=subtask.status,
        success_count=subtask.success_count,
        failed_count=subtask.failed_count,
        unprocessed_count=subtask.unprocessed_count,
        skipped=True,
    )
