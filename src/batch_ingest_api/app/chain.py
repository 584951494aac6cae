"""Continuation protocol: hand the next pending subtask to a fresh invocation.

Beginner terms:
- Chain: each finished subtask triggers the next one; nothing else drives a task.
- Worker mode: one consumer thread per process drains dispatched subtasks in order.
- HTTP mode: the service calls its own internal route so every subtask gets a new
  request (and a new host time budget) on platforms that cap request duration.
- Inline mode: the caller's thread does the work; used by tests and one-shot scripts.
"""

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any
from urllib import error, request

from .errors import OrchestrationStall
from .fast_store import RedisTaskStateStore
from .settings import Settings

logger = logging.getLogger(__name__)

SubtaskProcessor = Callable[[str], Any]

INTERNAL_PROCESS_PATH = "/internal/batch-upload/process-subtask"
INTERNAL_TOKEN_HEADER = "X-Internal-Token"


class SubtaskChain:
    """Base chain: queue access plus a mode-specific ``_dispatch``."""

    mode = "base"

    def __init__(self, store: RedisTaskStateStore) -> None:
        self.store = store
        self._processor: SubtaskProcessor | None = None

    def bind(self, processor: SubtaskProcessor) -> None:
        """Attach the callable that runs one subtask (the executor)."""
        self._processor = processor

    def trigger_next(self, task_uuid: str) -> str | None:
        """Pop the next pending subtask of ``task_uuid`` and dispatch it.

        Returns the dispatched subtask uuid, or None when the queue is empty.
        """
        try:
            subtask_uuid = self.store.pop_next_subtask_uuid(task_uuid)
        except Exception as exc:  # noqa: BLE001
            raise OrchestrationStall(
                f"Could not pop next subtask for task {task_uuid}: {exc}"
            ) from exc
        if subtask_uuid is None:
            logger.info("chain event=queue_empty task_uuid=%s", task_uuid)
            return None
        self.trigger_subtask(subtask_uuid)
        return subtask_uuid

    def trigger_subtask(self, subtask_uuid: str) -> None:
        logger.info("chain event=dispatch mode=%s subtask_uuid=%s", self.mode, subtask_uuid)
        try:
            self.store.mark_dispatched(subtask_uuid)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "chain event=mark_dispatched_failed subtask_uuid=%s reason=%s", subtask_uuid, exc
            )
        self._dispatch(subtask_uuid)

    def shutdown(self) -> None:
        return None

    def _dispatch(self, subtask_uuid: str) -> None:
        raise NotImplementedError

    def _process(self, subtask_uuid: str) -> Any:
        if self._processor is None:
            raise OrchestrationStall("Chain has no subtask processor bound")
        return self._processor(subtask_uuid)


class WorkerSubtaskChain(SubtaskChain):
    """Single consumer thread; at most one subtask runs at a time per process."""

    mode = "worker"

    def __init__(self, store: RedisTaskStateStore) -> None:
        super().__init__(store)
        self._queue: queue.Queue[str | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def _dispatch(self, subtask_uuid: str) -> None:
        self._ensure_started()
        self._queue.put(subtask_uuid)

    def wait_idle(self, timeout_s: float = 10.0) -> bool:
        """Block until every dispatched subtask (and its successors) finished."""
        deadline = time.monotonic() + timeout_s
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def shutdown(self) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=5.0)
        self._thread = None

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._consume, name="subtask-chain", daemon=True
            )
            self._thread.start()

    def _consume(self) -> None:
        while True:
            subtask_uuid = self._queue.get()
            try:
                if subtask_uuid is None:
                    return
                self._process(subtask_uuid)
            except Exception:  # noqa: BLE001
                logger.exception("chain event=worker_failed subtask_uuid=%s", subtask_uuid)
            finally:
                self._queue.task_done()


class HttpSubtaskChain(SubtaskChain):
    """Self-call through the internal route after a short delay."""

    mode = "http"

    def __init__(
        self,
        store: RedisTaskStateStore,
        *,
        base_url: str,
        internal_token: str = "",
        delay_s: float = 0.1,
        timeout_s: float = 2.0,
    ) -> None:
        super().__init__(store)
        self.url = f"{base_url.rstrip('/')}{INTERNAL_PROCESS_PATH}"
        self.internal_token = internal_token
        self.delay_s = delay_s
        self.timeout_s = timeout_s

    def _dispatch(self, subtask_uuid: str) -> None:
        thread = threading.Thread(
            target=self._deliver,
            args=(subtask_uuid,),
            name=f"subtask-trigger-{subtask_uuid[:8]}",
            daemon=True,
        )
        thread.start()

    def _deliver(self, subtask_uuid: str) -> None:
        if self.delay_s > 0:
            time.sleep(self.delay_s)
        try:
            self._post(subtask_uuid)
            logger.info("chain event=delivered subtask_uuid=%s", subtask_uuid)
            return
        except (TimeoutError, socket.timeout):
            # The request went out; the receiver keeps running after we stop waiting.
            logger.info("chain event=delivered_no_reply subtask_uuid=%s", subtask_uuid)
            return
        except (error.URLError, OSError, ValueError) as exc:
            logger.warning(
                "chain event=delivery_failed subtask_uuid=%s reason=%s; processing in-process",
                subtask_uuid,
                exc,
            )

        try:
            self._process(subtask_uuid)
        except Exception:  # noqa: BLE001
            logger.exception("chain event=stalled subtask_uuid=%s", subtask_uuid)

    def _post(self, subtask_uuid: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.internal_token:
            headers[INTERNAL_TOKEN_HEADER] = self.internal_token
        req = request.Request(
            url=self.url,
            data=json.dumps({"subtask_uuid": subtask_uuid}).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            response.read()


class InlineSubtaskChain(SubtaskChain):
    """Run subtasks on the caller's thread, draining continuations iteratively."""

    mode = "inline"

    def __init__(self, store: RedisTaskStateStore) -> None:
        super().__init__(store)
        self._local = threading.local()

    def _dispatch(self, subtask_uuid: str) -> None:
        pending: deque[str] | None = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append(subtask_uuid)
            return

        pending = deque([subtask_uuid])
        self._local.pending = pending
        try:
            while pending:
                current = pending.popleft()
                try:
                    self._process(current)
                except Exception:  # noqa: BLE001
                    logger.exception("chain event=inline_failed subtask_uuid=%s", current)
        finally:
            self._local.pending = None


def build_chain(settings: Settings, store: RedisTaskStateStore) -> SubtaskChain:
    if settings.chain_mode == "http":
        return HttpSubtaskChain(
            store,
            base_url=settings.public_base_url,
            internal_token=settings.internal_token,
            delay_s=settings.subtask_trigger_delay_s,
            timeout_s=settings.trigger_timeout_s,
        )
    if settings.chain_mode == "inline":
        return InlineSubtaskChain(store)
    return WorkerSubtaskChain(store)
