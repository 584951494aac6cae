"""Fire-and-forget AI content review.

Beginner terms:
- Risk score: 0..100 from the provider; higher means riskier.
- Auto-approve: a score under the threshold flips the resource to "approved".
- Dead letter: a failed review recorded for later inspection instead of retried.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import AliasChoices, BaseModel, Field

from .catalog import CatalogStore
from .errors import UpstreamError
from .llm import LLMAdapter
from .models import PersistedResource, ReviewOutcome

logger = logging.getLogger(__name__)

REVIEW_SYSTEM_PROMPT = (
    "You are a content moderation assistant for a resource-sharing site. Rate the "
    "risk of the resource from 0 (harmless) to 100 (clearly illegal, fraudulent, or "
    "malicious). Ordinary learning material, tools, open-source projects, and "
    "entertainment are low risk (usually 20-40); only clear violations score above 70. "
    'Return only a JSON object with keys "risk_score" (number) and "reasoning" (string).'
)


class ReviewReply(BaseModel):
    risk_score: float = Field(validation_alias=AliasChoices("risk_score", "riskScore"))
    reasoning: str = Field(min_length=1)


class DeadLetterSink(Protocol):
    def record_dead_letter(self, entry: dict[str, Any]) -> None: ...


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per identifier inside a rolling window."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, identifier: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(identifier, deque())
            while hits and now - hits[0] >= self.window_s:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True


class ContentReviewer:
    def __init__(
        self,
        *,
        catalog: CatalogStore,
        llm_adapter: LLMAdapter | None,
        dead_letters: DeadLetterSink | None = None,
        enabled: bool = True,
        auto_approve_threshold: int = 60,
        neutral_score: int = 50,
        timeout_s: float = 20.0,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        max_workers: int = 4,
    ) -> None:
        self.catalog = catalog
        self.llm_adapter = llm_adapter
        self.dead_letters = dead_letters
        self.enabled = enabled
        self.auto_approve_threshold = auto_approve_threshold
        self.neutral_score = neutral_score
        self.timeout_s = timeout_s
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(max_requests=20, window_s=60.0)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="review")

    def submit(self, resource: PersistedResource, user_id: str) -> Future[ReviewOutcome] | None:
        """Queue a review; the caller never waits on the returned future."""
        if not self.enabled:
            return None
        return self._pool.submit(self.review, resource, user_id)

    def review(self, resource: PersistedResource, user_id: str) -> ReviewOutcome:
        try:
            outcome = self._score(resource, user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "review event=failed resource_uuid=%s reason=%s", resource.uuid, exc
            )
            outcome = ReviewOutcome(
                risk_score=self.neutral_score,
                reasoning=f"AI review failed: {exc}",
                auto_approved=False,
            )
            self._dead_letter(resource, user_id, stage="score", error=exc)

        status = "approved" if outcome.auto_approved else "pending"
        try:
            self.catalog.update_resource_review(resource.uuid, outcome, status=status)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "review event=writeback_failed resource_uuid=%s reason=%s", resource.uuid, exc
            )
            self._dead_letter(resource, user_id, stage="writeback", error=exc)
        else:
            logger.info(
                "review event=completed resource_uuid=%s risk_score=%d status=%s",
                resource.uuid,
                outcome.risk_score,
                status,
            )
        return outcome

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _score(self, resource: PersistedResource, user_id: str) -> ReviewOutcome:
        if self.llm_adapter is None:
            raise UpstreamError("no review provider configured")
        if not self.rate_limiter.allow(user_id):
            raise UpstreamError(f"review rate limit exceeded for {user_id}")
        reply = self.llm_adapter.generate_structured(
            system_prompt=REVIEW_SYSTEM_PROMPT,
            user_prompt=_review_prompt(resource),
            response_model=ReviewReply,
            timeout_s=self.timeout_s,
            temperature=0.1,
        )
        score = max(0, min(100, round(reply.risk_score)))
        return ReviewOutcome(
            risk_score=score,
            reasoning=reply.reasoning,
            auto_approved=score < self.auto_approve_threshold,
        )

    def _dead_letter(
        self, resource: PersistedResource, user_id: str, *, stage: str, error: Exception
    ) -> None:
        if self.dead_letters is None:
            return
        try:
            self.dead_letters.record_dead_letter(
                {
                    "resource_uuid": resource.uuid,
                    "user_id": user_id,
                    "stage": stage,
                    "error": str(error),
                    "failed_at": datetime.now(tz=UTC).isoformat(),
                }
            )
        except Exception:  # noqa: BLE001
            logger.exception("review event=dead_letter_failed resource_uuid=%s", resource.uuid)


def _review_prompt(resource: PersistedResource) -> str:
    lines = [f"Title: {resource.title}", f"Description: {resource.description}"]
    if resource.content:
        lines.append(f"Content: {resource.content[:1000]}")
    if resource.file_url:
        lines.append(f"Link: {resource.file_url}")
    return "\n".join(lines)
