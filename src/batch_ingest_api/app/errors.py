"""Error taxonomy for the ingestion pipeline.

HTTP-visible errors carry a ``status_code`` so the app factory can map them in one
exception handler. Upstream and orchestration errors stay internal: they are caught
and logged at the item, batch, or trigger boundary.
"""

from __future__ import annotations


class BatchIngestError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SubmissionValidationError(BatchIngestError):
    """Submission rejected before anything was created."""

    status_code = 422

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class NotFoundError(BatchIngestError):
    status_code = 404


class AuthenticationError(BatchIngestError):
    status_code = 401


class AuthorizationError(BatchIngestError):
    status_code = 403


class InvalidTransitionError(BatchIngestError):
    """A task or subtask status change that would move backwards."""

    status_code = 409


class UpstreamError(BatchIngestError):
    """AI provider or backend failure; soft, item-level only."""

    status_code = 502


class UpstreamTimeout(UpstreamError):
    status_code = 504


class OrchestrationStall(BatchIngestError):
    """The next subtask could not be triggered; forward progress stops silently."""


class PartialBatchTimeout(BatchIngestError):
    """A subtask ran out of its wall-clock budget with items left."""

    def __init__(self, subtask_uuid: str, *, processed: int, unprocessed: int) -> None:
        super().__init__(
            f"Subtask {subtask_uuid} exceeded its time budget: "
            f"{processed} processed, {unprocessed} left"
        )
        self.subtask_uuid = subtask_uuid
        self.processed = processed
        self.unprocessed = unprocessed
