"""FastAPI application wiring for the batch ingestion service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; backing stores are connected here, not at import.
- app.state.services: the shared pipeline objects that route handlers reuse.
- Dependency: a function FastAPI runs before a handler (here, reading the caller).
"""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from .app.auth import admin_caller, check_internal_token
from .app.catalog import CatalogStore, PostgresCatalogStore
from .app.category_cache import CategoryCache
from .app.chain import SubtaskChain, build_chain
from .app.enricher import ResourceEnricher
from .app.errors import BatchIngestError
from .app.executor import ResourceItemProcessor, SubtaskExecutor
from .app.fast_store import RedisTaskStateStore
from .app.llm import LLMAdapter, build_llm_adapter
from .app.models import (
    BatchLog,
    Caller,
    ParseTextRequest,
    ParseTextResponse,
    ProcessSubtaskRequest,
    RecoverRequest,
    SubmitBatchRequest,
    SubmitBatchResponse,
    SubtaskOutcome,
)
from .app.progress import ProgressService
from .app.recovery import ChainReconciler
from .app.reviewer import ContentReviewer, SlidingWindowRateLimiter
from .app.settings import Settings, get_settings
from .app.storage import BatchLogStorage, PostgresBatchLogStorage
from .app.submitter import TaskSubmitter
from .app.text_parser import TextParser

logger = logging.getLogger(__name__)


@dataclass
class BatchIngestServices:
    """Everything a request handler may need, built once per app."""

    settings: Settings
    store: RedisTaskStateStore
    logs: BatchLogStorage
    catalog: CatalogStore
    category_cache: CategoryCache
    reviewer: ContentReviewer
    chain: SubtaskChain
    executor: SubtaskExecutor
    submitter: TaskSubmitter
    progress: ProgressService
    reconciler: ChainReconciler
    text_parser: TextParser

    def shutdown(self) -> None:
        self.chain.shutdown()
        self.reviewer.shutdown(wait=False)


def build_services(
    settings: Settings,
    *,
    store: RedisTaskStateStore | None = None,
    logs: BatchLogStorage | None = None,
    catalog: CatalogStore | None = None,
    llm_adapter: LLMAdapter | None = None,
    chain: SubtaskChain | None = None,
) -> BatchIngestServices:
    """Assemble the pipeline; anything not injected is built from settings."""
    if (logs is None or catalog is None) and not settings.database_url:
        raise RuntimeError("BATCH_INGEST_DATABASE_URL is required.")
    if logs is None:
        logs = PostgresBatchLogStorage(settings.database_url)
        logs.migrate()
    if catalog is None:
        catalog = PostgresCatalogStore(settings.database_url)
        if settings.migrate_catalog:
            catalog.migrate()
    if store is None:
        store = RedisTaskStateStore.from_settings(settings)
    if llm_adapter is None:
        llm_adapter = build_llm_adapter(settings)
    if chain is None:
        chain = build_chain(settings, store)

    category_cache = CategoryCache(
        catalog,
        ttl_s=settings.category_cache_ttl_s,
        max_wait_s=settings.category_cache_max_wait_s,
        default_category_id=settings.default_category_id,
    )
    reviewer = ContentReviewer(
        catalog=catalog,
        llm_adapter=llm_adapter,
        dead_letters=store,
        enabled=settings.review_enabled,
        auto_approve_threshold=settings.review_auto_approve_threshold,
        neutral_score=settings.review_neutral_score,
        timeout_s=settings.review_timeout_s,
        rate_limiter=SlidingWindowRateLimiter(
            max_requests=settings.review_rate_limit_max,
            window_s=settings.review_rate_limit_window_s,
        ),
        max_workers=settings.review_workers,
    )
    item_processor = ResourceItemProcessor(
        enricher=ResourceEnricher(
            llm_adapter=llm_adapter,
            ai_timeout_s=settings.ai_timeout_s,
            default_category_id=settings.default_category_id,
        ),
        catalog=catalog,
        reviewer=reviewer,
        resource_timeout_s=settings.resource_timeout_s,
    )
    executor = SubtaskExecutor(
        store=store,
        logs=logs,
        category_cache=category_cache,
        item_processor=item_processor,
        chain=chain,
        max_processing_time_s=settings.max_processing_time_s,
        partial_timeout_policy=settings.partial_timeout_policy,
    )
    chain.bind(executor.run)

    return BatchIngestServices(
        settings=settings,
        store=store,
        logs=logs,
        catalog=catalog,
        category_cache=category_cache,
        reviewer=reviewer,
        chain=chain,
        executor=executor,
        submitter=TaskSubmitter(
            store=store,
            logs=logs,
            chain=chain,
            batch_size=settings.batch_size,
            max_resources=settings.max_resources_per_submission,
            max_name_length=settings.max_resource_name_length,
        ),
        progress=ProgressService(
            store=store, logs=logs, max_active_listed=settings.max_user_active_tasks
        ),
        reconciler=ChainReconciler(
            store=store,
            logs=logs,
            executor=executor,
            chain=chain,
            inactivity_s=settings.recovery_inactivity_s,
            stale_subtask_s=settings.max_processing_time_s + settings.resource_timeout_s,
            dispatch_grace_s=settings.recovery_dispatch_grace_s,
            lock_ttl_s=settings.recovery_lock_ttl_s,
        ),
        text_parser=TextParser(
            llm_adapter=llm_adapter,
            max_text_length=settings.max_text_length,
            max_ai_blocks=settings.max_ai_parse_blocks,
            concurrency=settings.ai_parse_concurrency,
            success_ratio=settings.regex_success_ratio,
            ai_timeout_s=settings.ai_timeout_s,
        ),
    )


def create_app(
    *,
    settings_override: Settings | None = None,
    store: RedisTaskStateStore | None = None,
    logs: BatchLogStorage | None = None,
    catalog: CatalogStore | None = None,
    llm_adapter: LLMAdapter | None = None,
    chain: SubtaskChain | None = None,
) -> FastAPI:
    """Application factory.

    Injected collaborators are wired immediately so tests work with or without the
    lifespan; otherwise the stores are connected on startup.
    """
    settings = settings_override or get_settings()
    logging.getLogger("batch_ingest_api").setLevel(settings.log_level.upper())
    overrides: dict[str, Any] = {
        "store": store,
        "logs": logs,
        "catalog": catalog,
        "llm_adapter": llm_adapter,
        "chain": chain,
    }

    def _ensure_services(app: FastAPI) -> BatchIngestServices:
        if not hasattr(app.state, "services"):
            app.state.services = build_services(settings, **overrides)
        return app.state.services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = _ensure_services(app)
        services.category_cache.warmup()
        logger.info(
            "app event=started chain_mode=%s batch_size=%d",
            services.chain.mode,
            settings.batch_size,
        )
        yield
        services.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    if store is not None and logs is not None and catalog is not None:
        _ensure_services(app)

    @app.exception_handler(BatchIngestError)
    async def handle_pipeline_error(request: Request, exc: BatchIngestError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request event=failed path=%s reason=%s", request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "errors": getattr(exc, "errors", [])},
        )

    def services(request: Request) -> BatchIngestServices:
        return _ensure_services(request.app)

    # Multiple health endpoints map to the same function for compatibility with
    # different health checkers and load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/batch-upload/submit", response_model=SubmitBatchResponse)
    def submit_batch(
        payload: SubmitBatchRequest,
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> SubmitBatchResponse:
        return svc.submitter.submit(payload, caller)

    @app.post("/batch-upload/parse-text", response_model=ParseTextResponse)
    def parse_text(
        payload: ParseTextRequest,
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> ParseTextResponse:
        logger.info("parse_text event=request user_id=%s chars=%d", caller.user_id, len(payload.text))
        return svc.text_parser.parse_text(payload.text)

    @app.get("/batch-upload/progress/{task_uuid}")
    def get_progress(
        task_uuid: str,
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> dict[str, Any]:
        return svc.progress.get_progress(task_uuid, caller)

    @app.get("/batch-upload/logs")
    def list_logs(
        type: str | None = None,
        status: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> dict[str, Any]:
        return svc.progress.list_logs(caller, type=type, status=status, page=page, limit=limit)

    @app.get("/batch-upload/logs/{uuid}")
    def get_log(
        uuid: str,
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> dict[str, BatchLog]:
        return {"log": svc.progress.get_log(uuid, caller)}

    @app.delete("/batch-upload/logs")
    def clear_logs(
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> dict[str, int]:
        return {"deleted": svc.progress.clear_logs(caller)}

    @app.post("/batch-upload/recover")
    def recover(
        payload: RecoverRequest,
        caller: Caller = Depends(admin_caller),
        svc: BatchIngestServices = Depends(services),
    ) -> dict[str, Any]:
        if payload.task_uuid:
            # Ownership is checked the same way progress reads are.
            svc.progress.get_progress(payload.task_uuid, caller)
            actions = svc.reconciler.recover_task(payload.task_uuid)
        else:
            actions = svc.reconciler.sweep()
        return {"actions": [action.model_dump() for action in actions]}

    @app.post("/internal/batch-upload/process-subtask", response_model=SubtaskOutcome)
    def process_subtask(
        payload: ProcessSubtaskRequest,
        x_internal_token: str | None = Header(default=None),
        svc: BatchIngestServices = Depends(services),
    ) -> SubtaskOutcome:
        check_internal_token(settings.internal_token, x_internal_token)
        return svc.executor.run(payload.subtask_uuid)

    return app


app = create_app()


def serve(argv: list[str] | None = None) -> None:
    """Run the API under uvicorn (``batch-ingest-api --port 8000``)."""
    parser = argparse.ArgumentParser(description="Serve the batch ingestion API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)
    uvicorn.run(
        "batch_ingest_api.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    serve()
