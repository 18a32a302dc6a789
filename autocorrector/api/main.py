"""
FastAPI application for the auto-correction service.
Runs are started, listed, streamed (Server-Sent Events), cancelled, retried
and deleted here; the work itself happens on background threads.
"""

import json
import logging
import queue
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .schemas import (
    CancelRunResponse,
    DeleteRunResponse,
    ErrorResponse,
    HealthResponse,
    RunListResponse,
    RunResponse,
    StartRunRequest,
    StartRunResponse
)
from ..core.config import STREAM_LOG_TAIL, STREAM_POLL_SEC, VERSION, debug_enabled
from ..core.db import health_check
from ..core.errors import (
    ActiveRunExistsError,
    DocumentNotFoundError,
    RunActiveError,
    RunNotFoundError,
    ValidationError
)
from ..core.publisher import END_OF_STREAM
from ..core.run_manager import AutoCorrectionService, build_default_service
from ..core.schema import TERMINAL_STATUSES, CorrectionRun
from ..util.logging import get_logger

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def get_service(request: Request) -> AutoCorrectionService:
    return request.app.state.service


def _run_response(run: CorrectionRun) -> RunResponse:
    return RunResponse.model_validate(run.to_dict())


def _sse(payload: Dict[str, Any], event: str = "progress") -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def stream_run_events(service: AutoCorrectionService, run_id: int, poll_sec: float = STREAM_POLL_SEC) -> Iterator[str]:
    """
    Yield SSE frames for a run: the persisted state first, then live snapshots.
    Ends after a terminal snapshot, or when a poll finds the run terminal.
    """
    subscription = service.publisher.subscribe(run_id)
    try:
        run = service.store.get(run_id)
        yield _sse(run.to_dict(log_tail=STREAM_LOG_TAIL))
        if run.is_terminal:
            return

        while True:
            try:
                snapshot = subscription.get(timeout=poll_sec)
            except queue.Empty:
                # No news: the run may have been finalized by another process
                run = service.store.get(run_id)
                if run.is_terminal:
                    yield _sse(run.to_dict(log_tail=STREAM_LOG_TAIL))
                    return
                yield ": keep-alive\n\n"
                continue

            if snapshot is END_OF_STREAM:
                return
            yield _sse(snapshot)
            if snapshot.get("status") in TERMINAL_STATUSES:
                return
    finally:
        subscription.close()


def create_app(service: AutoCorrectionService = None) -> FastAPI:
    """Build the API around a service; without one the default service is assembled at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = build_default_service()
        stale = app.state.service.cleanup_stale_runs()
        if stale:
            get_logger("autocorrector.api").log_operation("startup.cleanup_stale_runs", "success", {"failed_runs": stale})
        yield

    app = FastAPI(
        title="Manuscript Auto-Correction API",
        version=VERSION,
        description="Iterative audit and correction of long-form manuscripts",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(ActiveRunExistsError)
    async def active_run_exists_handler(request, exc):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request, exc):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RunActiveError)
    async def run_active_handler(request, exc):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RunNotFoundError)
    async def run_not_found_handler(request, exc):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DocumentNotFoundError)
    async def document_not_found_handler(request, exc):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all unhandled exceptions."""
        logging.error(f"Unhandled exception: {exc}")
        content = {"detail": "Internal server error"}
        if debug_enabled():
            content["debug"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint(service: AutoCorrectionService = Depends(get_service)):
        """Check system health."""
        db_health = health_check(service.store.db_path)
        return HealthResponse(
            status="healthy" if db_health else "unhealthy",
            version=VERSION,
            db_health=db_health,
            active_runs=len(service.store.list_active()) if db_health else 0,
            inference=service.auditor.inference.get_status()
        )

    @app.post("/documents/{document_id}/auto-correct", response_model=StartRunResponse, responses=ERROR_RESPONSES)
    def start_run_endpoint(document_id: int, request: Optional[StartRunRequest] = Body(None),
                           service: AutoCorrectionService = Depends(get_service)):
        """Start an auto-correction run; 409 when the document already has an active run."""
        request = request or StartRunRequest()
        run_id = service.start_run(
            document_id,
            max_cycles=request.max_cycles,
            target_score=request.target_score,
            max_critical_issues=request.max_critical_issues
        )
        return StartRunResponse(run_id=run_id)

    @app.get("/documents/{document_id}/auto-correct/runs", response_model=RunListResponse)
    def list_runs_endpoint(document_id: int, service: AutoCorrectionService = Depends(get_service)):
        return RunListResponse(runs=[_run_response(run) for run in service.list_runs(document_id)])

    @app.get("/auto-correct/runs/{run_id}", response_model=RunResponse, responses=ERROR_RESPONSES)
    def get_run_endpoint(run_id: int, service: AutoCorrectionService = Depends(get_service)):
        return _run_response(service.get_run(run_id))

    @app.get("/auto-correct/runs/{run_id}/stream", responses=ERROR_RESPONSES)
    def stream_run_endpoint(run_id: int, service: AutoCorrectionService = Depends(get_service)):
        """Server-Sent Events feed of a run's progress."""
        service.get_run(run_id)
        return StreamingResponse(
            stream_run_events(service, run_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS
        )

    @app.post("/auto-correct/runs/{run_id}/cancel", response_model=CancelRunResponse, responses=ERROR_RESPONSES)
    def cancel_run_endpoint(run_id: int, service: AutoCorrectionService = Depends(get_service)):
        run = service.cancel_run(run_id)
        return CancelRunResponse(run_id=run_id, status=run.status)

    @app.post("/auto-correct/runs/{run_id}/retry", response_model=StartRunResponse, responses=ERROR_RESPONSES)
    def retry_run_endpoint(run_id: int, service: AutoCorrectionService = Depends(get_service)):
        return StartRunResponse(run_id=service.retry_run(run_id))

    @app.delete("/auto-correct/runs/{run_id}", response_model=DeleteRunResponse, responses=ERROR_RESPONSES)
    def delete_run_endpoint(run_id: int, service: AutoCorrectionService = Depends(get_service)):
        service.delete_run(run_id)
        return DeleteRunResponse(run_id=run_id)

    return app


app = create_app()
