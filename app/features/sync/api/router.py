"""
Sync and job routes.

Domain exceptions are mapped to HTTP status codes here and nowhere else.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from app.auth.verify import auth_dependency
from app.features.sync.api.schemas import (
    BatchStatusResponse,
    CancelSessionResponse,
    ErrorSummaryResponse,
    JobResponse,
    ProcessJobsRequest,
    ProcessJobsResponse,
    SyncRunRequest,
    SyncRunResponse,
    SyncSessionResponse,
    SyncSessionsListResponse,
)
from app.features.sync.container import SyncContainer
from app.features.sync.domain import ProgressView, SyncServiceName, SyncStatus
from app.features.sync.domain.exceptions import (
    ConfigurationError,
    IntegrationNotFoundError,
    SessionNotCancellableError,
    SessionNotFoundError,
    SyncFailedError,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])
jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_container(request: Request) -> SyncContainer:
    container = getattr(request.app.state, "sync", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync services not initialized"
        )
    return container


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


@router.post("/{service}/run", response_model=SyncRunResponse)
async def run_sync(
    service: SyncServiceName,
    body: SyncRunRequest | None = Body(default=None),
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
):
    """Import from the provider and process the imported items before returning."""
    user_id = _user_id(claims)
    preferences = body.preferences if body else None

    try:
        result = await container.blocking_sync.run(user_id, service, preferences)
        return SyncRunResponse.from_result(result)

    except IntegrationNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail=f"{service.value} is not connected: {e}",
        )
    except ConfigurationError as e:
        logger.error("Sync not configured", user_id=user_id, service=service.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except SyncFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": str(e),
                "session_id": e.session_id,
                "error_details": e.error_details,
            },
        )


@router.get("/progress/{session_id}", response_model=ProgressView)
async def get_sync_progress(
    session_id: str,
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
):
    user_id = _user_id(claims)
    try:
        return await container.tracker.get_progress_data(session_id, user_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync session not found")


@router.delete("/progress/{session_id}", response_model=CancelSessionResponse)
async def cancel_sync(
    session_id: str,
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
):
    """Cancel a running sync. Already finished sessions answer 409."""
    user_id = _user_id(claims)
    try:
        session = await container.tracker.cancel_session(session_id, user_id)
        return CancelSessionResponse(session_id=session.id, status=session.status)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync session not found")
    except SessionNotCancellableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/sessions", response_model=SyncSessionsListResponse)
async def list_sync_sessions(
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
    service: SyncServiceName | None = Query(default=None),
    session_status: SyncStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100, description="Maximum sessions to return (1-100)"),
):
    user_id = _user_id(claims)
    sessions = await container.tracker.list_sessions(user_id, service, session_status, limit)
    return SyncSessionsListResponse(
        sessions=[SyncSessionResponse.from_session(s) for s in sessions],
        total_count=len(sessions),
    )


@router.get("/errors/summary", response_model=ErrorSummaryResponse)
async def get_error_summary(
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
    hours: int = Query(default=24, ge=1, le=168, description="Hours to look back (1-168)"),
):
    user_id = _user_id(claims)
    return await container.error_summary.get_summary(user_id, hours)


@jobs_router.post("/process", response_model=ProcessJobsResponse)
async def process_jobs(
    body: ProcessJobsRequest | None = Body(default=None),
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
):
    """Run the caller's queued jobs inline."""
    user_id = _user_id(claims)
    body = body or ProcessJobsRequest()
    result = await container.runner.process_user_jobs(user_id, body.max_jobs, batch_id=body.batch_id)
    return ProcessJobsResponse.from_result(result)


@jobs_router.get("/batches/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    batch_id: str,
    claims: dict = Depends(auth_dependency),
    container: SyncContainer = Depends(get_container),
    include_jobs: bool = Query(default=False),
):
    user_id = _user_id(claims)
    batch = await container.queue.get_batch_status(user_id, batch_id)
    if batch["total"] == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    jobs = []
    if include_jobs:
        jobs = [
            JobResponse.from_job(job)
            for job in await container.queue.list_jobs(user_id, batch_id=batch_id)
        ]
    return BatchStatusResponse(**batch, jobs=jobs)
