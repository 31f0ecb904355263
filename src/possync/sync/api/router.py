"""FastAPI router for POS sync endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from ...api.error_sanitizer import sanitize_error_message
from ...api.exceptions import (
    AlreadyClaimed,
    ConfigurationError,
    CredentialError,
    InvalidJobTransition,
    JobNotFound,
    MissingCredentialFields,
    PosSyncError,
    SyncAlreadyInProgress,
)
from ..domain.entities import SyncTrigger
from ..domain.ports import ISyncJobStore
from ..use_cases import EnqueueSyncUseCase, SyncStatusService
from ..use_cases.sync_status import public_error
from .dependencies import get_enqueue_use_case, get_job_store, get_status_service, verify_api_key
from .schemas import (
    SyncConflictResponse,
    SyncJobDTO,
    SyncJobListResponse,
    SyncRequest,
    SyncStartedResponse,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["POS Sync"])


@router.post(
    "/pos/sync",
    status_code=202,
    response_model=SyncStartedResponse,
    responses={409: {"model": SyncConflictResponse}},
)
async def start_sync(
    request: SyncRequest,
    use_case: EnqueueSyncUseCase = Depends(get_enqueue_use_case),
    _auth: bool = Depends(verify_api_key),
):
    """Start a background sync for a restaurant.

    Returns immediately with the job id; poll /sync-status/{restaurant_id}.
    - 409 if the restaurant already has a pending or running sync
    - 400 if its stored POS credentials are incomplete or unreadable
    """
    try:
        enqueued = await use_case.execute(
            request.restaurant_id,
            trigger=SyncTrigger.MANUAL,
            notification_email=request.notification_email,
            full_sync=request.full_sync,
        )
    except SyncAlreadyInProgress as e:
        return JSONResponse(
            status_code=409,
            content={"detail": "Sync already in progress", "job_id": e.job_id},
        )
    except MissingCredentialFields as e:
        raise HTTPException(
            status_code=400,
            detail={
                "message": sanitize_error_message(e.message),
                "code": e.code,
                "missing_fields": e.missing,
                "present_fields": e.present,
            },
        )
    except (ConfigurationError, CredentialError) as e:
        logger.warning(f"Rejected sync for {request.restaurant_id}: {e}")
        raise HTTPException(
            status_code=400,
            detail={"message": sanitize_error_message(e.message), "code": e.code},
        )

    return enqueued.to_dict()


@router.get("/sync-status/{restaurant_id}", response_model=SyncStatusResponse)
async def get_sync_status(
    restaurant_id: str,
    service: SyncStatusService = Depends(get_status_service),
    _auth: bool = Depends(verify_api_key),
):
    """Current sync state for polling clients. Never a bare 500."""
    try:
        view = await service.get_status(restaurant_id)
    except PosSyncError as e:
        logger.error(f"Sync status unavailable for {restaurant_id}: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unavailable",
                "message": "Sync status is temporarily unavailable",
                "error": {"message": sanitize_error_message(e.message), "code": e.code},
            },
        )
    return view.to_dict()


@router.get("/sync-jobs/{job_id}", response_model=SyncJobDTO)
async def get_sync_job(
    job_id: str,
    service: SyncStatusService = Depends(get_status_service),
    _auth: bool = Depends(verify_api_key),
):
    """Full job record merged with its live queue position."""
    detail = await service.get_job_detail(job_id)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Sync job not found: {job_id}")
    return detail


@router.get("/restaurants/{restaurant_id}/sync-jobs", response_model=SyncJobListResponse)
async def list_sync_jobs(
    restaurant_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: SyncStatusService = Depends(get_status_service),
    _auth: bool = Depends(verify_api_key),
):
    """Recent sync jobs for a restaurant, newest first."""
    jobs = await service.list_jobs(restaurant_id, limit=limit)
    return {"restaurant_id": restaurant_id, "jobs": jobs, "count": len(jobs)}


@router.delete("/sync-jobs/{job_id}", response_model=SyncJobDTO)
async def cancel_sync_job(
    job_id: str,
    store: ISyncJobStore = Depends(get_job_store),
    _auth: bool = Depends(verify_api_key),
):
    """Cancel a pending job. Running and finished jobs answer 409."""
    try:
        job = await store.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail=f"Sync job not found: {job_id}")
    except (AlreadyClaimed, InvalidJobTransition) as e:
        raise HTTPException(
            status_code=409,
            detail={"message": e.message, "code": e.code, "status": e.status},
        )

    logger.info(f"Cancelled sync job {job_id}")
    data = job.to_dict()
    data["error"] = public_error(job.error)
    return data
