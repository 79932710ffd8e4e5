"""
FastAPI router for sync job control.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from catalog_sync.container import ServiceContainer
from catalog_sync.routers.dependencies import get_container

router = APIRouter(prefix="/api/sync/jobs", tags=["sync-jobs"])


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def create_sync_job(
    payload: Optional[Dict[str, Any]] = Body(None),
    container: ServiceContainer = Depends(get_container),
):
    """
    Create a sync job and start it in the background.

    Body: {"type": "full" | "partial", "options": {...}}; type is inferred
    from options.skus when omitted.
    """
    payload = payload or {}
    job = await container.orchestrator.submit(payload.get("type"), payload.get("options") or {})
    return {"job_id": job.job_id, "type": job.type.value, "status": job.status.value}


@router.get("/{job_id}")
async def get_sync_job(job_id: str, container: ServiceContainer = Depends(get_container)):
    """Job status with progress counters and captured errors."""
    return await container.orchestrator.get_job_status(job_id)


@router.post("/{job_id}/cancel")
async def cancel_sync_job(job_id: str, container: ServiceContainer = Depends(get_container)):
    cancelled = await container.orchestrator.cancel(job_id)
    return {"job_id": job_id, "cancelled": cancelled}


@router.post("/{job_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_sync_job(job_id: str, container: ServiceContainer = Depends(get_container)):
    """Start a new job for the SKUs that failed in job_id."""
    job = await container.orchestrator.retry(job_id)
    return {"job_id": job.job_id, "parent_job_id": job_id, "status": job.status.value}
