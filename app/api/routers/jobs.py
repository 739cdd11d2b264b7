"""
Endpoints for inspecting the import queue.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import get_db, get_import_processor, get_import_queue
from app.api.schemas.imports import ImportJobInfo, QueueJobInfo, QueueStatsResponse
from app.core.security import AuthContext, require_dealership
from app.domain.imports.jobs import get_import_job
from app.domain.imports.orchestrator import ImportProcessor
from app.domain.imports.queue import JobQueue, QueueJob

router = APIRouter(prefix="/import-queue", tags=["import-queue"])


def _load_visible_queue_job(
    queue: JobQueue,
    db: Session,
    queue_job_id: str,
    current_user: AuthContext,
) -> QueueJob:
    queue_job = queue.get_job(queue_job_id)
    if queue_job is None:
        raise HTTPException(status_code=404, detail="Queue job not found")
    job = get_import_job(db, queue_job.data.get("import_id", ""), dealership_id=current_user.dealership_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Queue job not found")
    return queue_job


@router.get("/stats", response_model=QueueStatsResponse)
def get_queue_stats(
    current_user: AuthContext = Depends(require_dealership),
    queue: JobQueue = Depends(get_import_queue),
):
    return QueueStatsResponse(success=True, **queue.stats())


@router.get("/jobs/{queue_job_id}", response_model=QueueJobInfo)
def get_queue_job(
    queue_job_id: str,
    current_user: AuthContext = Depends(require_dealership),
    queue: JobQueue = Depends(get_import_queue),
    db: Session = Depends(get_db),
):
    queue_job = _load_visible_queue_job(queue, db, queue_job_id, current_user)
    return QueueJobInfo(
        id=queue_job.id,
        state=queue_job.state.value,
        progress=queue_job.progress,
        attempts_made=queue_job.attempts_made,
        created_at=queue_job.created_at,
        processed_on=queue_job.processed_on,
        finished_on=queue_job.finished_on,
        return_value=queue_job.return_value,
        failed_reason=queue_job.failed_reason,
        import_id=queue_job.data.get("import_id"),
    )


@router.delete("/jobs/{queue_job_id}", response_model=ImportJobInfo)
def cancel_queue_job(
    queue_job_id: str,
    current_user: AuthContext = Depends(require_dealership),
    queue: JobQueue = Depends(get_import_queue),
    processor: ImportProcessor = Depends(get_import_processor),
    db: Session = Depends(get_db),
):
    """Cancel an import that is still waiting in the queue."""
    _load_visible_queue_job(queue, db, queue_job_id, current_user)
    job = processor.cancel_queued_import(queue_job_id)
    if job is None:
        raise HTTPException(status_code=409, detail="Only waiting jobs can be cancelled")
    return ImportJobInfo.model_validate(job)
