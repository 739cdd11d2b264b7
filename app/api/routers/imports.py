"""
Bulk import endpoints: upload, preview, history, status and error export.
"""
import json
import logging
import math
import os
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.api.dependencies import (
    detect_file_type,
    get_database,
    get_db,
    get_import_processor,
    get_settings,
    resolve_import_kind,
)
from app.api.schemas.imports import (
    ImportErrorInfo,
    ImportJobDetailResponse,
    ImportJobInfo,
    ImportJobListResponse,
    ImportPreviewError,
    ImportPreviewResponse,
    ImportPreviewSummary,
    ImportSettingsPayload,
    ImportSummary,
    ImportUploadResponse,
)
from app.core.config import Settings
from app.core.security import AuthContext, require_dealership
from app.db.models import ImportJob, ImportStatus
from app.db.session import Database
from app.domain.imports.error_log import count_import_errors, iter_error_csv, list_import_errors
from app.domain.imports.jobs import ImportSettings, get_import_job, list_import_jobs
from app.domain.imports.orchestrator import ImportProcessor
from app.domain.imports.processors.file_parser import FileParseError

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


async def _save_upload(file: UploadFile, destination: str, max_bytes: int, max_mb: int) -> int:
    """
    Stream an upload to disk, refusing it as soon as it passes ``max_bytes``.

    Returns:
        Number of bytes written
    """
    size = 0
    try:
        with open(destination, "wb") as out:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=(
                            f"{file.filename} is too large. "
                            f"Maximum allowed upload size is {max_mb}MB."
                        ),
                    )
                out.write(chunk)
    except Exception:
        if os.path.exists(destination):
            os.remove(destination)
        raise
    return size


def _parse_import_settings(raw: Optional[str]) -> ImportSettings:
    if not raw:
        return ImportSettings()
    try:
        payload = ImportSettingsPayload(**json.loads(raw))
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid import_settings: {exc}")
    return ImportSettings(
        column_mapping=payload.column_mapping,
        default_advisor_id=payload.default_advisor_id,
        batch_size=payload.batch_size,
    )


def _job_info(job: ImportJob) -> ImportJobInfo:
    return ImportJobInfo.model_validate(job)


def _load_visible_job(db: Session, import_id: str, current_user: AuthContext) -> ImportJob:
    job = get_import_job(db, import_id, dealership_id=current_user.dealership_id)
    if job is None or (not current_user.is_admin and job.user_id != current_user.user_id):
        raise HTTPException(status_code=404, detail="Import not found")
    return job


@router.post("/imports/{kind}", response_model=ImportUploadResponse, status_code=201)
async def upload_import_file(
    kind: str,
    file: UploadFile = File(...),
    import_settings: Optional[str] = Form(None),
    current_user: AuthContext = Depends(require_dealership),
    processor: ImportProcessor = Depends(get_import_processor),
    settings: Settings = Depends(get_settings),
):
    """
    Upload a bookings, enquiries or quotations file for import.

    The file is stored and queued; poll ``GET /imports/{import_id}`` for the
    outcome.

    Parameters:
    - kind: 'bookings', 'enquiries' or 'quotations'
    - file: CSV or XLSX file
    - import_settings: Optional JSON with column_mapping, default_advisor_id, batch_size
    """
    import_kind = resolve_import_kind(kind)
    detect_file_type(file.filename or "")
    options = _parse_import_settings(import_settings)

    _, file_path = processor.new_upload_path(file.filename)
    file_size = await _save_upload(
        file,
        file_path,
        settings.upload_max_file_size_bytes,
        settings.upload_max_file_size_mb,
    )
    logger.info(f"Stored {import_kind.value} upload '{file.filename}' ({file_size} bytes)")

    try:
        job = await run_in_threadpool(
            processor.submit_import,
            kind=import_kind,
            file_path=file_path,
            original_filename=file.filename,
            file_size=file_size,
            user_id=current_user.user_id,
            dealership_id=current_user.dealership_id,
            import_settings=options,
        )
    except FileParseError as exc:
        raise HTTPException(status_code=413, detail=exc.message)
    except Exception as exc:
        logger.exception(f"Could not submit import of '{file.filename}'")
        raise HTTPException(status_code=500, detail=f"Could not queue import: {exc}")

    return ImportUploadResponse(
        success=True,
        message="File uploaded and queued for processing",
        import_id=job.id,
        queue_job_id=job.queue_job_id,
        status=job.status,
        summary=ImportSummary(
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            successful_rows=job.successful_rows,
            failed_rows=job.failed_rows,
            rejected_rows=job.rejected_rows,
        ),
    )


@router.post("/imports/{kind}/preview", response_model=ImportPreviewResponse)
async def preview_import_file(
    kind: str,
    file: UploadFile = File(...),
    import_settings: Optional[str] = Form(None),
    current_user: AuthContext = Depends(require_dealership),
    processor: ImportProcessor = Depends(get_import_processor),
    settings: Settings = Depends(get_settings),
):
    """Parse and validate a file without importing it."""
    import_kind = resolve_import_kind(kind)
    detect_file_type(file.filename or "")
    options = _parse_import_settings(import_settings)

    _, file_path = processor.new_upload_path(file.filename)
    await _save_upload(
        file,
        file_path,
        settings.upload_max_file_size_bytes,
        settings.upload_max_file_size_mb,
    )
    try:
        preview = await run_in_threadpool(
            processor.preview_import,
            file_path,
            import_kind,
            options.column_mapping or None,
        )
    except FileParseError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    finally:
        if os.path.exists(file_path):
            os.remove(file_path)

    return ImportPreviewResponse(
        success=True,
        total_rows=preview.total_rows,
        preview_rows=preview.preview_rows,
        errors=[ImportPreviewError(**error) for error in preview.errors],
        has_more_errors=preview.has_more_errors,
        summary=ImportPreviewSummary(
            valid_rows=preview.valid_rows,
            error_rows=preview.error_rows,
            success_rate=preview.success_rate,
        ),
    )


@router.get("/imports", response_model=ImportJobListResponse)
def list_imports(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[ImportStatus] = None,
    current_user: AuthContext = Depends(require_dealership),
    db: Session = Depends(get_db),
):
    """Import history for the caller's dealership. Non-admins see only their own imports."""
    jobs, total = list_import_jobs(
        db,
        dealership_id=current_user.dealership_id,
        user_id=None if current_user.is_admin else current_user.user_id,
        status=status,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return ImportJobListResponse(
        success=True,
        jobs=[_job_info(job) for job in jobs],
        total_count=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/imports/{import_id}", response_model=ImportJobDetailResponse)
def get_import_status(
    import_id: str,
    error_limit: Optional[int] = Query(None, ge=1, le=1000),
    error_offset: int = Query(0, ge=0),
    current_user: AuthContext = Depends(require_dealership),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Job status, counters, summary and a page of its error records."""
    job = _load_visible_job(db, import_id, current_user)
    limit = error_limit or settings.import_job_error_page_size
    errors, total_errors = list_import_errors(db, job.id, limit=limit, offset=error_offset)
    return ImportJobDetailResponse(
        success=True,
        job=_job_info(job),
        errors=[ImportErrorInfo(**error) for error in errors],
        total_errors=total_errors,
        error_limit=limit,
        error_offset=error_offset,
    )


@router.get("/imports/{import_id}/errors/download")
def download_import_errors(
    import_id: str,
    current_user: AuthContext = Depends(require_dealership),
    db: Session = Depends(get_db),
    database: Database = Depends(get_database),
):
    """Download every error record of an import as CSV."""
    job = _load_visible_job(db, import_id, current_user)
    if count_import_errors(db, job.id) == 0:
        raise HTTPException(status_code=404, detail="No errors found for this import")

    def _stream():
        with database.session() as session:
            yield from iter_error_csv(session, job.id)

    return StreamingResponse(
        _stream(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-errors-{job.id}.csv"'},
    )
