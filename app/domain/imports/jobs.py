"""
Persistent tracking for import jobs.

An import job moves PENDING -> PROCESSING -> COMPLETED | FAILED (a PENDING
job may also go straight to FAILED when it is cancelled). Status changes are
conditional UPDATEs on the current status, so two workers can never both claim
the same job, and nothing moves a job out of a terminal state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from app.db.models import ImportJob, ImportKind, ImportStatus, TERMINAL_IMPORT_STATUSES
from app.domain.imports.error_log import ErrorSummary

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class ImportJobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found")


class InvalidJobTransitionError(Exception):
    """Raised when a job is asked to make a status change its state does not allow."""

    def __init__(self, job_id: str, current: str, action: str):
        self.job_id = job_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} import job {job_id} in status {current}")


@dataclass
class ImportSettings:
    """Per-upload options, stored as JSON on the job."""
    column_mapping: Dict[str, str] = field(default_factory=dict)
    default_advisor_id: Optional[str] = None
    batch_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column_mapping": dict(self.column_mapping),
            "default_advisor_id": self.default_advisor_id,
            "batch_size": self.batch_size,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "ImportSettings":
        payload = payload or {}
        batch_size = payload.get("batch_size")
        return cls(
            column_mapping={str(k): str(v) for k, v in (payload.get("column_mapping") or {}).items()},
            default_advisor_id=payload.get("default_advisor_id"),
            batch_size=int(batch_size) if batch_size else None,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _load_job(session: Session, job_id: str) -> ImportJob:
    job = session.get(ImportJob, job_id, populate_existing=True)
    if job is None:
        raise ImportJobNotFoundError(job_id)
    return job


def _transition(
    session: Session,
    job_id: str,
    allowed: Iterable[ImportStatus],
    values: Dict[str, Any],
) -> int:
    """Apply ``values`` only if the job is currently in one of ``allowed``."""
    allowed_values = [status.value for status in allowed]
    return (
        session.query(ImportJob)
        .filter(ImportJob.id == job_id, ImportJob.status.in_(allowed_values))
        .update(values, synchronize_session=False)
    )


def _refuse(session: Session, job_id: str, action: str) -> None:
    session.rollback()
    job = _load_job(session, job_id)
    raise InvalidJobTransitionError(job_id, job.status, action)


def create_import_job(
    session: Session,
    *,
    import_kind: ImportKind,
    user_id: str,
    dealership_id: Optional[str],
    original_filename: str,
    filename: str,
    file_size: int,
    import_settings: Optional[ImportSettings] = None,
) -> ImportJob:
    """Create and persist a new PENDING import job."""
    job = ImportJob(
        import_kind=ImportKind(import_kind).value,
        user_id=user_id,
        dealership_id=dealership_id,
        original_filename=original_filename,
        filename=filename,
        file_size=file_size,
        status=ImportStatus.PENDING.value,
        import_settings=(import_settings or ImportSettings()).to_dict(),
    )
    session.add(job)
    session.commit()
    logger.info(f"Created {job.import_kind} import job {job.id} for '{original_filename}'")
    return job


def attach_queue_job(session: Session, job_id: str, queue_job_id: str) -> ImportJob:
    """Remember which queue entry carries this job. Allowed in any status."""
    job = _load_job(session, job_id)
    job.queue_job_id = str(queue_job_id)
    session.commit()
    return job


def claim_import_job(session: Session, job_id: str) -> Optional[ImportJob]:
    """
    Move a PENDING job to PROCESSING.

    Returns:
        The claimed job, or None when the job was already claimed or finished
        (a redelivered queue entry must not process the file twice)

    Raises:
        ImportJobNotFoundError: If the job does not exist
    """
    claimed = _transition(
        session,
        job_id,
        [ImportStatus.PENDING],
        {"status": ImportStatus.PROCESSING.value, "started_at": _now()},
    )
    if claimed == 0:
        session.rollback()
        job = _load_job(session, job_id)
        logger.info(f"Import job {job_id} is {job.status}; skipping claim")
        return None

    session.commit()
    return _load_job(session, job_id)


def record_parse_totals(session: Session, job_id: str, total_rows: int, rejected_rows: int) -> ImportJob:
    """Store the row count of the parsed file and how many rows failed validation."""
    updated = _transition(
        session,
        job_id,
        [ImportStatus.PROCESSING],
        {"total_rows": total_rows, "rejected_rows": rejected_rows},
    )
    if updated == 0:
        _refuse(session, job_id, "record totals for")
    session.commit()
    return _load_job(session, job_id)


def increment_job_counters(
    session: Session,
    job_id: str,
    *,
    processed: int = 0,
    successful: int = 0,
    failed: int = 0,
) -> None:
    """
    Add to the running counters of a PROCESSING job.

    Runs as one UPDATE in the caller's transaction and does not commit, so the
    counters become visible together with the rows they count.
    """
    updated = _transition(
        session,
        job_id,
        [ImportStatus.PROCESSING],
        {
            "processed_rows": ImportJob.processed_rows + processed,
            "successful_rows": ImportJob.successful_rows + successful,
            "failed_rows": ImportJob.failed_rows + failed,
        },
    )
    if updated == 0:
        _refuse(session, job_id, "update counters of")


def complete_import_job(session: Session, job_id: str, summary: ErrorSummary) -> ImportJob:
    """PROCESSING -> COMPLETED. Row failures do not prevent completion."""
    updated = _transition(
        session,
        job_id,
        [ImportStatus.PROCESSING],
        {
            "status": ImportStatus.COMPLETED.value,
            "completed_at": _now(),
            "error_summary": summary.to_dict(),
        },
    )
    if updated == 0:
        _refuse(session, job_id, "complete")
    session.commit()
    job = _load_job(session, job_id)
    logger.info(
        f"Import job {job_id} completed: {job.successful_rows} imported, "
        f"{job.failed_rows} failed, {job.rejected_rows} rejected of {job.total_rows}"
    )
    return job


def fail_import_job(
    session: Session,
    job_id: str,
    error_message: str,
    summary: Optional[ErrorSummary] = None,
) -> ImportJob:
    """PENDING | PROCESSING -> FAILED, keeping whatever counters were reached."""
    summary = summary or ErrorSummary()
    summary.general_error = error_message
    updated = _transition(
        session,
        job_id,
        [ImportStatus.PENDING, ImportStatus.PROCESSING],
        {
            "status": ImportStatus.FAILED.value,
            "completed_at": _now(),
            "error_summary": summary.to_dict(),
        },
    )
    if updated == 0:
        _refuse(session, job_id, "fail")
    session.commit()
    logger.warning(f"Import job {job_id} failed: {error_message}")
    return _load_job(session, job_id)


def cancel_import_job(session: Session, job_id: str) -> ImportJob:
    """Cancel a job that has not started yet."""
    updated = _transition(
        session,
        job_id,
        [ImportStatus.PENDING],
        {
            "status": ImportStatus.FAILED.value,
            "completed_at": _now(),
            "error_summary": ErrorSummary(general_error=CANCELLED_REASON).to_dict(),
        },
    )
    if updated == 0:
        _refuse(session, job_id, "cancel")
    session.commit()
    logger.info(f"Import job {job_id} cancelled before processing")
    return _load_job(session, job_id)


def is_terminal(job: ImportJob) -> bool:
    return ImportStatus(job.status) in TERMINAL_IMPORT_STATUSES


def get_import_job(
    session: Session,
    job_id: str,
    dealership_id: Optional[str] = None,
) -> Optional[ImportJob]:
    """Fetch a single job by ID, optionally restricted to a dealership."""
    query = session.query(ImportJob).filter(ImportJob.id == job_id)
    if dealership_id is not None:
        query = query.filter(ImportJob.dealership_id == dealership_id)
    return query.populate_existing().first()


def list_import_jobs(
    session: Session,
    *,
    dealership_id: Optional[str],
    user_id: Optional[str] = None,
    status: Optional[ImportStatus] = None,
    import_kind: Optional[ImportKind] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    """List a dealership's jobs, newest first."""
    query = session.query(ImportJob).filter(ImportJob.dealership_id == dealership_id)
    if user_id:
        query = query.filter(ImportJob.user_id == user_id)
    if status:
        query = query.filter(ImportJob.status == ImportStatus(status).value)
    if import_kind:
        query = query.filter(ImportJob.import_kind == ImportKind(import_kind).value)

    total = query.count()
    jobs = (
        query.order_by(ImportJob.created_at.desc(), ImportJob.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return jobs, total
