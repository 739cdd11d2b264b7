"""
Import orchestration.

``ImportProcessor`` ties the pipeline together: it stores uploads, creates and
enqueues import jobs, and is the queue handler that parses, validates and
persists a job's file. It also serves previews, which run parse and
validation only and write nothing.
"""
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import Settings
from app.db.models import ImportJob, ImportKind, ImportStatus
from app.db.session import Database
from app.domain.imports.error_log import (
    RowFailure,
    record_import_errors_batch,
    summarize_import_errors,
)
from app.domain.imports.jobs import (
    ImportSettings,
    attach_queue_job,
    cancel_import_job,
    claim_import_job,
    complete_import_job,
    create_import_job,
    fail_import_job,
    get_import_job,
    record_parse_totals,
)
from app.domain.imports.persister import BatchPersister, BatchProgress
from app.domain.imports.processors.file_parser import (
    FileParseError,
    ParsedFile,
    detect_file_type,
    parse_import_file,
    validate_file_size,
)
from app.domain.imports.queue import JobQueue, QueueJob, QueueJobState, UnrecoverableJobError
from app.domain.imports.resolver import ReferenceResolver
from app.domain.imports.rows import CanonicalRow, row_to_dict
from app.domain.imports.validators import ValidationResult, validate_parsed_row
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

PROGRESS_CLAIMED = 10
PROGRESS_PARSED = 30
PROGRESS_VALIDATED = 40
PROGRESS_PERSIST_SPAN = 50
PROGRESS_DONE = 100

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class PreviewResult:
    total_rows: int
    valid_rows: int
    error_rows: int
    preview_rows: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    has_more_errors: bool = False

    @property
    def success_rate(self) -> int:
        if self.total_rows == 0:
            return 0
        return round(self.valid_rows / self.total_rows * 100)


def _remove_file(file_path: str) -> None:
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning(f"Could not remove import file {file_path}: {exc}")


def _general_error(job: ImportJob) -> str:
    return (job.error_summary or {}).get("general_error") or f"Import job {job.id} already failed"


def _to_failure(result: ValidationResult) -> RowFailure:
    return RowFailure(
        row_number=result.row_number,
        raw_row=result.raw,
        error_message=result.message,
        error_type=result.error_type,
        field_errors=result.field_errors,
    )


def validate_parsed_file(
    kind: ImportKind,
    parsed: ParsedFile,
    today: Optional[date] = None,
) -> Tuple[List[CanonicalRow], List[ValidationResult]]:
    """Split a parsed file into valid canonical rows and rejected results, in file order."""
    today = today or date.today()
    valid: List[CanonicalRow] = []
    rejected: List[ValidationResult] = []
    for parsed_row in parsed.rows:
        result = validate_parsed_row(kind, parsed_row, today)
        if result.is_valid:
            valid.append(result.row)
        else:
            rejected.append(result)
    return valid, rejected


class ImportProcessor:
    """Runs import jobs and serves upload, preview and cancel requests."""

    def __init__(self, database: Database, settings: Settings, queue: Optional[JobQueue] = None):
        self.database = database
        self.settings = settings
        self.queue = queue

    def new_upload_path(self, original_filename: str) -> Tuple[str, str]:
        """
        Pick where an upload will be stored.

        Returns:
            Tuple of (stored filename, absolute path); the extension is kept so
            the file type can be detected again when the job runs
        """
        os.makedirs(self.settings.upload_dir, exist_ok=True)
        base_name = _UNSAFE_FILENAME_CHARS.sub("_", os.path.basename(original_filename or "upload"))
        stored_name = f"{uuid.uuid4().hex}-{base_name}"
        return stored_name, os.path.abspath(os.path.join(self.settings.upload_dir, stored_name))

    def submit_import(
        self,
        *,
        kind: ImportKind,
        file_path: str,
        original_filename: str,
        file_size: int,
        user_id: str,
        dealership_id: Optional[str],
        import_settings: Optional[ImportSettings] = None,
    ) -> ImportJob:
        """
        Create an import job for a stored upload and put it on the queue.

        With the inline queue the job has already run when this returns; with
        the thread queue it is still PENDING or PROCESSING. Either way the
        returned job is re-read after enqueueing.
        """
        if self.queue is None:
            raise RuntimeError("ImportProcessor was created without a job queue")
        if not validate_file_size(file_path, self.settings.upload_max_file_size_bytes):
            _remove_file(file_path)
            raise FileParseError(
                os.path.basename(original_filename),
                f"{original_filename} exceeds the {self.settings.upload_max_file_size_mb}MB upload limit",
            )

        with self.database.session() as session:
            job = create_import_job(
                session,
                import_kind=kind,
                user_id=user_id,
                dealership_id=dealership_id,
                original_filename=original_filename,
                filename=os.path.basename(file_path),
                file_size=file_size,
                import_settings=import_settings,
            )
            job_id = job.id

        try:
            queue_job = self.queue.add(
                {"import_id": job_id, "file_path": file_path, "user_id": user_id},
                attempts=self.settings.import_queue_attempts,
                backoff_seconds=self.settings.import_queue_backoff_seconds,
            )
        except Exception as exc:
            logger.exception(f"Could not enqueue import job {job_id}")
            with self.database.session() as session:
                fail_import_job(session, job_id, f"Could not enqueue import: {exc}")
            _remove_file(file_path)
            raise

        with self.database.session() as session:
            return attach_queue_job(session, job_id, queue_job.id)

    def cancel_queued_import(self, queue_job_id: str) -> Optional[ImportJob]:
        """
        Remove a waiting queue entry and mark its import job as cancelled.

        Returns:
            The cancelled job, or None when the entry is unknown or already running
        """
        if self.queue is None:
            return None
        queue_job = self.queue.get_job(queue_job_id)
        if queue_job is None or queue_job.state != QueueJobState.WAITING:
            return None
        if not self.queue.remove(queue_job_id):
            return None

        _remove_file(queue_job.data.get("file_path", ""))
        with self.database.session() as session:
            return cancel_import_job(session, queue_job.data["import_id"])

    def process_import_job(self, queue_job: QueueJob) -> Dict[str, Any]:
        """
        Queue handler: process one import job end to end.

        Returns:
            Result summary stored on the queue job

        Raises:
            UnrecoverableJobError: The import is FAILED, either by this run or an
                earlier one; the queue does not retry it
        """
        import_id = queue_job.data["import_id"]
        file_path = queue_job.data["file_path"]
        logger.info(f"Processing queue job {queue_job.id} for import {import_id}")

        with self.database.session() as session:
            job = claim_import_job(session, import_id)
            if job is None:
                current = get_import_job(session, import_id)
                if current is not None and current.status == ImportStatus.FAILED.value:
                    raise UnrecoverableJobError(_general_error(current))
                return {"import_id": import_id, "status": "skipped"}

            queue_job.update_progress(PROGRESS_CLAIMED)
            try:
                return self._run_job(session, job, file_path, queue_job)
            except Exception as exc:
                logger.exception(f"Import job {import_id} failed")
                session.rollback()
                summary = summarize_import_errors(session, import_id)
                reason = str(exc) or exc.__class__.__name__
                fail_import_job(session, import_id, reason, summary)
                raise UnrecoverableJobError(reason) from exc
            finally:
                _remove_file(file_path)

    def _run_job(self, session, job: ImportJob, file_path: str, queue_job: QueueJob) -> Dict[str, Any]:
        kind = ImportKind(job.import_kind)
        import_settings = ImportSettings.from_dict(job.import_settings)

        parsed = parse_import_file(
            file_path,
            detect_file_type(file_path),
            column_mapping=import_settings.column_mapping or None,
        )
        queue_job.update_progress(PROGRESS_PARSED)

        valid_rows, rejected = validate_parsed_file(kind, parsed)
        record_import_errors_batch(session, job.id, (_to_failure(result) for result in rejected))
        record_parse_totals(session, job.id, parsed.total_rows, len(rejected))
        queue_job.update_progress(PROGRESS_VALIDATED)
        logger.info(
            f"Import {job.id}: {parsed.total_rows} rows parsed, "
            f"{len(valid_rows)} valid, {len(rejected)} rejected"
        )

        persister = BatchPersister(
            session,
            job.id,
            ReferenceResolver(session, job.dealership_id),
            created_by=job.user_id,
            dealership_id=job.dealership_id,
            batch_size=import_settings.batch_size or self.settings.import_batch_size,
            default_advisor_id=import_settings.default_advisor_id,
        )

        def _on_batch(progress: BatchProgress) -> None:
            share = progress.processed / progress.total if progress.total else 1
            queue_job.update_progress(PROGRESS_VALIDATED + int(share * PROGRESS_PERSIST_SPAN))

        outcome = persister.persist(valid_rows, on_batch=_on_batch)

        summary = summarize_import_errors(session, job.id)
        job = complete_import_job(session, job.id, summary)
        queue_job.update_progress(PROGRESS_DONE)

        return {
            "import_id": job.id,
            "total_rows": job.total_rows,
            "processed_rows": job.processed_rows,
            "successful": outcome.successful,
            "failed": outcome.failed,
            "rejected": job.rejected_rows,
            "batches": outcome.batches,
            "status": "completed",
        }

    def preview_import(
        self,
        file_path: str,
        kind: ImportKind,
        column_mapping: Optional[Dict[str, str]] = None,
        limit: Optional[int] = None,
        today: Optional[date] = None,
    ) -> PreviewResult:
        """
        Parse and validate a file without persisting anything.

        Args:
            file_path: Path to the uploaded file
            kind: Import kind to validate against
            column_mapping: Optional source header -> field renames
            limit: Maximum number of field errors to return
            today: Reference day for date rules

        Returns:
            PreviewResult with counts, the first valid rows and the first field errors
        """
        error_limit = limit if limit is not None else self.settings.import_error_preview_limit
        parsed = parse_import_file(file_path, detect_file_type(file_path), column_mapping=column_mapping)
        valid_rows, rejected = validate_parsed_file(ImportKind(kind), parsed, today)

        field_errors: List[Dict[str, Any]] = []
        for result in rejected:
            for error in result.errors:
                field_errors.append({
                    "row_number": result.row_number,
                    "field": error.field,
                    "value": error.value,
                    "message": error.message,
                    "error_type": result.error_type.value,
                })

        preview_rows = [
            make_json_safe(row_to_dict(row))
            for row in valid_rows[:self.settings.import_preview_row_limit]
        ]

        return PreviewResult(
            total_rows=parsed.total_rows,
            valid_rows=len(valid_rows),
            error_rows=len(rejected),
            preview_rows=preview_rows,
            errors=field_errors[:error_limit],
            has_more_errors=len(field_errors) > error_limit,
        )
