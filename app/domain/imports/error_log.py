"""
Append-only log of failed import rows.

Every row that fails parsing, validation or persistence gets exactly one
record here, keyed by import job and 1-based row number. Records can be paged
for the job status view, summarized when a job finishes, and exported as CSV.
"""
import csv
import io
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.models import ImportErrorRecord, ImportErrorType
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

ERROR_INSERT_CHUNK = 100
MAX_ERROR_MESSAGE_LENGTH = 2000
ERROR_CSV_COLUMNS = ["rowNumber", "errorType", "errorMessage", "rawRow"]


@dataclass
class ErrorSummary:
    """Aggregated view of a job's error log, stored on the job when it ends."""
    total_errors: int = 0
    error_types: Dict[str, int] = field(default_factory=dict)
    field_errors: Dict[str, int] = field(default_factory=dict)
    general_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "total_errors": self.total_errors,
            "error_types": dict(self.error_types),
            "field_errors": dict(self.field_errors),
        }
        if self.general_error is not None:
            payload["general_error"] = self.general_error
        return payload

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "ErrorSummary":
        payload = payload or {}
        return cls(
            total_errors=int(payload.get("total_errors") or 0),
            error_types=dict(payload.get("error_types") or {}),
            field_errors=dict(payload.get("field_errors") or {}),
            general_error=payload.get("general_error"),
        )


@dataclass
class RowFailure:
    """One failed row waiting to be written to the log."""
    row_number: int
    raw_row: Mapping[str, Any]
    error_message: str
    error_type: ImportErrorType
    field_errors: Optional[Dict[str, str]] = None


def _truncate(message: str) -> str:
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        return message[:MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return message


def _build_record(import_id: str, failure: RowFailure) -> ImportErrorRecord:
    return ImportErrorRecord(
        import_id=import_id,
        row_number=failure.row_number,
        raw_row=make_json_safe(dict(failure.raw_row or {})),
        error_message=_truncate(failure.error_message or "Unknown error"),
        error_type=ImportErrorType(failure.error_type).value,
        field_errors=dict(failure.field_errors) if failure.field_errors else None,
    )


def record_import_error(session: Session, import_id: str, failure: RowFailure) -> ImportErrorRecord:
    """Add a single error record to the session (flushed with the caller's transaction)."""
    record = _build_record(import_id, failure)
    session.add(record)
    return record


def record_import_errors_batch(
    session: Session,
    import_id: str,
    failures: Iterable[RowFailure],
) -> int:
    """
    Insert many error records, flushing every ``ERROR_INSERT_CHUNK`` rows.

    The caller owns the transaction; nothing is committed here.

    Returns:
        Number of records written
    """
    written = 0
    pending: List[ImportErrorRecord] = []
    for failure in failures:
        pending.append(_build_record(import_id, failure))
        if len(pending) >= ERROR_INSERT_CHUNK:
            session.add_all(pending)
            session.flush()
            written += len(pending)
            pending = []

    if pending:
        session.add_all(pending)
        session.flush()
        written += len(pending)

    if written:
        logger.info(f"Recorded {written} row errors for import {import_id}")
    return written


def _record_to_dict(record: ImportErrorRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "import_id": record.import_id,
        "row_number": record.row_number,
        "raw_row": record.raw_row,
        "error_message": record.error_message,
        "error_type": record.error_type,
        "field_errors": record.field_errors,
        "created_at": record.created_at,
    }


def count_import_errors(session: Session, import_id: str) -> int:
    return (
        session.query(func.count(ImportErrorRecord.id))
        .filter(ImportErrorRecord.import_id == import_id)
        .scalar()
        or 0
    )


def list_import_errors(
    session: Session,
    import_id: str,
    limit: int = 100,
    offset: int = 0,
    error_type: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Page through a job's error records in row order.

    Args:
        session: Open database session
        import_id: Import job id
        limit: Maximum number of records to return
        offset: Number of records to skip
        error_type: Optional filter by error type

    Returns:
        Tuple of (records, total matching records)
    """
    query = session.query(ImportErrorRecord).filter(ImportErrorRecord.import_id == import_id)
    if error_type:
        query = query.filter(ImportErrorRecord.error_type == error_type)

    total = query.count()
    records = (
        query.order_by(ImportErrorRecord.row_number, ImportErrorRecord.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [_record_to_dict(record) for record in records], total


def summarize_import_errors(session: Session, import_id: str) -> ErrorSummary:
    """Count errors per type and per field for the job summary."""
    rows = (
        session.query(ImportErrorRecord.error_type, ImportErrorRecord.field_errors)
        .filter(ImportErrorRecord.import_id == import_id)
        .all()
    )

    error_types: Counter = Counter()
    field_counts: Counter = Counter()
    for error_type, field_errors in rows:
        if error_type:
            error_types[error_type] += 1
        if field_errors:
            field_counts.update(field_errors.keys())

    return ErrorSummary(
        total_errors=len(rows),
        error_types=dict(error_types),
        field_errors=dict(field_counts),
    )


def iter_error_csv(session: Session, import_id: str, chunk_size: int = 500) -> Iterator[str]:
    """
    Yield the job's error log as CSV text, header first.

    Records are read in chunks so large logs are never held in memory at once.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer)

    writer.writerow(ERROR_CSV_COLUMNS)
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)

    offset = 0
    while True:
        records = (
            session.query(ImportErrorRecord)
            .filter(ImportErrorRecord.import_id == import_id)
            .order_by(ImportErrorRecord.row_number, ImportErrorRecord.id)
            .offset(offset)
            .limit(chunk_size)
            .all()
        )
        if not records:
            break

        for record in records:
            writer.writerow([
                record.row_number,
                record.error_type,
                record.error_message,
                json.dumps(record.raw_row or {}, ensure_ascii=False),
            ])
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)
        offset += len(records)
