"""
Batch persistence of validated import rows.

Rows are written in file order, in chunks of ``batch_size``. Each row runs in
its own SAVEPOINT so one bad row never takes its neighbours down; the job's
counters are bumped in the same transaction as the chunk they describe and
the chunk is then committed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from app.db.models import (
    Booking,
    BookingSource,
    Enquiry,
    EnquiryCategory,
    EnquirySource,
    EnquiryStatus,
    ImportErrorType,
)
from app.domain.imports.error_log import RowFailure, record_import_error
from app.domain.imports.jobs import increment_job_counters
from app.domain.imports.resolver import ReferenceResolutionError, ReferenceResolver
from app.domain.imports.rows import BookingRow, CanonicalRow, EnquiryRow, QuotationRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 500
DEFAULT_ENQUIRY_DEALER_CODE = "DEFAULT001"
QUOTATION_PLACEHOLDER_CONTACT = "+919999999999"
QUOTATION_BOOKING_WINDOW = timedelta(days=7)
QUOTATION_FOLLOW_UP_WINDOW = timedelta(days=1)


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


@dataclass
class PersistResult:
    successful: int = 0
    failed: int = 0
    batches: int = 0

    @property
    def processed(self) -> int:
        return self.successful + self.failed


@dataclass
class BatchProgress:
    batch_number: int
    batch_rows: int
    processed: int
    total: int


class BatchPersister:
    """Writes canonical rows for one import job."""

    def __init__(
        self,
        session: Session,
        job_id: str,
        resolver: ReferenceResolver,
        created_by: str,
        dealership_id: Optional[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        default_advisor_id: Optional[str] = None,
    ):
        if batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        self.session = session
        self.job_id = job_id
        self.resolver = resolver
        self.created_by = created_by
        self.dealership_id = dealership_id
        self.batch_size = batch_size
        self.default_advisor_id = default_advisor_id

    def persist(
        self,
        rows: Sequence[CanonicalRow],
        on_batch: Optional[Callable[[BatchProgress], None]] = None,
    ) -> PersistResult:
        """
        Persist every row, chunk by chunk.

        Args:
            rows: Validated rows in file order
            on_batch: Called after each committed chunk with the running totals

        Returns:
            PersistResult with row outcomes and the number of chunks written
        """
        result = PersistResult()
        total = len(rows)

        for batch in chunked(rows, self.batch_size):
            successful = 0
            failed = 0
            for row in batch:
                if self._persist_row(row):
                    successful += 1
                else:
                    failed += 1

            increment_job_counters(
                self.session,
                self.job_id,
                processed=len(batch),
                successful=successful,
                failed=failed,
            )
            self.session.commit()

            result.successful += successful
            result.failed += failed
            result.batches += 1
            logger.info(
                f"Import {self.job_id}: batch {result.batches} stored "
                f"({successful} ok, {failed} failed, {result.processed}/{total})"
            )

            if on_batch is not None:
                on_batch(BatchProgress(
                    batch_number=result.batches,
                    batch_rows=len(batch),
                    processed=result.processed,
                    total=total,
                ))

        return result

    def _persist_row(self, row: CanonicalRow) -> bool:
        try:
            entity = self._build_entity(row)
            with self.session.begin_nested():
                self.session.add(entity)
                self.session.flush()
        except Exception as exc:
            field_errors = None
            if isinstance(exc, ReferenceResolutionError):
                field_errors = {exc.field: exc.message}
            message = str(getattr(exc, "orig", None) or exc) or exc.__class__.__name__
            logger.debug(f"Import {self.job_id}: row {row.row_number} failed: {message}")
            record_import_error(
                self.session,
                self.job_id,
                RowFailure(
                    row_number=row.row_number,
                    raw_row=row.raw,
                    error_message=message,
                    error_type=ImportErrorType.PROCESSING,
                    field_errors=field_errors,
                ),
            )
            return False
        return True

    def _build_entity(self, row: CanonicalRow):
        if isinstance(row, BookingRow):
            return self._build_booking(row)
        if isinstance(row, EnquiryRow):
            return self._build_enquiry(row)
        if isinstance(row, QuotationRow):
            return self._build_quotation_enquiry(row)
        raise TypeError(f"Unsupported row type: {type(row).__name__}")

    def _build_booking(self, row: BookingRow) -> Booking:
        dealer = self.resolver.resolve_dealer(
            row.dealer_code,
            dealer_name=row.dealer_name,
            zone=row.zone,
            region=row.region,
        )
        advisor_id = self.resolver.resolve_advisor(
            advisor_id=row.advisor_id,
            employee_login=row.employee_login,
            emp_name=row.emp_name,
        ) or self.default_advisor_id

        return Booking(
            dealership_id=self.dealership_id,
            import_id=self.job_id,
            zone=row.zone,
            region=row.region,
            dealer_code=dealer.dealer_code,
            dealer_id=dealer.id,
            opty_id=row.opty_id,
            customer_name=row.customer_name,
            customer_phone=row.customer_phone,
            customer_email=row.customer_email,
            variant=row.variant,
            vc_code=row.vc_code,
            color=row.color,
            fuel_type=row.fuel_type,
            transmission=row.transmission,
            booking_date=row.booking_date,
            status=row.status.value,
            expected_delivery_date=row.expected_delivery_date,
            division=row.division,
            emp_name=row.emp_name,
            employee_login=row.employee_login,
            advisor_id=advisor_id,
            finance_required=row.finance_required,
            financer_name=row.financer_name,
            file_login_date=row.file_login_date,
            approval_date=row.approval_date,
            stock_availability=row.stock_availability.value if row.stock_availability else None,
            back_order_status=row.back_order_status,
            rto_date=row.rto_date,
            source=BookingSource.BULK_IMPORT.value,
            remarks=row.remarks,
            metadata_={
                "imported_from": "universal_dealer_format",
                "original_row": dict(row.raw),
            },
        )

    def _build_enquiry(self, row: EnquiryRow) -> Enquiry:
        assigned_to = None
        if row.assigned_to_user_id:
            assigned_to = self.resolver.resolve_assignee(row.assigned_to_user_id)

        return Enquiry(
            dealership_id=self.dealership_id,
            import_id=self.job_id,
            customer_name=row.customer_name,
            customer_contact=row.customer_contact,
            customer_email=row.customer_email,
            model=row.model,
            variant=row.variant,
            color=row.color,
            source=row.source.value,
            category=row.category.value,
            status=EnquiryStatus.OPEN.value,
            expected_booking_date=row.expected_booking_date,
            next_follow_up_date=row.next_follow_up_date or row.expected_booking_date,
            ca_remarks=row.ca_remarks,
            assigned_to_user_id=assigned_to,
            created_by_user_id=self.created_by,
            dealer_code=row.dealer_code or DEFAULT_ENQUIRY_DEALER_CODE,
            location=row.location,
        )

    def _build_quotation_enquiry(self, row: QuotationRow) -> Enquiry:
        # Quotation sheets carry no customer, so placeholders are stored.
        now = datetime.now(timezone.utc)
        return Enquiry(
            dealership_id=self.dealership_id,
            import_id=self.job_id,
            customer_name=f"Quotation Import - {row.model}",
            customer_contact=QUOTATION_PLACEHOLDER_CONTACT,
            model=row.model,
            variant=row.variant,
            fuel_type=row.fuel,
            color=row.color,
            source=EnquirySource.DIGITAL.value,
            category=EnquiryCategory.HOT.value,
            status=EnquiryStatus.OPEN.value,
            created_by_user_id=self.created_by,
            is_imported_from_quotation=True,
            quotation_imported_at=now,
            expected_booking_date=now + QUOTATION_BOOKING_WINDOW,
            next_follow_up_date=now + QUOTATION_FOLLOW_UP_WINDOW,
        )
