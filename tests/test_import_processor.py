"""
End-to-end tests for the import processor: upload -> queue -> parse ->
validate -> persist -> job summary.
"""

import os
from datetime import date, timedelta

import pytest

from app.db.models import Booking, Dealer, DealerType, Enquiry, ImportJob, ImportKind, ImportStatus
from app.domain.imports.error_log import list_import_errors
from app.domain.imports.jobs import ImportSettings, get_import_job
from app.domain.imports.orchestrator import ImportProcessor
from app.domain.imports.processors.file_parser import FileParseError
from app.domain.imports.queue import InlineJobQueue, QueueJob, QueueJobState, UnrecoverableJobError
from tests.utils.import_rows import BOOKING_HEADER, booking_record, future_date


@pytest.fixture
def queue():
    return InlineJobQueue()


@pytest.fixture
def processor(seeded, test_settings, queue):
    processor = ImportProcessor(seeded.database, test_settings, queue)
    queue.process(processor.process_import_job)
    return processor


def submit(processor, seeded, path, kind=ImportKind.BOOKING, import_settings=None):
    return processor.submit_import(
        kind=kind,
        file_path=path,
        original_filename=os.path.basename(path),
        file_size=os.path.getsize(path),
        user_id=seeded.advisor_id,
        dealership_id=seeded.dealership_id,
        import_settings=import_settings,
    )


def test_valid_rows_are_kept_when_one_row_is_rejected(processor, seeded, write_csv, queue):
    path = write_csv("bookings.csv", BOOKING_HEADER, [
        booking_record("Asha Verma"),
        booking_record("Vikram Rao", "+919812345678"),
        booking_record("", "123-456-7890"),
    ])

    job = submit(processor, seeded, path)

    assert job.status == ImportStatus.COMPLETED.value
    assert job.total_rows == 3
    assert job.processed_rows == 2
    assert job.successful_rows == 2
    assert job.failed_rows == 0
    assert job.rejected_rows == 1
    assert job.error_summary["error_types"] == {"validation_error": 1}
    assert not os.path.exists(path)

    with seeded.database.session() as session:
        assert session.query(Booking).count() == 2
        errors, total = list_import_errors(session, job.id)

    assert total == 1
    assert errors[0]["row_number"] == 3
    assert set(errors[0]["field_errors"]) >= {"customer_name", "customer_phone"}
    assert errors[0]["raw_row"]["customer_phone"] == "123-456-7890"

    queue_job = queue.get_job(job.queue_job_id)
    assert queue_job.state is QueueJobState.COMPLETED
    assert queue_job.progress == 100
    assert queue_job.return_value["successful"] == 2
    assert queue_job.return_value["rejected"] == 1


def test_unknown_dealer_is_created_once(processor, seeded, write_csv):
    path = write_csv("bookings.csv", BOOKING_HEADER, [
        booking_record("Asha Verma", dealer_code="MARUTI-77"),
        booking_record("Vikram Rao", dealer_code="MARUTI-77"),
    ])

    job = submit(processor, seeded, path)

    assert job.successful_rows == 2
    with seeded.database.session() as session:
        dealers = session.query(Dealer).all()
        assert len(dealers) == 1
        assert dealers[0].dealer_code == "MARUTI-77"
        assert dealers[0].dealer_type == DealerType.MARUTI.value
        assert dealers[0].dealership_id == seeded.dealership_id


def test_invalid_date_does_not_stop_other_rows(processor, seeded, write_csv):
    path = write_csv("bookings.csv", BOOKING_HEADER, [
        booking_record("Asha Verma", **{"Expected Delivery Date": "invalid-date"}),
        booking_record("Vikram Rao", **{"Expected Delivery Date": f"{future_date()}T10:00:00Z"}),
    ])

    job = submit(processor, seeded, path)

    assert (job.total_rows, job.successful_rows, job.rejected_rows) == (2, 1, 1)
    assert job.error_summary["field_errors"] == {"expected_delivery_date": 1}


def test_small_batches_and_column_mapping(processor, seeded, write_csv):
    header = ["Mobile", "Name", "Dealer Code"]
    rows = [[f"+9198765432{n:02d}", f"Customer {n}", "TATA-001"] for n in range(5)]
    path = write_csv("mapped.csv", header, rows)

    job = submit(
        processor, seeded, path,
        import_settings=ImportSettings(
            column_mapping={"Mobile": "customer_phone", "Name": "customer_name"},
            batch_size=2,
        ),
    )

    assert job.status == ImportStatus.COMPLETED.value
    assert job.successful_rows == 5


def test_xlsx_enquiries(processor, seeded, write_xlsx):
    path = write_xlsx("enquiries.xlsx", ["Customer Name", "Customer Contact", "Expected Booking Date", "Source"], [
        ["Vikram Rao", "+919812345678", future_date(5), "Website"],
        ["Meera", "+919800000000", future_date(8), "carrier pigeon"],
    ])

    job = submit(processor, seeded, path, kind=ImportKind.ENQUIRY)

    assert (job.total_rows, job.successful_rows, job.rejected_rows) == (2, 1, 1)
    with seeded.database.session() as session:
        enquiry = session.query(Enquiry).one()
        assert enquiry.source == "WEBSITE"
        assert enquiry.created_by_user_id == seeded.advisor_id


def test_quotation_import(processor, seeded, write_csv):
    path = write_csv("quotes.csv", ["Model", "Variant", "Fuel", "Color"], [
        ["Nexon", "XZ+", "Petrol", "Blue"],
        ["Punch", "", "Petrol", "Red"],
    ])

    job = submit(processor, seeded, path, kind=ImportKind.QUOTATION)

    assert (job.successful_rows, job.rejected_rows) == (1, 1)


def test_empty_file_completes_with_zero_rows(processor, seeded, write_csv):
    path = write_csv("empty.csv", BOOKING_HEADER, [])

    job = submit(processor, seeded, path)

    assert job.status == ImportStatus.COMPLETED.value
    assert (job.total_rows, job.processed_rows) == (0, 0)


def test_unreadable_file_fails_the_job(processor, seeded, tmp_path, queue):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"definitely not a workbook")

    job = submit(processor, seeded, str(path))

    assert job.status == ImportStatus.FAILED.value
    assert job.error_summary["general_error"]
    assert job.completed_at is not None
    assert not path.exists()
    assert queue.get_job(job.queue_job_id).state is QueueJobState.FAILED


def test_failed_import_is_not_retried(seeded, test_settings, tmp_path, queue):
    settings = test_settings.model_copy(update={"import_queue_attempts": 2})
    processor = ImportProcessor(seeded.database, settings, queue)
    queue.process(processor.process_import_job)
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"definitely not a workbook")

    job = submit(processor, seeded, str(path))

    queue_job = queue.get_job(job.queue_job_id)
    assert job.status == ImportStatus.FAILED.value
    assert queue_job.state is QueueJobState.FAILED
    assert queue_job.attempts_made == 1
    assert queue_job.failed_reason == job.error_summary["general_error"]
    assert queue.get_completed() == []


def test_redelivered_failed_job_reports_failure(processor, seeded, tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"definitely not a workbook")
    job = submit(processor, seeded, str(path))

    with pytest.raises(UnrecoverableJobError) as exc_info:
        processor.process_import_job(
            QueueJob(id="redelivery", data={"import_id": job.id, "file_path": str(path), "user_id": seeded.advisor_id})
        )

    assert str(exc_info.value) == job.error_summary["general_error"]


def test_redelivered_job_is_skipped(processor, seeded, write_csv):
    path = write_csv("bookings.csv", BOOKING_HEADER, [booking_record()])
    job = submit(processor, seeded, path)

    result = processor.process_import_job(
        QueueJob(id="redelivery", data={"import_id": job.id, "file_path": path, "user_id": seeded.advisor_id})
    )

    assert result == {"import_id": job.id, "status": "skipped"}
    with seeded.database.session() as session:
        assert get_import_job(session, job.id).successful_rows == 1
        assert session.query(Booking).count() == 1


def test_cancel_waiting_import(seeded, test_settings, write_csv):
    queue = InlineJobQueue()
    processor = ImportProcessor(seeded.database, test_settings, queue)
    path = write_csv("bookings.csv", BOOKING_HEADER, [booking_record()])

    # No handler registered yet, so the job stays waiting.
    job = submit(processor, seeded, path)
    assert job.status == ImportStatus.PENDING.value

    cancelled = processor.cancel_queued_import(job.queue_job_id)

    assert cancelled.status == ImportStatus.FAILED.value
    assert cancelled.error_summary["general_error"] == "cancelled"
    assert queue.get_job(job.queue_job_id) is None
    assert not os.path.exists(path)
    assert processor.cancel_queued_import(job.queue_job_id) is None


def test_new_upload_path(processor, test_settings):
    stored_name, path = processor.new_upload_path("../My Bookings (1).csv")

    assert stored_name.endswith("-My_Bookings_1_.csv")
    assert os.path.dirname(path) == os.path.abspath(test_settings.upload_dir)


class TestPreview:

    def test_preview_writes_nothing(self, processor, seeded, write_csv):
        path = write_csv("bookings.csv", BOOKING_HEADER, [
            booking_record("Asha Verma"),
            booking_record("", "123-456-7890"),
        ])

        preview = processor.preview_import(path, ImportKind.BOOKING)

        assert (preview.total_rows, preview.valid_rows, preview.error_rows) == (2, 1, 1)
        assert preview.success_rate == 50
        assert preview.preview_rows[0]["customer_name"] == "Asha Verma"
        assert {error["field"] for error in preview.errors} == {"customer_name", "customer_phone"}
        assert all(error["row_number"] == 2 for error in preview.errors)
        assert preview.has_more_errors is False

        with seeded.database.session() as session:
            assert session.query(Booking).count() == 0

    def test_error_limit(self, processor, write_csv):
        path = write_csv("bookings.csv", BOOKING_HEADER, [booking_record("", "bad") for _ in range(3)])

        preview = processor.preview_import(path, ImportKind.BOOKING, limit=4)

        assert len(preview.errors) == 4
        assert preview.has_more_errors is True

    def test_injected_today(self, processor, write_csv):
        delivery = (date.today() + timedelta(days=2)).isoformat()
        path = write_csv("bookings.csv", BOOKING_HEADER, [
            booking_record(**{"Expected Delivery Date": delivery}),
        ])

        later = date.today() + timedelta(days=10)
        preview = processor.preview_import(path, ImportKind.BOOKING, today=later)

        assert preview.errors[0]["message"] == "Expected delivery date cannot be in the past"

    def test_unreadable_file(self, processor, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"nope")
        with pytest.raises(FileParseError):
            processor.preview_import(str(path), ImportKind.BOOKING)


def test_oversized_file_is_refused_without_a_job(seeded, test_settings, write_csv, queue):
    settings = test_settings.model_copy(update={"upload_max_file_size_mb": 0})
    processor = ImportProcessor(seeded.database, settings, queue)
    path = write_csv("bookings.csv", BOOKING_HEADER, [booking_record()])

    with pytest.raises(FileParseError):
        submit(processor, seeded, path)

    assert not os.path.exists(path)
    with seeded.database.session() as session:
        assert session.query(Booking).count() == 0
        assert session.query(ImportJob).count() == 0
