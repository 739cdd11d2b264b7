"""
Tests for the import and import-queue HTTP endpoints.

Each test builds its own app around the per-test SQLite database; the
authenticated actor is swapped in through ``dependency_overrides`` except
where token handling itself is under test.
"""

import csv
import io
import json
import os

import pytest
from fastapi.testclient import TestClient

from app.core.security import AuthContext, create_access_token, get_current_user
from app.db.models import Booking, ImportJob, UserRole
from app.domain.imports.queue import InlineJobQueue
from app.main import create_app
from tests.utils.import_rows import BOOKING_HEADER, booking_record


class HeldJobQueue(InlineJobQueue):
    """Inline queue that keeps every job waiting, like a busy worker pool."""

    def _dispatch(self, job):
        pass


def csv_bytes(header, rows):
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


ADVISOR = AuthContext(user_id="advisor-1", dealership_id="dealership-1", role=UserRole.CUSTOMER_ADVISOR.value)
ADMIN = AuthContext(user_id="admin-1", dealership_id="dealership-1", role=UserRole.ADMIN.value)
OUTSIDER = AuthContext(user_id="advisor-9", dealership_id="dealership-2", role=UserRole.CUSTOMER_ADVISOR.value)


@pytest.fixture
def make_client(seeded, test_settings):
    """Build a client for ``actor`` (or real token auth when actor is None)."""

    def _make(actor=ADVISOR, queue=None, settings=None):
        app = create_app(settings=settings or test_settings, database=seeded.database, queue=queue)
        if actor is not None:
            app.dependency_overrides[get_current_user] = lambda: actor
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def upload(client, rows, kind="bookings", filename="bookings.csv", header=BOOKING_HEADER, **data):
    return client.post(
        f"/imports/{kind}",
        files={"file": (filename, csv_bytes(header, rows), "text/csv")},
        data=data,
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestUpload:

    def test_upload_processes_file(self, client, seeded, test_settings):
        response = upload(client, [
            booking_record("Asha Verma"),
            booking_record("Vikram Rao", "+919812345678"),
            booking_record("", "123-456-7890"),
        ])

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "COMPLETED"
        assert data["queue_job_id"]
        assert data["summary"] == {
            "total_rows": 3,
            "processed_rows": 2,
            "successful_rows": 2,
            "failed_rows": 0,
            "rejected_rows": 1,
        }
        assert os.listdir(test_settings.upload_dir) == []

        with seeded.database.session() as session:
            job = session.get(ImportJob, data["import_id"])
            assert job.user_id == "advisor-1"
            assert job.dealership_id == "dealership-1"
            assert job.original_filename == "bookings.csv"

    def test_import_settings_form_field(self, client):
        response = upload(
            client,
            [["+919876543210", "Asha Verma", "TATA-001"]],
            header=["Mobile", "Customer Name", "Dealer Code"],
            import_settings=json.dumps({"column_mapping": {"Mobile": "customer_phone"}, "batch_size": 10}),
        )

        assert response.status_code == 201
        assert response.json()["summary"]["successful_rows"] == 1

    def test_invalid_import_settings(self, client):
        response = upload(client, [booking_record()], import_settings="{not json")
        assert response.status_code == 400

        response = upload(client, [booking_record()], import_settings=json.dumps({"batch_size": 0}))
        assert response.status_code == 400

    def test_oversized_file_is_rejected_before_parsing(self, make_client, seeded, test_settings):
        settings = test_settings.model_copy(update={"upload_max_file_size_mb": 1})
        client = make_client(settings=settings)

        response = client.post(
            "/imports/bookings",
            files={"file": ("huge.csv", b"x" * (1024 * 1024 + 1), "text/csv")},
        )

        assert response.status_code == 413
        assert "Maximum allowed upload size is 1MB" in response.json()["detail"]
        assert os.listdir(settings.upload_dir) == []
        with seeded.database.session() as session:
            assert session.query(ImportJob).count() == 0
            assert session.query(Booking).count() == 0

    def test_unsupported_file_type(self, client):
        response = client.post("/imports/bookings", files={"file": ("notes.txt", b"hello", "text/plain")})
        assert response.status_code == 400
        assert "Unsupported file type" in response.json()["detail"]

    def test_unknown_import_kind(self, client):
        response = upload(client, [booking_record()], kind="vehicles")
        assert response.status_code == 404

    def test_user_without_dealership(self, make_client):
        client = make_client(actor=AuthContext(user_id="floater", dealership_id=None, role="ADMIN"))
        response = upload(client, [booking_record()])

        assert response.status_code == 403
        assert response.json()["detail"] == "User must be associated with a dealership to import data"


class TestAuthentication:

    def test_missing_token(self, make_client):
        client = make_client(actor=None)
        response = client.get("/imports")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, make_client):
        client = make_client(actor=None)
        response = client.get("/imports", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_valid_token(self, make_client):
        client = make_client(actor=None)
        token = create_access_token("advisor-1", "dealership-1")
        response = client.get("/imports", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["total_count"] == 0


class TestPreview:

    def test_preview(self, client, seeded):
        response = client.post(
            "/imports/bookings/preview",
            files={"file": ("bookings.csv", csv_bytes(BOOKING_HEADER, [
                booking_record("Asha Verma"),
                booking_record("", "123-456-7890"),
            ]), "text/csv")},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_rows"] == 2
        assert data["summary"] == {"valid_rows": 1, "error_rows": 1, "success_rate": 50}
        assert {error["field"] for error in data["errors"]} == {"customer_name", "customer_phone"}
        assert data["preview_rows"][0]["customer_name"] == "Asha Verma"

        with seeded.database.session() as session:
            assert session.query(ImportJob).count() == 0
            assert session.query(Booking).count() == 0

    def test_preview_of_unreadable_workbook(self, client):
        response = client.post(
            "/imports/bookings/preview",
            files={"file": ("broken.xlsx", b"garbage", "application/octet-stream")},
        )
        assert response.status_code == 400


class TestImportHistory:

    def test_list_is_scoped_to_owner_unless_admin(self, make_client):
        advisor = make_client(actor=ADVISOR)
        admin = make_client(actor=ADMIN)
        outsider = make_client(actor=OUTSIDER)

        upload(advisor, [booking_record()])
        upload(admin, [booking_record()])
        upload(outsider, [booking_record(dealer_code="HAR-2")])

        assert advisor.get("/imports").json()["total_count"] == 1
        assert admin.get("/imports").json()["total_count"] == 2
        assert outsider.get("/imports").json()["total_count"] == 1

    def test_pagination_and_status_filter(self, client):
        for _ in range(3):
            upload(client, [booking_record()])

        data = client.get("/imports", params={"page": 2, "limit": 2}).json()
        assert (data["total_count"], data["page"], data["pages"], len(data["jobs"])) == (3, 2, 2, 1)

        assert client.get("/imports", params={"status": "FAILED"}).json()["total_count"] == 0
        assert client.get("/imports", params={"status": "COMPLETED"}).json()["total_count"] == 3

    def test_job_detail_with_errors(self, client):
        import_id = upload(client, [
            booking_record("Asha Verma"),
            booking_record("", "123-456-7890"),
            booking_record("B", "+919800000000"),
        ]).json()["import_id"]

        response = client.get(f"/imports/{import_id}", params={"error_limit": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["job"]["status"] == "COMPLETED"
        assert data["job"]["rejected_rows"] == 2
        assert data["total_errors"] == 2
        assert len(data["errors"]) == 1
        assert data["errors"][0]["row_number"] == 2
        assert data["errors"][0]["error_type"] == "validation_error"

        second_page = client.get(f"/imports/{import_id}", params={"error_limit": 1, "error_offset": 1}).json()
        assert second_page["errors"][0]["row_number"] == 3

    def test_other_tenants_cannot_see_a_job(self, make_client):
        import_id = upload(make_client(actor=ADVISOR), [booking_record()]).json()["import_id"]

        assert make_client(actor=OUTSIDER).get(f"/imports/{import_id}").status_code == 404
        assert make_client(actor=ADMIN).get(f"/imports/{import_id}").status_code == 200

    def test_unknown_job(self, client):
        assert client.get("/imports/does-not-exist").status_code == 404


class TestErrorDownload:

    def test_download_csv(self, client):
        import_id = upload(client, [
            booking_record("Asha Verma"),
            booking_record("", "123-456-7890"),
        ]).json()["import_id"]

        response = client.get(f"/imports/{import_id}/errors/download")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f"import-errors-{import_id}.csv" in response.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == ["rowNumber", "errorType", "errorMessage", "rawRow"]
        assert rows[1][0] == "2"
        assert json.loads(rows[1][3])["customer_phone"] == "123-456-7890"

    def test_no_errors(self, client):
        import_id = upload(client, [booking_record()]).json()["import_id"]

        response = client.get(f"/imports/{import_id}/errors/download")

        assert response.status_code == 404
        assert response.json()["detail"] == "No errors found for this import"


class TestImportQueue:

    def test_stats_and_job_lookup(self, client):
        queue_job_id = upload(client, [booking_record()]).json()["queue_job_id"]

        stats = client.get("/import-queue/stats").json()
        assert stats == {"success": True, "waiting": 0, "active": 0, "completed": 1, "failed": 0}

        job = client.get(f"/import-queue/jobs/{queue_job_id}").json()
        assert job["state"] == "completed"
        assert job["progress"] == 100
        assert job["return_value"]["successful"] == 1

    def test_queue_job_of_another_dealership(self, make_client, seeded, test_settings):
        queue = InlineJobQueue()
        owner = make_client(actor=ADVISOR, queue=queue)
        queue_job_id = upload(owner, [booking_record()]).json()["queue_job_id"]

        app = create_app(settings=test_settings, database=seeded.database, queue=queue)
        app.dependency_overrides[get_current_user] = lambda: OUTSIDER
        outsider = TestClient(app)

        assert outsider.get(f"/import-queue/jobs/{queue_job_id}").status_code == 404
        assert outsider.delete(f"/import-queue/jobs/{queue_job_id}").status_code == 404

    def test_cancel_waiting_job(self, make_client):
        client = make_client(queue=HeldJobQueue())
        data = upload(client, [booking_record()]).json()
        assert data["status"] == "PENDING"

        response = client.delete(f"/import-queue/jobs/{data['queue_job_id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "FAILED"
        assert response.json()["error_summary"]["general_error"] == "cancelled"
        assert client.get(f"/import-queue/jobs/{data['queue_job_id']}").status_code == 404

    def test_finished_job_cannot_be_cancelled(self, client):
        queue_job_id = upload(client, [booking_record()]).json()["queue_job_id"]

        response = client.delete(f"/import-queue/jobs/{queue_job_id}")
        assert response.status_code == 409

    def test_unknown_queue_job(self, client):
        assert client.get("/import-queue/jobs/nope").status_code == 404
