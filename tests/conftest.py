"""
Pytest configuration and fixtures for the import pipeline tests.

Every test that touches storage gets its own SQLite database file under
``tmp_path`` with the full schema created, plus a small set of seeded
dealerships and users.
"""

import csv
import os
from types import SimpleNamespace

# Apps built in tests create their schema through the ``database`` fixture.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from openpyxl import Workbook

from app.core.config import Settings
from app.db.models import Dealership, User, UserRole
from app.db.session import Database
from tests.utils.import_rows import DEALERSHIP_ID, OTHER_DEALERSHIP_ID


@pytest.fixture
def database(tmp_path):
    """A fresh SQLite database with every table created."""
    db = Database(f"sqlite:///{tmp_path / 'imports.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def seeded(database):
    """
    Two dealerships and a handful of users.

    - admin-1: ADMIN of dealership-1
    - advisor-1: customer advisor of dealership-1 (ravi.kumar@dealer.test)
    - advisor-9: customer advisor of dealership-2 (ravi.k@other.test)
    - inactive-1: deactivated user of dealership-1
    """
    with database.session() as session:
        session.add_all([
            Dealership(id=DEALERSHIP_ID, name="Sunrise Motors", code="SUN"),
            Dealership(id=OTHER_DEALERSHIP_ID, name="Harbor Cars", code="HAR"),
        ])
        session.flush()
        session.add_all([
            User(id="admin-1", email="admin@dealer.test", name="Admin",
                 role=UserRole.ADMIN.value, dealership_id=DEALERSHIP_ID),
            User(id="advisor-1", email="ravi.kumar@dealer.test", name="Ravi Kumar",
                 role=UserRole.CUSTOMER_ADVISOR.value, dealership_id=DEALERSHIP_ID),
            User(id="advisor-9", email="ravi.k@other.test", name="Ravi K",
                 role=UserRole.CUSTOMER_ADVISOR.value, dealership_id=OTHER_DEALERSHIP_ID),
            User(id="inactive-1", email="gone@dealer.test", name="Former Advisor",
                 role=UserRole.CUSTOMER_ADVISOR.value, dealership_id=DEALERSHIP_ID,
                 is_active=False),
        ])
        session.commit()

    return SimpleNamespace(
        database=database,
        dealership_id=DEALERSHIP_ID,
        other_dealership_id=OTHER_DEALERSHIP_ID,
        admin_id="admin-1",
        advisor_id="advisor-1",
        other_advisor_id="advisor-9",
        inactive_user_id="inactive-1",
    )


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'imports.db'}",
        upload_dir=str(tmp_path / "uploads"),
        import_batch_size=500,
        import_queue_backend="inline",
        import_queue_attempts=1,
        import_queue_backoff_seconds=0,
        secret_key="test-secret",
    )


@pytest.fixture
def write_csv(tmp_path):
    """Write a CSV file and return its path."""

    def _write(name, header, rows, encoding="utf-8"):
        path = tmp_path / name
        with open(path, "w", newline="", encoding=encoding) as handle:
            writer = csv.writer(handle)
            writer.writerow(header)
            writer.writerows(rows)
        return str(path)

    return _write


@pytest.fixture
def write_xlsx(tmp_path):
    """Write an XLSX workbook (first sheet holds the data) and return its path."""

    def _write(name, header, rows, extra_sheet=None):
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Data"
        sheet.append(header)
        for row in rows:
            sheet.append(row)
        if extra_sheet:
            other = workbook.create_sheet("Other")
            for row in extra_sheet:
                other.append(row)
        path = tmp_path / name
        workbook.save(path)
        return str(path)

    return _write
