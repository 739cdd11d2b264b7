"""
ORM models for the dealership import pipeline.

Import jobs and their error records are owned by the pipeline. Dealerships,
users, dealers, bookings and enquiries belong to the wider backend; they are
modelled here so imports can resolve and create them.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)

from app.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class ImportKind(str, Enum):
    BOOKING = "bookings"
    ENQUIRY = "enquiries"
    QUOTATION = "quotations"


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_IMPORT_STATUSES = frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED})


class ImportErrorType(str, Enum):
    PARSE = "parse_error"
    VALIDATION = "validation_error"
    PROCESSING = "processing_error"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    GENERAL_MANAGER = "GENERAL_MANAGER"
    SALES_MANAGER = "SALES_MANAGER"
    TEAM_LEAD = "TEAM_LEAD"
    CUSTOMER_ADVISOR = "CUSTOMER_ADVISOR"


class DealerType(str, Enum):
    TATA = "TATA"
    MARUTI = "MARUTI"
    HYUNDAI = "HYUNDAI"
    HONDA = "HONDA"
    TOYOTA = "TOYOTA"
    OTHER = "OTHER"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    BACK_ORDER = "BACK_ORDER"


class BookingSource(str, Enum):
    MANUAL = "MANUAL"
    BULK_IMPORT = "BULK_IMPORT"


class StockAvailability(str, Enum):
    VNA = "VNA"
    VEHICLE_AVAILABLE = "VEHICLE_AVAILABLE"


class EnquirySource(str, Enum):
    WALK_IN = "WALK_IN"
    PHONE_CALL = "PHONE_CALL"
    WEBSITE = "WEBSITE"
    DIGITAL = "DIGITAL"
    SOCIAL_MEDIA = "SOCIAL_MEDIA"
    REFERRAL = "REFERRAL"
    ADVERTISEMENT = "ADVERTISEMENT"
    EMAIL = "EMAIL"
    SHOWROOM_VISIT = "SHOWROOM_VISIT"
    EVENT = "EVENT"
    BTL_ACTIVITY = "BTL_ACTIVITY"
    WHATSAPP = "WHATSAPP"
    OUTBOUND_CALL = "OUTBOUND_CALL"
    OTHER = "OTHER"


class EnquiryCategory(str, Enum):
    HOT = "HOT"
    LOST = "LOST"
    BOOKED = "BOOKED"


class EnquiryStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"


class Dealership(Base):
    """Tenant that owns users, bookings, enquiries and imports."""
    __tablename__ = "dealerships"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    code = Column(String(50), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(50), nullable=False, default=UserRole.CUSTOMER_ADVISOR.value)
    dealership_id = Column(String(36), ForeignKey("dealerships.id"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Dealer(Base):
    __tablename__ = "dealers"

    id = Column(String(36), primary_key=True, default=_uuid)
    dealer_code = Column(String(100), unique=True, nullable=False, index=True)
    dealer_name = Column(String(255), nullable=False)
    zone = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)
    dealer_type = Column(String(50), nullable=False, default=DealerType.OTHER.value)
    dealership_id = Column(String(36), ForeignKey("dealerships.id"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    dealership_id = Column(String(36), ForeignKey("dealerships.id"), nullable=True, index=True)
    import_id = Column(String(36), ForeignKey("import_jobs.id"), nullable=True, index=True)

    # Universal dealer fields
    zone = Column(String(100))
    region = Column(String(100))
    dealer_code = Column(String(100), nullable=False)
    dealer_id = Column(String(36), ForeignKey("dealers.id"), nullable=True)

    # Customer
    opty_id = Column(String(100))
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32))
    customer_email = Column(String(255))

    # Vehicle
    variant = Column(String(255))
    vc_code = Column(String(100))
    color = Column(String(100))
    fuel_type = Column(String(50))
    transmission = Column(String(50))

    # Booking details
    booking_date = Column(DateTime(timezone=True))
    status = Column(String(50), nullable=False, default=BookingStatus.PENDING.value)
    expected_delivery_date = Column(DateTime(timezone=True))

    # Employee / division
    division = Column(String(100))
    emp_name = Column(String(255))
    employee_login = Column(String(255))
    advisor_id = Column(String(128), ForeignKey("users.id"), nullable=True)

    # Finance
    finance_required = Column(Boolean)
    financer_name = Column(String(255))
    file_login_date = Column(DateTime(timezone=True))
    approval_date = Column(DateTime(timezone=True))

    # Stock & delivery
    stock_availability = Column(String(50))
    back_order_status = Column(Boolean)
    rto_date = Column(DateTime(timezone=True))

    source = Column(String(50), nullable=False, default=BookingSource.MANUAL.value)
    remarks = Column(Text)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Enquiry(Base):
    __tablename__ = "enquiries"

    id = Column(String(36), primary_key=True, default=_uuid)
    dealership_id = Column(String(36), ForeignKey("dealerships.id"), nullable=True, index=True)
    import_id = Column(String(36), ForeignKey("import_jobs.id"), nullable=True, index=True)

    customer_name = Column(String(255), nullable=False)
    customer_contact = Column(String(32), nullable=False)
    customer_email = Column(String(255))
    model = Column(String(255))
    variant = Column(String(255))
    fuel_type = Column(String(50))
    color = Column(String(100))
    source = Column(String(50), nullable=False, default=EnquirySource.WALK_IN.value)
    category = Column(String(50), nullable=False, default=EnquiryCategory.HOT.value)
    status = Column(String(50), nullable=False, default=EnquiryStatus.OPEN.value)
    expected_booking_date = Column(DateTime(timezone=True))
    next_follow_up_date = Column(DateTime(timezone=True))
    ca_remarks = Column(Text)
    assigned_to_user_id = Column(String(128), ForeignKey("users.id"), nullable=True)
    created_by_user_id = Column(String(128), ForeignKey("users.id"), nullable=True)
    dealer_code = Column(String(100))
    location = Column(String(255))
    is_imported_from_quotation = Column(Boolean, nullable=False, default=False)
    quotation_imported_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ImportJob(Base):
    """One uploaded file and its processing lifecycle."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    import_kind = Column(String(20), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    dealership_id = Column(String(36), nullable=True, index=True)

    original_filename = Column(String(500), nullable=False)
    filename = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=ImportStatus.PENDING.value, index=True)
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    failed_rows = Column(Integer, nullable=False, default=0)
    rejected_rows = Column(Integer, nullable=False, default=0)

    error_summary = Column(JSON, nullable=True)
    import_settings = Column(JSON, nullable=True)
    queue_job_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class ImportErrorRecord(Base):
    """A single failed row of an import job."""
    __tablename__ = "import_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    raw_row = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=False)
    error_type = Column(String(30), nullable=False)
    field_errors = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
