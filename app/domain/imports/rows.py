"""
Canonical row shapes, one per import kind.

Instances are built only by ``app.domain.imports.validators`` once a raw row
has passed validation. Each carries its 1-based source row number and the raw
mapping it came from so later failures can be reported against the original
input.
"""
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import ClassVar, Dict, Mapping, Optional, Union

from app.db.models import (
    BookingStatus,
    EnquiryCategory,
    EnquirySource,
    ImportKind,
    StockAvailability,
)


@dataclass(frozen=True)
class BookingRow:
    kind: ClassVar[ImportKind] = ImportKind.BOOKING

    row_number: int
    customer_name: str
    customer_phone: str
    dealer_code: str
    status: BookingStatus = BookingStatus.PENDING

    zone: Optional[str] = None
    region: Optional[str] = None
    dealer_name: Optional[str] = None
    opty_id: Optional[str] = None
    customer_email: Optional[str] = None

    variant: Optional[str] = None
    vc_code: Optional[str] = None
    color: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None

    booking_date: Optional[datetime] = None
    expected_delivery_date: Optional[datetime] = None

    division: Optional[str] = None
    emp_name: Optional[str] = None
    employee_login: Optional[str] = None
    advisor_id: Optional[str] = None

    finance_required: Optional[bool] = None
    financer_name: Optional[str] = None
    file_login_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None

    stock_availability: Optional[StockAvailability] = None
    back_order_status: Optional[bool] = None
    rto_date: Optional[datetime] = None

    remarks: Optional[str] = None
    raw: Mapping[str, str] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class EnquiryRow:
    kind: ClassVar[ImportKind] = ImportKind.ENQUIRY

    row_number: int
    customer_name: str
    customer_contact: str
    expected_booking_date: datetime
    source: EnquirySource = EnquirySource.WALK_IN
    category: EnquiryCategory = EnquiryCategory.HOT

    customer_email: Optional[str] = None
    model: Optional[str] = None
    variant: Optional[str] = None
    color: Optional[str] = None
    ca_remarks: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    dealer_code: Optional[str] = None
    location: Optional[str] = None
    next_follow_up_date: Optional[datetime] = None
    raw: Mapping[str, str] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class QuotationRow:
    kind: ClassVar[ImportKind] = ImportKind.QUOTATION

    row_number: int
    model: str
    variant: str
    fuel: str
    color: str
    active_vc: Optional[str] = None
    transmissions: Optional[str] = None
    raw: Mapping[str, str] = field(default_factory=dict, compare=False, repr=False)


CanonicalRow = Union[BookingRow, EnquiryRow, QuotationRow]


def row_to_dict(row: CanonicalRow) -> Dict[str, object]:
    """Field values of a canonical row, without the raw payload."""
    return {
        f.name: getattr(row, f.name)
        for f in fields(row)
        if f.name != "raw"
    }
