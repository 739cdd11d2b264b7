"""
Row validation for bulk imports.

Each import kind has a validator that turns one raw row (normalized header ->
string value) into a canonical row, or into the complete list of field errors
for that row. Validators are pure: they read nothing but their arguments, so
validating the same row twice always gives the same answer.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Type

from app.db.models import (
    BookingStatus,
    EnquiryCategory,
    EnquirySource,
    ImportErrorType,
    ImportKind,
    StockAvailability,
)
from app.domain.imports.processors.file_parser import ParsedRow
from app.domain.imports.rows import BookingRow, CanonicalRow, EnquiryRow, QuotationRow
from app.utils.date import ACCEPTED_DATE_FORMATS, is_before_day, parse_import_date
from app.utils.phone import INTERNATIONAL_PHONE, PHONE_FORMAT_HINT, normalize_phone


PRESET_PATTERNS = {
    "email": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
    "phone_international": INTERNATIONAL_PHONE.pattern,
}

PRESET_DESCRIPTIONS = {
    "email": "Standard email format",
    "phone_international": "International phone format (+country code, 10+ digits)",
}

TRUE_VALUES = {"true", "yes", "y", "1"}
FALSE_VALUES = {"false", "no", "n", "0"}

CUSTOMER_NAME_MIN = 2
CUSTOMER_NAME_MAX = 255

ROW_FIELD = "_row"


def get_preset_pattern(preset_name: str) -> Optional[str]:
    return PRESET_PATTERNS.get(preset_name)


def validate_with_preset(
    value: str,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = PRESET_DESCRIPTIONS.get(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name}"
    return True, None


def normalize_enum_value(value: str) -> str:
    """Case-fold and underscore a raw enum value: 'walk in' -> 'WALK_IN'."""
    return re.sub(r"[\s\-]+", "_", value.strip()).upper()


@dataclass(frozen=True)
class FieldError:
    field: str
    value: Optional[str]
    message: str


@dataclass
class ValidationResult:
    row_number: int
    raw: Mapping[str, str]
    row: Optional[CanonicalRow] = None
    errors: List[FieldError] = field(default_factory=list)
    error_type: ImportErrorType = ImportErrorType.VALIDATION

    @property
    def is_valid(self) -> bool:
        return self.row is not None and not self.errors

    @property
    def field_errors(self) -> Dict[str, str]:
        """Field -> message, joining multiple messages for the same field."""
        merged: Dict[str, str] = {}
        for error in self.errors:
            if error.field in merged:
                merged[error.field] = f"{merged[error.field]}; {error.message}"
            else:
                merged[error.field] = error.message
        return merged

    @property
    def message(self) -> str:
        return "; ".join(f"{error.field}: {error.message}" for error in self.errors)


class _RowChecker:
    """Collects every field error for one raw row."""

    def __init__(self, raw: Mapping[str, str], today: date):
        self.raw = raw
        self.today = today
        self.errors: List[FieldError] = []

    def value(self, name: str, *aliases: str) -> Optional[str]:
        for key in (name, *aliases):
            raw_value = self.raw.get(key)
            if raw_value is None:
                continue
            text = str(raw_value).strip()
            if text:
                return text
        return None

    def error(self, name: str, message: str, value: Optional[str] = None) -> None:
        self.errors.append(FieldError(field=name, value=value, message=message))

    def required(self, name: str, label: str, *aliases: str) -> Optional[str]:
        text = self.value(name, *aliases)
        if text is None:
            self.error(name, f"{label} is required")
        return text

    def customer_name(self) -> Optional[str]:
        name = self.required("customer_name", "Customer name")
        if name is None:
            return None
        if not CUSTOMER_NAME_MIN <= len(name) <= CUSTOMER_NAME_MAX:
            self.error(
                "customer_name",
                f"Customer name must be between {CUSTOMER_NAME_MIN} and {CUSTOMER_NAME_MAX} characters",
                name,
            )
            return None
        return name

    def phone(self, name: str, label: str, *aliases: str, required: bool = True) -> Optional[str]:
        text = self.value(name, *aliases)
        if text is None:
            if required:
                self.error(name, f"{label} is required")
            return None
        valid, _ = validate_with_preset(normalize_phone(text), "phone_international", allow_null=False)
        if not valid:
            self.error(name, f"Invalid phone format ({PHONE_FORMAT_HINT})", text)
            return None
        return normalize_phone(text)

    def email(self, name: str = "customer_email") -> Optional[str]:
        text = self.value(name)
        if text is None:
            return None
        valid, _ = validate_with_preset(text, "email")
        if not valid:
            self.error(name, "Invalid email format", text)
            return None
        return text

    def timestamp(self, name: str, label: str, *, required: bool = False, not_past: bool = False) -> Optional[datetime]:
        text = self.value(name)
        if text is None:
            if required:
                self.error(name, f"{label} is required")
            return None
        parsed = parse_import_date(text)
        if parsed is None:
            self.error(name, f"Invalid date format (use {ACCEPTED_DATE_FORMATS})", text)
            return None
        if not_past and is_before_day(parsed, self.today):
            self.error(name, f"{label} cannot be in the past", text)
            return None
        return parsed.astimezone(timezone.utc)

    def choice(self, name: str, enum_cls: Type[Enum], default: Optional[Enum] = None):
        text = self.value(name)
        if text is None:
            return default
        try:
            return enum_cls(normalize_enum_value(text))
        except ValueError:
            allowed = ", ".join(member.value for member in enum_cls)
            self.error(name, f"Invalid {name.replace('_', ' ')}. Allowed values: {allowed}", text)
            return None

    def boolean(self, name: str, label: str) -> Optional[bool]:
        text = self.value(name)
        if text is None:
            return None
        lowered = text.lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        self.error(name, f"{label} must be true/false or yes/no", text)
        return None


def validate_booking_row(raw: Mapping[str, str], row_number: int, today: date) -> ValidationResult:
    check = _RowChecker(raw, today)

    customer_name = check.customer_name()
    customer_phone = check.phone("customer_phone", "Customer phone", "customer_contact")
    dealer_code = check.required("dealer_code", "Dealer code")
    customer_email = check.email()

    booking_date = check.timestamp("booking_date", "Booking date")
    expected_delivery_date = check.timestamp("expected_delivery_date", "Expected delivery date", not_past=True)
    file_login_date = check.timestamp("file_login_date", "File login date")
    approval_date = check.timestamp("approval_date", "Approval date")
    rto_date = check.timestamp("rto_date", "RTO date")

    status = check.choice("status", BookingStatus, default=BookingStatus.PENDING)
    stock_availability = check.choice("stock_availability", StockAvailability)
    finance_required = check.boolean("finance_required", "Finance required")
    back_order_status = check.boolean("back_order_status", "Back order status")

    result = ValidationResult(row_number=row_number, raw=raw, errors=check.errors)
    if check.errors:
        return result

    result.row = BookingRow(
        row_number=row_number,
        customer_name=customer_name,
        customer_phone=customer_phone,
        dealer_code=dealer_code,
        status=status,
        zone=check.value("zone"),
        region=check.value("region"),
        dealer_name=check.value("dealer_name"),
        opty_id=check.value("opty_id"),
        customer_email=customer_email,
        variant=check.value("variant"),
        vc_code=check.value("vc_code"),
        color=check.value("color", "colour"),
        fuel_type=check.value("fuel_type"),
        transmission=check.value("transmission"),
        booking_date=booking_date,
        expected_delivery_date=expected_delivery_date,
        division=check.value("division"),
        emp_name=check.value("emp_name"),
        employee_login=check.value("employee_login"),
        advisor_id=check.value("advisor_id"),
        finance_required=finance_required,
        financer_name=check.value("financer_name"),
        file_login_date=file_login_date,
        approval_date=approval_date,
        stock_availability=stock_availability,
        back_order_status=back_order_status,
        rto_date=rto_date,
        remarks=check.value("remarks"),
        raw=raw,
    )
    return result


def validate_enquiry_row(raw: Mapping[str, str], row_number: int, today: date) -> ValidationResult:
    check = _RowChecker(raw, today)

    customer_name = check.customer_name()
    customer_contact = check.phone("customer_contact", "Customer contact", "customer_phone")
    customer_email = check.email()
    expected_booking_date = check.timestamp(
        "expected_booking_date", "Expected booking date", required=True, not_past=True
    )
    next_follow_up_date = check.timestamp("next_follow_up_date", "Next follow up date", not_past=True)
    source = check.choice("source", EnquirySource, default=EnquirySource.WALK_IN)
    category = check.choice("category", EnquiryCategory, default=EnquiryCategory.HOT)

    result = ValidationResult(row_number=row_number, raw=raw, errors=check.errors)
    if check.errors:
        return result

    result.row = EnquiryRow(
        row_number=row_number,
        customer_name=customer_name,
        customer_contact=customer_contact,
        expected_booking_date=expected_booking_date,
        source=source,
        category=category,
        customer_email=customer_email,
        model=check.value("model"),
        variant=check.value("variant"),
        color=check.value("color", "colour"),
        ca_remarks=check.value("ca_remarks", "remarks"),
        assigned_to_user_id=check.value("assigned_to_user_id"),
        dealer_code=check.value("dealer_code"),
        location=check.value("location"),
        next_follow_up_date=next_follow_up_date or expected_booking_date,
        raw=raw,
    )
    return result


def validate_quotation_row(raw: Mapping[str, str], row_number: int, today: date) -> ValidationResult:
    check = _RowChecker(raw, today)

    model = check.required("model", "Model")
    variant = check.required("variant", "Variant")
    fuel = check.required("fuel", "Fuel type", "fuel_type")
    color = check.required("color", "Color", "colour")

    result = ValidationResult(row_number=row_number, raw=raw, errors=check.errors)
    if check.errors:
        return result

    result.row = QuotationRow(
        row_number=row_number,
        model=model,
        variant=variant,
        fuel=fuel,
        color=color,
        active_vc=check.value("active_vc"),
        transmissions=check.value("transmissions", "transmission"),
        raw=raw,
    )
    return result


ROW_VALIDATORS: Dict[ImportKind, Callable[[Mapping[str, str], int, date], ValidationResult]] = {
    ImportKind.BOOKING: validate_booking_row,
    ImportKind.ENQUIRY: validate_enquiry_row,
    ImportKind.QUOTATION: validate_quotation_row,
}


def validate_row(
    kind: ImportKind,
    raw: Mapping[str, str],
    row_number: int,
    today: Optional[date] = None,
) -> ValidationResult:
    """
    Validate one raw row for an import kind.

    Args:
        kind: Which canonical row to produce
        raw: Normalized header -> raw string value
        row_number: 1-based data row number in the source file
        today: Reference day for "not in the past" rules (defaults to today)

    Returns:
        ValidationResult holding either the canonical row or every field error
    """
    validator = ROW_VALIDATORS[ImportKind(kind)]
    return validator(raw, row_number, today or date.today())


def validate_parsed_row(
    kind: ImportKind,
    parsed: ParsedRow,
    today: Optional[date] = None,
) -> ValidationResult:
    """Validate a parser row; structurally broken rows are rejected as parse errors."""
    if parsed.error:
        return ValidationResult(
            row_number=parsed.row_number,
            raw=parsed.values,
            errors=[FieldError(field=ROW_FIELD, value=None, message=parsed.error)],
            error_type=ImportErrorType.PARSE,
        )
    return validate_row(kind, parsed.values, parsed.row_number, today)
