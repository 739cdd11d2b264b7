"""
Date parsing for imported rows.

Import files carry dates either as ISO 8601 (``2025-10-15``,
``2025-10-15T10:00:00Z``) or as day-first ``DD-MM-YYYY``. Everything else is
rejected rather than guessed, so a row is never stored with a silently
misread date.
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import pandas as pd

ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
DAY_FIRST_DATE = re.compile(r"^\d{2}-\d{2}-\d{4}$")

ACCEPTED_DATE_FORMATS = "ISO 8601 or DD-MM-YYYY"


def parse_import_date(value: Any) -> Optional[datetime]:
    """
    Parse an imported date value into a timezone-aware datetime.

    An explicit offset in the value is kept so calendar-day rules see the day
    the file meant; values without one are taken as UTC.

    Args:
        value: Raw cell value (usually a string)

    Returns:
        Parsed datetime, or None when the value is empty or not in an accepted format
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text = str(value).strip()
    if not text:
        return None

    if ISO_DATE_PREFIX.match(text):
        parse_format = "ISO8601"
    elif DAY_FIRST_DATE.match(text):
        parse_format = "%d-%m-%Y"
    else:
        return None

    try:
        parsed = pd.to_datetime(text, format=parse_format)
    except (ValueError, TypeError):
        return None

    if pd.isna(parsed):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.tz_localize("UTC")
    return parsed.to_pydatetime()


def is_before_day(value: datetime, today: date) -> bool:
    """True when ``value`` falls on a calendar day before ``today``, read in ``value``'s own offset."""
    return value.date() < today
