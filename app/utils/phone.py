"""
Phone number checks for imported customer contacts.

Imported contacts must be in international form: a leading ``+``, a country
code that does not start with zero, and at least ten digits in total.
Separators (spaces, hyphens, dots, parentheses) are tolerated and removed.
"""

import re
from typing import Any, Optional

_SEPARATORS = re.compile(r"[\s\-.()]")
INTERNATIONAL_PHONE = re.compile(r"^\+[1-9]\d{9,14}$")

PHONE_FORMAT_HINT = "use international format with country code, e.g. +91xxxxxxxxxx"


def normalize_phone(value: Any) -> Optional[str]:
    """
    Strip separators from a phone value.

    Returns:
        The compacted phone string, or None for empty input
    """
    if value is None:
        return None
    text = _SEPARATORS.sub("", str(value).strip())
    return text or None

