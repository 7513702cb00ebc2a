import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

# Numbers at or below this many digits are assumed to be local, without a code.
LOCAL_MAX_DIGITS = 10


def normalize(raw, default_country_code: str = "92") -> Optional[str]:
    """
    Convert a raw phone string into the canonical, country-coded digit string
    used as the messaging recipient id.

    Returns None when no digits remain, which callers treat as "no contact".

        >>> normalize("0300-1234567", "92")
        '923001234567'
        >>> normalize("+92 300 1234567", "92")
        '923001234567'
        >>> normalize("3001234567", "92")
        '923001234567'
    """
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if not digits:
        return None
    if not default_country_code:
        return digits
    if digits.startswith("0"):
        return default_country_code + digits[1:]
    if digits.startswith(default_country_code):
        return digits
    if len(digits) <= LOCAL_MAX_DIGITS:
        return default_country_code + digits
    return digits


def first_valid(candidates, default_country_code: str = "92") -> Optional[str]:
    """Return the first candidate that normalizes to a usable contact."""
    for candidate in candidates:
        phone = normalize(candidate, default_country_code)
        if phone:
            return phone
    return None
