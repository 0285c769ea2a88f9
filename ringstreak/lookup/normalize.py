"""
Phone number canonicalization for CRM lookups.

No I/O. Converts whatever a telephony event or a CRM row carries into E.164
(``+<country><subscriber>``) and derives the textual variants people actually
type into contact records, so a search API without phone awareness can still
find them.
"""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D+")
_GROUPED = re.compile(r"^(\+\d{1,3})(\d{3})(\d{3})(\d{4})$")


def digits_only(value: str | None) -> str:
    """Strip everything except ASCII digits."""
    if not value:
        return ""
    return _NON_DIGITS.sub("", str(value))


def last_ten(value: str | None) -> str:
    """Last 10 digits of a number (the NANP subscriber part), or fewer if short."""
    return digits_only(value)[-10:]


def normalize(raw: str | None) -> str | None:
    """Canonicalize a phone number to E.164.

    Returns None when the input holds no digits at all. 10 digits are taken
    as a North-American number; 11 digits starting with 1 already carry the
    country code. Any other length keeps a leading ``+`` from the input, or
    gets one prepended.
    """
    if not raw:
        return None
    raw = str(raw).strip()
    digits = digits_only(raw)
    if not digits:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return raw if raw.startswith("+") else f"+{digits}"


def north_american_local(e164: str) -> str:
    """Return the 10-digit local number for a +1 number, else an empty string."""
    digits = digits_only(e164)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    if len(digits) == 10:
        return digits
    return ""


def variants(e164: str) -> tuple[str, ...]:
    """Textual forms of a normalized number, deduplicated in a stable order.

    Always includes the number itself, the form without ``+``, the bare
    digits and the space-grouped international form. North-American numbers
    also get the local 10 digits and the common punctuated spellings.
    """
    digits = digits_only(e164)
    no_plus = e164[1:] if e164.startswith("+") else e164
    grouped = _GROUPED.sub(r"\1 \2 \3 \4", e164)
    local = north_american_local(e164)

    forms = [e164, no_plus, digits, grouped, local, f"+{digits}" if digits else ""]

    if local:
        area, prefix, line = local[:3], local[3:6], local[6:]
        forms += [
            f"({area}) {prefix}-{line}",
            f"({area}){prefix}-{line}",
            f"{area}-{prefix}-{line}",
            f"{area} {prefix} {line}",
            f"{area}.{prefix}.{line}",
            f"{area}{prefix}{line}",
            f"+1-{area}-{prefix}-{line}",
            f"+1 {area} {prefix} {line}",
            f"+1 {area}-{prefix}-{line}",
            f"+1 ({area}) {prefix}-{line}",
            f"+1({area}) {prefix}-{line}",
        ]

    return tuple(dict.fromkeys(f for f in forms if f))


def same_number(candidate: str | None, target_digits: str) -> bool:
    """True if ``candidate`` is the target number, tolerating a missing country code."""
    digits = digits_only(candidate)
    if not digits or not target_digits:
        return False
    if digits == target_digits:
        return True
    return len(digits) >= 10 and len(target_digits) >= 10 and digits[-10:] == target_digits[-10:]
