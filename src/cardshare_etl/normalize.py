"""Normalization functions for business-card CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date

_EXCHANGE_DATE_RE = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 3: parse_exchange_date
# ---------------------------------------------------------------------------

def parse_exchange_date(value: str | None) -> date | None:
    """Parse 'YYYY-MM-DD' or 'YYYY/MM/DD' (1-2 digit month/day).

    Any other shape, or an impossible calendar date such as 2024-02-30,
    returns None.  Never raises.
    """
    v = trim(value)
    if v is None:
        return None
    m = _EXCHANGE_DATE_RE.match(v)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 4: display name
# ---------------------------------------------------------------------------

def build_display_name(last_name: str | None, first_name: str | None) -> str | None:
    """Return 'Last First' (family name first), or None when both are absent."""
    last = trim(last_name)
    first = trim(first_name)
    if last is None and first is None:
        return None
    return trim(f"{last or ''} {first or ''}")


# ---------------------------------------------------------------------------
# Match keys  (duplicate resolution)
# ---------------------------------------------------------------------------

def email_key(email: str | None) -> str | None:
    """Case-insensitive, trimmed email lookup key."""
    return normalize_email(email)


def name_company_key(name: str | None, company: str | None) -> str | None:
    """Return 'name_company' lowercased, or None unless both parts exist."""
    n = trim(name)
    c = trim(company)
    if n is None or c is None:
        return None
    return f"{n}_{c}".lower()
