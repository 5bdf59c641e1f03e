"""cardshare_etl.card_fields

Business-card CSV parsing, header classification and row normalization.

Header handling:
  - Standard headers come from a fixed dictionary (HEADER_FIELD_MAP).
    Matching is exact: case, script and character width all matter, so a
    full-width "ＵＲＬ" column is a free-form tag, not the url field.
  - Every other header is a free-form tag ("MyTag") and its cell value is
    kept verbatim in the record's tag map.
  - Every header/value pair, standard or not, is also captured in the
    all-fields snapshot.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from cardshare_etl.normalize import (
    build_display_name,
    parse_exchange_date,
    trim,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HEADER_FIELD_MAP: dict[str, str] = {
    "会社名": "company",
    "部署名": "department",
    "役職": "position",
    "姓": "last_name",
    "名": "first_name",
    "氏名": "name",
    "e-mail": "email",
    "email": "email",
    "メール": "email",
    "郵便番号": "postal_code",
    "住所": "address",
    "TEL会社": "company_phone",
    "TEL部門": "department_phone",
    "TEL直通": "direct_phone",
    "Fax": "fax",
    "FAX": "fax",
    "携帯電話": "mobile",
    "携帯": "mobile",
    "URL": "url",
    "ホームページ": "url",
    "名刺交換日": "exchange_date",
    "交換日": "exchange_date",
}

STANDARD_HEADERS = frozenset(HEADER_FIELD_MAP)

# Resolved display phone: first non-empty in this order.
PHONE_PRIORITY = ("company_phone", "direct_phone", "department_phone", "mobile")

CARD_COLUMNS = (
    "company", "department", "position", "last_name", "first_name", "name",
    "email", "postal_code", "address", "company_phone", "department_phone",
    "direct_phone", "fax", "mobile", "url", "exchange_date",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CsvParseError(ValueError):
    """Raised when the uploaded text cannot be parsed as CSV."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        where = f" (line {line})" if line is not None else ""
        super().__init__(f"{message}{where}")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class ParsedTable:
    headers: list[str]
    rows: list[list[str]]

    @property
    def total_rows(self) -> int:
        return len(self.rows)


@dataclass
class ContactRecord:
    """Canonical business-card record (one CSV row)."""

    company: str | None = None
    department: str | None = None
    position: str | None = None
    last_name: str | None = None
    first_name: str | None = None
    name: str | None = None
    email: str | None = None
    postal_code: str | None = None
    address: str | None = None
    company_phone: str | None = None
    department_phone: str | None = None
    direct_phone: str | None = None
    fax: str | None = None
    mobile: str | None = None
    url: str | None = None
    exchange_date: str | None = None
    exchanged_on: date | None = None
    phone: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    all_fields: dict[str, str] = field(default_factory=dict)
    supporter_id: str | None = None

    def display_name(self) -> str:
        return self.name or build_display_name(self.last_name, self.first_name) or ""

    def raw_data(self) -> dict[str, Any]:
        """JSONB payload stored alongside the flat columns."""
        return {"myTags": dict(self.tags), "allFields": dict(self.all_fields)}

    def columns(self) -> dict[str, Any]:
        """Flat column values for persistence (absent values are None)."""
        cols: dict[str, Any] = {c: getattr(self, c) for c in CARD_COLUMNS}
        cols["phone"] = self.phone
        cols["registration_date"] = self.exchanged_on
        return cols


# ---------------------------------------------------------------------------
# Field Classifier
# ---------------------------------------------------------------------------

def is_standard_header(header: str) -> bool:
    return header in STANDARD_HEADERS


def classify_headers(headers: list[str]) -> list[str]:
    """Return the free-form tag headers, first-seen order, no duplicates."""
    seen: set[str] = set()
    tags: list[str] = []
    for header in headers:
        if is_standard_header(header) or header in seen:
            continue
        seen.add(header)
        tags.append(header)
    return tags


# ---------------------------------------------------------------------------
# CSV parsing
# ---------------------------------------------------------------------------

def parse_csv_text(text: str) -> ParsedTable:
    """Parse UTF-8 CSV text into headers + non-empty data rows.

    Raises CsvParseError on malformed quoting or when there is no header row.
    A header-only file yields a table with zero rows; the caller decides
    whether that is fatal.
    """
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    records: list[list[str]] = []
    try:
        for cells in reader:
            # Blank lines come back as [] or [""]
            if not any(c.strip() for c in cells):
                continue
            records.append(cells)
    except csv.Error as exc:
        raise CsvParseError(f"malformed CSV: {exc}", line=reader.line_num) from exc

    if not records:
        raise CsvParseError("CSV file is empty")

    headers = [h.strip() for h in records[0]]
    return ParsedTable(headers=headers, rows=records[1:])


# ---------------------------------------------------------------------------
# Record Normalizer
# ---------------------------------------------------------------------------

def normalize_card_row(
    headers: list[str],
    row: list[str],
    supporter_id: str | None = None,
) -> ContactRecord:
    """Map one CSV row onto a ContactRecord.  Never raises on bad data.

    Missing trailing cells are absent; cells beyond the header list are
    ignored.  If a header repeats, the later column wins.
    """
    record = ContactRecord(supporter_id=supporter_id)

    for idx, header in enumerate(headers):
        value = row[idx].strip() if idx < len(row) else ""
        record.all_fields[header] = value
        field_name = HEADER_FIELD_MAP.get(header)
        if field_name:
            setattr(record, field_name, value or None)
        else:
            record.tags[header] = value

    if record.name is None:
        record.name = build_display_name(record.last_name, record.first_name)

    for phone_field in PHONE_PRIORITY:
        candidate = trim(getattr(record, phone_field))
        if candidate:
            record.phone = candidate
            break

    record.exchanged_on = parse_exchange_date(record.exchange_date)
    return record


def normalize_table(
    table: ParsedTable,
    supporter_id: str | None = None,
) -> list[ContactRecord]:
    """One ContactRecord per data row, in file order."""
    return [normalize_card_row(table.headers, row, supporter_id) for row in table.rows]


def collect_tags(records: list[ContactRecord]) -> list[str]:
    """Sorted tag names carrying a non-empty value in at least one record."""
    found: set[str] = set()
    for record in records:
        for tag, value in record.tags.items():
            if value:
                found.add(tag)
    return sorted(found)
