"""cardshare_etl.duplicate_resolver

Duplicate detection for incoming business cards against one scope of
existing records: a single contributor's private store, or the global
shared pool.

Matching order per incoming record:
  1. email (trimmed, lowercased) exact match
  2. otherwise name + "_" + company (trimmed, lowercased), only when both exist
  3. otherwise NEW

Recency policy once a match exists (exchange date, parsed):
  new > existing        → UPDATE
  new == existing       → SKIP
  new < existing        → SKIP
  existing only         → SKIP
  new only              → UPDATE
  neither               → SKIP

Missing recency information never overwrites existing data.  The index is
rebuilt on every call and is never cached between ingestions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from cardshare_etl.card_fields import ContactRecord
from cardshare_etl.normalize import email_key, name_company_key

log = logging.getLogger(__name__)

ACTION_NEW = "new"
ACTION_UPDATE = "updated"
ACTION_SKIP = "skipped"

MATCH_EMAIL = "email"
MATCH_NAME_COMPANY = "name_company"

_MATCH_LABELS = {
    MATCH_EMAIL: "email matched",
    MATCH_NAME_COMPANY: "name+company matched",
}


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExistingCard:
    """The columns of a stored card that duplicate matching needs."""

    id: str
    email: str | None
    name: str | None
    company: str | None
    exchanged_on: date | None


@dataclass
class Decision:
    record: ContactRecord
    action: str
    reason: str
    existing_id: str | None = None
    match_type: str | None = None


@dataclass
class DuplicateDetail:
    name: str
    company: str
    email: str
    reason: str
    action: str


@dataclass
class DuplicateInfo:
    total_processed: int = 0
    new_records: int = 0
    updated_records: int = 0
    duplicates_skipped: int = 0
    duplicate_details: list[DuplicateDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "new_records": self.new_records,
            "updated_records": self.updated_records,
            "duplicates_skipped": self.duplicates_skipped,
            "duplicate_details": [d.__dict__ for d in self.duplicate_details],
        }


@dataclass
class Resolution:
    decisions: list[Decision] = field(default_factory=list)

    @property
    def to_insert(self) -> list[ContactRecord]:
        return [d.record for d in self.decisions if d.action == ACTION_NEW]

    @property
    def to_update(self) -> list[tuple[str, ContactRecord]]:
        return [
            (d.existing_id, d.record)  # type: ignore[misc]
            for d in self.decisions
            if d.action == ACTION_UPDATE
        ]

    @property
    def skipped(self) -> list[Decision]:
        return [d for d in self.decisions if d.action == ACTION_SKIP]

    def duplicate_info(self) -> DuplicateInfo:
        info = DuplicateInfo(total_processed=len(self.decisions))
        for d in self.decisions:
            if d.action == ACTION_NEW:
                info.new_records += 1
            elif d.action == ACTION_UPDATE:
                info.updated_records += 1
            else:
                info.duplicates_skipped += 1
            info.duplicate_details.append(
                DuplicateDetail(
                    name=d.record.display_name(),
                    company=d.record.company or "",
                    email=d.record.email or "",
                    reason=d.reason,
                    action=d.action,
                )
            )
        return info


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class DuplicateIndex:
    """In-memory email and name+company lookup over existing cards."""

    def __init__(self) -> None:
        self._by_email: dict[str, ExistingCard] = {}
        self._by_name_company: dict[str, ExistingCard] = {}

    @classmethod
    def build(cls, existing: Iterable[ExistingCard]) -> DuplicateIndex:
        index = cls()
        for card in existing:
            # Later rows win on key collision.
            ek = email_key(card.email)
            if ek:
                index._by_email[ek] = card
            nk = name_company_key(card.name, card.company)
            if nk:
                index._by_name_company[nk] = card
        return index

    @property
    def email_count(self) -> int:
        return len(self._by_email)

    @property
    def name_company_count(self) -> int:
        return len(self._by_name_company)

    def find_match(self, record: ContactRecord) -> tuple[ExistingCard, str] | None:
        ek = email_key(record.email)
        if ek:
            card = self._by_email.get(ek)
            if card is not None:
                return card, MATCH_EMAIL
        nk = name_company_key(record.name, record.company)
        if nk:
            card = self._by_name_company.get(nk)
            if card is not None:
                return card, MATCH_NAME_COMPANY
        return None


# ---------------------------------------------------------------------------
# Recency policy
# ---------------------------------------------------------------------------

def should_update(existing_on: date | None, new_on: date | None) -> bool:
    """True only when the incoming card is provably more recent."""
    if new_on is not None and existing_on is not None:
        return new_on > existing_on
    if new_on is not None:
        return True
    return False


def _reason(match_type: str, action: str, existing_on: date | None, new_on: date | None) -> str:
    label = _MATCH_LABELS[match_type]
    if action == ACTION_UPDATE:
        if existing_on is None:
            return f"{label}; existing record has no exchange date, updating"
        return f"{label}; newer exchange date, updating"
    if new_on is None:
        return f"{label}; no exchange date on new record, keeping existing data"
    if existing_on is not None and new_on == existing_on:
        return f"{label}; same exchange date, skipping"
    return f"{label}; existing data is newer, skipping"


def decide(existing: ExistingCard, record: ContactRecord, match_type: str) -> Decision:
    if should_update(existing.exchanged_on, record.exchanged_on):
        action = ACTION_UPDATE
    else:
        action = ACTION_SKIP
    return Decision(
        record=record,
        action=action,
        reason=_reason(match_type, action, existing.exchanged_on, record.exchanged_on),
        existing_id=existing.id,
        match_type=match_type,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def resolve_duplicates(
    existing: Iterable[ExistingCard],
    records: list[ContactRecord],
    scope: str = "private",
) -> Resolution:
    """Classify each record as NEW / UPDATE / SKIP against ``existing``.

    Records within the same batch are not matched against each other.
    """
    index = DuplicateIndex.build(existing)
    log.debug(
        "%s duplicate index: %d email keys, %d name+company keys",
        scope, index.email_count, index.name_company_count,
    )

    resolution = Resolution()
    for record in records:
        match = index.find_match(record)
        if match is None:
            resolution.decisions.append(
                Decision(record=record, action=ACTION_NEW, reason="new record")
            )
            continue
        card, match_type = match
        resolution.decisions.append(decide(card, record, match_type))

    log.info(
        "%s scope: %d new, %d update, %d skip",
        scope,
        len(resolution.to_insert),
        len(resolution.to_update),
        len(resolution.skipped),
    )
    return resolution
