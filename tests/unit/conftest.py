"""Unit test fixtures.

FakeCardRepository keeps supporters, cards, contributions and tag
settings in dicts so the ingestion pipeline can run without PostgreSQL.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any

import pytest

from cardshare_etl.card_fields import ContactRecord
from cardshare_etl.duplicate_resolver import ExistingCard
from cardshare_etl.identity import DEFAULT_SUPPORTER_NAME, AuthenticatedUser
from cardshare_etl.ingest_cards import RawUpload


class FakeCardRepository:
    def __init__(self) -> None:
        self.supporters: dict[str, dict[str, Any]] = {}
        self.private: dict[str, dict[str, Any]] = {}
        self.shared: dict[str, dict[str, Any]] = {}
        self.contributions: list[dict[str, Any]] = []
        self.settings: dict[tuple[str, str], bool] = {}
        self.commits = 0
        self.rollbacks = 0
        self.insert_private_batches: list[int] = []
        self.insert_shared_batches: list[int] = []
        self.fail_on: set[str] = set()
        self._ids = itertools.count(1)

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    @staticmethod
    def _existing(card_id: str, record: ContactRecord) -> ExistingCard:
        return ExistingCard(
            id=card_id,
            email=record.email,
            name=record.name,
            company=record.company,
            exchanged_on=record.exchanged_on,
        )

    # Seeding helpers
    def seed_shared(
        self,
        record: ContactRecord,
        user_id: str = "other-user",
        is_active: bool = True,
    ) -> str:
        card_id = self._next_id("shared")
        self.shared[card_id] = {
            "record": record,
            "contributor_id": "other-supporter",
            "shared_by_user_id": user_id,
            "is_active": is_active,
        }
        return card_id

    # Unit of work
    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    # Supporters
    def find_supporter_id(self, email: str) -> str | None:
        for supporter_id, row in self.supporters.items():
            if row["email"] == email:
                return supporter_id
        return None

    def ensure_supporter(self, user: AuthenticatedUser) -> str:
        self._maybe_fail("ensure_supporter")
        existing = self.find_supporter_id(user.email)
        if existing:
            return existing
        self.supporters[user.id] = {
            "email": user.email,
            "name": user.name or DEFAULT_SUPPORTER_NAME,
            "user_status": "email_registered",
            "csv_record_count": 0,
        }
        return user.id

    def update_supporter_upload(
        self, supporter_id: str, filename: str, uploaded_at: datetime, record_count: int,
    ) -> None:
        self._maybe_fail("update_supporter_upload")
        if supporter_id not in self.supporters:
            raise LookupError(f"supporter {supporter_id} not found")
        self.supporters[supporter_id].update(
            csv_filename=filename,
            csv_upload_date=uploaded_at,
            csv_record_count=record_count,
            user_status="csv_uploaded",
        )

    # Private store
    def private_existing(self, supporter_id: str) -> list[ExistingCard]:
        self._maybe_fail("private_existing")
        return [
            self._existing(card_id, row["record"])
            for card_id, row in self.private.items()
            if row["supporter_id"] == supporter_id
        ]

    def clear_private(self, supporter_id: str) -> int:
        doomed = [k for k, v in self.private.items() if v["supporter_id"] == supporter_id]
        for k in doomed:
            del self.private[k]
        return len(doomed)

    def insert_private(self, records: list[ContactRecord], supporter_id: str) -> int:
        self._maybe_fail("insert_private")
        self.insert_private_batches.append(len(records))
        for record in records:
            self.private[self._next_id("private")] = {
                "supporter_id": supporter_id, "record": record,
            }
        return len(records)

    def update_private(self, card_id: str, record: ContactRecord) -> None:
        self._maybe_fail("update_private")
        if card_id not in self.private:
            raise LookupError(f"business card {card_id} not found")
        self.private[card_id]["record"] = record

    # Shared pool
    def shared_existing(self) -> list[ExistingCard]:
        return [
            self._existing(card_id, row["record"])
            for card_id, row in self.shared.items()
            if row["is_active"]
        ]

    def insert_shared(
        self, records: list[ContactRecord], supporter_id: str, user_id: str,
    ) -> list[str]:
        self._maybe_fail("insert_shared")
        self.insert_shared_batches.append(len(records))
        ids = []
        for record in records:
            card_id = self._next_id("shared")
            self.shared[card_id] = {
                "record": record,
                "contributor_id": supporter_id,
                "shared_by_user_id": user_id,
                "is_active": True,
            }
            ids.append(card_id)
        return ids

    def insert_contributions(
        self, shared_ids: list[str], user_id: str, supporter_id: str,
        uploaded_at: datetime, first_index: int,
    ) -> int:
        self._maybe_fail("insert_contributions")
        for offset, shared_id in enumerate(shared_ids):
            self.contributions.append({
                "shared_card_id": shared_id,
                "contributor_user_id": user_id,
                "contributor_supporter_id": supporter_id,
                "record_index": first_index + offset,
            })
        return len(shared_ids)

    def update_shared(self, card_id: str, record: ContactRecord) -> None:
        self._maybe_fail("update_shared")
        row = self.shared.get(card_id)
        if row is None or not row["is_active"]:
            raise LookupError(f"shared business card {card_id} not found or inactive")
        row["record"] = record

    def count_shared_for_user(self, user_id: str) -> int:
        return len({
            c["shared_card_id"]
            for c in self.contributions
            if c["contributor_user_id"] == user_id
            and self.shared[c["shared_card_id"]]["is_active"]
        })

    # Tags
    def private_tag_maps(self, supporter_id: str) -> list[dict[str, Any]]:
        return [
            row["record"].tags
            for row in self.private.values()
            if row["supporter_id"] == supporter_id and row["record"].tags
        ]

    def shared_tag_maps(self, user_id: str) -> list[dict[str, Any]]:
        return [
            row["record"].tags
            for row in self.shared.values()
            if row["shared_by_user_id"] == user_id and row["is_active"] and row["record"].tags
        ]

    def contributed_tag_maps(self, user_id: str) -> list[dict[str, Any]]:
        maps = []
        for c in self.contributions:
            row = self.shared[c["shared_card_id"]]
            if c["contributor_user_id"] == user_id and row["is_active"] and row["record"].tags:
                maps.append(row["record"].tags)
        return maps

    def tag_settings(self, user_id: str) -> dict[str, bool]:
        return {tag: allow for (uid, tag), allow in self.settings.items() if uid == user_id}

    def upsert_tag_settings(self, user_id: str, settings: dict[str, bool]) -> None:
        self._maybe_fail("upsert_tag_settings")
        for tag, allow in settings.items():
            self.settings[(user_id, tag)] = allow


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_repo() -> FakeCardRepository:
    return FakeCardRepository()


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="taro@example.com", name="山田 太郎")


@pytest.fixture
def make_upload():
    """Build a RawUpload from a header list and row lists."""

    def _make(
        headers: list[str],
        rows: list[list[str]],
        filename: str = "cards.csv",
        bom: bool = False,
    ) -> RawUpload:
        lines = [",".join(headers)] + [",".join(r) for r in rows]
        text = "\r\n".join(lines) + "\r\n"
        content = text.encode("utf-8-sig" if bom else "utf-8")
        return RawUpload(filename=filename, content=content)

    return _make


@pytest.fixture
def fixed_now():
    moments = iter([
        datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc),
        datetime(2024, 7, 2, 9, 0, tzinfo=timezone.utc),
        datetime(2024, 7, 3, 9, 0, tzinfo=timezone.utc),
        datetime(2024, 7, 4, 9, 0, tzinfo=timezone.utc),
    ])
    return lambda: next(moments)
