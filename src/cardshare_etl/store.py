"""cardshare_etl.store

Persistence for supporters, private business cards, the shared card pool,
contributions and tag settings.

The pipeline talks to a CardRepository; PgCardRepository implements it on
a psycopg connection (autocommit off).  The caller decides when work is
committed: the ingestion pipeline calls commit() after each persisting
step, and a dry-run repository turns commit() into a no-op so the CLI can
roll everything back at the end.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from cardshare_etl.card_fields import CARD_COLUMNS, ContactRecord
from cardshare_etl.duplicate_resolver import ExistingCard
from cardshare_etl.identity import DEFAULT_SUPPORTER_NAME, AuthenticatedUser

log = logging.getLogger(__name__)

CONTRIBUTION_TYPE_ORIGINAL = "original"
CONTRIBUTION_SOURCE = "csv_upload"

STATUS_EMAIL_REGISTERED = "email_registered"
STATUS_CSV_UPLOADED = "csv_uploaded"

# Flat card columns written to both business_cards and business_cards_shared.
_WRITE_COLUMNS = CARD_COLUMNS + ("phone", "registration_date")


class CardRepository(Protocol):
    # Supporters
    def find_supporter_id(self, email: str) -> str | None: ...
    def ensure_supporter(self, user: AuthenticatedUser) -> str: ...
    def update_supporter_upload(
        self, supporter_id: str, filename: str, uploaded_at: datetime, record_count: int,
    ) -> None: ...
    # Private store
    def private_existing(self, supporter_id: str) -> list[ExistingCard]: ...
    def clear_private(self, supporter_id: str) -> int: ...
    def insert_private(self, records: list[ContactRecord], supporter_id: str) -> int: ...
    def update_private(self, card_id: str, record: ContactRecord) -> None: ...
    # Shared pool
    def shared_existing(self) -> list[ExistingCard]: ...
    def insert_shared(
        self, records: list[ContactRecord], supporter_id: str, user_id: str,
    ) -> list[str]: ...
    def insert_contributions(
        self, shared_ids: list[str], user_id: str, supporter_id: str,
        uploaded_at: datetime, first_index: int,
    ) -> int: ...
    def update_shared(self, card_id: str, record: ContactRecord) -> None: ...
    def count_shared_for_user(self, user_id: str) -> int: ...
    # Tags
    def private_tag_maps(self, supporter_id: str) -> list[dict[str, Any]]: ...
    def shared_tag_maps(self, user_id: str) -> list[dict[str, Any]]: ...
    def contributed_tag_maps(self, user_id: str) -> list[dict[str, Any]]: ...
    def tag_settings(self, user_id: str) -> dict[str, bool]: ...
    def upsert_tag_settings(self, user_id: str, settings: dict[str, bool]) -> None: ...
    # Unit of work
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


def _card_params(record: ContactRecord) -> list[Any]:
    cols = record.columns()
    return [cols[c] for c in _WRITE_COLUMNS] + [Jsonb(record.raw_data())]


def _existing_from_row(row: tuple[Any, ...]) -> ExistingCard:
    return ExistingCard(
        id=str(row[0]),
        email=row[1],
        name=row[2],
        company=row[3],
        exchanged_on=row[4],
    )


def _fetch_ids(cur: psycopg.Cursor) -> list[str]:
    """Collect RETURNING ids from an executemany(..., returning=True)."""
    ids: list[str] = []
    while True:
        row = cur.fetchone()
        if row is not None:
            ids.append(str(row[0]))
        if not cur.nextset():
            break
    return ids


class PgCardRepository:
    """CardRepository backed by PostgreSQL (see migrations/0001_core_tables.sql)."""

    def __init__(self, conn: psycopg.Connection, dry_run: bool = False) -> None:
        self._conn = conn
        self._dry_run = dry_run

    # -----------------------------------------------------------------------
    # Unit of work
    # -----------------------------------------------------------------------

    def commit(self) -> None:
        if self._dry_run:
            return
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    # -----------------------------------------------------------------------
    # Supporters
    # -----------------------------------------------------------------------

    def find_supporter_id(self, email: str) -> str | None:
        row = self._conn.execute(
            "SELECT id FROM supporters WHERE email = %s",
            (email,),
        ).fetchone()
        return str(row[0]) if row else None

    def ensure_supporter(self, user: AuthenticatedUser) -> str:
        """Return the supporter id for the user, creating the row on first use."""
        existing = self.find_supporter_id(user.email)
        if existing:
            return existing
        row = self._conn.execute(
            """
            INSERT INTO supporters (id, email, name, user_status)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (user.id, user.email, user.name or DEFAULT_SUPPORTER_NAME,
             STATUS_EMAIL_REGISTERED),
        ).fetchone()
        log.info("created supporter row for user %s", user.id)
        return str(row[0])

    def update_supporter_upload(
        self,
        supporter_id: str,
        filename: str,
        uploaded_at: datetime,
        record_count: int,
    ) -> None:
        cur = self._conn.execute(
            """
            UPDATE supporters SET
              csv_filename = %s,
              csv_upload_date = %s,
              csv_record_count = %s,
              csv_uploaded = true,
              user_status = %s,
              updated_at = now()
            WHERE id = %s
            """,
            (filename, uploaded_at, record_count, STATUS_CSV_UPLOADED, supporter_id),
        )
        if cur.rowcount != 1:
            raise LookupError(f"supporter {supporter_id} not found")

    # -----------------------------------------------------------------------
    # Private store
    # -----------------------------------------------------------------------

    def private_existing(self, supporter_id: str) -> list[ExistingCard]:
        rows = self._conn.execute(
            """
            SELECT id, email, name, company, registration_date
            FROM business_cards
            WHERE supporter_id = %s
            ORDER BY created_at ASC, id ASC
            """,
            (supporter_id,),
        ).fetchall()
        return [_existing_from_row(r) for r in rows]

    def clear_private(self, supporter_id: str) -> int:
        cur = self._conn.execute(
            "DELETE FROM business_cards WHERE supporter_id = %s",
            (supporter_id,),
        )
        return cur.rowcount

    def insert_private(self, records: list[ContactRecord], supporter_id: str) -> int:
        if not records:
            return 0
        columns = ", ".join(_WRITE_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(_WRITE_COLUMNS) + 2))
        with self._conn.cursor() as cur:
            cur.executemany(
                f"""
                INSERT INTO business_cards (supporter_id, {columns}, raw_data)
                VALUES ({placeholders})
                """,
                [[supporter_id] + _card_params(r) for r in records],
            )
        return len(records)

    def update_private(self, card_id: str, record: ContactRecord) -> None:
        assignments = ", ".join(f"{c} = %s" for c in _WRITE_COLUMNS)
        cur = self._conn.execute(
            f"""
            UPDATE business_cards
            SET {assignments}, raw_data = %s, updated_at = now()
            WHERE id = %s
            """,
            _card_params(record) + [card_id],
        )
        if cur.rowcount != 1:
            raise LookupError(f"business card {card_id} not found")

    # -----------------------------------------------------------------------
    # Shared pool
    # -----------------------------------------------------------------------

    def shared_existing(self) -> list[ExistingCard]:
        rows = self._conn.execute(
            """
            SELECT id, email, name, company, registration_date
            FROM business_cards_shared
            WHERE is_active
            ORDER BY created_at ASC, id ASC
            """
        ).fetchall()
        return [_existing_from_row(r) for r in rows]

    def insert_shared(
        self,
        records: list[ContactRecord],
        supporter_id: str,
        user_id: str,
    ) -> list[str]:
        if not records:
            return []
        columns = ", ".join(_WRITE_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(_WRITE_COLUMNS) + 3))
        with self._conn.cursor() as cur:
            cur.executemany(
                f"""
                INSERT INTO business_cards_shared
                  (contributor_id, shared_by_user_id, {columns}, raw_data)
                VALUES ({placeholders})
                RETURNING id
                """,
                [[supporter_id, user_id] + _card_params(r) for r in records],
                returning=True,
            )
            return _fetch_ids(cur)

    def insert_contributions(
        self,
        shared_ids: list[str],
        user_id: str,
        supporter_id: str,
        uploaded_at: datetime,
        first_index: int,
    ) -> int:
        """Insert one 'original' contribution per shared card.

        Runs inside a savepoint: on failure only this batch is rolled back
        and the exception propagates to the caller.
        """
        if not shared_ids:
            return 0
        params = [
            (
                shared_id, user_id, supporter_id, CONTRIBUTION_TYPE_ORIGINAL,
                Jsonb({
                    "source": CONTRIBUTION_SOURCE,
                    "upload_date": uploaded_at.isoformat(),
                    "record_index": first_index + offset,
                }),
            )
            for offset, shared_id in enumerate(shared_ids)
        ]
        self._conn.execute("SAVEPOINT contributors_batch")
        try:
            with self._conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO business_card_contributors
                      (shared_card_id, contributor_user_id, contributor_supporter_id,
                       contribution_type, contribution_data)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    params,
                )
        except Exception:
            self._conn.execute("ROLLBACK TO SAVEPOINT contributors_batch")
            raise
        self._conn.execute("RELEASE SAVEPOINT contributors_batch")
        return len(params)

    def update_shared(self, card_id: str, record: ContactRecord) -> None:
        assignments = ", ".join(f"{c} = %s" for c in _WRITE_COLUMNS)
        cur = self._conn.execute(
            f"""
            UPDATE business_cards_shared
            SET {assignments}, raw_data = %s, updated_at = now()
            WHERE id = %s AND is_active
            """,
            _card_params(record) + [card_id],
        )
        if cur.rowcount != 1:
            raise LookupError(f"shared business card {card_id} not found or inactive")

    def count_shared_for_user(self, user_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT count(DISTINCT s.id)
            FROM business_cards_shared s
            JOIN business_card_contributors c ON c.shared_card_id = s.id
            WHERE c.contributor_user_id = %s
              AND s.is_active
            """,
            (user_id,),
        ).fetchone()
        return int(row[0]) if row else 0

    # -----------------------------------------------------------------------
    # Tags
    # -----------------------------------------------------------------------

    def private_tag_maps(self, supporter_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT raw_data -> 'myTags' FROM business_cards WHERE supporter_id = %s",
            (supporter_id,),
        ).fetchall()
        return [r[0] for r in rows if r[0]]

    def shared_tag_maps(self, user_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT raw_data -> 'myTags'
            FROM business_cards_shared
            WHERE shared_by_user_id = %s AND is_active
            """,
            (user_id,),
        ).fetchall()
        return [r[0] for r in rows if r[0]]

    def contributed_tag_maps(self, user_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT s.raw_data -> 'myTags'
            FROM business_card_contributors c
            JOIN business_cards_shared s ON s.id = c.shared_card_id
            WHERE c.contributor_user_id = %s AND s.is_active
            """,
            (user_id,),
        ).fetchall()
        return [r[0] for r in rows if r[0]]

    def tag_settings(self, user_id: str) -> dict[str, bool]:
        rows = self._conn.execute(
            "SELECT tag_name, allow_sales FROM mytag_settings WHERE user_id = %s",
            (user_id,),
        ).fetchall()
        return {r[0]: bool(r[1]) for r in rows}

    def upsert_tag_settings(self, user_id: str, settings: dict[str, bool]) -> None:
        if not settings:
            return
        with self._conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO mytag_settings (user_id, tag_name, allow_sales)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, tag_name) DO UPDATE SET
                  allow_sales = EXCLUDED.allow_sales,
                  updated_at = now()
                """,
                [(user_id, tag, allow) for tag, allow in settings.items()],
            )
