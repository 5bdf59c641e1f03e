"""cardshare_etl.ingest_cards

Business-card CSV ingestion pipeline.

Processing order (one call, strictly sequential):
  0.  Validate the upload (extension, size, non-empty)   → nothing persisted yet
  1.  Ensure the contributor's supporter row exists
  2.  Archive the raw bytes under {user_id}/{epoch_ms}_{filename}
  3.  Decode + parse the CSV; zero data rows is fatal
  4.  Classify headers, normalize rows into ContactRecords
  5.  Resolve duplicates against the contributor's private store
  6.  Replace-if-all-new: clear prior private rows when nothing matched
  7.  Insert private NEW rows in batches, apply private UPDATEs one by one
  8.  Resolve inserted + updated records against the shared pool
  9.  Insert shared NEW rows in batches with one contribution each
      (best-effort), apply shared UPDATEs one by one
  10. Record the upload on the supporter row (count, status=csv_uploaded)

Each persisting step is committed on its own.  A failure raises
IngestError naming the phase; earlier steps stay committed and are listed
in the error's step log.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator

from cardshare_etl.archive import Archiver, upload_key
from cardshare_etl.card_fields import (
    ContactRecord,
    classify_headers,
    collect_tags,
    normalize_table,
    parse_csv_text,
)
from cardshare_etl.config import IngestConfig
from cardshare_etl.duplicate_resolver import (
    DuplicateInfo,
    resolve_duplicates,
)
from cardshare_etl.identity import AuthenticatedUser
from cardshare_etl.shared import (
    PHASE_DATABASE,
    PHASE_PARSE,
    PHASE_PROFILE,
    PHASE_UPLOAD,
    IngestCounters,
    IngestError,
    StepRecord,
    UploadValidationError,
    chunked,
)
from cardshare_etl.store import CardRepository

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class RawUpload:
    filename: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class IngestResult:
    record_count: int
    tag_count: int
    tags: list[str]
    duplicate_info: DuplicateInfo
    private_info: DuplicateInfo
    supporter_id: str
    archive_path: str
    steps: list[StepRecord] = field(default_factory=list)
    counters: IngestCounters = field(default_factory=IngestCounters)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_upload(upload: RawUpload, max_file_size_bytes: int) -> None:
    if not upload.filename.lower().endswith(".csv"):
        raise UploadValidationError(f"{upload.filename!r} is not a .csv file")
    if upload.size > max_file_size_bytes:
        raise UploadValidationError(
            f"{upload.filename!r} is {upload.size} bytes; "
            f"the limit is {max_file_size_bytes} bytes"
        )
    if upload.size == 0:
        raise UploadValidationError(f"{upload.filename!r} is empty")


# ---------------------------------------------------------------------------
# Step bookkeeping
# ---------------------------------------------------------------------------

@contextmanager
def _step(steps: list[StepRecord], name: str, phase: str) -> Iterator[None]:
    """Turn any failure inside the block into IngestError(phase)."""
    try:
        yield
    except IngestError:
        raise
    except Exception as exc:
        steps.append(StepRecord(name=name, status="failed", detail=str(exc)))
        log.error("ingestion step %s failed: %s", name, exc)
        raise IngestError(phase, f"{name}: {exc}", steps) from exc


def _done(steps: list[StepRecord], name: str, detail: str | None = None) -> None:
    steps.append(StepRecord(name=name, status="done", detail=detail))
    log.debug("step %s done (%s)", name, detail)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def ingest_business_cards(
    repo: CardRepository,
    archiver: Archiver,
    user: AuthenticatedUser,
    upload: RawUpload,
    config: IngestConfig | None = None,
    now: Callable[[], datetime] = _utcnow,
) -> IngestResult:
    """Run the full ingestion for one upload by one authenticated user.

    Raises:
        UploadValidationError: before anything is persisted.
        IngestError: when a later phase fails; nothing is rolled back.
    """
    config = config or IngestConfig()
    steps: list[StepRecord] = []
    counters = IngestCounters()

    # Step 0: validation
    validate_upload(upload, config.max_file_size_bytes)

    # Step 1: supporter row
    with _step(steps, "ensure_supporter", PHASE_PROFILE):
        supporter_id = repo.ensure_supporter(user)
        repo.commit()
    _done(steps, "ensure_supporter", supporter_id)

    # Step 2: raw file archive
    uploaded_at = now()
    key = upload_key(user.id, upload.filename, int(uploaded_at.timestamp() * 1000))
    with _step(steps, "archive_upload", PHASE_UPLOAD):
        archive_path = archiver.store(key, upload.content)
    _done(steps, "archive_upload", archive_path)

    # Step 3: parse
    with _step(steps, "parse_csv", PHASE_PARSE):
        text = upload.content.decode("utf-8-sig")
        table = parse_csv_text(text)
        if not table.rows:
            raise ValueError("CSV file contains no data rows")
    counters.rows_read = table.total_rows
    _done(steps, "parse_csv", f"{table.total_rows} rows, {len(table.headers)} columns")

    # Step 4: classify + normalize
    tag_headers = classify_headers(table.headers)
    records = normalize_table(table, supporter_id)
    counters.records_normalized = len(records)
    tags = collect_tags(records)
    _done(steps, "normalize", f"{len(records)} records, {len(tag_headers)} tag columns")

    # Step 5: private-scope resolution
    with _step(steps, "resolve_private", PHASE_DATABASE):
        private = resolve_duplicates(
            repo.private_existing(supporter_id), records, scope="private",
        )
    private_info = private.duplicate_info()
    counters.private_new = private_info.new_records
    counters.private_updated = private_info.updated_records
    counters.private_skipped = private_info.duplicates_skipped
    _done(
        steps, "resolve_private",
        f"new={private_info.new_records} updated={private_info.updated_records} "
        f"skipped={private_info.duplicates_skipped}",
    )

    private_inserts = private.to_insert
    private_updates = private.to_update

    # Step 6 + 7: private writes
    with _step(steps, "save_private", PHASE_DATABASE):
        if (
            config.replace_private_when_all_new
            and private_inserts
            and not private_updates
            and not private.skipped
        ):
            counters.private_rows_cleared = repo.clear_private(supporter_id)
            log.info(
                "all %d records are new; cleared %d previous private cards for %s",
                len(private_inserts), counters.private_rows_cleared, supporter_id,
            )
        for batch in chunked(private_inserts, config.private_batch_size):
            counters.private_rows_inserted += repo.insert_private(batch, supporter_id)
        for card_id, record in private_updates:
            repo.update_private(card_id, record)
            counters.private_rows_updated += 1
        repo.commit()
    _done(
        steps, "save_private",
        f"cleared={counters.private_rows_cleared} "
        f"inserted={counters.private_rows_inserted} updated={counters.private_rows_updated}",
    )

    # Step 8: shared-scope resolution
    to_share: list[ContactRecord] = private_inserts + [r for _, r in private_updates]
    duplicate_info = private_info
    with _step(steps, "resolve_shared", PHASE_DATABASE):
        prior_shared_count = repo.count_shared_for_user(user.id)
        shared = None
        if to_share:
            shared = resolve_duplicates(repo.shared_existing(), to_share, scope="shared")
    if shared is not None:
        duplicate_info = shared.duplicate_info()
        counters.shared_new = duplicate_info.new_records
        counters.shared_updated = duplicate_info.updated_records
        counters.shared_skipped = duplicate_info.duplicates_skipped
    _done(steps, "resolve_shared", f"{len(to_share)} records offered to the shared pool")

    # Step 9: shared writes
    if shared is not None:
        with _step(steps, "save_shared", PHASE_DATABASE):
            _save_shared(
                repo, shared.to_insert, shared.to_update, supporter_id, user,
                uploaded_at, config.shared_batch_size, counters,
            )
            repo.commit()
        _done(
            steps, "save_shared",
            f"inserted={counters.shared_rows_inserted} updated={counters.shared_rows_updated} "
            f"contributions={counters.contributions_inserted}",
        )

    # Step 10: supporter aggregate
    record_count = counters.shared_new + counters.shared_updated
    with _step(steps, "update_supporter", PHASE_DATABASE):
        repo.update_supporter_upload(
            supporter_id, upload.filename, uploaded_at, prior_shared_count + record_count,
        )
        repo.commit()
    _done(steps, "update_supporter", f"shared total={prior_shared_count + record_count}")

    log.info(
        "ingested %s for user %s: %d rows, %d saved to shared pool, %d tags",
        upload.filename, user.id, len(records), record_count, len(tags),
    )
    return IngestResult(
        record_count=record_count,
        tag_count=len(tags),
        tags=tags,
        duplicate_info=duplicate_info,
        private_info=private_info,
        supporter_id=supporter_id,
        archive_path=archive_path,
        steps=steps,
        counters=counters,
    )


def _save_shared(
    repo: CardRepository,
    inserts: list[ContactRecord],
    updates: list[tuple[str, ContactRecord]],
    supporter_id: str,
    user: AuthenticatedUser,
    uploaded_at: datetime,
    batch_size: int,
    counters: IngestCounters,
) -> None:
    offset = 0
    for batch_no, batch in enumerate(chunked(inserts, batch_size), start=1):
        shared_ids = repo.insert_shared(batch, supporter_id, user.id)
        if len(shared_ids) != len(batch):
            raise RuntimeError(
                f"shared batch {batch_no}: inserted {len(shared_ids)} of {len(batch)} rows"
            )
        counters.shared_rows_inserted += len(shared_ids)

        # Attribution is best-effort: the shared rows stay even if this fails.
        try:
            counters.contributions_inserted += repo.insert_contributions(
                shared_ids, user.id, supporter_id, uploaded_at, offset,
            )
        except Exception as exc:
            counters.contributions_failed += len(shared_ids)
            msg = f"shared batch {batch_no}: contribution insert failed: {exc}"
            counters.warnings.append(msg)
            log.warning(msg)
        offset += len(batch)

    for card_id, record in updates:
        repo.update_shared(card_id, record)
        counters.shared_rows_updated += 1
