"""cardshare_etl.import_business_cards

Unified CLI entrypoint for business-card ingestion and tag settings.

Modes (--mode):
  ingest       : ingest one business-card CSV export for a user (default)
  all_tags     : list every tag the user has across private/shared cards
  tag_settings : show (and with --set-tag, update) the user's tag settings
  shared_count : count active shared cards the user contributed to

Usage (ingest):
    cardshare-etl \\
        --mode ingest \\
        --db-dsn "$CARDSHARE_DB_DSN" \\
        --csv-path "exports/eight_cards.csv" \\
        --user-id "6f1c..." --user-email "taro@example.com" \\
        --gcs-bucket "cardshare-uploads"

Usage (tag_settings):
    cardshare-etl --mode tag_settings --user-id ... --user-email ... \\
        --set-tag "展示会2024=block" --set-tag "VIP=allow"
"""

from __future__ import annotations

import json
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from cardshare_etl.archive import Archiver, GcsArchiver, LocalArchiver, NullArchiver
from cardshare_etl.config import (
    DB_DSN_ENV,
    ConfigValidationError,
    IngestConfig,
    configure_logging,
    load_config,
)
from cardshare_etl.identity import (
    SIGNED_IN,
    AuthenticatedUser,
    SessionEvents,
    log_session_event,
)
from cardshare_etl.ingest_cards import RawUpload, ingest_business_cards
from cardshare_etl.shared import (
    IngestCounters,
    IngestError,
    UploadValidationError,
    steps_to_dicts,
    write_run_report,
)
from cardshare_etl.store import PgCardRepository
from cardshare_etl.tags import (
    all_user_tags,
    load_tag_settings,
    needs_tag_settings_step,
    private_user_tags,
    save_tag_settings,
)

_TAG_SETTING_VALUES = {"allow": True, "block": False}


# ---------------------------------------------------------------------------
# Flag helpers
# ---------------------------------------------------------------------------

def _parse_tag_settings(values: tuple[str, ...], run_id: str) -> dict[str, bool]:
    settings: dict[str, bool] = {}
    for raw in values:
        tag, sep, value = raw.rpartition("=")
        if not sep or not tag or value.lower() not in _TAG_SETTING_VALUES:
            click.echo(
                f"[{run_id}] ERROR: --set-tag expects TAG=allow|block, got {raw!r}",
                err=True,
            )
            sys.exit(1)
        settings[tag] = _TAG_SETTING_VALUES[value.lower()]
    return settings


def _select_archiver(
    config: IngestConfig,
    gcs_bucket: str | None,
    archive_local_dir: str | None,
    dry_run: bool,
    run_id: str,
) -> Archiver:
    if archive_local_dir:
        return LocalArchiver(base_dir=Path(archive_local_dir))
    if gcs_bucket:
        return GcsArchiver(bucket_name=gcs_bucket, prefix=config.archive_prefix)
    if dry_run:
        return NullArchiver()
    click.echo(
        f"[{run_id}] ERROR: no archiver configured; "
        "provide --gcs-bucket or --archive-local-dir.",
        err=True,
    )
    sys.exit(1)


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_ingest(
    run_id: str,
    started_at: str,
    repo: PgCardRepository,
    archiver: Archiver,
    user: AuthenticatedUser,
    csv_path: Path,
    config: IngestConfig,
    dry_run: bool,
) -> None:
    upload = RawUpload(filename=csv_path.name, content=csv_path.read_bytes())
    try:
        result = ingest_business_cards(repo, archiver, user, upload, config)
    except UploadValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid upload: {exc}", err=True)
        sys.exit(1)
    except IngestError as exc:
        repo.rollback()
        report_path = write_run_report(
            run_id, started_at, "ingest", dry_run,
            {"csv_path": str(csv_path)}, IngestCounters(),
            extra={"failed_phase": exc.phase, "steps": steps_to_dicts(exc.steps)},
        )
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        click.echo(f"[{run_id}] Run report: {report_path}", err=True)
        sys.exit(1)

    next_step = "tag_settings" if needs_tag_settings_step(repo, user) else "complete"
    if dry_run:
        repo.rollback()
        click.echo(f"[{run_id}] [dry-run] All database changes rolled back.")

    info = result.duplicate_info
    click.echo(
        f"[{run_id}] Done: {result.counters.rows_read} rows read, "
        f"{result.record_count} saved to the shared pool "
        f"(new {info.new_records}, updated {info.updated_records}, "
        f"skipped {info.duplicates_skipped}), "
        f"{result.tag_count} tags"
    )
    if result.tags:
        click.echo(f"[{run_id}] Tags: {', '.join(result.tags)}")
    if result.counters.contributions_failed:
        click.echo(
            f"[{run_id}] WARNING: {result.counters.contributions_failed} "
            "contribution rows could not be written",
            err=True,
        )
    click.echo(f"[{run_id}] Next step: {next_step}")

    report_path = write_run_report(
        run_id, started_at, "ingest", dry_run,
        {"csv_path": str(csv_path), "archive_path": result.archive_path},
        result.counters,
        extra={
            "record_count": result.record_count,
            "tags": result.tags,
            "duplicate_info": info.to_dict(),
            "private_duplicate_info": result.private_info.to_dict(),
            "steps": steps_to_dicts(result.steps),
            "next_step": next_step,
        },
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_tag_settings(
    run_id: str,
    repo: PgCardRepository,
    user: AuthenticatedUser,
    set_tag: tuple[str, ...],
) -> None:
    tags = private_user_tags(repo, user)
    if set_tag:
        updates = _parse_tag_settings(set_tag, run_id)
        unknown = sorted(set(updates) - set(tags))
        if unknown:
            click.echo(f"[{run_id}] ERROR: unknown tags for this user: {unknown}", err=True)
            sys.exit(1)
        save_tag_settings(repo, user.id, updates)
        click.echo(f"[{run_id}] Saved {len(updates)} tag setting(s).")
    settings = load_tag_settings(repo, user.id, tags)
    click.echo(json.dumps(
        {tag: ("allow" if allowed else "block") for tag, allowed in settings.items()},
        ensure_ascii=False, indent=2,
    ))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    type=click.Choice(["ingest", "all_tags", "tag_settings", "shared_count"]),
    default="ingest",
    show_default=True,
)
@click.option("--db-dsn", envvar=DB_DSN_ENV, required=True, help="PostgreSQL DSN")
@click.option("--config-path", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML config file")
@click.option("--user-id", required=True, help="Authenticated user id")
@click.option("--user-email", required=True, help="Authenticated user's verified email")
@click.option("--user-name", default=None, help="Display name used when the supporter row is created")
@click.option("--csv-path", default=None, type=click.Path(exists=True, dir_okay=False), help="[ingest] Business-card CSV export")
@click.option("--gcs-bucket", default=None, help="[ingest] GCS bucket for the raw upload")
@click.option("--archive-local-dir", default=None, type=click.Path(), help="[ingest] Archive the raw upload locally instead of GCS")
@click.option("--set-tag", multiple=True, help="[tag_settings] TAG=allow|block (repeatable)")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    user_id: str,
    user_email: str,
    user_name: str | None,
    csv_path: str | None,
    gcs_bucket: str | None,
    archive_local_dir: str | None,
    set_tag: tuple[str, ...],
    dry_run: bool,
    run_id: str | None,
) -> None:
    """Business-card ingestion CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigValidationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    configure_logging(config.log_level)

    user = AuthenticatedUser(id=user_id, email=user_email, name=user_name)
    events = SessionEvents()
    events.subscribe(log_session_event)
    events.emit(SIGNED_IN, user)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        repo = PgCardRepository(conn, dry_run=dry_run)
        if mode == "ingest":
            if not csv_path:
                click.echo(f"[{run_id}] ERROR: --csv-path is required for --mode ingest", err=True)
                sys.exit(1)
            archiver = _select_archiver(config, gcs_bucket, archive_local_dir, dry_run, run_id)
            _run_ingest(
                run_id, started_at, repo, archiver, user, Path(csv_path), config, dry_run,
            )
        elif mode == "all_tags":
            tags = all_user_tags(repo, user)
            click.echo(json.dumps(tags, ensure_ascii=False))
        elif mode == "tag_settings":
            _run_tag_settings(run_id, repo, user, set_tag)
            if dry_run:
                repo.rollback()
        elif mode == "shared_count":
            click.echo(str(repo.count_shared_for_user(user.id)))
    finally:
        conn.close()


if __name__ == "__main__":
    main()
