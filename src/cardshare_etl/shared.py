"""cardshare_etl.shared

Shared utilities used by the ingestion pipeline and the CLI.
Includes the pipeline exceptions, IngestCounters, the step log, and
report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

# Phases surfaced to the caller when ingestion fails.
PHASE_PROFILE = "profile"
PHASE_UPLOAD = "upload"
PHASE_PARSE = "parse"
PHASE_DATABASE = "database"

_PHASE_LABELS = {
    PHASE_PROFILE: "contributor profile setup failed",
    PHASE_UPLOAD: "upload failed",
    PHASE_PARSE: "parse failed",
    PHASE_DATABASE: "database save failed",
}


# ---------------------------------------------------------------------------
# Step log
# ---------------------------------------------------------------------------

@dataclass
class StepRecord:
    """One completed (or failed) step of an ingestion run."""

    name: str
    status: str
    detail: str | None = None


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UploadValidationError(ValueError):
    """Raised for a bad extension, an oversized file, or an empty upload.

    Raised before anything is persisted; the user can fix the file and retry.
    """


class IngestError(Exception):
    """Fatal failure of one ingestion phase.

    Steps already committed are not rolled back; ``steps`` lists what
    completed before the failure so orphaned uploads can be reconciled.
    """

    def __init__(
        self,
        phase: str,
        message: str,
        steps: list[StepRecord] | None = None,
    ) -> None:
        self.phase = phase
        self.detail = message
        self.steps = list(steps or [])
        super().__init__(f"{_PHASE_LABELS.get(phase, phase)}: {message}")


# ---------------------------------------------------------------------------
# IngestCounters
# ---------------------------------------------------------------------------

@dataclass
class IngestCounters:
    rows_read: int = 0
    records_normalized: int = 0
    # Private store
    private_new: int = 0
    private_updated: int = 0
    private_skipped: int = 0
    private_rows_cleared: int = 0
    private_rows_inserted: int = 0
    private_rows_updated: int = 0
    # Shared pool
    shared_new: int = 0
    shared_updated: int = 0
    shared_skipped: int = 0
    shared_rows_inserted: int = 0
    shared_rows_updated: int = 0
    contributions_inserted: int = 0
    contributions_failed: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


def steps_to_dicts(steps: list[StepRecord]) -> list[dict[str, Any]]:
    return [asdict(s) for s in steps]


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

def chunked(items: list[Any], size: int) -> list[list[Any]]:
    """Split items into consecutive batches of at most ``size`` elements."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: IngestCounters,
    extra: dict[str, Any] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(
        json.dumps(report, indent=2, default=str, ensure_ascii=False), encoding="utf-8",
    )
    return report_path
