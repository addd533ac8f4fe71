"""ethno_etl.shared

Shared utilities used by every pipeline mode: the fatal-input exception,
RejectWriter for rows that cannot become records, header cleanup, and the
JSON run-report writer.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MissingInputError(Exception):
    """Raised when a required input directory or artifact set is absent."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, str], reason: str, source: str | None = None) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_source", "_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_source"] = source or ""
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {k.strip(): v for k, v in raw.items()}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: SupportsToDict,
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
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
