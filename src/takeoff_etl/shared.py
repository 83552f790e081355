"""takeoff_etl.shared

Shared pieces used by every stage of the takeoff import: the error
taxonomy, ErrorDetail, RejectWriter and run-report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Error detail
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorDetail:
    """One itemized problem.  row == 0 means not attributable to a row."""

    row: int
    message: str
    column: str | None = None
    category: str | None = None
    drawing: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"row": self.row, "message": self.message}
        if self.column is not None:
            out["column"] = self.column
        if self.category is not None:
            out["category"] = self.category
        if self.drawing is not None:
            out["drawing"] = self.drawing
        return out


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TakeoffImportError(Exception):
    """Base class for every import failure that is reported to the caller."""

    category = "import_error"

    def __init__(self, message: str, details: list[ErrorDetail] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def error_details(self) -> list[ErrorDetail]:
        if self.details:
            return self.details
        return [ErrorDetail(row=0, message=self.message, category=self.category)]


class MappingError(TakeoffImportError):
    """Raised when required columns could not be mapped."""

    category = "missing_required_column"


class RowValidationError(TakeoffImportError):
    """Raised when rows fail required-field or enumeration checks."""

    category = "row_validation"


class DuplicateIdentityError(TakeoffImportError):
    """Raised when two records share an identity key on the same drawing."""

    category = "duplicate_identity_key"


class PayloadTooLargeError(TakeoffImportError):
    """Raised when a file, row count or serialized payload exceeds its ceiling."""

    category = "payload_too_large"


class TransactionError(TakeoffImportError):
    """Raised when the commit transaction fails and is rolled back."""

    category = "transaction_failed"


class AuthorizationError(TakeoffImportError):
    """Raised when the caller may not write to the target project."""

    category = "unauthorized"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

@dataclass
class RunReport:
    run_id: str
    started_at: str
    dry_run: bool
    source_paths: dict[str, str]
    project_id: str
    state: str
    result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "dry_run": self.dry_run,
            "project_id": self.project_id,
            "state": self.state,
            **self.source_paths,
            "result": self.result,
        }


def write_run_report(report: RunReport, reports_dir: Path = Path("./artifacts/reports")) -> Path:
    report_path = reports_dir / f"{report.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report.to_dict(), indent=2, default=str))
    return report_path
