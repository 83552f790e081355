"""takeoff_etl.pipeline

Drives one import attempt through its states:

    RECEIVED -> MAPPED -> PARSED -> EXPLODED_RECONCILED -> COMMITTING
             -> COMMITTED | ROLLED_BACK

Rows that fail validation are skipped and reported on the result; the
import itself fails only on batch-level problems (missing columns, too
many rejects, no importable rows, duplicates, size, authorization or a
failed transaction).  Every failure ends in ROLLED_BACK with nothing
written.
"""

from __future__ import annotations

import csv
import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from takeoff_etl.column_mapper import DEFAULT_SCHEMA, ColumnSchema, MappingResult, map_columns
from takeoff_etl.commit import (
    ImportPayload,
    ImportResult,
    ImportState,
    check_component_count,
    check_payload_size,
    commit_import,
)
from takeoff_etl.explode import ComponentRecord, explode_rows
from takeoff_etl.metadata import MetadataDiscovery, discover_metadata
from takeoff_etl.row_parser import ParseOutcome, parse_rows
from takeoff_etl.shared import (
    ErrorDetail,
    MappingError,
    PayloadTooLargeError,
    RowValidationError,
    TakeoffImportError,
    TransactionError,
)
from takeoff_etl.storage import ImportStorage, ProjectAuthorizer

log = logging.getLogger(__name__)

MAX_FILE_BYTES = 5 * 1024 * 1024
MAX_ROWS = 10_000
SNIFF_DELIMITERS = ",;\t|"


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def sniff_delimiter(text: str) -> str:
    """Best guess among , ; TAB | from the first lines; ',' when unsure."""
    sample = "\n".join(text.splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=SNIFF_DELIMITERS).delimiter
    except csv.Error:
        return ","


def read_delimited(
    path: Path,
    delimiter: str | None = None,
) -> tuple[list[str], list[list[str]]]:
    """Read a delimited text file into (headers, data rows).

    Raises:
        PayloadTooLargeError: File over MAX_FILE_BYTES or rows over MAX_ROWS.
        MappingError: File has no header line.
        RowValidationError: File is not readable as delimited text.
    """
    size = path.stat().st_size
    if size > MAX_FILE_BYTES:
        raise PayloadTooLargeError(
            f"File is {size / 1024 / 1024:.2f} MB; the limit is "
            f"{MAX_FILE_BYTES // 1024 // 1024} MB"
        )
    text = path.read_text(encoding="utf-8-sig")
    delim = delimiter or sniff_delimiter(text)
    if csv.field_size_limit() < MAX_FILE_BYTES:
        csv.field_size_limit(MAX_FILE_BYTES)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delim)
    try:
        all_rows = list(reader)
    except csv.Error as exc:
        raise RowValidationError(
            f"Cannot read {path.name}: line {reader.line_num}: {exc}",
            [ErrorDetail(
                row=max(reader.line_num - 1, 0),
                message=f"Malformed delimited text on line {reader.line_num}: {exc}",
                category=RowValidationError.category,
            )],
        ) from exc
    if not all_rows or not any(h.strip() for h in all_rows[0]):
        raise MappingError("File has no header row")
    headers, rows = all_rows[0], all_rows[1:]
    check_row_count(rows)
    return headers, rows


def check_row_count(rows: Sequence[Sequence[str]], limit: int | None = None) -> int:
    if limit is None:
        limit = MAX_ROWS
    count = sum(1 for r in rows if any(c.strip() for c in r))
    if count > limit:
        raise PayloadTooLargeError(
            f"File has {count} data rows; the limit is {limit}. "
            "Split the file and import it in parts."
        )
    return count


# ---------------------------------------------------------------------------
# ImportRun
# ---------------------------------------------------------------------------

@dataclass
class ImportRun:
    project_id: str
    state: ImportState = ImportState.RECEIVED
    mapping: MappingResult | None = None
    outcome: ParseOutcome | None = None
    records: list[ComponentRecord] = field(default_factory=list)
    discovery: MetadataDiscovery | None = None
    result: ImportResult | None = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success

    def advance(self, state: ImportState) -> None:
        log.info("Import %s: %s -> %s", self.project_id, self.state.value, state.value)
        self.state = state

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "mapping": self.mapping.to_dict() if self.mapping else None,
            "rows_total": self.outcome.total_rows if self.outcome else 0,
            "rows_valid": len(self.outcome.rows) if self.outcome else 0,
            "rows_rejected": self.outcome.rejected_rows if self.outcome else 0,
            "rows_skipped": len(self.outcome.warnings) if self.outcome else 0,
            "records_exploded": len(self.records),
            "metadata": self.discovery.to_dict() if self.discovery else None,
            "result": self.result.to_dict() if self.result else None,
        }


# ---------------------------------------------------------------------------
# run_import
# ---------------------------------------------------------------------------

def run_import(
    storage: ImportStorage,
    project_id: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    user_id: str | None = None,
    authorizer: ProjectAuthorizer | None = None,
    allow_partial_mapping: bool = False,
    max_reject_rate: float = 1.0,
    dry_run: bool = False,
    schema: ColumnSchema = DEFAULT_SCHEMA,
) -> ImportRun:
    """Run one import attempt end to end; never raises for pipeline errors."""
    run = ImportRun(project_id=project_id)
    started = time.monotonic()
    row_errors: list[ErrorDetail] = []
    warnings: list[ErrorDetail] = []

    def fail(exc: TakeoffImportError) -> ImportRun:
        log.warning("Import %s failed (%s): %s", project_id, exc.category, exc.message)
        result = ImportResult.failure(exc, int((time.monotonic() - started) * 1000), dry_run)
        result.warnings = warnings
        run.result = result
        run.advance(ImportState.ROLLED_BACK)
        return run

    try:
        check_row_count(rows)
    except PayloadTooLargeError as exc:
        return fail(exc)

    mapping = map_columns(headers, schema)
    run.mapping = mapping
    run.advance(ImportState.MAPPED)
    if mapping.missing_required and not allow_partial_mapping:
        return fail(MappingError(
            f"Missing required columns: {', '.join(mapping.missing_required)}",
            [
                ErrorDetail(
                    row=0, column=name,
                    message=f"Required column {name} not found",
                    category=MappingError.category,
                )
                for name in mapping.missing_required
            ],
        ))

    outcome = parse_rows(rows, mapping, headers)
    run.outcome = outcome
    run.advance(ImportState.PARSED)
    row_errors = [e.to_detail() for e in outcome.errors]
    warnings = [w.to_detail() for w in outcome.warnings]

    if outcome.total_rows and outcome.rejected_rows / outcome.total_rows > max_reject_rate:
        return fail(RowValidationError(
            f"{outcome.rejected_rows} of {outcome.total_rows} rows rejected; "
            f"reject rate exceeds {max_reject_rate:.0%}",
            row_errors,
        ))
    if not outcome.rows:
        return fail(RowValidationError("No importable rows", row_errors))

    payload = ImportPayload(
        project_id=project_id,
        rows=outcome.rows,
        user_id=user_id,
        column_mappings=mapping.mappings,
    )
    try:
        check_payload_size(payload)
        check_component_count(outcome.rows)
    except PayloadTooLargeError as exc:
        return fail(exc)

    run.records = explode_rows(outcome.rows)
    try:
        run.discovery = discover_metadata(storage, project_id, outcome.rows)
    except Exception as exc:
        log.exception("Metadata lookup failed")
        return fail(TransactionError(f"Metadata lookup failed: {exc}"))
    payload.metadata = run.discovery
    run.advance(ImportState.EXPLODED_RECONCILED)

    run.advance(ImportState.COMMITTING)
    result = commit_import(
        storage, payload, records=run.records, authorizer=authorizer, dry_run=dry_run
    )
    result.warnings = warnings
    if result.success:
        result.errors = row_errors
    result.duration_ms = int((time.monotonic() - started) * 1000)
    run.result = result
    run.advance(result.state)
    return run
