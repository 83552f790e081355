"""takeoff_etl.commit

Transactional commit coordinator.

commit_import() checks every precondition before touching storage, then
writes references, drawings and components inside one transaction:

  1. payload size            -> PayloadTooLargeError
  2. payload structure       -> RowValidationError
  3. authorization           -> AuthorizationError
  4. exploded record count   -> PayloadTooLargeError
  5. duplicate identity keys -> DuplicateIdentityError
  6. transaction: references -> drawings -> aggregates -> component batches
     (any exception rolls everything back -> TransactionError)

Pipeline failures are returned as ImportResult(success=False); they are
never raised to the caller.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Sequence

from takeoff_etl.column_mapper import ColumnMapping
from takeoff_etl.explode import ComponentRecord, count_records, explode_rows, merge_aggregate
from takeoff_etl.metadata import MetadataDiscovery, ReferenceType, extract_unique_metadata
from takeoff_etl.row_parser import (
    EMPTY_DRAWING,
    INVALID_QUANTITY,
    MISSING_REQUIRED_FIELD,
    SUPPORTED_TYPES,
    UNSUPPORTED_TYPE,
    ParsedRow,
)
from takeoff_etl.shared import (
    AuthorizationError,
    DuplicateIdentityError,
    ErrorDetail,
    PayloadTooLargeError,
    RowValidationError,
    TakeoffImportError,
    TransactionError,
)
from takeoff_etl.storage import AllowAllAuthorizer, ImportStorage, ProjectAuthorizer

log = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = int(5.5 * 1024 * 1024)
BATCH_SIZE = 1000
MAX_COMPONENTS = 100_000


class ImportState(enum.Enum):
    RECEIVED = "received"
    MAPPED = "mapped"
    PARSED = "parsed"
    EXPLODED_RECONCILED = "exploded_reconciled"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Payload / result
# ---------------------------------------------------------------------------

@dataclass
class ImportPayload:
    project_id: str
    rows: list[ParsedRow]
    user_id: str | None = None
    metadata: MetadataDiscovery | None = None
    column_mappings: list[ColumnMapping] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "user_id": self.user_id,
            "rows": [r.to_dict() for r in self.rows],
            "column_mappings": [m.to_dict() for m in self.column_mappings],
        }


@dataclass
class ImportResult:
    success: bool
    state: ImportState
    components_created: int = 0
    components_updated: int = 0
    components_by_type: dict[str, int] = field(default_factory=dict)
    drawings_created: int = 0
    drawings_updated: int = 0
    metadata_created: dict[str, int] = field(
        default_factory=lambda: {k.key: 0 for k in ReferenceType}
    )
    duration_ms: int = 0
    dry_run: bool = False
    error: str | None = None
    errors: list[ErrorDetail] = field(default_factory=list)
    warnings: list[ErrorDetail] = field(default_factory=list)

    @classmethod
    def failure(
        cls,
        exc: TakeoffImportError,
        duration_ms: int = 0,
        dry_run: bool = False,
    ) -> ImportResult:
        return cls(
            success=False,
            state=ImportState.ROLLED_BACK,
            duration_ms=duration_ms,
            dry_run=dry_run,
            error=exc.message,
            errors=exc.error_details(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "components_created": self.components_created,
            "components_updated": self.components_updated,
            "components_by_type": dict(self.components_by_type),
            "drawings_created": self.drawings_created,
            "drawings_updated": self.drawings_updated,
            "metadata_created": dict(self.metadata_created),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

def check_payload_size(payload: ImportPayload, limit: int | None = None) -> int:
    """Return the serialized payload size in bytes, or raise if over limit."""
    if limit is None:
        limit = MAX_PAYLOAD_BYTES
    size = len(json.dumps(payload.to_dict(), default=str).encode("utf-8"))
    if size > limit:
        raise PayloadTooLargeError(
            f"Payload is {size / 1024 / 1024:.2f} MB; the limit is "
            f"{limit / 1024 / 1024:.1f} MB. Split the file and import it in parts."
        )
    return size


def check_component_count(rows: Sequence[ParsedRow], limit: int | None = None) -> int:
    """Return how many records the rows explode into, or raise if over limit."""
    if limit is None:
        limit = MAX_COMPONENTS
    count = count_records(rows)
    if count > limit:
        raise PayloadTooLargeError(
            f"Import would create {count} components; the limit is {limit}. "
            "Check QTY values or split the file."
        )
    return count


def validate_payload(payload: ImportPayload) -> None:
    """Re-check the payload structure; raise RowValidationError listing every bad row."""
    if not payload.project_id:
        raise RowValidationError("Project id is required")
    if not payload.rows:
        raise RowValidationError("Payload has no rows")

    problems: list[ErrorDetail] = []
    for row in payload.rows:
        if not row.drawing:
            problems.append(ErrorDetail(
                row=row.row_number, column="DRAWING",
                message="Drawing number is required", category=EMPTY_DRAWING,
            ))
        if row.item_type not in SUPPORTED_TYPES:
            problems.append(ErrorDetail(
                row=row.row_number, column="TYPE",
                message=f"Unsupported component type {row.item_type!r}",
                category=UNSUPPORTED_TYPE, drawing=row.drawing or None,
            ))
        qty = row.quantity
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
            problems.append(ErrorDetail(
                row=row.row_number, column="QTY",
                message=f"QTY must be a non-negative integer, got {qty!r}",
                category=INVALID_QUANTITY, drawing=row.drawing or None,
            ))
        if not row.cmdty_code:
            problems.append(ErrorDetail(
                row=row.row_number, column="CMDTY CODE",
                message="CMDTY CODE is required",
                category=MISSING_REQUIRED_FIELD, drawing=row.drawing or None,
            ))
    if problems:
        raise RowValidationError(
            f"{len(problems)} payload validation error(s)", problems
        )


def find_duplicate_identity_keys(records: Sequence[ComponentRecord]) -> list[ErrorDetail]:
    """One ErrorDetail per source row holding an already claimed (drawing, identity_key).

    Only the first collision of each row is reported.
    """
    first_seen: dict[tuple[str, str], int] = {}
    reported_rows: set[int] = set()
    dupes: list[ErrorDetail] = []
    for rec in records:
        key = (rec.drawing, rec.identity_key)
        if key in first_seen:
            if rec.first_row in reported_rows:
                continue
            reported_rows.add(rec.first_row)
            dupes.append(ErrorDetail(
                row=rec.first_row,
                message=(
                    f'Duplicate identity key "{rec.identity_key}" '
                    f"(first seen at row {first_seen[key]})"
                ),
                category=DuplicateIdentityError.category,
                drawing=rec.drawing,
            ))
        else:
            first_seen[key] = rec.first_row
    return dupes


# ---------------------------------------------------------------------------
# commit_import
# ---------------------------------------------------------------------------

def commit_import(
    storage: ImportStorage,
    payload: ImportPayload,
    records: Sequence[ComponentRecord] | None = None,
    authorizer: ProjectAuthorizer | None = None,
    dry_run: bool = False,
) -> ImportResult:
    started = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        check_payload_size(payload)
        validate_payload(payload)
        if not (authorizer or AllowAllAuthorizer()).can_write(
            payload.project_id, payload.user_id
        ):
            raise AuthorizationError(
                f"User {payload.user_id!r} may not import into project "
                f"{payload.project_id!r}"
            )
        check_component_count(payload.rows)
        if records is None:
            records = explode_rows(payload.rows)
        dupes = find_duplicate_identity_keys(records)
        if dupes:
            raise DuplicateIdentityError(
                f"{len(dupes)} duplicate identity key(s) in import", dupes
            )
    except TakeoffImportError as exc:
        log.warning("Import rejected before commit (%s): %s", exc.category, exc.message)
        return ImportResult.failure(exc, elapsed(), dry_run)

    try:
        with storage.transaction(dry_run=dry_run):
            result = _write_import(storage, payload, records)
    except Exception as exc:
        log.exception("Import transaction rolled back")
        return ImportResult.failure(
            TransactionError(f"Import transaction failed: {exc}"), elapsed(), dry_run
        )

    result.dry_run = dry_run
    result.state = ImportState.ROLLED_BACK if dry_run else ImportState.COMMITTED
    result.duration_ms = elapsed()
    log.info(
        "Import %s: %d components created, %d updated, %d drawings created",
        result.state.value, result.components_created,
        result.components_updated, result.drawings_created,
    )
    return result


def _write_import(
    storage: ImportStorage,
    payload: ImportPayload,
    records: Sequence[ComponentRecord],
) -> ImportResult:
    result = ImportResult(success=True, state=ImportState.COMMITTING)
    project_id = payload.project_id

    # Step 1: reference entities (insert-if-absent, then re-select ids)
    names_by_kind = (
        {kind: payload.metadata.names(kind) for kind in ReferenceType}
        if payload.metadata is not None
        else extract_unique_metadata(payload.rows)
    )
    lookup: dict[ReferenceType, dict[str, str]] = {}
    for kind in ReferenceType:
        names = names_by_kind.get(kind) or []
        if not names:
            lookup[kind] = {}
            continue
        lookup[kind], created = storage.upsert_references(kind, project_id, names)
        result.metadata_created[kind.key] = created

    # Step 2: drawings
    drawings: dict[str, str] = {}
    for row in payload.rows:
        drawings.setdefault(row.drawing, row.drawing_raw or row.drawing)
    for rec in records:
        drawings.setdefault(rec.drawing, rec.drawing)
    drawing_ids, drawings_created = storage.upsert_drawings(project_id, drawings)
    result.drawings_created = drawings_created
    result.drawings_updated = len(drawings) - drawings_created

    # Step 3: aggregates already stored are updated in place
    agg_keys = [r.identity_key for r in records if r.is_aggregate]
    existing = storage.find_aggregates(project_id, agg_keys) if agg_keys else {}

    to_insert: list[dict[str, Any]] = []
    by_type: Counter[str] = Counter()
    for rec in records:
        drawing_id = drawing_ids[rec.drawing]
        hit = existing.get((drawing_id, rec.identity_key)) if rec.is_aggregate else None
        if hit is not None:
            component_id, attrs = hit
            storage.update_aggregate(component_id, merge_aggregate(dict(attrs), rec.attributes))
            result.components_updated += 1
            continue
        to_insert.append({
            "drawing_id": drawing_id,
            "component_type": rec.item_type,
            "identity_key": rec.identity_key,
            "area_id": lookup[ReferenceType.AREA].get(rec.area),
            "system_id": lookup[ReferenceType.SYSTEM].get(rec.system),
            "test_package_id": lookup[ReferenceType.TEST_PACKAGE].get(rec.test_package),
            "attributes": rec.attributes,
        })
        by_type[rec.item_type] += 1

    # Step 4: batched component inserts
    for start in range(0, len(to_insert), BATCH_SIZE):
        batch = to_insert[start:start + BATCH_SIZE]
        result.components_created += storage.insert_components(project_id, batch)
        log.debug("Inserted component batch %d (%d rows)", start // BATCH_SIZE + 1, len(batch))

    result.components_by_type = dict(by_type)
    return result
