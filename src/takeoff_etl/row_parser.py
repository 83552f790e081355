"""takeoff_etl.row_parser

Validates raw takeoff rows against a column mapping and produces
immutable ParsedRow values.

Validation accumulates: every bad row yields one RowError and parsing
moves on to the next row.  Nothing here touches the database.

Row numbers are 1-based data-row indexes (the header line is not
counted), which is what users see in their spreadsheet minus one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from takeoff_etl.column_mapper import ColumnMapping, MappingResult
from takeoff_etl.normalize import (
    normalize_drawing,
    normalize_item_type,
    normalize_space,
    parse_quantity,
    trim,
)
from takeoff_etl.shared import ErrorDetail

log = logging.getLogger(__name__)

SUPPORTED_TYPES: tuple[str, ...] = (
    "spool",
    "field_weld",
    "valve",
    "instrument",
    "support",
    "pipe",
    "fitting",
    "flange",
    "tubing",
    "hose",
    "misc_component",
    "threaded_pipe",
)

OPTIONAL_FIELDS = (
    "size",
    "spec",
    "description",
    "comments",
    "area",
    "system",
    "test_package",
)

# Error categories
EMPTY_DRAWING = "empty_drawing"
MISSING_REQUIRED_FIELD = "missing_required_field"
INVALID_QUANTITY = "invalid_quantity"
UNSUPPORTED_TYPE = "unsupported_type"
ZERO_QUANTITY = "zero_quantity"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedRow:
    row_number: int
    drawing: str
    item_type: str
    quantity: int
    cmdty_code: str
    drawing_raw: str = ""
    size: str = ""
    spec: str = ""
    description: str = ""
    comments: str = ""
    area: str = ""
    system: str = ""
    test_package: str = ""
    unmapped_fields: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "row_number": self.row_number,
            "drawing": self.drawing,
            "item_type": self.item_type,
            "quantity": self.quantity,
            "cmdty_code": self.cmdty_code,
            "size": self.size,
            "spec": self.spec,
            "description": self.description,
            "comments": self.comments,
            "area": self.area,
            "system": self.system,
            "test_package": self.test_package,
            "unmapped_fields": dict(self.unmapped_fields),
        }


@dataclass(frozen=True)
class RowError:
    row: int
    column: str | None
    message: str
    category: str

    def to_detail(self, drawing: str | None = None) -> ErrorDetail:
        return ErrorDetail(
            row=self.row,
            message=self.message,
            column=self.column,
            category=self.category,
            drawing=drawing,
        )


@dataclass
class ParseOutcome:
    rows: list[ParsedRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    warnings: list[RowError] = field(default_factory=list)
    total_rows: int = 0

    @property
    def rejected_rows(self) -> int:
        return len(self.errors)


# ---------------------------------------------------------------------------
# Cell access
# ---------------------------------------------------------------------------

def _cell(cells: Sequence[str], idx: int | None) -> str | None:
    if idx is None or idx >= len(cells):
        return None
    return trim(cells[idx])


def _is_blank(cells: Sequence[str]) -> bool:
    return all(trim(c) is None for c in cells)


# ---------------------------------------------------------------------------
# parse_row
# ---------------------------------------------------------------------------

def parse_row(
    cells: Sequence[str],
    mappings: Sequence[ColumnMapping],
    headers: Sequence[str],
    row_number: int,
) -> ParsedRow | RowError:
    """Validate one raw row.

    Returns a ParsedRow when every required field is usable, otherwise the
    first RowError found (checked in column order: drawing, type, qty,
    commodity code).  A zero quantity is reported as a RowError with
    category zero_quantity; callers treat that as a skip, not a failure.
    """
    by_field = {m.target_field: m for m in mappings}

    def value(field_name: str) -> str | None:
        m = by_field.get(field_name)
        return _cell(cells, m.source_index if m else None)

    def column_name(field_name: str, default: str) -> str:
        m = by_field.get(field_name)
        return m.source_name if m else default

    drawing_raw = value("drawing")
    drawing = normalize_drawing(drawing_raw)
    if drawing is None:
        return RowError(
            row=row_number,
            column=column_name("drawing", "DRAWING"),
            message="Drawing number is required",
            category=EMPTY_DRAWING,
        )

    type_raw = value("item_type")
    if type_raw is None:
        return RowError(
            row=row_number,
            column=column_name("item_type", "TYPE"),
            message="TYPE is required",
            category=MISSING_REQUIRED_FIELD,
        )
    item_type = normalize_item_type(type_raw)
    if item_type not in SUPPORTED_TYPES:
        return RowError(
            row=row_number,
            column=column_name("item_type", "TYPE"),
            message=f"Unsupported component type {type_raw!r}",
            category=UNSUPPORTED_TYPE,
        )

    try:
        quantity = parse_quantity(value("quantity"))
    except ValueError as exc:
        return RowError(
            row=row_number,
            column=column_name("quantity", "QTY"),
            message=str(exc),
            category=INVALID_QUANTITY,
        )
    if quantity == 0:
        return RowError(
            row=row_number,
            column=column_name("quantity", "QTY"),
            message="Quantity is 0; row skipped",
            category=ZERO_QUANTITY,
        )

    cmdty_code = normalize_space(value("cmdty_code"))
    if cmdty_code is None:
        return RowError(
            row=row_number,
            column=column_name("cmdty_code", "CMDTY CODE"),
            message="CMDTY CODE is required",
            category=MISSING_REQUIRED_FIELD,
        )

    optional = {f: normalize_space(value(f)) or "" for f in OPTIONAL_FIELDS}

    mapped_idx = {m.source_index for m in mappings}
    unmapped: dict[str, str] = {}
    for idx, header in enumerate(headers):
        if idx in mapped_idx:
            continue
        cell = _cell(cells, idx)
        if cell is not None and header:
            unmapped[header] = cell

    return ParsedRow(
        row_number=row_number,
        drawing=drawing,
        drawing_raw=drawing_raw or "",
        item_type=item_type,
        quantity=quantity,
        cmdty_code=cmdty_code,
        unmapped_fields=unmapped,
        **optional,
    )


# ---------------------------------------------------------------------------
# parse_rows
# ---------------------------------------------------------------------------

def parse_rows(
    rows: Sequence[Sequence[str]],
    mapping: MappingResult,
    headers: Sequence[str],
) -> ParseOutcome:
    """Parse every data row, accumulating errors and zero-quantity warnings."""
    outcome = ParseOutcome()
    row_number = 0
    for cells in rows:
        if _is_blank(cells):
            continue
        row_number += 1
        outcome.total_rows += 1
        parsed = parse_row(cells, mapping.mappings, headers, row_number)
        if isinstance(parsed, ParsedRow):
            outcome.rows.append(parsed)
        elif parsed.category == ZERO_QUANTITY:
            outcome.warnings.append(parsed)
        else:
            outcome.errors.append(parsed)

    log.info(
        "Parsed %d rows: %d valid, %d rejected, %d skipped",
        outcome.total_rows, len(outcome.rows),
        len(outcome.errors), len(outcome.warnings),
    )
    return outcome
