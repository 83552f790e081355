"""takeoff_etl.explode

Identity & quantity explosion: turns each ParsedRow into the component
records that will be tracked individually.

Identity key forms:
  singular   {drawing}-{size}-{code}            instrument, spool, field_weld
  aggregate  {drawing}-{size}-{code}-AGG        threaded_pipe
  discrete   {drawing}-{size}-{code}-{seq:03d}  every other type

The seq suffix is dense 1..quantity.  It is padded to three digits; a
quantity above 999 produces wider suffixes ("1000") rather than failing.
No uniqueness checks happen here; the commit coordinator owns those.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from takeoff_etl.normalize import normalize_size
from takeoff_etl.row_parser import ParsedRow

SINGULAR_TYPES = frozenset({"instrument", "spool", "field_weld"})
AGGREGATE_TYPES = frozenset({"threaded_pipe"})
AGGREGATE_SUFFIX = "AGG"

_CANONICAL_ATTRIBUTE_KEYS = frozenset({
    "spec", "description", "size", "cmdty_code", "comments", "original_qty",
    "total_linear_feet", "line_numbers",
})


@dataclass
class ComponentRecord:
    drawing: str
    item_type: str
    identity_key: str
    size_token: str
    seq: int | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    area: str = ""
    system: str = ""
    test_package: str = ""
    source_rows: list[int] = field(default_factory=list)

    @property
    def is_aggregate(self) -> bool:
        return self.item_type in AGGREGATE_TYPES

    @property
    def first_row(self) -> int:
        return self.source_rows[0] if self.source_rows else 0


# ---------------------------------------------------------------------------
# identity_key
# ---------------------------------------------------------------------------

def identity_key(
    drawing: str,
    size: str | None,
    cmdty_code: str,
    seq: int | str | None = None,
) -> str:
    """Build the identity key for one record.

    >>> identity_key("P-001", "2", "VBALU-001", 1)
    'P-001-2-VBALU-001-001'
    >>> identity_key("P-001", "", "ME-55402")
    'P-001-NOSIZE-ME-55402'
    """
    base = f"{drawing}-{normalize_size(size)}-{cmdty_code}"
    if seq is None:
        return base
    if isinstance(seq, int):
        return f"{base}-{seq:03d}"
    return f"{base}-{seq}"


def _attributes(row: ParsedRow) -> dict[str, Any]:
    attrs: dict[str, Any] = {
        k: v for k, v in row.unmapped_fields.items()
        if k not in _CANONICAL_ATTRIBUTE_KEYS
    }
    attrs.update({
        "spec": row.spec,
        "description": row.description,
        "size": row.size,
        "cmdty_code": row.cmdty_code,
        "comments": row.comments,
        "original_qty": row.quantity,
    })
    return attrs


def _record(row: ParsedRow, key: str, seq: int | None, attrs: dict[str, Any]) -> ComponentRecord:
    return ComponentRecord(
        drawing=row.drawing,
        item_type=row.item_type,
        identity_key=key,
        size_token=normalize_size(row.size),
        seq=seq,
        attributes=attrs,
        area=row.area,
        system=row.system,
        test_package=row.test_package,
        source_rows=[row.row_number],
    )


# ---------------------------------------------------------------------------
# explode_row / explode_rows
# ---------------------------------------------------------------------------

def explode_row(row: ParsedRow) -> list[ComponentRecord]:
    """Expand one parsed row into its component records."""
    if row.item_type in SINGULAR_TYPES:
        key = identity_key(row.drawing, row.size, row.cmdty_code)
        return [_record(row, key, None, _attributes(row))]

    if row.item_type in AGGREGATE_TYPES:
        key = identity_key(row.drawing, row.size, row.cmdty_code, AGGREGATE_SUFFIX)
        attrs = _attributes(row)
        attrs["total_linear_feet"] = row.quantity
        attrs["line_numbers"] = [str(row.row_number)]
        return [_record(row, key, None, attrs)]

    return [
        _record(
            row,
            identity_key(row.drawing, row.size, row.cmdty_code, seq),
            seq,
            _attributes(row),
        )
        for seq in range(1, row.quantity + 1)
    ]


def count_records(rows: Iterable[ParsedRow]) -> int:
    """Upper bound on the records explode_rows() would build, without building them."""
    return sum(
        1 if row.item_type in SINGULAR_TYPES or row.item_type in AGGREGATE_TYPES
        else row.quantity
        for row in rows
    )


def explode_rows(rows: Iterable[ParsedRow]) -> list[ComponentRecord]:
    """Explode every row; aggregate records sharing a key are summed."""
    records: list[ComponentRecord] = []
    aggregates: dict[tuple[str, str], ComponentRecord] = {}
    for row in rows:
        for rec in explode_row(row):
            if not rec.is_aggregate:
                records.append(rec)
                continue
            agg_key = (rec.drawing, rec.identity_key)
            existing = aggregates.get(agg_key)
            if existing is None:
                aggregates[agg_key] = rec
                records.append(rec)
                continue
            merge_aggregate(existing.attributes, rec.attributes)
            existing.source_rows.extend(rec.source_rows)
    return records


def merge_aggregate(target: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Fold incoming aggregate attributes into target (in place)."""
    target["total_linear_feet"] = (
        int(target.get("total_linear_feet") or target.get("original_qty") or 0)
        + int(incoming.get("total_linear_feet") or 0)
    )
    target["line_numbers"] = (
        list(target.get("line_numbers") or [])
        + list(incoming.get("line_numbers") or [])
    )
    return target
