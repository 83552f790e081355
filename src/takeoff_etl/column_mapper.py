"""takeoff_etl.column_mapper

Maps arbitrary spreadsheet headers onto the canonical takeoff columns.

Responsibilities:
  - Load and validate the canonical column schema (config/takeoff_columns.yml)
  - Match source headers to canonical columns in three ordered tiers
  - Report missing required columns and unconsumed source columns

Matching is deterministic: canonical columns are visited in schema order,
each tier scans every still-unconsumed source column (left to right) before
the next tier is tried, and a source column is consumed at most once.

Usage:
    from takeoff_etl.column_mapper import map_columns

    result = map_columns(["DRAWINGS", "Type", "QTY", "Cmdty Code"])
    result.missing_required   # []
    result.mappings[0].confidence   # MatchTier.SYNONYM
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import yaml

from takeoff_etl.normalize import clean_header, fold_header

DEFAULT_SCHEMA_PATH = Path(__file__).parent / "config" / "takeoff_columns.yml"

REQUIRED_YAML_KEYS = frozenset({"version", "columns"})
REQUIRED_COLUMN_KEYS = frozenset({"name", "field"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ColumnSchemaError(ValueError):
    """Raised when the column schema YAML fails validation."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class MatchTier(enum.Enum):
    EXACT = "exact"
    CASE_INSENSITIVE = "case-insensitive"
    SYNONYM = "synonym"

    @property
    def percent(self) -> int:
        return _TIER_PERCENT[self]


_TIER_PERCENT = {
    MatchTier.EXACT: 100,
    MatchTier.CASE_INSENSITIVE: 95,
    MatchTier.SYNONYM: 85,
}


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    field: str
    required: bool = False
    synonyms: tuple[str, ...] = ()


@dataclass(frozen=True)
class ColumnSchema:
    version: str
    columns: tuple[ColumnSpec, ...]
    yaml_hash: str = ""

    @property
    def required(self) -> list[ColumnSpec]:
        return [c for c in self.columns if c.required]


def load_column_schema(yaml_path: Path = DEFAULT_SCHEMA_PATH) -> ColumnSchema:
    """Load, validate, and return a ColumnSchema from a YAML file.

    Raises:
        ColumnSchemaError: If any required key is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    validate_column_schema(data)
    return ColumnSchema(
        version=str(data["version"]),
        columns=tuple(
            ColumnSpec(
                name=str(c["name"]),
                field=str(c["field"]),
                required=bool(c.get("required", False)),
                synonyms=tuple(str(s) for s in (c.get("synonyms") or [])),
            )
            for c in data["columns"]
        ),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_column_schema(data: Any) -> None:
    """Raise ColumnSchemaError if data does not match the required schema.

    Validates:
      - Top level is a mapping with version and columns
      - Every column has a name and a field
      - Column names and fields are unique
      - synonyms, when present, is a list
    """
    if not isinstance(data, dict):
        raise ColumnSchemaError("column schema must be a YAML mapping")
    missing = REQUIRED_YAML_KEYS - set(data)
    if missing:
        raise ColumnSchemaError(f"missing required keys: {sorted(missing)}")
    columns = data["columns"]
    if not isinstance(columns, list) or not columns:
        raise ColumnSchemaError("columns must be a non-empty list")

    seen_names: set[str] = set()
    seen_fields: set[str] = set()
    for idx, col in enumerate(columns):
        if not isinstance(col, dict):
            raise ColumnSchemaError(f"columns[{idx}] must be a mapping")
        col_missing = REQUIRED_COLUMN_KEYS - set(col)
        if col_missing:
            raise ColumnSchemaError(
                f"columns[{idx}] missing required keys: {sorted(col_missing)}"
            )
        name, fld = str(col["name"]), str(col["field"])
        if name in seen_names:
            raise ColumnSchemaError(f"duplicate column name {name!r}")
        if fld in seen_fields:
            raise ColumnSchemaError(f"duplicate column field {fld!r}")
        seen_names.add(name)
        seen_fields.add(fld)
        synonyms = col.get("synonyms")
        if synonyms is not None and not isinstance(synonyms, list):
            raise ColumnSchemaError(f"columns[{idx}].synonyms must be a list")


DEFAULT_SCHEMA = load_column_schema()


# ---------------------------------------------------------------------------
# Mapping result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnMapping:
    source_index: int
    source_name: str
    target_field: str
    target_name: str
    confidence: MatchTier

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_index": self.source_index,
            "source_name": self.source_name,
            "target_field": self.target_field,
            "target_name": self.target_name,
            "confidence": self.confidence.value,
            "confidence_pct": self.confidence.percent,
        }


@dataclass(frozen=True)
class UnmappedColumn:
    source_index: int
    source_name: str


@dataclass
class MappingResult:
    mappings: list[ColumnMapping] = field(default_factory=list)
    missing_required: list[str] = field(default_factory=list)
    unmapped: list[UnmappedColumn] = field(default_factory=list)

    @property
    def has_all_required(self) -> bool:
        return not self.missing_required

    def to_dict(self) -> dict[str, Any]:
        return {
            "mappings": [m.to_dict() for m in self.mappings],
            "missing_required": list(self.missing_required),
            "unmapped": [u.source_name for u in self.unmapped],
        }


# ---------------------------------------------------------------------------
# Tier predicates
# ---------------------------------------------------------------------------

def _exact(source: str, spec: ColumnSpec) -> bool:
    return clean_header(source) == clean_header(spec.name)


def _case_insensitive(source: str, spec: ColumnSpec) -> bool:
    return clean_header(source).casefold() == spec.name.casefold()


def _synonym(source: str, spec: ColumnSpec) -> bool:
    folded = fold_header(source)
    if not folded:
        return False
    candidates = (spec.name,) + spec.synonyms
    return any(folded == fold_header(c) for c in candidates)


_TIERS = (
    (MatchTier.EXACT, _exact),
    (MatchTier.CASE_INSENSITIVE, _case_insensitive),
    (MatchTier.SYNONYM, _synonym),
)


# ---------------------------------------------------------------------------
# map_columns
# ---------------------------------------------------------------------------

def map_columns(
    headers: Sequence[str],
    schema: ColumnSchema = DEFAULT_SCHEMA,
) -> MappingResult:
    """Match source headers to canonical columns.

    Pure function: the same headers and schema always yield an equal
    MappingResult.  Missing required columns are reported, not raised.
    """
    consumed: set[int] = set()
    result = MappingResult()

    for spec in schema.columns:
        match = _match_column(headers, spec, consumed)
        if match is None:
            if spec.required:
                result.missing_required.append(spec.name)
            continue
        idx, tier = match
        consumed.add(idx)
        result.mappings.append(ColumnMapping(
            source_index=idx,
            source_name=headers[idx],
            target_field=spec.field,
            target_name=spec.name,
            confidence=tier,
        ))

    result.unmapped = [
        UnmappedColumn(source_index=i, source_name=h)
        for i, h in enumerate(headers)
        if i not in consumed
    ]
    return result


def _match_column(
    headers: Sequence[str],
    spec: ColumnSpec,
    consumed: set[int],
) -> tuple[int, MatchTier] | None:
    for tier, predicate in _TIERS:
        for idx, header in enumerate(headers):
            if idx in consumed or not clean_header(header):
                continue
            if predicate(header, spec):
                return idx, tier
    return None
