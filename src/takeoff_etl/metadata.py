"""takeoff_etl.metadata

Metadata discovery & reconciliation for the three project-scoped reference
types (areas, systems, test packages).

Discovery only reads.  Names that do not exist yet become "will create"
intents; the commit coordinator creates them inside the import transaction
with insert-if-absent semantics, so concurrent imports naming the same new
area end up sharing one record.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from takeoff_etl.row_parser import ParsedRow

if TYPE_CHECKING:
    from takeoff_etl.storage import ImportStorage

log = logging.getLogger(__name__)


class ReferenceType(enum.Enum):
    AREA = ("area", "areas")
    SYSTEM = ("system", "systems")
    TEST_PACKAGE = ("test_package", "test_packages")

    def __init__(self, key: str, table: str) -> None:
        self.key = key
        self.table = table

    def name_of(self, row: ParsedRow) -> str:
        return getattr(row, self.key)


@dataclass(frozen=True)
class MetadataReference:
    kind: ReferenceType
    name: str
    exists: bool
    record_id: str | None = None


@dataclass
class MetadataDiscovery:
    references: dict[ReferenceType, list[MetadataReference]] = field(
        default_factory=lambda: {k: [] for k in ReferenceType}
    )
    lookup: dict[ReferenceType, dict[str, str]] = field(
        default_factory=lambda: {k: {} for k in ReferenceType}
    )

    def names(self, kind: ReferenceType) -> list[str]:
        return [r.name for r in self.references[kind]]

    def to_create(self, kind: ReferenceType) -> list[str]:
        return [r.name for r in self.references[kind] if not r.exists]

    @property
    def existing_count(self) -> int:
        return sum(1 for refs in self.references.values() for r in refs if r.exists)

    @property
    def will_create_count(self) -> int:
        return sum(1 for refs in self.references.values() for r in refs if not r.exists)

    @property
    def total_count(self) -> int:
        return sum(len(refs) for refs in self.references.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            kind.key: {
                "existing": [r.name for r in self.references[kind] if r.exists],
                "will_create": self.to_create(kind),
            }
            for kind in ReferenceType
        } | {
            "existing_count": self.existing_count,
            "will_create_count": self.will_create_count,
            "total_count": self.total_count,
        }


def extract_unique_metadata(rows: Iterable[ParsedRow]) -> dict[ReferenceType, list[str]]:
    """Distinct non-empty reference names per type, in first-appearance order."""
    out: dict[ReferenceType, dict[str, None]] = {k: {} for k in ReferenceType}
    for row in rows:
        for kind in ReferenceType:
            name = kind.name_of(row)
            if name:
                out[kind].setdefault(name, None)
    return {k: list(v) for k, v in out.items()}


def discover_metadata(
    storage: ImportStorage,
    project_id: str,
    rows: Iterable[ParsedRow],
) -> MetadataDiscovery:
    """Check which referenced names already exist in the project.

    Issues one batched lookup per reference type that has at least one
    name and none at all for an empty set.
    """
    discovery = MetadataDiscovery()
    for kind, names in extract_unique_metadata(rows).items():
        if not names:
            continue
        found = storage.find_references(kind, project_id, names)
        discovery.lookup[kind] = dict(found)
        discovery.references[kind] = [
            MetadataReference(
                kind=kind,
                name=name,
                exists=name in found,
                record_id=found.get(name),
            )
            for name in names
        ]
    log.info(
        "Metadata discovery: %d existing, %d to create",
        discovery.existing_count, discovery.will_create_count,
    )
    return discovery
