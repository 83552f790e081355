"""Unit test fixtures: an in-memory ImportStorage."""

from __future__ import annotations

import copy
import itertools
from contextlib import contextmanager
from typing import Any, Sequence

import pytest

from takeoff_etl.metadata import ReferenceType


class FakeStorage:
    """In-memory ImportStorage.

    transaction() snapshots state and restores it on error or dry run.
    Set fail_on_batch = N to make the Nth insert_components call raise.
    """

    def __init__(self) -> None:
        self.references: dict[ReferenceType, dict[tuple[str, str], str]] = {
            k: {} for k in ReferenceType
        }
        self.drawings: dict[tuple[str, str], dict[str, str]] = {}
        self.components: list[dict[str, Any]] = []
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on_batch: int | None = None
        self.batches = 0
        self.transactions = 0
        self._ids = itertools.count(1)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _state(self):
        return copy.deepcopy((self.references, self.drawings, self.components))

    def _restore(self, state) -> None:
        self.references, self.drawings, self.components = state

    # --- seeding helpers -------------------------------------------------

    def seed_reference(self, kind: ReferenceType, project_id: str, name: str) -> str:
        ref_id = self._new_id(kind.key)
        self.references[kind][(project_id, name)] = ref_id
        return ref_id

    def components_for(self, project_id: str) -> list[dict[str, Any]]:
        return [c for c in self.components if c["project_id"] == project_id]

    # --- ImportStorage ---------------------------------------------------

    @contextmanager
    def transaction(self, dry_run: bool = False):
        self.transactions += 1
        state = self._state()
        try:
            yield self
        except Exception:
            self._restore(state)
            raise
        if dry_run:
            self._restore(state)

    def find_references(self, kind, project_id, names: Sequence[str]) -> dict[str, str]:
        self.calls.append(("find_references", kind, tuple(names)))
        table = self.references[kind]
        return {n: table[(project_id, n)] for n in names if (project_id, n) in table}

    def upsert_references(self, kind, project_id, names):
        self.calls.append(("upsert_references", kind, tuple(names)))
        created = 0
        for name in names:
            if (project_id, name) not in self.references[kind]:
                self.references[kind][(project_id, name)] = self._new_id(kind.key)
                created += 1
        return {n: self.references[kind][(project_id, n)] for n in names}, created

    def upsert_drawings(self, project_id, drawings):
        self.calls.append(("upsert_drawings", tuple(drawings)))
        created = 0
        for norm, raw in drawings.items():
            if (project_id, norm) not in self.drawings:
                self.drawings[(project_id, norm)] = {"id": self._new_id("drawing"), "raw": raw}
                created += 1
        return {n: self.drawings[(project_id, n)]["id"] for n in drawings}, created

    def find_aggregates(self, project_id, identity_keys):
        self.calls.append(("find_aggregates", tuple(identity_keys)))
        wanted = set(identity_keys)
        return {
            (c["drawing_id"], c["identity_key"]): (c["id"], copy.deepcopy(c["attributes"]))
            for c in self.components
            if c["project_id"] == project_id and c["identity_key"] in wanted
        }

    def update_aggregate(self, component_id, attributes):
        self.calls.append(("update_aggregate", component_id))
        for c in self.components:
            if c["id"] == component_id:
                c["attributes"] = copy.deepcopy(attributes)
                return
        raise KeyError(component_id)

    def insert_components(self, project_id, components):
        self.batches += 1
        self.calls.append(("insert_components", len(components)))
        if self.fail_on_batch == self.batches:
            raise RuntimeError(f"simulated failure on batch {self.batches}")
        live = {(c["drawing_id"], c["identity_key"]) for c in self.components}
        for comp in components:
            key = (comp["drawing_id"], comp["identity_key"])
            if key in live:
                raise RuntimeError(f"duplicate key value violates unique constraint: {key}")
            live.add(key)
            self.components.append({
                "id": self._new_id("component"),
                "project_id": project_id,
                **copy.deepcopy(comp),
            })
        return len(components)


class DenyAuthorizer:
    def __init__(self) -> None:
        self.calls = 0

    def can_write(self, project_id, user_id):
        self.calls += 1
        return False


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def deny_authorizer() -> DenyAuthorizer:
    return DenyAuthorizer()
