"""takeoff_etl.storage

Storage seam for the takeoff import.

The commit coordinator and metadata discovery talk to an ImportStorage;
PostgresStorage implements it over a psycopg connection.  Every method of
PostgresStorage runs inside a conn.transaction() block, so a call made
outside ImportStorage.transaction() is its own unit and a call made inside
it joins the enclosing transaction.

All ids cross this seam as strings.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol, Sequence

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from takeoff_etl.metadata import ReferenceType

log = logging.getLogger(__name__)

# (drawing_id, identity_key) -> (component_id, attributes)
AggregateMap = dict[tuple[str, str], tuple[str, dict[str, Any]]]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ImportStorage(Protocol):
    def find_references(
        self, kind: ReferenceType, project_id: str, names: Sequence[str]
    ) -> dict[str, str]:
        """Return name -> id for the names that already exist."""
        ...

    def transaction(self, dry_run: bool = False) -> Any:
        """Context manager wrapping one all-or-nothing unit of work."""
        ...

    def upsert_references(
        self, kind: ReferenceType, project_id: str, names: Sequence[str]
    ) -> tuple[dict[str, str], int]:
        """Insert missing names; return (name -> id for all names, created)."""
        ...

    def upsert_drawings(
        self, project_id: str, drawings: dict[str, str]
    ) -> tuple[dict[str, str], int]:
        """drawings maps normalized -> raw.  Return (normalized -> id, created)."""
        ...

    def find_aggregates(
        self, project_id: str, identity_keys: Sequence[str]
    ) -> AggregateMap:
        ...

    def update_aggregate(self, component_id: str, attributes: dict[str, Any]) -> None:
        ...

    def insert_components(
        self, project_id: str, components: Sequence[dict[str, Any]]
    ) -> int:
        """Insert one batch of component rows; return the number inserted."""
        ...


class ProjectAuthorizer(Protocol):
    def can_write(self, project_id: str, user_id: str | None) -> bool:
        ...


class AllowAllAuthorizer:
    """Authorizer for trusted callers that already checked access."""

    def can_write(self, project_id: str, user_id: str | None) -> bool:
        return True


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresStorage:
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    @contextmanager
    def transaction(self, dry_run: bool = False) -> Iterator[PostgresStorage]:
        with self.conn.transaction():
            yield self
            if dry_run:
                log.info("Dry run: rolling back import transaction")
                raise psycopg.Rollback()

    def find_references(
        self, kind: ReferenceType, project_id: str, names: Sequence[str]
    ) -> dict[str, str]:
        if not names:
            return {}
        query = sql.SQL(
            "SELECT name, id FROM {} WHERE project_id = %s AND name = ANY(%s)"
        ).format(sql.Identifier(kind.table))
        with self.conn.transaction():
            rows = self.conn.execute(query, (project_id, list(names))).fetchall()
        return {name: str(ref_id) for name, ref_id in rows}

    def upsert_references(
        self, kind: ReferenceType, project_id: str, names: Sequence[str]
    ) -> tuple[dict[str, str], int]:
        if not names:
            return {}, 0
        query = sql.SQL(
            """
            INSERT INTO {} (project_id, name)
            SELECT %s::uuid, n FROM unnest(%s::text[]) AS t(n)
            ON CONFLICT (project_id, name) DO NOTHING
            RETURNING name
            """
        ).format(sql.Identifier(kind.table))
        with self.conn.transaction():
            created = self.conn.execute(query, (project_id, list(names))).fetchall()
        return self.find_references(kind, project_id, names), len(created)

    def upsert_drawings(
        self, project_id: str, drawings: dict[str, str]
    ) -> tuple[dict[str, str], int]:
        if not drawings:
            return {}, 0
        norms = list(drawings)
        raws = [drawings[n] or n for n in norms]
        with self.conn.transaction():
            created = self.conn.execute(
                """
                INSERT INTO drawings (project_id, drawing_no_raw, drawing_no_norm)
                SELECT %s::uuid, r, n FROM unnest(%s::text[], %s::text[]) AS t(r, n)
                ON CONFLICT (project_id, drawing_no_norm) WHERE NOT is_retired
                DO NOTHING
                RETURNING id
                """,
                (project_id, raws, norms),
            ).fetchall()
            rows = self.conn.execute(
                """
                SELECT drawing_no_norm, id FROM drawings
                WHERE project_id = %s
                  AND drawing_no_norm = ANY(%s)
                  AND NOT is_retired
                """,
                (project_id, norms),
            ).fetchall()
        return {norm: str(d_id) for norm, d_id in rows}, len(created)

    def find_aggregates(
        self, project_id: str, identity_keys: Sequence[str]
    ) -> AggregateMap:
        if not identity_keys:
            return {}
        with self.conn.transaction():
            rows = self.conn.execute(
                """
                SELECT id, drawing_id, identity_key, attributes FROM components
                WHERE project_id = %s
                  AND identity_key = ANY(%s)
                  AND NOT is_retired
                """,
                (project_id, list(identity_keys)),
            ).fetchall()
        return {
            (str(drawing_id), key): (str(c_id), dict(attrs or {}))
            for c_id, drawing_id, key, attrs in rows
        }

    def update_aggregate(self, component_id: str, attributes: dict[str, Any]) -> None:
        with self.conn.transaction():
            self.conn.execute(
                """
                UPDATE components
                SET attributes = %s, last_updated_at = now()
                WHERE id = %s
                """,
                (Jsonb(attributes), component_id),
            )

    def insert_components(
        self, project_id: str, components: Sequence[dict[str, Any]]
    ) -> int:
        if not components:
            return 0
        params = [
            (
                project_id,
                c["drawing_id"],
                c["component_type"],
                c["identity_key"],
                c.get("area_id"),
                c.get("system_id"),
                c.get("test_package_id"),
                Jsonb(c.get("attributes") or {}),
            )
            for c in components
        ]
        with self.conn.transaction():
            with self.conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO components
                      (project_id, drawing_id, component_type, identity_key,
                       area_id, system_id, test_package_id, attributes)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    params,
                )
        return len(params)


class PostgresAuthorizer:
    """Allows writes when the user belongs to the project's organization."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def can_write(self, project_id: str, user_id: str | None) -> bool:
        if not user_id:
            return False
        try:
            with self.conn.transaction():
                row = self.conn.execute(
                    """
                    SELECT 1
                    FROM users u
                    JOIN projects p ON p.organization_id = u.organization_id
                    WHERE u.id = %s AND p.id = %s
                    """,
                    (user_id, project_id),
                ).fetchone()
        except psycopg.DataError as exc:
            log.warning("Authorization lookup rejected ids: %s", exc)
            return False
        return row is not None
