"""Integration test fixtures.

Applies the migrations against an ephemeral PostgreSQL database provided
by pytest-postgresql and seeds one organization, user and project.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (psycopg connection, dsn) with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def seeded(db_conn):
    """Seed an organization with one user and one project.

    Returns a dict with conn, dsn, org_id, user_id, project_id and an
    outsider_id (a user in a different organization).
    """
    conn, dsn = db_conn
    org_id = conn.execute(
        "INSERT INTO organizations (name) VALUES ('Acme Mechanical') RETURNING id"
    ).fetchone()[0]
    other_org = conn.execute(
        "INSERT INTO organizations (name) VALUES ('Other Co') RETURNING id"
    ).fetchone()[0]
    user_id = conn.execute(
        "INSERT INTO users (organization_id, email) VALUES (%s, 'pm@acme.test') RETURNING id",
        (org_id,),
    ).fetchone()[0]
    outsider_id = conn.execute(
        "INSERT INTO users (organization_id, email) VALUES (%s, 'x@other.test') RETURNING id",
        (other_org,),
    ).fetchone()[0]
    project_id = conn.execute(
        "INSERT INTO projects (organization_id, name) VALUES (%s, 'Unit 100') RETURNING id",
        (org_id,),
    ).fetchone()[0]
    conn.commit()
    return {
        "conn": conn,
        "dsn": dsn,
        "org_id": str(org_id),
        "user_id": str(user_id),
        "outsider_id": str(outsider_id),
        "project_id": str(project_id),
    }
