"""takeoff_etl.import_takeoff_csv

CLI entrypoint for material-takeoff ingestion.

Usage:
    python -m takeoff_etl.import_takeoff_csv \\
        --db-dsn "$DB_DSN" \\
        --csv-path "takeoffs/area-100-piping.csv" \\
        --project-id 6f1c0d9e-2f3a-4c55-9d1e-3b7a8f0c2e41 \\
        --user-id 0b2f7c3a-9e44-4d0f-8a61-5c2e9f1d7b30 \\
        --rejects-path "artifacts/rejects/takeoff_rejects.csv"

Exits 1 when the import fails; nothing is written in that case.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from takeoff_etl.column_mapper import DEFAULT_SCHEMA, ColumnSchemaError, load_column_schema
from takeoff_etl.pipeline import ImportRun, read_delimited, run_import
from takeoff_etl.shared import RejectWriter, RunReport, TakeoffImportError, write_run_report
from takeoff_etl.storage import AllowAllAuthorizer, PostgresAuthorizer, PostgresStorage


def _write_rejects(
    rejects: RejectWriter,
    headers: list[str],
    rows: list[list[str]],
    run: ImportRun,
) -> None:
    """Write every rejected or skipped source row with its reason."""
    if run.outcome is None:
        return
    problems = sorted(run.outcome.errors + run.outcome.warnings, key=lambda e: e.row)
    if not problems:
        return
    data_rows = [r for r in rows if any(c.strip() for c in r)]
    for err in problems:
        cells = data_rows[err.row - 1]
        row = {h or f"column_{i + 1}": (cells[i] if i < len(cells) else "")
               for i, h in enumerate(headers)}
        rejects.write(row, f"{err.category}: {err.message}")


@click.command()
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--csv-path", required=True, type=click.Path(exists=True, dir_okay=False), help="Takeoff file (CSV/TSV)")
@click.option("--project-id", required=True, help="Target project id")
@click.option("--user-id", default=None, help="Importing user; enables the organization write check")
@click.option("--delimiter", default=None, help="Field delimiter (sniffed when omitted)")
@click.option(
    "--allow-partial-mapping",
    is_flag=True,
    default=False,
    help="Continue when required columns are missing (their rows will be rejected)",
)
@click.option(
    "--max-reject-rate",
    default=1.0,
    type=float,
    show_default=True,
    help="Abort before commit when rejected rows / total rows exceeds this",
)
@click.option("--dry-run", is_flag=True, default=False, help="Run every step, then roll back")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/takeoff_rejects.csv",
    show_default=True,
    type=click.Path(),
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--columns-file", default=None, type=click.Path(exists=True, dir_okay=False), help="Alternate column schema YAML")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    db_dsn: str,
    csv_path: str,
    project_id: str,
    user_id: str | None,
    delimiter: str | None,
    allow_partial_mapping: bool,
    max_reject_rate: float,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    columns_file: str | None,
    log_level: str,
) -> None:
    """Import one material-takeoff file into a project."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    source_paths = {"csv_path": csv_path}

    click.echo(f"[{run_id}] Starting takeoff import (dry_run={dry_run})")

    try:
        schema = load_column_schema(Path(columns_file)) if columns_file else DEFAULT_SCHEMA
    except ColumnSchemaError as exc:
        click.echo(f"[{run_id}] ERROR: invalid column schema: {exc}", err=True)
        sys.exit(1)
    if columns_file:
        source_paths["columns_file"] = columns_file
        click.echo(f"[{run_id}] Column schema {schema.version} sha256={schema.yaml_hash[:12]}")

    try:
        headers, rows = read_delimited(Path(csv_path), delimiter)
    except TakeoffImportError as exc:
        click.echo(f"[{run_id}] ERROR: {exc.message}", err=True)
        report = RunReport(
            run_id=run_id, started_at=started_at, dry_run=dry_run,
            source_paths=source_paths, project_id=project_id,
            state="rolled_back",
            result={"success": False, "error": exc.message,
                    "errors": [e.to_dict() for e in exc.error_details()]},
        )
        report_path = write_run_report(report)
        click.echo(f"[{run_id}] Run report: {report_path}")
        sys.exit(1)
    except UnicodeDecodeError as exc:
        click.echo(f"[{run_id}] ERROR: file is not UTF-8 text: {exc}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Read {len(rows)} data rows, {len(headers)} columns")

    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] ERROR: cannot connect to database: {exc}", err=True)
        sys.exit(1)

    try:
        storage = PostgresStorage(conn)
        authorizer = PostgresAuthorizer(conn) if user_id else AllowAllAuthorizer()
        run = run_import(
            storage,
            project_id,
            headers,
            rows,
            user_id=user_id,
            authorizer=authorizer,
            allow_partial_mapping=allow_partial_mapping,
            max_reject_rate=max_reject_rate,
            dry_run=dry_run,
            schema=schema,
        )
    finally:
        conn.close()

    if run.mapping is not None:
        for m in run.mapping.mappings:
            click.echo(
                f"[{run_id}] Column {m.source_name!r} -> {m.target_name} "
                f"({m.confidence.value}, {m.confidence.percent}%)"
            )
        for u in run.mapping.unmapped:
            click.echo(f"[{run_id}] Column {u.source_name!r} unmapped (kept as attribute)")

    rejects = RejectWriter(Path(rejects_path))
    try:
        _write_rejects(rejects, headers, rows, run)
    finally:
        rejects.close()
    if rejects.rows_written:
        click.echo(f"[{run_id}] {rejects.rows_written} rejected/skipped rows -> {rejects_path}")
        source_paths["rejects_path"] = rejects_path

    result = run.result
    report = RunReport(
        run_id=run_id,
        started_at=started_at,
        dry_run=dry_run,
        source_paths=source_paths,
        project_id=project_id,
        state=run.state.value,
        result=run.to_dict(),
    )
    report_path = write_run_report(report)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result is None or not result.success:
        click.echo(f"[{run_id}] Import failed: {result.error if result else 'unknown'}", err=True)
        for err in (result.errors if result else [])[:20]:
            where = f"row {err.row}" if err.row else "file"
            click.echo(f"[{run_id}]   {where}: {err.message}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] {run.state.value}: "
        f"{result.components_created} components created, "
        f"{result.components_updated} updated, "
        f"{result.drawings_created} drawings created, "
        f"{result.drawings_updated} drawings reused, "
        f"metadata created {result.metadata_created}"
    )


if __name__ == "__main__":
    main()
