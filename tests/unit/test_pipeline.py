"""Unit tests for takeoff_etl.pipeline."""

from __future__ import annotations

import pytest

from takeoff_etl import commit as commit_mod
from takeoff_etl import pipeline as pipeline_mod
from takeoff_etl.commit import ImportState
from takeoff_etl.pipeline import check_row_count, read_delimited, run_import, sniff_delimiter
from takeoff_etl.shared import MappingError, PayloadTooLargeError, RowValidationError

PROJECT = "project-1"
HEADERS = ["DRAWING", "TYPE", "QTY", "CMDTY CODE", "SIZE", "AREA"]


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

class TestSniffDelimiter:
    @pytest.mark.parametrize("delim", [",", ";", "\t", "|"])
    def test_detects(self, delim):
        text = delim.join(HEADERS) + "\n" + delim.join(["P-1", "Valve", "1", "V", "2", "A"]) + "\n"
        assert sniff_delimiter(text) == delim

    def test_single_column_defaults_to_comma(self):
        assert sniff_delimiter("DRAWING\nP-1\n") == ","


class TestReadDelimited:
    def test_reads_csv_with_bom(self, tmp_path):
        p = tmp_path / "t.csv"
        p.write_text("\ufeffDRAWING,TYPE,QTY,CMDTY CODE\nP-001,Valve,2,V-1\n", encoding="utf-8")
        headers, rows = read_delimited(p)
        assert headers == ["DRAWING", "TYPE", "QTY", "CMDTY CODE"]
        assert rows == [["P-001", "Valve", "2", "V-1"]]

    def test_quoted_delimiter_kept(self, tmp_path):
        p = tmp_path / "t.csv"
        p.write_text('DRAWING,TYPE,QTY,CMDTY CODE,DESCRIPTION\nP-001,Valve,1,V-1,"GATE, 150#"\n')
        _, rows = read_delimited(p)
        assert rows[0][4] == "GATE, 150#"

    def test_explicit_delimiter(self, tmp_path):
        p = tmp_path / "t.tsv"
        p.write_text("DRAWING\tTYPE\nP-001\tValve\n")
        headers, _ = read_delimited(p, delimiter="\t")
        assert headers == ["DRAWING", "TYPE"]

    def test_empty_file(self, tmp_path):
        p = tmp_path / "empty.csv"
        p.write_text("")
        with pytest.raises(MappingError, match="no header"):
            read_delimited(p)

    def test_file_too_large(self, tmp_path, monkeypatch):
        monkeypatch.setattr(pipeline_mod, "MAX_FILE_BYTES", 10)
        p = tmp_path / "big.csv"
        p.write_text("DRAWING,TYPE,QTY,CMDTY CODE\nP-001,Valve,1,V-1\n")
        with pytest.raises(PayloadTooLargeError):
            read_delimited(p)

    def test_too_many_rows(self, tmp_path, monkeypatch):
        monkeypatch.setattr(pipeline_mod, "MAX_ROWS", 2)
        p = tmp_path / "rows.csv"
        p.write_text("DRAWING,TYPE,QTY,CMDTY CODE\n" + "P-001,Valve,1,V-1\n" * 3)
        with pytest.raises(PayloadTooLargeError, match="3 data rows"):
            read_delimited(p)

    def test_cell_larger_than_csv_default_limit(self, tmp_path):
        description = "X" * 200_000
        p = tmp_path / "wide.csv"
        p.write_text(f"DRAWING,TYPE,QTY,CMDTY CODE,DESCRIPTION\nP-001,Valve,1,V-1,{description}\n")
        _, rows = read_delimited(p)
        assert rows[0][4] == description

    def test_unreadable_text_is_itemized(self, tmp_path, monkeypatch):
        class BrokenReader:
            line_num = 3

            def __iter__(self):
                return self

            def __next__(self):
                raise pipeline_mod.csv.Error("field larger than field limit")

        monkeypatch.setattr(pipeline_mod.csv, "reader", lambda *a, **kw: BrokenReader())
        p = tmp_path / "t.csv"
        p.write_text("DRAWING,TYPE,QTY,CMDTY CODE\nP-001,Valve,1,V-1\n")
        with pytest.raises(RowValidationError, match="line 3") as exc_info:
            read_delimited(p)
        detail = exc_info.value.error_details()[0]
        assert detail.row == 2
        assert detail.category == "row_validation"

    def test_blank_lines_not_counted(self):
        assert check_row_count([["P-1"], ["", " "], []]) == 1


# ---------------------------------------------------------------------------
# run_import
# ---------------------------------------------------------------------------

class TestRunImport:
    def test_end_to_end(self, fake_storage):
        rows = [
            ["P-001", "Valve", "4", "VBALU-001", "2", "A-100"],
            ["P-001", "Instrument", "1", "ME-55402", "2", "A-100"],
        ]
        run = run_import(fake_storage, PROJECT, HEADERS, rows)
        assert run.success
        assert run.state is ImportState.COMMITTED
        keys = sorted(c["identity_key"] for c in fake_storage.components)
        assert keys == [
            "P-001-2-ME-55402",
            "P-001-2-VBALU-001-001",
            "P-001-2-VBALU-001-002",
            "P-001-2-VBALU-001-003",
            "P-001-2-VBALU-001-004",
        ]
        assert run.result.metadata_created["area"] == 1
        assert run.discovery.will_create_count == 1

    def test_missing_required_columns_fail(self, fake_storage):
        run = run_import(fake_storage, PROJECT, ["DRAWING", "QTY"], [["P-001", "1"]])
        assert not run.success
        assert run.state is ImportState.ROLLED_BACK
        assert [e.column for e in run.result.errors] == ["TYPE", "CMDTY CODE"]
        assert run.outcome is None
        assert fake_storage.calls == []

    def test_partial_mapping_allowed(self, fake_storage):
        run = run_import(
            fake_storage, PROJECT, ["DRAWING", "TYPE", "QTY"], [["P-001", "Valve", "1"]],
            allow_partial_mapping=True,
        )
        assert not run.success
        assert run.result.error == "No importable rows"
        assert run.result.errors[0].column == "CMDTY CODE"

    def test_bad_rows_skipped_and_reported(self, fake_storage):
        rows = [
            ["P-001", "Valve", "1", "V-1", "", ""],
            ["P-001", "Gasket", "1", "G-1", "", ""],
            ["P-001", "Valve", "0", "V-2", "", ""],
        ]
        run = run_import(fake_storage, PROJECT, HEADERS, rows)
        assert run.success
        assert run.result.components_created == 1
        assert [(e.row, e.category) for e in run.result.errors] == [(2, "unsupported_type")]
        assert [(w.row, w.category) for w in run.result.warnings] == [(3, "zero_quantity")]

    def test_reject_rate_exceeded(self, fake_storage):
        rows = [
            ["P-001", "Valve", "1", "V-1", "", ""],
            ["", "Valve", "1", "V-2", "", ""],
        ]
        run = run_import(fake_storage, PROJECT, HEADERS, rows, max_reject_rate=0.25)
        assert not run.success
        assert "reject rate" in run.result.error
        assert fake_storage.components == []

    def test_duplicates_fail_whole_import(self, fake_storage):
        rows = [
            ["P-001", "Instrument", "1", "ME-1", "2", ""],
            ["P-001", "Instrument", "1", "ME-1", "2", ""],
        ]
        run = run_import(fake_storage, PROJECT, HEADERS, rows)
        assert not run.success
        assert run.state is ImportState.ROLLED_BACK
        assert run.result.errors[0].row == 2
        assert fake_storage.components == []

    def test_dry_run(self, fake_storage):
        rows = [["P-001", "Valve", "2", "V-1", "", "A-1"]]
        run = run_import(fake_storage, PROJECT, HEADERS, rows, dry_run=True)
        assert run.success
        assert run.result.dry_run
        assert run.result.components_created == 2
        assert run.state is ImportState.ROLLED_BACK
        assert fake_storage.components == []

    def test_metadata_lookup_failure_is_reported(self, fake_storage, monkeypatch):
        def boom(*a, **kw):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(fake_storage, "find_references", boom)
        run = run_import(fake_storage, PROJECT, HEADERS, [["P-001", "Valve", "1", "V-1", "", "A-1"]])
        assert not run.success
        assert run.result.errors[0].category == "transaction_failed"

    def test_too_many_rows(self, fake_storage, monkeypatch):
        monkeypatch.setattr(pipeline_mod, "MAX_ROWS", 1)
        rows = [["P-001", "Valve", "1", "V-1"], ["P-001", "Valve", "1", "V-2"]]
        run = run_import(fake_storage, PROJECT, HEADERS, rows)
        assert not run.success
        assert run.result.errors[0].category == "payload_too_large"
        assert run.mapping is None

    def test_huge_quantity_rejected_as_invalid(self, fake_storage):
        rows = [["P-1", "Valve", "1e9", "V", "", ""]]
        run = run_import(fake_storage, PROJECT, HEADERS, rows)
        assert not run.success
        assert run.result.error == "No importable rows"
        assert run.result.errors[0].category == "invalid_quantity"
        assert run.records == []

    def test_component_ceiling_stops_before_explosion(self, fake_storage, monkeypatch):
        exploded = []
        monkeypatch.setattr(pipeline_mod, "explode_rows", lambda rows: exploded.append(rows) or [])
        monkeypatch.setattr(commit_mod, "MAX_COMPONENTS", 3)
        run = run_import(fake_storage, PROJECT, HEADERS, [["P-1", "Valve", "4", "V", "", ""]])
        assert not run.success
        assert run.result.errors[0].category == "payload_too_large"
        assert exploded == []
        assert fake_storage.calls == []

    def test_payload_size_checked_before_explosion(self, fake_storage, monkeypatch):
        exploded = []
        monkeypatch.setattr(pipeline_mod, "explode_rows", lambda rows: exploded.append(rows) or [])
        monkeypatch.setattr(commit_mod, "MAX_PAYLOAD_BYTES", 10)
        run = run_import(fake_storage, PROJECT, HEADERS, [["P-1", "Valve", "1", "V", "", ""]])
        assert not run.success
        assert run.result.errors[0].category == "payload_too_large"
        assert exploded == []

    def test_to_dict(self, fake_storage):
        run = run_import(fake_storage, PROJECT, HEADERS, [["P-001", "Valve", "1", "V-1", "", ""]])
        out = run.to_dict()
        assert out["state"] == "committed"
        assert out["rows_valid"] == 1
        assert out["records_exploded"] == 1
