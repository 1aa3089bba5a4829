"""
Tests for bundle_ingestion.adapters -- CSV and JSON readers and format
selection.  Uses files under tmp_path.
"""

import json

import pytest

from bundle_ingestion.adapters import (
    CsvSourceAdapter,
    JsonSourceAdapter,
    SourceAdapter,
    adapter_for,
    read_rows,
)


class TestCsvAdapter:
    def test_reads_rows_with_normalized_headers(self, tmp_path):
        path = tmp_path / "batch.csv"
        path.write_text("\ufeffBundle_ID, Contract_ID ,Sequence_No\nb-1, C-1 ,1\nb-1,C-2,2\n", encoding="utf-8")

        rows = list(CsvSourceAdapter().read(path, {}))
        assert rows == [
            {"bundle_id": "b-1", "contract_id": "C-1", "sequence_no": "1"},
            {"bundle_id": "b-1", "contract_id": "C-2", "sequence_no": "2"},
        ]

    def test_delimiter_and_skip_rows(self, tmp_path):
        path = tmp_path / "batch.csv"
        path.write_text("exported 2026-02-01\nbundle_id;contract_id;sequence_no\nb-1;C-1;1\n")

        rows = list(CsvSourceAdapter().read(path, {"delimiter": ";", "skip_rows": 1}))
        assert rows == [{"bundle_id": "b-1", "contract_id": "C-1", "sequence_no": "1"}]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        assert list(CsvSourceAdapter().read(path, {})) == []


class TestJsonAdapter:
    def test_array(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps([{"Bundle_ID": "b-1", "contract_id": "C-1", "sequence_no": 1}, "junk"]))

        rows = list(JsonSourceAdapter().read(path, {"format": "array"}))
        assert rows == [{"bundle_id": "b-1", "contract_id": "C-1", "sequence_no": 1}]

    def test_nested_path(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"data": {"contracts": [{"contract_id": "C-1"}]}}))

        rows = list(JsonSourceAdapter().read(path, {"json_path": "data.contracts"}))
        assert rows == [{"contract_id": "C-1"}]

    def test_root_must_be_array(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"contract_id": "C-1"}))
        with pytest.raises(ValueError, match="expected a JSON array"):
            list(JsonSourceAdapter().read(path, {}))

    def test_json_lines(self, tmp_path):
        path = tmp_path / "batch.jsonl"
        path.write_text('{"contract_id": "C-1"}\n\n{"contract_id": "C-2"}\n')

        rows = list(JsonSourceAdapter().read(path, {"format": "jsonl"}))
        assert [r["contract_id"] for r in rows] == ["C-1", "C-2"]


class TestAdapterSelection:
    @pytest.mark.parametrize(
        "name, adapter_type, fmt",
        [
            ("a.csv", CsvSourceAdapter, None),
            ("a.JSON", JsonSourceAdapter, "array"),
            ("a.jsonl", JsonSourceAdapter, "jsonl"),
            ("a.ndjson", JsonSourceAdapter, "jsonl"),
        ],
    )
    def test_by_extension(self, tmp_path, name, adapter_type, fmt):
        adapter, defaults = adapter_for(tmp_path / name)
        assert isinstance(adapter, adapter_type)
        assert isinstance(adapter, SourceAdapter)
        assert defaults.get("format") == fmt

    def test_explicit_format_overrides_extension(self, tmp_path):
        adapter, defaults = adapter_for(tmp_path / "a.txt", "jsonl")
        assert isinstance(adapter, JsonSourceAdapter)
        assert defaults == {"format": "jsonl"}

    def test_unknown(self, tmp_path):
        with pytest.raises(ValueError, match="Cannot infer"):
            adapter_for(tmp_path / "a.xlsx")
        with pytest.raises(ValueError, match="Unsupported format"):
            adapter_for(tmp_path / "a.csv", "xml")

    def test_read_rows(self, tmp_path):
        path = tmp_path / "batch.ndjson"
        path.write_text('{"contract_id": "C-1"}\n')
        assert list(read_rows(path)) == [{"contract_id": "C-1"}]
