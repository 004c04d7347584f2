# tests/unit/core/test_listing.py
"""Tests for list function registration and lookup."""

from pathlib import Path

import pytest

from tidemark.contracts import InvalidPipelineConfigError
from tidemark.core.listing import ListFunctionRegistry, SqlListFunction, glob_files
from tidemark.core.store import PipelineDB


class TestGlobFiles:
    def test_lists_matching_files_sorted(self, tmp_path: Path, pipeline_db: PipelineDB) -> None:
        for name in ("b.csv", "a.csv", "c.txt"):
            (tmp_path / name).write_text("x")

        with pipeline_db.connection() as conn:
            files = glob_files(conn, str(tmp_path / "*.csv"))

        assert files == [str(tmp_path / "a.csv"), str(tmp_path / "b.csv")]

    def test_recursive_pattern_skips_directories(self, tmp_path: Path, pipeline_db: PipelineDB) -> None:
        nested = tmp_path / "2024" / "01"
        nested.mkdir(parents=True)
        (nested / "events.csv").write_text("x")

        with pipeline_db.connection() as conn:
            files = glob_files(conn, str(tmp_path / "**"))

        assert files == [str(nested / "events.csv")]

    def test_no_matches(self, tmp_path: Path, pipeline_db: PipelineDB) -> None:
        with pipeline_db.connection() as conn:
            assert glob_files(conn, str(tmp_path / "*.parquet")) == []


class TestListFunctionRegistry:
    def test_glob_is_built_in(self) -> None:
        assert ListFunctionRegistry().names() == ["glob"]

    def test_register_and_get(self, pipeline_db: PipelineDB) -> None:
        registry = ListFunctionRegistry()

        def list_bucket(conn: object, pattern: str) -> list[str]:
            return [f"{pattern}/part-0"]

        registry.register("bucket", list_bucket)

        with pipeline_db.connection() as conn:
            assert registry.canonical_name(conn, "bucket") == "bucket"
            assert registry.get(conn, "bucket") is list_bucket
        assert registry.names() == ["bucket", "glob"]

    def test_register_rejects_blank_name(self) -> None:
        with pytest.raises(ValueError, match="cannot be empty"):
            ListFunctionRegistry().register(" ", lambda conn, pattern: [])

    def test_unknown_name_rejected_on_sqlite(self, pipeline_db: PipelineDB) -> None:
        registry = ListFunctionRegistry()

        with pipeline_db.connection() as conn:
            with pytest.raises(InvalidPipelineConfigError, match='no list function named "crunchy_lake.list_files"'):
                registry.canonical_name(conn, "crunchy_lake.list_files")
            with pytest.raises(InvalidPipelineConfigError):
                registry.get(conn, "crunchy_lake.list_files")


class TestSqlListFunction:
    def test_repr_names_function(self) -> None:
        assert repr(SqlListFunction('"lake"."list_files"')) == "SqlListFunction('\"lake\".\"list_files\"')"
