# tests/unit/core/test_command.py
"""Tests for command placeholder handling and execution."""

from datetime import UTC, datetime

import pytest

from tidemark.contracts import InvalidPipelineConfigError, PipelineKind
from tidemark.core.command import SqlCommandRunner, prepare_command
from tidemark.core.store import PipelineDB
from tests.fixtures.store import create_sink_table, fetch_all


class TestPrepareCommand:
    """Placeholder discovery and rewriting."""

    def test_rewrites_positional_placeholders(self) -> None:
        prepared = prepare_command("INSERT INTO t SELECT * FROM s WHERE id BETWEEN $1 AND $2", PipelineKind.SEQUENCE)

        assert prepared.placeholders == frozenset({1, 2})
        assert prepared.statement == "INSERT INTO t SELECT * FROM s WHERE id BETWEEN (:p1) AND (:p2)"

    def test_keeps_original_command(self) -> None:
        command = "SELECT $1, $2"
        assert prepare_command(command, PipelineKind.TIME_INTERVAL).command == command

    def test_placeholder_may_be_unused(self) -> None:
        prepared = prepare_command("DELETE FROM staging WHERE ts < $2", PipelineKind.TIME_INTERVAL)
        assert prepared.placeholders == frozenset({2})

    def test_placeholders_inside_literals_and_comments_are_ignored(self) -> None:
        command = "SELECT '$2', \"$2\" -- $2\n /* $2 */ FROM files WHERE path = $1"

        prepared = prepare_command(command, PipelineKind.FILE_LIST)

        assert prepared.placeholders == frozenset({1})
        assert "'$2'" in prepared.statement

    def test_placeholders_inside_dollar_quoted_bodies_are_ignored(self) -> None:
        command = "SELECT $body$ $3 it's $body$, $$ $4 $$, $1 + $2"

        prepared = prepare_command(command, PipelineKind.SEQUENCE)

        assert prepared.placeholders == frozenset({1, 2})
        assert prepared.statement == "SELECT $body$ $3 it's $body$, $$ $4 $$, (:p1) + (:p2)"

    def test_placeholders_inside_escape_strings_are_ignored(self) -> None:
        command = "SELECT E'it\\'s $3', e'\\\\' FROM files WHERE path = $1"

        prepared = prepare_command(command, PipelineKind.FILE_LIST)

        assert prepared.placeholders == frozenset({1})
        assert prepared.statement.endswith("path = (:p1)")

    @pytest.mark.parametrize(
        ("command", "kind"),
        [
            ("SELECT $2", PipelineKind.FILE_LIST),
            ("SELECT $3", PipelineKind.SEQUENCE),
            ("SELECT $3", PipelineKind.TIME_INTERVAL),
            ("SELECT $0", PipelineKind.SEQUENCE),
        ],
    )
    def test_rejects_parameters_the_kind_does_not_supply(self, command: str, kind: PipelineKind) -> None:
        with pytest.raises(InvalidPipelineConfigError, match="command references"):
            prepare_command(command, kind)

    @pytest.mark.parametrize("command", ["", "   \n"])
    def test_rejects_empty_command(self, command: str) -> None:
        with pytest.raises(InvalidPipelineConfigError, match="command cannot be empty"):
            prepare_command(command, PipelineKind.SEQUENCE)

    def test_bind_maps_referenced_placeholders(self) -> None:
        prepared = prepare_command("SELECT $2", PipelineKind.SEQUENCE)
        assert prepared.bind([10, 20]) == {"p2": 20}


class TestSqlCommandRunner:
    """Executing prepared commands on SQLite."""

    def test_runs_command_with_range_parameters(self, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE ranges (range_start INTEGER, range_end INTEGER)")
        prepared = prepare_command("INSERT INTO ranges VALUES ($1, $2)", PipelineKind.SEQUENCE)

        with pipeline_db.connection() as conn:
            SqlCommandRunner().run(conn, prepared, [1, 100])

        assert fetch_all(pipeline_db, "SELECT range_start, range_end FROM ranges") == [(1, 100)]

    def test_casts_and_colons_survive(self, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE labels (label TEXT)")
        prepared = prepare_command("INSERT INTO labels VALUES ('a:b' || CAST($1 AS TEXT))", PipelineKind.SEQUENCE)

        with pipeline_db.connection() as conn:
            SqlCommandRunner().run(conn, prepared, [7, 8])

        assert fetch_all(pipeline_db, "SELECT label FROM labels") == [("a:b7",)]

    def test_datetimes_bound_as_utc_text(self, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE windows (window_start TEXT, window_end TEXT)")
        prepared = prepare_command("INSERT INTO windows VALUES ($1, $2)", PipelineKind.TIME_INTERVAL)
        start = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        end = datetime(2024, 1, 1, 1, 0, tzinfo=UTC)

        with pipeline_db.connection() as conn:
            SqlCommandRunner().run(conn, prepared, [start, end])

        assert fetch_all(pipeline_db, "SELECT window_start, window_end FROM windows") == [
            ("2024-01-01 00:00:00.000000", "2024-01-01 01:00:00.000000")
        ]

    def test_path_arrays_bound_as_json(self, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE loaded (path TEXT)")
        prepared = prepare_command("INSERT INTO loaded SELECT value FROM json_each($1)", PipelineKind.FILE_LIST)

        with pipeline_db.connection() as conn:
            SqlCommandRunner().run(conn, prepared, [["a.csv", "b.csv"]])

        assert fetch_all(pipeline_db, "SELECT path FROM loaded ORDER BY path") == [("a.csv",), ("b.csv",)]

    def test_errors_propagate(self, pipeline_db: PipelineDB) -> None:
        prepared = prepare_command("INSERT INTO missing_table VALUES ($1)", PipelineKind.FILE_LIST)

        with pytest.raises(Exception, match="missing_table"), pipeline_db.connection() as conn:
            SqlCommandRunner().run(conn, prepared, ["a.csv"])
