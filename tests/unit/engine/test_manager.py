# tests/unit/engine/test_manager.py
"""Tests for pipeline lifecycle operations."""

from datetime import UTC, datetime, timedelta

import pytest

from tidemark.contracts import (
    CommandFailedError,
    FileBatch,
    FileListPipelineState,
    InvalidPipelineConfigError,
    OutcomeStatus,
    PipelineExistsError,
    PipelineKind,
    PipelineNotFoundError,
    PipelinePermissionError,
    SequencePipelineState,
    SequenceRange,
    TimeIntervalPipelineState,
    TimeWindow,
)
from tidemark.core.config import TidemarkSettings
from tidemark.core.store import PipelineDB
from tidemark.engine import DEFAULT_MIN_DELAY, MockClock, PipelineManager
from tests.fixtures.engine import ADMIN, BOB, CLOCK_START, RecordingScheduler, StaticListing, make_manager
from tests.fixtures.store import create_events_table, create_sink_table, fetch_all, insert_events

HOUR = timedelta(hours=1)


@pytest.fixture
def events(pipeline_db: PipelineDB) -> str:
    create_events_table(pipeline_db)
    create_sink_table(pipeline_db, "CREATE TABLE ranges (range_start INTEGER, range_end INTEGER)")
    return "events"


@pytest.fixture
def loaded(pipeline_db: PipelineDB) -> str:
    create_sink_table(pipeline_db, "CREATE TABLE loaded (path TEXT)")
    return "loaded"


class TestSequencePipelines:
    def test_processes_each_value_once(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        manager.create_sequence_pipeline("rollup", events, "INSERT INTO ranges VALUES ($1, $2)")
        insert_events(pipeline_db, 100)

        first = manager.execute_pipeline("rollup")
        second = manager.execute_pipeline("rollup")
        insert_events(pipeline_db, 5)
        third = manager.execute_pipeline("rollup")

        assert first.units == (SequenceRange(1, 100),)
        assert second.status is OutcomeStatus.NO_OP
        assert third.units == (SequenceRange(101, 105),)
        assert fetch_all(pipeline_db, "SELECT range_start, range_end FROM ranges ORDER BY range_start") == [(1, 100), (101, 105)]

    def test_registry_records_owner_source_and_counter(self, manager: PipelineManager, events: str) -> None:
        pipeline = manager.create_sequence_pipeline("rollup", "EVENTS", "INSERT INTO ranges VALUES ($1, $2)")

        assert pipeline.owner_id == "alice"
        assert pipeline.source_relation == "events"
        _, state = manager.get_pipeline_state("rollup")
        assert state == SequencePipelineState("rollup", "events", None)

    def test_execute_immediately(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        insert_events(pipeline_db, 3)

        manager.create_sequence_pipeline("rollup", events, "INSERT INTO ranges VALUES ($1, $2)", execute_immediately=True)

        assert fetch_all(pipeline_db, "SELECT range_start, range_end FROM ranges") == [(1, 3)]

    def test_sequence_range_preview_changes_nothing(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        manager.create_sequence_pipeline("rollup", events, "INSERT INTO ranges VALUES ($1, $2)")
        assert manager.sequence_range("rollup") is None

        insert_events(pipeline_db, 7)

        assert manager.sequence_range("rollup") == SequenceRange(1, 7)
        assert manager.sequence_range("rollup") == SequenceRange(1, 7)
        assert fetch_all(pipeline_db, "SELECT * FROM ranges") == []

    def test_sequence_range_rejects_other_kinds(self, manager: PipelineManager) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True)

        with pytest.raises(InvalidPipelineConfigError, match="not a sequence pipeline"):
            manager.sequence_range("hourly")

    def test_missing_relation(self, manager: PipelineManager) -> None:
        with pytest.raises(InvalidPipelineConfigError, match='relation "nope" does not exist'):
            manager.create_sequence_pipeline("rollup", "nope", "SELECT $1, $2")

    def test_table_without_counter(self, manager: PipelineManager, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE plain (id INTEGER PRIMARY KEY)")

        with pytest.raises(InvalidPipelineConfigError, match="plain does not have a sequence"):
            manager.create_sequence_pipeline("rollup", "plain", "SELECT $1, $2")

    def test_view_is_rejected(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        create_sink_table(pipeline_db, "CREATE VIEW recent AS SELECT * FROM events")

        with pytest.raises(InvalidPipelineConfigError, match="recent is not a table or sequence"):
            manager.create_sequence_pipeline("rollup", "recent", "SELECT $1, $2")

    def test_command_with_too_many_parameters(self, manager: PipelineManager, events: str) -> None:
        with pytest.raises(InvalidPipelineConfigError, match=r"references \$3"):
            manager.create_sequence_pipeline("rollup", events, "SELECT $1, $2, $3")
        assert manager.list_pipelines() == []


class TestTimeIntervalPipelines:
    @pytest.fixture
    def windows(self, pipeline_db: PipelineDB) -> str:
        create_sink_table(pipeline_db, "CREATE TABLE windows (window_start TEXT, window_end TEXT)")
        return "windows"

    def test_non_batched_processes_windows_as_clock_advances(
        self, manager: PipelineManager, clock: MockClock, pipeline_db: PipelineDB, windows: str
    ) -> None:
        manager.create_time_interval_pipeline(
            "hourly",
            HOUR,
            "INSERT INTO windows VALUES ($1, $2)",
            start_time=CLOCK_START,
            min_delay=timedelta(minutes=5),
        )

        clock.advance(HOUR)
        assert manager.execute_pipeline("hourly").status is OutcomeStatus.NO_OP

        clock.advance(timedelta(minutes=5))
        outcome = manager.execute_pipeline("hourly")

        assert outcome.units == (TimeWindow(CLOCK_START, CLOCK_START + HOUR),)
        assert manager.execute_pipeline("hourly").status is OutcomeStatus.NO_OP

    def test_default_min_delay(self, manager: PipelineManager) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", start_time=CLOCK_START)

        _, state = manager.get_pipeline_state("hourly")

        assert isinstance(state, TimeIntervalPipelineState)
        assert state.min_delay == DEFAULT_MIN_DELAY

    def test_non_batched_requires_start_time(self, manager: PipelineManager) -> None:
        with pytest.raises(InvalidPipelineConfigError, match="start_time is required"):
            manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2")

    def test_naive_start_time_treated_as_utc(self, manager: PipelineManager) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", start_time=datetime(2024, 1, 1))

        _, state = manager.get_pipeline_state("hourly")

        assert isinstance(state, TimeIntervalPipelineState)
        assert state.start_time == datetime(2024, 1, 1, tzinfo=UTC)

    def test_source_must_be_a_table(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        create_sink_table(pipeline_db, "CREATE VIEW recent AS SELECT * FROM events")

        with pytest.raises(InvalidPipelineConfigError, match="recent is not a table"):
            manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, source_name="recent")

    def test_source_table_recorded(self, manager: PipelineManager, events: str) -> None:
        pipeline = manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, source_name=events)

        assert pipeline.source_relation == "events"


class TestFileListPipelines:
    def test_batches_unprocessed_files(self, manager: PipelineManager, listing: StaticListing, pipeline_db: PipelineDB, loaded: str) -> None:
        listing.paths = ["a.csv", "b.csv", "c.csv"]
        manager.create_file_list_pipeline(
            "loader",
            "*.csv",
            "INSERT INTO loaded SELECT value FROM json_each($1)",
            batched=True,
            list_function="static",
            max_batch_size=2,
        )

        outcome = manager.execute_pipeline("loader")

        assert outcome.units == (FileBatch(("a.csv", "b.csv")), FileBatch(("c.csv",)))
        assert manager.processed_files("loader") == ["a.csv", "b.csv", "c.csv"]
        assert manager.execute_pipeline("loader").status is OutcomeStatus.NO_OP

        listing.paths.append("d.csv")
        assert manager.execute_pipeline("loader").units == (FileBatch(("d.csv",)),)
        assert len(fetch_all(pipeline_db, "SELECT path FROM loaded")) == 4

    def test_defaults_to_configured_list_function(self, pipeline_db: PipelineDB, listing: StaticListing) -> None:
        settings = TidemarkSettings(file_list={"default_list_function": "static"})
        manager = make_manager(pipeline_db, listing=listing, settings=settings)

        manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1")

        _, state = manager.get_pipeline_state("loader")
        assert isinstance(state, FileListPipelineState)
        assert state.list_function == "static"

    def test_non_positive_batch_size_means_unbounded(self, manager: PipelineManager) -> None:
        manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1", batched=True, list_function="static", max_batch_size=-1)

        _, state = manager.get_pipeline_state("loader")
        assert isinstance(state, FileListPipelineState)
        assert state.max_batch_size is None

    def test_unknown_list_function(self, manager: PipelineManager) -> None:
        with pytest.raises(InvalidPipelineConfigError, match='no list function named "lake"'):
            manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1", list_function="lake")

    def test_file_list_command_takes_one_parameter(self, manager: PipelineManager) -> None:
        with pytest.raises(InvalidPipelineConfigError, match=r"references \$2"):
            manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1, $2", list_function="static")


class TestCreateValidation:
    @pytest.mark.parametrize("name", ["", "   "])
    def test_pipeline_name_required(self, manager: PipelineManager, name: str) -> None:
        with pytest.raises(InvalidPipelineConfigError, match="pipeline_name cannot be NULL"):
            manager.create_time_interval_pipeline(name, HOUR, "SELECT $1, $2", batched=True)

    def test_duplicate_name(self, manager: PipelineManager) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True)

        with pytest.raises(PipelineExistsError):
            manager.create_file_list_pipeline("hourly", "*.csv", "SELECT $1", list_function="static")
        assert manager.get_pipeline("hourly").pipeline_type is PipelineKind.TIME_INTERVAL


class TestScheduling:
    def test_schedule_registers_job(self, manager: PipelineManager, scheduler: RecordingScheduler) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, schedule="*/5 * * * *")

        assert scheduler.jobs == {"pipeline:hourly": (1, "*/5 * * * *", "tidemark execute hourly")}

    def test_invalid_schedule_leaves_no_pipeline(self, manager: PipelineManager, scheduler: RecordingScheduler) -> None:
        with pytest.raises(InvalidPipelineConfigError, match="invalid cron expression"):
            manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, schedule="often")

        with pytest.raises(PipelineNotFoundError):
            manager.get_pipeline("hourly")

    def test_without_scheduler_backend_schedule_is_rejected(self, pipeline_db: PipelineDB) -> None:
        manager = PipelineManager(pipeline_db, principal=ADMIN, clock=MockClock(CLOCK_START))

        with pytest.raises(InvalidPipelineConfigError, match="no scheduler backend"):
            manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, schedule="@hourly")
        assert manager.list_pipelines() == []

    def test_drop_unschedules(self, manager: PipelineManager, scheduler: RecordingScheduler) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, schedule="@hourly")

        manager.drop_pipeline("hourly")

        assert scheduler.jobs == {}
        with pytest.raises(PipelineNotFoundError):
            manager.get_pipeline("hourly")


class TestResetAndDrop:
    def test_reset_sequence_reprocesses_from_origin(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        manager.create_sequence_pipeline("rollup", events, "INSERT INTO ranges VALUES ($1, $2)")
        insert_events(pipeline_db, 4)
        manager.execute_pipeline("rollup")

        manager.reset_pipeline("rollup")

        assert manager.execute_pipeline("rollup").units == (SequenceRange(1, 4),)

    def test_reset_time_interval_rewinds_to_start(self, manager: PipelineManager, clock: MockClock) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", start_time=CLOCK_START, min_delay=timedelta(0))
        clock.advance(HOUR)
        manager.execute_pipeline("hourly")

        manager.reset_pipeline("hourly")

        _, state = manager.get_pipeline_state("hourly")
        assert isinstance(state, TimeIntervalPipelineState)
        assert state.last_processed_time is None

    def test_reset_file_list_clears_ledger(self, manager: PipelineManager, listing: StaticListing) -> None:
        listing.paths = ["a.csv"]
        manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1", list_function="static")
        manager.execute_pipeline("loader")

        manager.reset_pipeline("loader")

        assert manager.processed_files("loader") == []
        assert manager.execute_pipeline("loader").units == (FileBatch(("a.csv",), batched=False),)

    def test_drop_removes_pipeline_and_state(self, manager: PipelineManager, listing: StaticListing) -> None:
        listing.paths = ["a.csv"]
        manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1", list_function="static")
        manager.execute_pipeline("loader")

        manager.drop_pipeline("loader")

        with pytest.raises(PipelineNotFoundError):
            manager.processed_files("loader")
        # The name is free again
        manager.create_file_list_pipeline("loader", "*.csv", "SELECT $1", list_function="static")
        assert manager.processed_files("loader") == []

    @pytest.mark.parametrize("operation", ["execute_pipeline", "reset_pipeline", "drop_pipeline"])
    def test_unknown_pipeline(self, manager: PipelineManager, operation: str) -> None:
        with pytest.raises(PipelineNotFoundError, match='no such pipeline named "ghost"'):
            getattr(manager, operation)("ghost")


class TestOwnership:
    @pytest.mark.parametrize("operation", ["execute_pipeline", "reset_pipeline", "drop_pipeline"])
    def test_other_user_is_denied(self, manager: PipelineManager, pipeline_db: PipelineDB, operation: str) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True)
        intruder = make_manager(pipeline_db, principal=BOB)

        with pytest.raises(PipelinePermissionError, match="permission denied for pipeline hourly"):
            getattr(intruder, operation)("hourly")
        assert manager.get_pipeline("hourly").owner_id == "alice"

    def test_superuser_may_manage_any_pipeline(self, manager: PipelineManager, pipeline_db: PipelineDB) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True)
        admin = make_manager(pipeline_db, principal=ADMIN)

        admin.reset_pipeline("hourly")
        admin.drop_pipeline("hourly")

        assert manager.list_pipelines() == []

    def test_anyone_may_read_definitions(self, manager: PipelineManager, pipeline_db: PipelineDB) -> None:
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True)

        assert make_manager(pipeline_db, principal=BOB).get_pipeline("hourly").owner_id == "alice"


class TestSourceDropped:
    def test_dropping_source_removes_its_pipelines(
        self, manager: PipelineManager, scheduler: RecordingScheduler, pipeline_db: PipelineDB, events: str
    ) -> None:
        manager.create_sequence_pipeline("rollup", events, "INSERT INTO ranges VALUES ($1, $2)", schedule="@hourly")
        manager.create_time_interval_pipeline("hourly", HOUR, "SELECT $1, $2", batched=True, source_name=events)
        manager.create_time_interval_pipeline("unrelated", HOUR, "SELECT $1, $2", batched=True)
        insert_events(pipeline_db, 3)
        manager.execute_pipeline("rollup")

        create_sink_table(pipeline_db, "DROP TABLE events")
        deleted = manager.delete_pipelines_by_source("events")

        assert deleted == ["hourly", "rollup"]
        assert [p.pipeline_name for p in manager.list_pipelines()] == ["unrelated"]
        assert scheduler.jobs == {}

    def test_no_owner_check_for_source_drops(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        manager.create_sequence_pipeline("rollup", events, "SELECT $1, $2")

        assert make_manager(pipeline_db, principal=BOB).delete_pipelines_by_source(events) == ["rollup"]

    def test_unknown_source_deletes_nothing(self, manager: PipelineManager) -> None:
        assert manager.delete_pipelines_by_source("nothing_here") == []


class TestCommandFailure:
    def test_failed_command_keeps_watermark(self, manager: PipelineManager, pipeline_db: PipelineDB, events: str) -> None:
        manager.create_sequence_pipeline("rollup", events, "INSERT INTO missing_sink VALUES ($1, $2)")
        insert_events(pipeline_db, 3)

        with pytest.raises(CommandFailedError, match="missing_sink") as exc_info:
            manager.execute_pipeline("rollup")

        assert exc_info.value.completed_units == ()
        _, state = manager.get_pipeline_state("rollup")
        assert state == SequencePipelineState("rollup", "events", None)

    def test_failed_file_stays_unprocessed(self, manager: PipelineManager, listing: StaticListing, pipeline_db: PipelineDB) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE strict_loaded (path TEXT CHECK (path <> 'bad.csv'))")
        listing.paths = ["a.csv", "bad.csv", "c.csv"]
        manager.create_file_list_pipeline("loader", "*.csv", "INSERT INTO strict_loaded VALUES ($1)", list_function="static")

        with pytest.raises(CommandFailedError) as exc_info:
            manager.execute_pipeline("loader")

        assert exc_info.value.unit == FileBatch(("bad.csv",), batched=False)
        assert exc_info.value.completed_units == (FileBatch(("a.csv",), batched=False),)
        assert manager.processed_files("loader") == ["a.csv"]


class TestExecuteImmediately:
    def test_failing_first_run_rejects_the_pipeline(
        self, manager: PipelineManager, scheduler: RecordingScheduler, pipeline_db: PipelineDB, events: str
    ) -> None:
        insert_events(pipeline_db, 3)

        with pytest.raises(CommandFailedError, match="missing_sink"):
            manager.create_sequence_pipeline(
                "rollup",
                events,
                "INSERT INTO missing_sink VALUES ($1, $2)",
                schedule="*/5 * * * *",
                execute_immediately=True,
            )

        assert manager.list_pipelines() == []
        assert scheduler.jobs == {}

    def test_failing_first_run_rolls_back_earlier_files(
        self, manager: PipelineManager, listing: StaticListing, pipeline_db: PipelineDB
    ) -> None:
        create_sink_table(pipeline_db, "CREATE TABLE strict_loaded (path TEXT CHECK (path <> 'bad.csv'))")
        listing.paths = ["a.csv", "bad.csv"]

        with pytest.raises(CommandFailedError):
            manager.create_file_list_pipeline(
                "loader",
                "*.csv",
                "INSERT INTO strict_loaded VALUES ($1)",
                list_function="static",
                execute_immediately=True,
            )

        assert fetch_all(pipeline_db, "SELECT path FROM strict_loaded") == []
        assert manager.list_pipelines() == []

    def test_schedules_after_successful_first_run(
        self, manager: PipelineManager, scheduler: RecordingScheduler, pipeline_db: PipelineDB, events: str
    ) -> None:
        insert_events(pipeline_db, 2)

        manager.create_sequence_pipeline(
            "rollup",
            events,
            "INSERT INTO ranges VALUES ($1, $2)",
            schedule="@hourly",
            execute_immediately=True,
        )

        assert fetch_all(pipeline_db, "SELECT range_start, range_end FROM ranges") == [(1, 2)]
        assert scheduler.jobs == {"pipeline:rollup": (1, "@hourly", "tidemark execute rollup")}
        _, state = manager.get_pipeline_state("rollup")
        assert state == SequencePipelineState("rollup", "events", 2)
