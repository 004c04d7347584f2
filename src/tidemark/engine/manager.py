# src/tidemark/engine/manager.py
"""PipelineManager: create, execute, reset and drop pipelines.

The manager is the public entry point. It validates definitions, checks
ownership, keeps the registry and the external scheduler in step, and
hands execution to the PipelineExecutor.

Example:
    from tidemark.core.store import PipelineDB
    from tidemark.engine import PipelineManager

    db = PipelineDB.from_url("postgresql+psycopg://localhost/app")
    manager = PipelineManager(db)

    manager.create_sequence_pipeline(
        "event-rollup",
        "events",
        "INSERT INTO event_counts SELECT day, count(*) FROM events "
        "WHERE event_id BETWEEN $1 AND $2 GROUP BY day "
        "ON CONFLICT (day) DO UPDATE SET n = event_counts.n + EXCLUDED.n",
    )
    outcome = manager.execute_pipeline("event-rollup")
"""

from datetime import datetime, timedelta
from typing import Self, assert_never

import structlog
from sqlalchemy import Connection

from tidemark.contracts.enums import PipelineKind, RelationKind
from tidemark.contracts.errors import InvalidPipelineConfigError, PipelinePermissionError
from tidemark.contracts.identity import Principal
from tidemark.contracts.pipeline import (
    ExecutionOutcome,
    FileListPipelineState,
    Pipeline,
    PipelineState,
    SequencePipelineState,
    SequenceRange,
    TimeIntervalPipelineState,
)
from tidemark.core.catalog import Catalog, catalog_for
from tidemark.core.command import CommandRunner, SqlCommandRunner, prepare_command
from tidemark.core.config import TidemarkSettings
from tidemark.core.listing import ListFunctionRegistry
from tidemark.core.logging import pipeline_log_context
from tidemark.core.scheduler import (
    Scheduler,
    command_for_pipeline,
    job_name_for_pipeline,
    scheduler_from_settings,
)
from tidemark.core.store import PipelineDB, PipelineStore
from tidemark.core.store._helpers import as_utc
from tidemark.engine.clock import DEFAULT_CLOCK, Clock
from tidemark.engine.executor import PipelineExecutor
from tidemark.engine.resolvers import SequenceRangeResolver

logger = structlog.get_logger(__name__)

DEFAULT_MIN_DELAY = timedelta(seconds=30)


def _require(value: object, argument: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidPipelineConfigError(f"{argument} cannot be NULL")


class PipelineManager:
    """Lifecycle operations on incremental pipelines."""

    def __init__(
        self,
        db: PipelineDB,
        *,
        settings: TidemarkSettings | None = None,
        scheduler: Scheduler | None = None,
        catalog: Catalog | None = None,
        runner: CommandRunner | None = None,
        list_functions: ListFunctionRegistry | None = None,
        principal: Principal | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        """Initialize manager.

        Args:
            db: Pipeline database (registry and user data)
            settings: Tidemark settings (defaults when omitted)
            scheduler: External scheduler (built from settings when omitted)
            catalog: Catalog queries (chosen by database backend when omitted)
            runner: Command runner (SQL on the pipeline database when omitted)
            list_functions: List function registry (built-ins only when omitted)
            principal: Caller identity; when omitted it is read from the
                database connection for each operation
            clock: Wall clock for time interval pipelines
        """
        self._db = db
        self._settings = settings or TidemarkSettings()
        self._scheduler = scheduler or scheduler_from_settings(self._settings.scheduler)
        self._catalog = catalog or catalog_for(db.dialect_name)
        self._runner = runner or SqlCommandRunner(
            statement_timeout_seconds=self._settings.execution.statement_timeout_seconds
        )
        self._list_functions = list_functions or ListFunctionRegistry()
        self._principal = principal
        self._store = PipelineStore(db.service)
        self._executor = PipelineExecutor(
            db,
            self._store,
            catalog=self._catalog,
            runner=self._runner,
            list_functions=self._list_functions,
            lock_timeout_seconds=self._settings.sequence.lock_timeout_seconds,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: TidemarkSettings,
        *,
        principal: Principal | None = None,
        list_functions: ListFunctionRegistry | None = None,
    ) -> Self:
        """Create a manager with a database connection built from settings."""
        db = PipelineDB.from_url(
            settings.database.url,
            service_role=settings.database.service_role,
            echo=settings.database.echo,
        )
        return cls(db, settings=settings, principal=principal, list_functions=list_functions)

    @property
    def db(self) -> PipelineDB:
        return self._db

    @property
    def store(self) -> PipelineStore:
        return self._store

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def list_functions(self) -> ListFunctionRegistry:
        return self._list_functions

    def close(self) -> None:
        self._db.close()

    # === Helpers ===

    def _caller(self, conn: Connection) -> Principal:
        if self._principal is not None:
            return self._principal
        return self._catalog.current_principal(conn)

    def _owned_pipeline(self, conn: Connection, pipeline_name: str) -> Pipeline:
        pipeline = self._store.get_pipeline(conn, pipeline_name)
        if not self._caller(conn).can_manage(pipeline.owner_id):
            raise PipelinePermissionError(pipeline_name)
        return pipeline

    def _register(
        self,
        conn: Connection,
        pipeline: Pipeline,
        state: PipelineState,
        schedule: str | None,
        execute_immediately: bool,
    ) -> None:
        """Insert registry and state rows, run the first execution, then schedule.

        Everything happens inside the creating transaction: a failing first
        run or a rejected schedule leaves no pipeline behind.
        """
        self._store.insert_pipeline(conn, pipeline)
        self._store.initialize_state(conn, state)
        logger.info(
            "pipeline_created",
            pipeline=pipeline.pipeline_name,
            kind=pipeline.pipeline_type.label,
            owner=pipeline.owner_id,
            source=pipeline.source_relation,
        )

        if execute_immediately:
            self._executor.execute(pipeline, within=conn)

        if schedule is not None:
            job_id = self._scheduler.schedule(
                job_name_for_pipeline(pipeline.pipeline_name),
                schedule,
                command_for_pipeline(self._settings.scheduler.command_template, pipeline.pipeline_name),
            )
            logger.info(
                "pipeline_scheduled",
                pipeline=pipeline.pipeline_name,
                job_id=job_id,
                schedule=schedule,
            )

    def _resolve_counter(self, conn: Connection, counter_ref: str) -> tuple[str, str]:
        """Resolve a counter or table reference to (counter, owning table).

        Raises:
            InvalidPipelineConfigError: If the object does not exist, is not a
                table or sequence, or does not identify exactly one counter
        """
        resolved = self._catalog.resolve_relation(conn, counter_ref)
        if resolved is None:
            raise InvalidPipelineConfigError(f'relation "{counter_ref}" does not exist')
        name, kind = resolved

        match kind:
            case RelationKind.SEQUENCE:
                owner = self._catalog.sequence_owner(conn, name)
                if owner is None:
                    raise InvalidPipelineConfigError("only sequences that are owned by a table are supported")
                return name, owner
            case RelationKind.TABLE:
                sequences = self._catalog.owned_sequences(conn, name)
                if not sequences:
                    raise InvalidPipelineConfigError(f"{name} does not have a sequence")
                if len(sequences) > 1:
                    raise InvalidPipelineConfigError(
                        f"{name} has multiple sequences ({', '.join(sequences)}), pass the sequence name instead"
                    )
                return sequences[0], name
            case RelationKind.OTHER:
                raise InvalidPipelineConfigError(f"{name} is not a table or sequence")
            case _:
                assert_never(kind)

    # === Create ===

    def create_sequence_pipeline(
        self,
        pipeline_name: str,
        sequence_name: str,
        command: str,
        *,
        schedule: str | None = None,
        execute_immediately: bool = False,
    ) -> Pipeline:
        """Create a pipeline over the values of a counter.

        Args:
            pipeline_name: Unique pipeline name
            sequence_name: A sequence owned by a table, or a table owning
                exactly one sequence
            command: SQL with $1 (range start) and $2 (range end), inclusive
            schedule: Cron expression for periodic execution
            execute_immediately: Run once while creating; a failure rejects the pipeline

        Raises:
            InvalidPipelineConfigError: If the definition is invalid or the name is taken
        """
        _require(pipeline_name, "pipeline_name")
        _require(sequence_name, "sequence_name")
        _require(command, "command")
        prepare_command(command, PipelineKind.SEQUENCE)

        with self._db.connection() as conn:
            counter, table = self._resolve_counter(conn, sequence_name)
            pipeline = Pipeline(
                pipeline_name=pipeline_name,
                pipeline_type=PipelineKind.SEQUENCE,
                owner_id=self._caller(conn).name,
                source_relation=table,
                command=command,
            )
            state = SequencePipelineState(pipeline_name=pipeline_name, sequence_name=counter)
            self._register(conn, pipeline, state, schedule, execute_immediately)
        return pipeline

    def create_time_interval_pipeline(
        self,
        pipeline_name: str,
        time_interval: timedelta,
        command: str,
        *,
        batched: bool = False,
        start_time: datetime | None = None,
        source_name: str | None = None,
        schedule: str | None = None,
        min_delay: timedelta = DEFAULT_MIN_DELAY,
        execute_immediately: bool = False,
    ) -> Pipeline:
        """Create a pipeline over fixed-width time intervals.

        Args:
            pipeline_name: Unique pipeline name
            time_interval: Width of each interval
            command: SQL with $1 (interval start) and $2 (interval end), end exclusive
            batched: Process all pending intervals in one command call
            start_time: Grid anchor and first interval start; required unless batched
            source_name: Optional table the pipeline reads from (dropping it
                drops the pipeline)
            schedule: Cron expression for periodic execution
            min_delay: How long after an interval ends before it is processed
            execute_immediately: Run once while creating; a failure rejects the pipeline

        Raises:
            InvalidPipelineConfigError: If the definition is invalid or the name is taken
        """
        _require(pipeline_name, "pipeline_name")
        _require(time_interval, "time_interval")
        _require(command, "command")
        _require(min_delay, "min_delay")
        prepare_command(command, PipelineKind.TIME_INTERVAL)

        try:
            state = TimeIntervalPipelineState(
                pipeline_name=pipeline_name,
                time_interval=time_interval,
                min_delay=min_delay,
                batched=batched,
                start_time=as_utc(start_time),
            )
        except ValueError as e:
            raise InvalidPipelineConfigError(str(e)) from e

        with self._db.connection() as conn:
            source_relation = None
            if source_name is not None:
                resolved = self._catalog.resolve_relation(conn, source_name)
                if resolved is None:
                    raise InvalidPipelineConfigError(f'relation "{source_name}" does not exist')
                source_relation, kind = resolved
                if kind is not RelationKind.TABLE:
                    raise InvalidPipelineConfigError(f"{source_relation} is not a table")

            pipeline = Pipeline(
                pipeline_name=pipeline_name,
                pipeline_type=PipelineKind.TIME_INTERVAL,
                owner_id=self._caller(conn).name,
                source_relation=source_relation,
                command=command,
            )
            self._register(conn, pipeline, state, schedule, execute_immediately)
        return pipeline

    def create_file_list_pipeline(
        self,
        pipeline_name: str,
        file_pattern: str,
        command: str,
        *,
        batched: bool = False,
        list_function: str | None = None,
        max_batch_size: int | None = None,
        schedule: str | None = None,
        execute_immediately: bool = False,
    ) -> Pipeline:
        """Create a pipeline over files returned by a list function.

        Args:
            pipeline_name: Unique pipeline name
            file_pattern: Pattern passed to the list function
            command: SQL with $1 (a path, or an array of paths when batched)
            batched: Pass unprocessed files as an array instead of one by one
            list_function: List function name (settings default when omitted)
            max_batch_size: Largest array per call when batched (None or <= 0: unbounded)
            schedule: Cron expression for periodic execution
            execute_immediately: Run once while creating; a failure rejects the pipeline

        Raises:
            InvalidPipelineConfigError: If the definition is invalid or the name is taken
        """
        _require(pipeline_name, "pipeline_name")
        _require(file_pattern, "file_pattern")
        _require(command, "command")
        prepare_command(command, PipelineKind.FILE_LIST)

        if list_function is None:
            list_function = self._settings.file_list.default_list_function
        if max_batch_size is not None and max_batch_size <= 0:
            max_batch_size = None

        with self._db.connection() as conn:
            state = FileListPipelineState(
                pipeline_name=pipeline_name,
                file_pattern=file_pattern,
                batched=batched,
                list_function=self._list_functions.canonical_name(conn, list_function),
                max_batch_size=max_batch_size,
            )
            pipeline = Pipeline(
                pipeline_name=pipeline_name,
                pipeline_type=PipelineKind.FILE_LIST,
                owner_id=self._caller(conn).name,
                source_relation=None,
                command=command,
            )
            self._register(conn, pipeline, state, schedule, execute_immediately)
        return pipeline

    # === Execute / reset / drop ===

    def execute_pipeline(self, pipeline_name: str) -> ExecutionOutcome:
        """Execute a pipeline for everything that is currently safe to process.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
            PipelinePermissionError: If the caller does not own the pipeline
            CommandFailedError: If the command failed
            ResolutionTimeoutError: If sequence writers did not finish in time
        """
        with self._db.connection() as conn:
            pipeline = self._owned_pipeline(conn, pipeline_name)

        with pipeline_log_context(pipeline.pipeline_name, pipeline.pipeline_type.value):
            outcome = self._executor.execute(pipeline)
            logger.info("pipeline_executed", status=outcome.status.value, units=len(outcome.units))
        return outcome

    def reset_pipeline(self, pipeline_name: str) -> None:
        """Rewind a pipeline so the next run starts as if freshly created.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
            PipelinePermissionError: If the caller does not own the pipeline
        """
        with self._db.connection() as conn:
            pipeline = self._owned_pipeline(conn, pipeline_name)
            kind = pipeline.pipeline_type
            match kind:
                case PipelineKind.SEQUENCE:
                    self._store.update_last_processed_sequence_number(conn, pipeline_name, None)
                case PipelineKind.TIME_INTERVAL:
                    self._store.update_last_processed_time(conn, pipeline_name, None)
                case PipelineKind.FILE_LIST:
                    removed = self._store.remove_processed_files(conn, pipeline_name)
                    logger.debug("processed_files_cleared", pipeline=pipeline_name, removed=removed)
                case _:
                    assert_never(kind)

        logger.info("pipeline_reset", pipeline=pipeline_name, kind=kind.label)

    def drop_pipeline(self, pipeline_name: str) -> None:
        """Delete a pipeline with its watermark and ledger, and unschedule it.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
            PipelinePermissionError: If the caller does not own the pipeline
        """
        with self._db.connection() as conn:
            self._owned_pipeline(conn, pipeline_name)
            self._store.delete_pipeline(conn, pipeline_name)
            self._unschedule(pipeline_name)

        logger.info("pipeline_dropped", pipeline=pipeline_name)

    def delete_pipelines_by_source(self, source_name: str) -> list[str]:
        """Delete every pipeline reading from a destroyed source object.

        Called by drop notifications, so no ownership check applies. The
        name is matched as given, in every canonical form it may have had
        (schema-qualified on PostgreSQL) and, when the object still exists,
        by its current canonical name.

        Returns:
            Names of the deleted pipelines
        """
        with self._db.connection() as conn:
            candidates = {source_name} | self._catalog.source_name_candidates(conn, source_name)
            resolved = self._catalog.resolve_relation(conn, source_name)
            if resolved is not None:
                candidates.add(resolved[0])

            deleted = self._store.pipelines_for_source(conn, candidates)
            for pipeline_name in deleted:
                self._store.delete_pipeline(conn, pipeline_name)
                self._unschedule(pipeline_name)

        if deleted:
            logger.info("pipelines_dropped_with_source", source=source_name, pipelines=deleted)
        return deleted

    def _unschedule(self, pipeline_name: str) -> None:
        if self._scheduler.unschedule(job_name_for_pipeline(pipeline_name)):
            logger.info("pipeline_unscheduled", pipeline=pipeline_name)

    # === Read-only ===

    def get_pipeline(self, pipeline_name: str) -> Pipeline:
        """Look up a pipeline definition.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
        """
        with self._db.connection() as conn:
            return self._store.get_pipeline(conn, pipeline_name)

    def get_pipeline_state(self, pipeline_name: str) -> tuple[Pipeline, PipelineState]:
        """Look up a pipeline definition together with its watermark state."""
        with self._db.connection() as conn:
            pipeline = self._store.get_pipeline(conn, pipeline_name)
            return pipeline, self._store.load_state(conn, pipeline)

    def list_pipelines(self) -> list[Pipeline]:
        with self._db.connection() as conn:
            return self._store.list_pipelines(conn)

    def processed_files(self, pipeline_name: str) -> list[str]:
        """Ledger contents of a file list pipeline."""
        with self._db.connection() as conn:
            self._store.get_pipeline(conn, pipeline_name)
            return self._store.processed_files(conn, pipeline_name)

    def sequence_range(self, pipeline_name: str) -> SequenceRange | None:
        """Preview the next safe range of a sequence pipeline without processing it.

        Waits for in-flight writers like a real run, but changes nothing.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
            InvalidPipelineConfigError: If the pipeline is not a sequence pipeline
            ResolutionTimeoutError: If sequence writers did not finish in time
        """
        with self._db.connection() as conn:
            pipeline = self._store.get_pipeline(conn, pipeline_name)
            if pipeline.pipeline_type is not PipelineKind.SEQUENCE:
                raise InvalidPipelineConfigError(f"pipeline {pipeline_name} is not a sequence pipeline")
            state = self._store.load_state(conn, pipeline)
            assert isinstance(state, SequencePipelineState)
            resolver = SequenceRangeResolver(
                self._catalog,
                lock_timeout_seconds=self._settings.sequence.lock_timeout_seconds,
            )
            return resolver.resolve(conn, state)
