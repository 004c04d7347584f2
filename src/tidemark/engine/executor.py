# src/tidemark/engine/executor.py
"""PipelineExecutor: resolve, run and advance.

A unit of work is one transaction on the pipeline database:

    1. lock the pipeline's state row (FOR UPDATE)
    2. resolve the next unit from the locked watermark
    3. run the user command with the unit's parameters
    4. advance the watermark, or append the unit's files to the ledger
    5. commit

If the command fails the transaction rolls back, so the watermark and the
command's effects are never out of step. Concurrent invocations of the
same pipeline queue on the row lock and resolve after the winner commits.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, assert_never

import structlog
from sqlalchemy import Connection

from tidemark.contracts.enums import PipelineKind
from tidemark.contracts.errors import CommandFailedError
from tidemark.contracts.pipeline import (
    ExecutionOutcome,
    FileBatch,
    FileListPipelineState,
    Pipeline,
    SequencePipelineState,
    TimeIntervalPipelineState,
    WorkUnit,
)
from tidemark.core.catalog import Catalog
from tidemark.core.command import CommandRunner, PreparedCommand, prepare_command
from tidemark.core.listing import ListFunctionRegistry
from tidemark.core.store import PipelineDB, PipelineStore
from tidemark.engine.clock import DEFAULT_CLOCK, Clock
from tidemark.engine.resolvers import FileListResolver, SequenceRangeResolver, TimeIntervalResolver

logger = structlog.get_logger(__name__)


def _first_line(error: BaseException) -> str:
    message = str(error).strip()
    return message.splitlines()[0] if message else type(error).__name__


class PipelineExecutor:
    """Executes pipelines one unit of work at a time.

    Ownership checks are the caller's concern; the executor assumes the
    pipeline may be run by the connected identity.
    """

    def __init__(
        self,
        db: PipelineDB,
        store: PipelineStore,
        *,
        catalog: Catalog,
        runner: CommandRunner,
        list_functions: ListFunctionRegistry,
        lock_timeout_seconds: float,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self._db = db
        self._store = store
        self._runner = runner
        self._sequence = SequenceRangeResolver(catalog, lock_timeout_seconds=lock_timeout_seconds)
        self._time_interval = TimeIntervalResolver(clock=clock)
        self._file_list = FileListResolver(store, list_functions)

    def execute(self, pipeline: Pipeline, *, within: Connection | None = None) -> ExecutionOutcome:
        """Process everything that is currently safe to process.

        With within set, every unit runs on that connection and nothing is
        committed here; the caller's transaction decides. Otherwise each
        unit commits in its own transaction.

        Returns:
            SUCCESS with the committed units, or NO_OP when there was nothing new

        Raises:
            CommandFailedError: The command failed; earlier units stay committed
            ResolutionTimeoutError: Sequence writers did not finish in time
        """
        command = prepare_command(pipeline.command, pipeline.pipeline_type)
        kind = pipeline.pipeline_type
        match kind:
            case PipelineKind.SEQUENCE:
                units = self._execute_sequence(pipeline, command, within)
            case PipelineKind.TIME_INTERVAL:
                units = self._execute_time_interval(pipeline, command, within)
            case PipelineKind.FILE_LIST:
                units = self._execute_file_list(pipeline, command, within)
            case _:
                assert_never(kind)

        if not units:
            return ExecutionOutcome.no_op(pipeline.pipeline_name, kind)
        return ExecutionOutcome.success(pipeline.pipeline_name, kind, tuple(units))

    @contextmanager
    def _unit_of_work(self, within: Connection | None) -> Iterator[Connection]:
        if within is not None:
            yield within
            return
        with self._db.connection() as conn:
            yield conn

    def _run(
        self,
        conn: Connection,
        pipeline: Pipeline,
        command: PreparedCommand,
        unit: WorkUnit,
        params: list[Any],
        completed: list[WorkUnit],
    ) -> None:
        try:
            self._runner.run(conn, command, params)
        except Exception as e:
            logger.error(
                "pipeline_command_failed",
                pipeline=pipeline.pipeline_name,
                unit=unit.describe(),
                completed_units=len(completed),
                error=_first_line(e),
            )
            raise CommandFailedError(
                pipeline.pipeline_name,
                unit,
                completed_units=tuple(completed),
                reason=_first_line(e),
            ) from e

    # === Sequence ===

    def _execute_sequence(self, pipeline: Pipeline, command: PreparedCommand, within: Connection | None) -> list[WorkUnit]:
        name = pipeline.pipeline_name
        with self._unit_of_work(within) as conn:
            state = self._store.load_state(conn, pipeline, for_update=True)
            assert isinstance(state, SequencePipelineState)

            sequence_range = self._sequence.resolve(conn, state)
            if sequence_range is None:
                logger.info("pipeline_up_to_date", pipeline=name, kind=pipeline.pipeline_type.label)
                return []

            logger.info(
                "processing_sequence_range",
                pipeline=name,
                range_start=sequence_range.start,
                range_end=sequence_range.end,
            )
            self._run(conn, pipeline, command, sequence_range, [sequence_range.start, sequence_range.end], [])
            self._store.update_last_processed_sequence_number(conn, name, sequence_range.end)

        return [sequence_range]

    # === Time interval ===

    def _execute_time_interval(self, pipeline: Pipeline, command: PreparedCommand, within: Connection | None) -> list[WorkUnit]:
        name = pipeline.pipeline_name
        completed: list[WorkUnit] = []

        # Batched pipelines resolve once; non-batched ones commit one window
        # per transaction until no window is eligible.
        while True:
            with self._unit_of_work(within) as conn:
                state = self._store.load_state(conn, pipeline, for_update=True)
                assert isinstance(state, TimeIntervalPipelineState)

                windows = self._time_interval.resolve(state)
                if not windows:
                    break
                window = windows[0]

                logger.info(
                    "processing_time_range",
                    pipeline=name,
                    range_start=window.start.isoformat(),
                    range_end=window.end.isoformat(),
                )
                self._run(conn, pipeline, command, window, [window.start, window.end], completed)
                self._store.update_last_processed_time(conn, name, window.end)

            completed.append(window)
            if state.batched:
                break

        if not completed:
            logger.info("pipeline_up_to_date", pipeline=name, kind=pipeline.pipeline_type.label)
        return completed

    # === File list ===

    def _execute_file_list(self, pipeline: Pipeline, command: PreparedCommand, within: Connection | None) -> list[WorkUnit]:
        name = pipeline.pipeline_name

        with self._unit_of_work(within) as conn:
            state = self._store.load_state(conn, pipeline, for_update=True)
            assert isinstance(state, FileListPipelineState)
            file_list = self._file_list.resolve(conn, state)

        if not file_list.files:
            logger.info("no_files_to_process", pipeline=name)
            return []

        completed: list[WorkUnit] = []
        for batch in file_list.batches():
            with self._unit_of_work(within) as conn:
                # Re-lock and re-check: a concurrent run may have taken these files
                self._store.load_state(conn, pipeline, for_update=True)
                remaining = self._store.unprocessed(conn, name, batch.paths)
                if not remaining:
                    continue

                unit = FileBatch(paths=tuple(remaining), batched=batch.batched)
                if unit.batched:
                    logger.info("processing_file_batch", pipeline=name, file_count=len(unit.paths))
                    params: list[Any] = [list(unit.paths)]
                else:
                    logger.info("processing_file", pipeline=name, path=unit.paths[0])
                    params = [unit.paths[0]]

                self._run(conn, pipeline, command, unit, params, completed)
                self._store.insert_processed_files(conn, name, unit.paths)

            completed.append(unit)

        return completed
