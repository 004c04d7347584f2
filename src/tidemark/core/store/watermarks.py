# src/tidemark/core/store/watermarks.py
"""PipelineStore: data access for the registry, watermarks and ledger.

Pure data access, no policy. Every method takes the caller's open
connection so the caller decides the transaction boundary: the executor
runs the user command and the watermark advance on the same connection,
and they commit together.

Writes to engine-internal tables run as the service principal. Definition
lookups (get_pipeline, list_pipelines) run under the caller's identity so
they respect the caller's own visibility.
"""

from collections.abc import Collection, Iterable, Sequence
from datetime import datetime
from typing import assert_never

from sqlalchemy import Connection, delete, select, update
from sqlalchemy.exc import IntegrityError

from tidemark.contracts.enums import PipelineKind
from tidemark.contracts.errors import PipelineExistsError, PipelineNotFoundError
from tidemark.contracts.identity import ServicePrincipal
from tidemark.contracts.pipeline import (
    FileListPipelineState,
    Pipeline,
    PipelineState,
    SequencePipelineState,
    TimeIntervalPipelineState,
)
from tidemark.core.store._helpers import now
from tidemark.core.store.principal import elevated
from tidemark.core.store.repositories import (
    FileListPipelineRepository,
    PipelineRepository,
    SequencePipelineRepository,
    TimeIntervalPipelineRepository,
)
from tidemark.core.store.schema import (
    file_list_pipelines_table,
    pipelines_table,
    processed_files_table,
    sequence_pipelines_table,
    time_interval_pipelines_table,
)


# Bound on bind parameters per ledger lookup (SQLite limits variables per statement)
_IN_CLAUSE_CHUNK_SIZE = 500


class WatermarkRowMissingError(Exception):
    """Raised when a registered pipeline has no state row for its kind.

    The registry and state tables are written in one transaction and
    deleted by cascade, so this indicates corruption, not user error.
    """

    pass


class PipelineStore:
    """Registry, watermark and ledger access for pipelines."""

    def __init__(self, service: ServicePrincipal) -> None:
        """Initialize store.

        Args:
            service: Identity used for engine-internal reads and writes
        """
        self._service = service
        self._pipelines = PipelineRepository()
        self._sequence = SequencePipelineRepository()
        self._time_interval = TimeIntervalPipelineRepository()
        self._file_list = FileListPipelineRepository()

    # === Registry ===

    def insert_pipeline(self, conn: Connection, pipeline: Pipeline) -> None:
        """Add a pipeline to the registry.

        Raises:
            PipelineExistsError: If the name is already taken
        """
        try:
            with elevated(conn, self._service):
                conn.execute(
                    pipelines_table.insert().values(
                        pipeline_name=pipeline.pipeline_name,
                        pipeline_type=pipeline.pipeline_type.value,
                        owner_id=pipeline.owner_id,
                        source_relation=pipeline.source_relation,
                        command=pipeline.command,
                        created_at=pipeline.created_at or now(),
                    )
                )
        except IntegrityError as e:
            raise PipelineExistsError(pipeline.pipeline_name) from e

    def find_pipeline(self, conn: Connection, pipeline_name: str) -> Pipeline | None:
        """Look up a pipeline, returning None when it does not exist."""
        # Not elevated: definition lookups keep the caller's permissions
        row = conn.execute(select(pipelines_table).where(pipelines_table.c.pipeline_name == pipeline_name)).fetchone()
        if row is None:
            return None
        return self._pipelines.load(row)

    def get_pipeline(self, conn: Connection, pipeline_name: str) -> Pipeline:
        """Look up a pipeline.

        Raises:
            PipelineNotFoundError: If no pipeline has that name
        """
        pipeline = self.find_pipeline(conn, pipeline_name)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_name)
        return pipeline

    def list_pipelines(self, conn: Connection) -> list[Pipeline]:
        """All pipelines visible to the caller, ordered by name."""
        rows = conn.execute(select(pipelines_table).order_by(pipelines_table.c.pipeline_name)).fetchall()
        return [self._pipelines.load(row) for row in rows]

    def pipelines_for_source(self, conn: Connection, source_names: Collection[str]) -> list[str]:
        """Names of pipelines reading from any of the given source objects.

        Sequence pipelines match on their owning table and on the counter itself.
        """
        names = list(source_names)
        if not names:
            return []
        by_source = select(pipelines_table.c.pipeline_name).where(pipelines_table.c.source_relation.in_(names))
        by_counter = select(sequence_pipelines_table.c.pipeline_name).where(sequence_pipelines_table.c.sequence_name.in_(names))
        with elevated(conn, self._service):
            rows = conn.execute(by_source.union(by_counter)).fetchall()
        return sorted(row.pipeline_name for row in rows)

    def delete_pipeline(self, conn: Connection, pipeline_name: str) -> bool:
        """Remove a pipeline; its state and ledger rows go with it by cascade.

        Returns:
            True if a pipeline was deleted
        """
        with elevated(conn, self._service):
            result = conn.execute(delete(pipelines_table).where(pipelines_table.c.pipeline_name == pipeline_name))
        return result.rowcount > 0

    # === Kind-specific state ===

    def initialize_state(self, conn: Connection, state: PipelineState) -> None:
        """Insert the initial state row for a newly registered pipeline."""
        with elevated(conn, self._service):
            match state:
                case SequencePipelineState():
                    conn.execute(
                        sequence_pipelines_table.insert().values(
                            pipeline_name=state.pipeline_name,
                            sequence_name=state.sequence_name,
                            last_processed_sequence_number=state.last_processed_sequence_number,
                        )
                    )
                case TimeIntervalPipelineState():
                    conn.execute(
                        time_interval_pipelines_table.insert().values(
                            pipeline_name=state.pipeline_name,
                            time_interval=state.time_interval,
                            start_time=state.start_time,
                            min_delay=state.min_delay,
                            batched=state.batched,
                            last_processed_time=state.last_processed_time,
                        )
                    )
                case FileListPipelineState():
                    conn.execute(
                        file_list_pipelines_table.insert().values(
                            pipeline_name=state.pipeline_name,
                            file_pattern=state.file_pattern,
                            batched=state.batched,
                            list_function=state.list_function,
                            max_batch_size=None if state.unbounded else state.max_batch_size,
                        )
                    )
                case _:
                    assert_never(state)

    def load_state(self, conn: Connection, pipeline: Pipeline, *, for_update: bool = False) -> PipelineState:
        """Load the kind-specific state row of a pipeline.

        Args:
            conn: Open connection
            pipeline: Registered pipeline
            for_update: Lock the row until the transaction ends. Concurrent
                invocations of the same pipeline block here, so they never
                resolve overlapping units. SQLite has no row locks;
                there every transaction starts with BEGIN IMMEDIATE (see
                PipelineDB), so the write lock is already held.

        Raises:
            WatermarkRowMissingError: If the state row does not exist
        """
        kind = pipeline.pipeline_type
        match kind:
            case PipelineKind.SEQUENCE:
                table = sequence_pipelines_table
            case PipelineKind.TIME_INTERVAL:
                table = time_interval_pipelines_table
            case PipelineKind.FILE_LIST:
                table = file_list_pipelines_table
            case _:
                assert_never(kind)

        query = select(table).where(table.c.pipeline_name == pipeline.pipeline_name)
        if for_update:
            query = query.with_for_update()

        with elevated(conn, self._service):
            row = conn.execute(query).fetchone()

        if row is None:
            raise WatermarkRowMissingError(f"pipeline {pipeline.pipeline_name} has no {kind.label} state row")

        match kind:
            case PipelineKind.SEQUENCE:
                return self._sequence.load(row)
            case PipelineKind.TIME_INTERVAL:
                return self._time_interval.load(row)
            case PipelineKind.FILE_LIST:
                return self._file_list.load(row)
            case _:
                assert_never(kind)

    # === Watermarks ===

    def update_last_processed_sequence_number(self, conn: Connection, pipeline_name: str, value: int | None) -> None:
        """Set the sequence watermark (None rewinds to the counter origin)."""
        with elevated(conn, self._service):
            result = conn.execute(
                update(sequence_pipelines_table)
                .where(sequence_pipelines_table.c.pipeline_name == pipeline_name)
                .values(last_processed_sequence_number=value)
            )
        if result.rowcount == 0:
            raise WatermarkRowMissingError(f"pipeline {pipeline_name} has no sequence state row")

    def update_last_processed_time(self, conn: Connection, pipeline_name: str, value: datetime | None) -> None:
        """Set the time interval watermark (None rewinds to the anchor)."""
        with elevated(conn, self._service):
            result = conn.execute(
                update(time_interval_pipelines_table)
                .where(time_interval_pipelines_table.c.pipeline_name == pipeline_name)
                .values(last_processed_time=value)
            )
        if result.rowcount == 0:
            raise WatermarkRowMissingError(f"pipeline {pipeline_name} has no time interval state row")

    # === Processed file ledger ===

    def insert_processed_files(self, conn: Connection, pipeline_name: str, paths: Iterable[str]) -> int:
        """Append paths to the ledger.

        Returns:
            Number of ledger rows written
        """
        processed_at = now()
        values = [{"pipeline_name": pipeline_name, "path": path, "processed_at": processed_at} for path in paths]
        if not values:
            return 0
        with elevated(conn, self._service):
            conn.execute(processed_files_table.insert(), values)
        return len(values)

    def processed_files(self, conn: Connection, pipeline_name: str) -> list[str]:
        """Ledger contents for a pipeline, ordered by path."""
        with elevated(conn, self._service):
            rows = conn.execute(
                select(processed_files_table.c.path)
                .where(processed_files_table.c.pipeline_name == pipeline_name)
                .order_by(processed_files_table.c.path)
            ).fetchall()
        return [row.path for row in rows]

    def unprocessed(self, conn: Connection, pipeline_name: str, paths: Sequence[str]) -> list[str]:
        """Paths not yet in the ledger, in their given order, without duplicates."""
        unique = list(dict.fromkeys(paths))
        processed: set[str] = set()
        with elevated(conn, self._service):
            for offset in range(0, len(unique), _IN_CLAUSE_CHUNK_SIZE):
                chunk = unique[offset : offset + _IN_CLAUSE_CHUNK_SIZE]
                rows = conn.execute(
                    select(processed_files_table.c.path).where(
                        processed_files_table.c.pipeline_name == pipeline_name,
                        processed_files_table.c.path.in_(chunk),
                    )
                ).fetchall()
                processed.update(row.path for row in rows)
        return [path for path in unique if path not in processed]

    def remove_processed_files(self, conn: Connection, pipeline_name: str) -> int:
        """Clear the ledger for a pipeline.

        Returns:
            Number of ledger rows removed
        """
        with elevated(conn, self._service):
            result = conn.execute(delete(processed_files_table).where(processed_files_table.c.pipeline_name == pipeline_name))
        return result.rowcount
