"""Repository layer for registry rows.

Handles the seam between SQLAlchemy rows (strings, naive SQLite datetimes)
and domain objects (strict enums, UTC-aware datetimes). This is NOT a trust
boundary: the registry is our own data, so bad values crash.
"""

from typing import Any

from sqlalchemy.engine import Row as SARow

from tidemark.contracts.enums import PipelineKind
from tidemark.contracts.pipeline import (
    FileListPipelineState,
    Pipeline,
    SequencePipelineState,
    TimeIntervalPipelineState,
)
from tidemark.core.store._helpers import as_utc, coerce_enum


class PipelineRepository:
    """Repository for Pipeline records."""

    def load(self, row: SARow[Any]) -> Pipeline:
        """Load Pipeline from database row.

        Converts the type character to PipelineKind. Crashes on invalid data.
        """
        return Pipeline(
            pipeline_name=row.pipeline_name,
            pipeline_type=coerce_enum(row.pipeline_type, PipelineKind),
            owner_id=row.owner_id,
            source_relation=row.source_relation,
            command=row.command,
            created_at=as_utc(row.created_at),
        )


class SequencePipelineRepository:
    """Repository for sequence watermark rows."""

    def load(self, row: SARow[Any]) -> SequencePipelineState:
        return SequencePipelineState(
            pipeline_name=row.pipeline_name,
            sequence_name=row.sequence_name,
            last_processed_sequence_number=row.last_processed_sequence_number,
        )


class TimeIntervalPipelineRepository:
    """Repository for time interval watermark rows."""

    def load(self, row: SARow[Any]) -> TimeIntervalPipelineState:
        return TimeIntervalPipelineState(
            pipeline_name=row.pipeline_name,
            time_interval=row.time_interval,
            min_delay=row.min_delay,
            batched=bool(row.batched),
            start_time=as_utc(row.start_time),
            last_processed_time=as_utc(row.last_processed_time),
        )


class FileListPipelineRepository:
    """Repository for file list configuration rows."""

    def load(self, row: SARow[Any]) -> FileListPipelineState:
        return FileListPipelineState(
            pipeline_name=row.pipeline_name,
            file_pattern=row.file_pattern,
            batched=bool(row.batched),
            list_function=row.list_function,
            max_batch_size=row.max_batch_size,
        )
