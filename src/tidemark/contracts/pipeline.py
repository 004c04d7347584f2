"""Pipeline definitions, watermark state and units of work.

A pipeline is a registry row (Pipeline) plus exactly one kind-specific
state row. The state variants form a closed set; code dispatching on them
uses ``match`` with ``assert_never`` so adding a kind fails type checking
everywhere it is not handled.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TypeAlias

from tidemark.contracts.enums import OutcomeStatus, PipelineKind

# Anchor for time interval pipelines created without a start time.
# Matches the zero point of PostgreSQL timestamps.
DEFAULT_TIME_ANCHOR = datetime(2000, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Pipeline:
    """A registered pipeline.

    Attributes:
        pipeline_name: Globally unique name
        pipeline_type: Kind, fixed at creation
        owner_id: Name of the principal that created the pipeline
        source_relation: Counter/table the pipeline reads from (None when the
            kind has no source object)
        command: User command text, opaque to the engine
    """

    pipeline_name: str
    pipeline_type: PipelineKind
    owner_id: str
    source_relation: str | None
    command: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class SequencePipelineState:
    """Watermark for a pipeline over a monotonic counter.

    last_processed_sequence_number is None until the first successful run,
    meaning the next range starts at the counter origin.
    """

    pipeline_name: str
    sequence_name: str
    last_processed_sequence_number: int | None = None


@dataclass(frozen=True)
class TimeIntervalPipelineState:
    """Watermark and configuration for a pipeline over fixed time intervals."""

    pipeline_name: str
    time_interval: timedelta
    min_delay: timedelta
    batched: bool
    start_time: datetime | None = None
    last_processed_time: datetime | None = None

    def __post_init__(self) -> None:
        if self.time_interval <= timedelta(0):
            raise ValueError(f"time_interval must be positive, got {self.time_interval}")
        if self.min_delay < timedelta(0):
            raise ValueError(f"min_delay cannot be negative, got {self.min_delay}")
        if not self.batched and self.start_time is None:
            raise ValueError("start_time is required for non-batched pipelines")

    @property
    def anchor(self) -> datetime:
        """Origin of the interval grid."""
        if self.start_time is None:
            return DEFAULT_TIME_ANCHOR
        return self.start_time

    @property
    def next_boundary(self) -> datetime:
        """Start of the first interval that has not been processed."""
        if self.last_processed_time is None:
            return self.anchor
        return self.last_processed_time


@dataclass(frozen=True)
class FileListPipelineState:
    """Configuration for a pipeline over an externally listed set of files.

    The processed-file ledger is stored separately; this row never changes
    after creation.
    """

    pipeline_name: str
    file_pattern: str
    batched: bool
    list_function: str
    max_batch_size: int | None = None

    @property
    def unbounded(self) -> bool:
        """Whether a batched run passes all unprocessed files in one call."""
        return self.max_batch_size is None or self.max_batch_size <= 0


PipelineState: TypeAlias = SequencePipelineState | TimeIntervalPipelineState | FileListPipelineState


@dataclass(frozen=True)
class SequenceRange:
    """Inclusive range of counter values that are safe to process."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"range start {self.start} is past range end {self.end}")

    def describe(self) -> str:
        return f"sequence range {self.start}..{self.end}"


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range [start, end) that is safe to process."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"window start {self.start} must precede window end {self.end}")

    def describe(self) -> str:
        return f"time range {self.start.isoformat()}..{self.end.isoformat()}"


@dataclass(frozen=True)
class FileBatch:
    """Ordered files passed to one command invocation.

    batched=False means a single file passed as a scalar parameter.
    """

    paths: tuple[str, ...]
    batched: bool = True

    def __post_init__(self) -> None:
        if not self.paths:
            raise ValueError("file batch cannot be empty")
        if not self.batched and len(self.paths) != 1:
            raise ValueError("a non-batched file unit holds exactly one path")

    def describe(self) -> str:
        if not self.batched:
            return f"file {self.paths[0]}"
        return f"batch of {len(self.paths)} files starting at {self.paths[0]}"


WorkUnit: TypeAlias = SequenceRange | TimeWindow | FileBatch


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of executing a pipeline once.

    SUCCESS carries the units that were committed, in order. NO_OP means
    there was nothing new to process and no state changed.
    """

    pipeline_name: str
    kind: PipelineKind
    status: OutcomeStatus
    units: tuple[WorkUnit, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.status == OutcomeStatus.SUCCESS and not self.units:
            raise ValueError("a successful outcome must list the processed units")
        if self.status == OutcomeStatus.NO_OP and self.units:
            raise ValueError("a no-op outcome cannot list processed units")

    @classmethod
    def no_op(cls, pipeline_name: str, kind: PipelineKind) -> "ExecutionOutcome":
        return cls(pipeline_name=pipeline_name, kind=kind, status=OutcomeStatus.NO_OP)

    @classmethod
    def success(cls, pipeline_name: str, kind: PipelineKind, units: tuple[WorkUnit, ...]) -> "ExecutionOutcome":
        return cls(pipeline_name=pipeline_name, kind=kind, status=OutcomeStatus.SUCCESS, units=units)
