"""Status codes and kinds used across subsystem boundaries."""

from enum import StrEnum


class PipelineKind(StrEnum):
    """Kind of an incremental pipeline.

    Stored in the database (pipelines.pipeline_type) as a single character.
    Immutable after creation.
    """

    SEQUENCE = "s"
    TIME_INTERVAL = "t"
    FILE_LIST = "f"

    @property
    def label(self) -> str:
        """Human-readable name used in CLI output and logs."""
        return _KIND_LABELS[self]

    @property
    def command_arity(self) -> int:
        """Number of positional parameters the pipeline command receives."""
        if self is PipelineKind.FILE_LIST:
            return 1
        return 2


_KIND_LABELS = {
    PipelineKind.SEQUENCE: "sequence",
    PipelineKind.TIME_INTERVAL: "time_interval",
    PipelineKind.FILE_LIST: "file_list",
}


class OutcomeStatus(StrEnum):
    """Result of a single pipeline execution.

    Failures are not an outcome status: they raise CommandFailedError.
    """

    SUCCESS = "success"
    NO_OP = "no_op"


class RelationKind(StrEnum):
    """Kind of a database object referenced as a pipeline source."""

    TABLE = "table"
    SEQUENCE = "sequence"
    OTHER = "other"
