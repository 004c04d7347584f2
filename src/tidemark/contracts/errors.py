"""Exceptions raised across the pipeline engine.

Configuration and lookup errors are raised before any state changes.
Command failures roll back only the unit of work being processed.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tidemark.contracts.pipeline import WorkUnit


class TidemarkError(Exception):
    """Base class for all pipeline engine errors."""

    pass


class PipelineNotFoundError(TidemarkError):
    """Raised when a pipeline name does not exist in the registry."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        super().__init__(f'no such pipeline named "{pipeline_name}"')


class PipelinePermissionError(TidemarkError):
    """Raised when the caller is neither the pipeline owner nor a superuser."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        super().__init__(f"permission denied for pipeline {pipeline_name}")


class InvalidPipelineConfigError(TidemarkError):
    """Raised when a pipeline definition cannot be accepted.

    Examples: unsupported source object kind, missing start_time for a
    non-batched time interval pipeline, a table with no or several owned
    sequences, a command referencing parameters the kind does not supply.
    """

    pass


class PipelineExistsError(InvalidPipelineConfigError):
    """Raised when creating a pipeline whose name is already taken."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        super().__init__(f'pipeline "{pipeline_name}" already exists')


class ResolutionTimeoutError(TidemarkError):
    """Raised when waiting for in-flight writers exceeds the lock-wait bound.

    No watermark change has happened. The next invocation resolves again.
    """

    def __init__(self, pipeline_name: str, relation: str, timeout_seconds: float) -> None:
        self.pipeline_name = pipeline_name
        self.relation = relation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"pipeline {pipeline_name}: timed out after {timeout_seconds}s waiting for concurrent writers of {relation}"
        )


class CommandFailedError(TidemarkError):
    """Raised when the user command fails for a unit of work.

    The failed unit was rolled back, so its watermark or ledger entries
    were not written. Units that committed before the failure are listed
    in completed_units. The triggering exception is chained as __cause__.

    Attributes:
        pipeline_name: Pipeline whose command failed
        unit: Unit of work that was being processed
        completed_units: Units committed earlier in the same invocation
    """

    def __init__(
        self,
        pipeline_name: str,
        unit: "WorkUnit",
        *,
        completed_units: tuple["WorkUnit", ...] = (),
        reason: str | None = None,
    ) -> None:
        self.pipeline_name = pipeline_name
        self.unit = unit
        self.completed_units = completed_units
        message = f"pipeline {pipeline_name}: command failed for {unit.describe()}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
