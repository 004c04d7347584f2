"""Shared contracts for cross-boundary data types.

Dataclasses, enums and exceptions that cross subsystem boundaries live
here. This package is a LEAF MODULE: it imports nothing from core or
engine, so it can be used by storage, resolvers and the CLI alike.

Import patterns:
    from tidemark.contracts import PipelineKind, SequenceRange, PipelineNotFoundError

    # Settings classes live in core, not here
    from tidemark.core.config import TidemarkSettings
"""

from tidemark.contracts.enums import OutcomeStatus, PipelineKind, RelationKind
from tidemark.contracts.errors import (
    CommandFailedError,
    InvalidPipelineConfigError,
    PipelineExistsError,
    PipelineNotFoundError,
    PipelinePermissionError,
    ResolutionTimeoutError,
    TidemarkError,
)
from tidemark.contracts.identity import Principal, ServicePrincipal
from tidemark.contracts.pipeline import (
    DEFAULT_TIME_ANCHOR,
    ExecutionOutcome,
    FileBatch,
    FileListPipelineState,
    Pipeline,
    PipelineState,
    SequencePipelineState,
    SequenceRange,
    TimeIntervalPipelineState,
    TimeWindow,
    WorkUnit,
)

__all__ = [
    "DEFAULT_TIME_ANCHOR",
    "CommandFailedError",
    "ExecutionOutcome",
    "FileBatch",
    "FileListPipelineState",
    "InvalidPipelineConfigError",
    "OutcomeStatus",
    "Pipeline",
    "PipelineExistsError",
    "PipelineKind",
    "PipelineNotFoundError",
    "PipelinePermissionError",
    "PipelineState",
    "Principal",
    "RelationKind",
    "ResolutionTimeoutError",
    "SequencePipelineState",
    "SequenceRange",
    "ServicePrincipal",
    "TidemarkError",
    "TimeIntervalPipelineState",
    "TimeWindow",
    "WorkUnit",
]
