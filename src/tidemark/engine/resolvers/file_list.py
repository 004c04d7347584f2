# src/tidemark/engine/resolvers/file_list.py
"""Resolution of unprocessed files for file list pipelines.

The list function is called once per invocation. Its output is diffed
against the processed-file ledger; what remains is split into the units
passed to the command.
"""

from collections.abc import Iterator
from dataclasses import dataclass

import structlog
from sqlalchemy import Connection

from tidemark.contracts.pipeline import FileBatch, FileListPipelineState
from tidemark.core.listing import ListFunctionRegistry
from tidemark.core.store import PipelineStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FileList:
    """Unprocessed files of a pipeline, in listing order.

    Attributes:
        files: Paths not yet in the ledger, without duplicates
        batched: Pass files to the command as an array rather than one by one
        max_batch_size: Largest array passed in one call (None = all at once)
    """

    files: tuple[str, ...]
    batched: bool
    max_batch_size: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size is not None and self.max_batch_size <= 0:
            raise ValueError(f"max_batch_size must be positive, got {self.max_batch_size}")

    def __len__(self) -> int:
        return len(self.files)

    def batches(self) -> Iterator[FileBatch]:
        """Split into command invocations, preserving order."""
        if not self.batched:
            for path in self.files:
                yield FileBatch(paths=(path,), batched=False)
            return

        size = self.max_batch_size or len(self.files)
        for offset in range(0, len(self.files), size):
            yield FileBatch(paths=self.files[offset : offset + size])


class FileListResolver:
    """Lists candidate files and subtracts the ones already processed."""

    def __init__(self, store: PipelineStore, list_functions: ListFunctionRegistry) -> None:
        self._store = store
        self._list_functions = list_functions

    def resolve(self, conn: Connection, state: FileListPipelineState) -> FileList:
        list_function = self._list_functions.get(conn, state.list_function)
        listed = list_function(conn, state.file_pattern)
        files = self._store.unprocessed(conn, state.pipeline_name, listed)

        logger.debug(
            "file_list_resolved",
            pipeline=state.pipeline_name,
            listed=len(listed),
            unprocessed=len(files),
        )
        return FileList(
            files=tuple(files),
            batched=state.batched,
            max_batch_size=None if state.unbounded else state.max_batch_size,
        )
