# src/tidemark/engine/resolvers/sequence.py
"""Safe range resolution for pipelines over a monotonic counter.

Values are drawn from a counter before the rows carrying them commit, and
transactions commit out of order. A range ending at the last drawn value
is only safe once every transaction that may still insert a lower value
has finished. The resolver reads the last drawn value first and then
waits for all writers of the owning table that started before that read.

The wait relies on READ COMMITTED: the command that processes the range
runs in later statements and sees everything those writers committed.
"""

import structlog
from sqlalchemy import Connection

from tidemark.contracts.errors import ResolutionTimeoutError
from tidemark.contracts.pipeline import SequencePipelineState, SequenceRange
from tidemark.core.catalog import Catalog, LockWaitTimeoutError

logger = structlog.get_logger(__name__)


class SequenceRangeResolver:
    """Computes the next range of counter values that is safe to process."""

    def __init__(self, catalog: Catalog, *, lock_timeout_seconds: float) -> None:
        """Initialize resolver.

        Args:
            catalog: Backend catalog queries
            lock_timeout_seconds: Upper bound for waiting on in-flight writers
        """
        self._catalog = catalog
        self._lock_timeout_seconds = lock_timeout_seconds

    def range_start(self, conn: Connection, state: SequencePipelineState) -> int:
        """First value of the next range: one past the watermark, or the counter origin."""
        if state.last_processed_sequence_number is None:
            return self._catalog.counter_origin(conn, state.sequence_name)
        return state.last_processed_sequence_number + 1

    def resolve(self, conn: Connection, state: SequencePipelineState) -> SequenceRange | None:
        """Resolve the next safe range.

        Returns:
            Inclusive range, or None when no new values were drawn

        Raises:
            ResolutionTimeoutError: If in-flight writers did not finish within
                the lock timeout
        """
        range_start = self.range_start(conn, state)

        # Must be read before waiting: anything drawn later is out of range
        range_end = self._catalog.last_drawn_value(conn, state.sequence_name)

        if range_end is None or range_start > range_end:
            logger.debug(
                "sequence_range_empty",
                pipeline=state.pipeline_name,
                range_start=range_start,
                last_drawn=range_end,
            )
            return None

        owner = self._catalog.sequence_owner(conn, state.sequence_name)
        if owner is None:
            # Ownership was removed after creation; nothing identifies the writers
            logger.warning(
                "sequence_owner_missing",
                pipeline=state.pipeline_name,
                sequence=state.sequence_name,
            )
        else:
            try:
                self._catalog.wait_for_writers(conn, owner, self._lock_timeout_seconds)
            except LockWaitTimeoutError as e:
                raise ResolutionTimeoutError(state.pipeline_name, owner, self._lock_timeout_seconds) from e

        return SequenceRange(start=range_start, end=range_end)
