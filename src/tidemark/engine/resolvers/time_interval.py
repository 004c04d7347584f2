# src/tidemark/engine/resolvers/time_interval.py
"""Window resolution for pipelines over fixed-width time intervals.

Windows are laid on a grid anchored at the pipeline's start time (or the
default anchor) and are half-open: [anchor + k*width, anchor + (k+1)*width).
A window is eligible once ``now >= window_end + min_delay``, giving late
rows time to arrive.
"""

from collections.abc import Iterator
from datetime import datetime, timedelta

from tidemark.contracts.pipeline import TimeIntervalPipelineState, TimeWindow
from tidemark.engine.clock import DEFAULT_CLOCK, Clock


class TimeIntervalResolver:
    """Computes the time windows of a pipeline that are ready to process."""

    def __init__(self, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._clock = clock

    def eligible_count(self, state: TimeIntervalPipelineState, now: datetime | None = None) -> int:
        """Number of whole windows past the watermark that are eligible at ``now``."""
        if now is None:
            now = self._clock.now()
        horizon = now - state.min_delay - state.next_boundary
        if horizon < timedelta(0):
            return 0
        return horizon // state.time_interval

    def eligible_windows(self, state: TimeIntervalPipelineState, now: datetime | None = None) -> Iterator[TimeWindow]:
        """Yield each eligible window in order."""
        start = state.next_boundary
        for _ in range(self.eligible_count(state, now)):
            yield TimeWindow(start=start, end=start + state.time_interval)
            start += state.time_interval

    def resolve(self, state: TimeIntervalPipelineState, now: datetime | None = None) -> list[TimeWindow]:
        """Windows for the next command invocation.

        Batched pipelines get every eligible window coalesced into one
        range [first.start, last.end). Non-batched pipelines get only the
        next eligible window; the executor resolves again after each one.
        Returns an empty list when no window is eligible.
        """
        count = self.eligible_count(state, now)
        if count == 0:
            return []
        start = state.next_boundary
        if state.batched:
            return [TimeWindow(start=start, end=start + count * state.time_interval)]
        return [TimeWindow(start=start, end=start + state.time_interval)]
