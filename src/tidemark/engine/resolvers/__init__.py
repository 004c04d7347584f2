# src/tidemark/engine/resolvers/__init__.py
"""Safe-range resolution strategies, one per pipeline kind."""

from tidemark.engine.resolvers.file_list import FileList, FileListResolver
from tidemark.engine.resolvers.sequence import SequenceRangeResolver
from tidemark.engine.resolvers.time_interval import TimeIntervalResolver

__all__ = [
    "FileList",
    "FileListResolver",
    "SequenceRangeResolver",
    "TimeIntervalResolver",
]
