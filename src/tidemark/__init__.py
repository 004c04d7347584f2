"""
Tidemark: incremental processing pipelines over database data.

Resolves safe ranges of newly-arrived data (sequence values, time intervals
or listed files), runs a user command over exactly that range and advances
a durable watermark in the same transaction.
"""

__version__ = "0.1.0"
