# src/tidemark/core/store/__init__.py
"""Store: durable registry, watermarks and processed-file ledger.

Primary API:
    PipelineDB - Database connection management
    PipelineStore - Registry, watermark and ledger access (takes an open connection)

Tables:
    pipelines - registry (name, kind, owner, source, command)
    sequence_pipelines / time_interval_pipelines / file_list_pipelines - per-kind state
    processed_files - append-only ledger of processed paths
"""

from tidemark.core.store.database import PipelineDB, SchemaCompatibilityError
from tidemark.core.store.principal import elevated
from tidemark.core.store.schema import (
    file_list_pipelines_table,
    metadata,
    pipelines_table,
    processed_files_table,
    sequence_pipelines_table,
    time_interval_pipelines_table,
)
from tidemark.core.store.watermarks import PipelineStore, WatermarkRowMissingError

__all__ = [
    "PipelineDB",
    "PipelineStore",
    "SchemaCompatibilityError",
    "WatermarkRowMissingError",
    "elevated",
    "file_list_pipelines_table",
    "metadata",
    "pipelines_table",
    "processed_files_table",
    "sequence_pipelines_table",
    "time_interval_pipelines_table",
]
