# src/tidemark/core/store/schema.py
"""SQLAlchemy table definitions for the pipeline registry.

Uses SQLAlchemy Core (not ORM) for explicit control over queries,
row locking and compatibility with SQLite and PostgreSQL.

Every kind-specific table references pipelines.pipeline_name with
ON DELETE CASCADE, so dropping a pipeline removes its watermark,
configuration and ledger rows in the same statement.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Interval,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()


def _pipeline_name_fk() -> Column[str]:
    return Column(
        "pipeline_name",
        String(256),
        ForeignKey("pipelines.pipeline_name", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )


# === Registry ===

pipelines_table = Table(
    "pipelines",
    metadata,
    Column("pipeline_name", String(256), primary_key=True),
    Column("pipeline_type", String(1), nullable=False, server_default="s"),
    Column("owner_id", String(128), nullable=False),
    # Counter, table or other object the pipeline reads from.
    # NULL for time interval pipelines without a source and for file lists.
    Column("source_relation", String(512)),
    Column("command", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("pipeline_type IN ('s', 't', 'f')", name="ck_pipelines_pipeline_type"),
    Index("ix_pipelines_source_relation", "source_relation"),
)

# === Sequence pipelines: track new rows by the safe range of counter values ===

sequence_pipelines_table = Table(
    "sequence_pipelines",
    metadata,
    _pipeline_name_fk(),
    Column("sequence_name", String(512), nullable=False),
    # NULL until the first successful run (start from the counter origin)
    Column("last_processed_sequence_number", BigInteger),
    PrimaryKeyConstraint("pipeline_name"),
)

# === Time interval pipelines: process fixed-width intervals after a delay ===

time_interval_pipelines_table = Table(
    "time_interval_pipelines",
    metadata,
    _pipeline_name_fk(),
    Column("time_interval", Interval, nullable=False),
    Column("start_time", DateTime(timezone=True)),
    Column("min_delay", Interval, nullable=False),
    Column("batched", Boolean, nullable=False, default=False),
    # NULL until the first successful run (start from the anchor)
    Column("last_processed_time", DateTime(timezone=True)),
    PrimaryKeyConstraint("pipeline_name"),
)

# === File list pipelines: process files not yet in the ledger ===

file_list_pipelines_table = Table(
    "file_list_pipelines",
    metadata,
    _pipeline_name_fk(),
    Column("file_pattern", Text, nullable=False),
    Column("batched", Boolean, nullable=False, default=False),
    Column("list_function", String(256), nullable=False),
    # NULL means one unbounded batch
    Column("max_batch_size", Integer),
    CheckConstraint("max_batch_size IS NULL OR max_batch_size > 0", name="ck_file_list_pipelines_max_batch_size"),
    PrimaryKeyConstraint("pipeline_name"),
)

# === Ledger of processed files (append-only) ===

processed_files_table = Table(
    "processed_files",
    metadata,
    _pipeline_name_fk(),
    Column("path", Text, nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("pipeline_name", "path"),
)

# Kind-specific tables, in dependency order
STATE_TABLES: tuple[Table, ...] = (
    sequence_pipelines_table,
    time_interval_pipelines_table,
    file_list_pipelines_table,
    processed_files_table,
)
