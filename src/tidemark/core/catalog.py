# src/tidemark/core/catalog.py
"""Database catalog introspection for pipeline sources.

Each supported backend answers the same questions:
- what kind of object does a name refer to, under its canonical name
- which counter a table owns, and which table owns a counter
- the counter's origin and last drawn value
- how to wait until every in-flight writer of a table has finished
- who the connected caller is

PostgreSQL counters are sequences. SQLite counters are AUTOINCREMENT
tables, tracked by name in sqlite_sequence.
"""

import getpass
from typing import Any, Protocol

import structlog
from sqlalchemy import Connection, text
from sqlalchemy.engine import Row
from sqlalchemy.exc import OperationalError

from tidemark.contracts.enums import RelationKind
from tidemark.contracts.identity import Principal

logger = structlog.get_logger(__name__)

# SQLSTATE raised by PostgreSQL when lock_timeout expires
_LOCK_NOT_AVAILABLE = "55P03"


class LockWaitTimeoutError(Exception):
    """Raised when waiting for writers of a relation exceeds the lock timeout."""

    def __init__(self, relation: str, timeout_seconds: float) -> None:
        self.relation = relation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"lock wait on {relation} exceeded {timeout_seconds}s")


class Catalog(Protocol):
    """Backend-specific catalog queries used by pipeline creation and resolution."""

    def resolve_relation(self, conn: Connection, name: str) -> tuple[str, RelationKind] | None:
        """Canonical name and kind of a relation, or None if it does not exist."""
        ...

    def sequence_owner(self, conn: Connection, sequence_name: str) -> str | None:
        """Table owning a sequence, or None if the sequence is free-standing."""
        ...

    def owned_sequences(self, conn: Connection, table_name: str) -> list[str]:
        """Counters owned by a table."""
        ...

    def counter_origin(self, conn: Connection, sequence_name: str) -> int:
        """First value a counter produces."""
        ...

    def last_drawn_value(self, conn: Connection, sequence_name: str) -> int | None:
        """Highest value drawn from the counter so far, committed or not; None if none drawn."""
        ...

    def wait_for_writers(self, conn: Connection, table_name: str, timeout_seconds: float) -> None:
        """Block until transactions writing to the table when called have finished.

        Raises:
            LockWaitTimeoutError: If the wait exceeds timeout_seconds
        """
        ...

    def source_name_candidates(self, conn: Connection, name: str) -> set[str]:
        """Canonical names a user-supplied name may refer to.

        Works from the name alone, so it also answers for objects that have
        already been dropped.
        """
        ...

    def current_principal(self, conn: Connection) -> Principal:
        """Identity of the connected caller."""
        ...


def _sqlstate(error: OperationalError) -> str | None:
    """SQLSTATE of a wrapped DBAPI error (psycopg 3 and psycopg2 spell it differently)."""
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


class PostgresCatalog:
    """Catalog queries against pg_catalog."""

    # Dependency types linking a sequence to its table: 'a' for serial /
    # OWNED BY, 'i' for identity columns.
    _OWNED_DEPTYPES = "('a', 'i')"

    def _qualified(self, conn: Connection, schema: str, name: str) -> str:
        preparer = conn.dialect.identifier_preparer
        return f"{preparer.quote_schema(schema)}.{preparer.quote(name)}"

    def _describe(self, conn: Connection, name: str) -> Row[Any] | None:
        return conn.execute(
            text(
                "SELECT n.nspname, c.relname, c.relkind "
                "FROM pg_catalog.pg_class c "
                "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
                "WHERE c.oid = pg_catalog.to_regclass(:name)"
            ),
            {"name": name},
        ).fetchone()

    def resolve_relation(self, conn: Connection, name: str) -> tuple[str, RelationKind] | None:
        row = self._describe(conn, name)
        if row is None:
            return None
        if row.relkind == "S":
            kind = RelationKind.SEQUENCE
        elif row.relkind in ("r", "p", "f"):
            kind = RelationKind.TABLE
        else:
            kind = RelationKind.OTHER
        return self._qualified(conn, row.nspname, row.relname), kind

    def sequence_owner(self, conn: Connection, sequence_name: str) -> str | None:
        row = conn.execute(
            text(
                "SELECT n.nspname, c.relname "
                "FROM pg_catalog.pg_depend d "
                "JOIN pg_catalog.pg_class c ON c.oid = d.refobjid "
                "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
                "WHERE d.classid = 'pg_catalog.pg_class'::pg_catalog.regclass "
                "AND d.refclassid = 'pg_catalog.pg_class'::pg_catalog.regclass "
                "AND d.objid = pg_catalog.to_regclass(:name) "
                f"AND d.deptype IN {self._OWNED_DEPTYPES}"
            ),
            {"name": sequence_name},
        ).fetchone()
        if row is None:
            return None
        return self._qualified(conn, row.nspname, row.relname)

    def owned_sequences(self, conn: Connection, table_name: str) -> list[str]:
        rows = conn.execute(
            text(
                "SELECT n.nspname, c.relname "
                "FROM pg_catalog.pg_depend d "
                "JOIN pg_catalog.pg_class c ON c.oid = d.objid "
                "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
                "WHERE d.classid = 'pg_catalog.pg_class'::pg_catalog.regclass "
                "AND d.refclassid = 'pg_catalog.pg_class'::pg_catalog.regclass "
                "AND d.refobjid = pg_catalog.to_regclass(:name) "
                "AND c.relkind = 'S' "
                f"AND d.deptype IN {self._OWNED_DEPTYPES} "
                "ORDER BY n.nspname, c.relname"
            ),
            {"name": table_name},
        ).fetchall()
        return [self._qualified(conn, row.nspname, row.relname) for row in rows]

    def counter_origin(self, conn: Connection, sequence_name: str) -> int:
        return int(
            conn.execute(
                text("SELECT seqstart FROM pg_catalog.pg_sequence WHERE seqrelid = pg_catalog.to_regclass(:name)"),
                {"name": sequence_name},
            ).scalar_one()
        )

    def last_drawn_value(self, conn: Connection, sequence_name: str) -> int | None:
        # Sequences are non-transactional: this includes values drawn by
        # transactions that have not committed yet.
        value = conn.execute(
            text("SELECT pg_catalog.pg_sequence_last_value(CAST(:name AS pg_catalog.regclass))"),
            {"name": sequence_name},
        ).scalar_one()
        return None if value is None else int(value)

    def wait_for_writers(self, conn: Connection, table_name: str, timeout_seconds: float) -> None:
        # SHARE conflicts with the ROW EXCLUSIVE lock every writer holds, so
        # acquiring it means all writers that started before us are done.
        # The lock is taken inside a savepoint and released straight away by
        # rolling the savepoint back; lock_timeout bounds the wait.
        row = self._describe(conn, table_name)
        if row is None:
            raise LookupError(f"relation {table_name} does not exist")
        if row.relkind == "f":
            # Writers of a foreign table live in another server
            logger.debug("writer_wait_skipped_foreign_table", relation=table_name)
            return

        timeout_ms = max(1, int(timeout_seconds * 1000))
        savepoint = conn.begin_nested()
        try:
            conn.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
            conn.execute(text(f"LOCK TABLE {self._qualified(conn, row.nspname, row.relname)} IN SHARE MODE"))
        except OperationalError as e:
            if _sqlstate(e) == _LOCK_NOT_AVAILABLE:
                raise LockWaitTimeoutError(table_name, timeout_seconds) from e
            raise
        finally:
            savepoint.rollback()

    def source_name_candidates(self, conn: Connection, name: str) -> set[str]:
        # parse_ident applies identifier folding and quoting rules; an
        # unqualified name may have lived in any schema on the search path
        parts = conn.execute(text("SELECT pg_catalog.parse_ident(:name)"), {"name": name}).scalar_one()
        if len(parts) > 1:
            return {self._qualified(conn, parts[-2], parts[-1])}
        schemas = conn.execute(text("SELECT pg_catalog.unnest(pg_catalog.current_schemas(true))")).scalars().all()
        return {self._qualified(conn, schema, parts[0]) for schema in schemas}

    def current_principal(self, conn: Connection) -> Principal:
        row = conn.execute(
            text("SELECT current_user AS name, rolsuper FROM pg_catalog.pg_roles WHERE rolname = current_user")
        ).one()
        return Principal(name=row.name, is_superuser=bool(row.rolsuper))


class SqliteCatalog:
    """Catalog queries against sqlite_master and sqlite_sequence.

    SQLite allows a single writer at a time and a counter value only
    becomes visible to other connections once its writer commits, so no
    value can be drawn-but-uncommitted from another connection's point of
    view and there is nothing to wait for.
    """

    def resolve_relation(self, conn: Connection, name: str) -> tuple[str, RelationKind] | None:
        row = conn.execute(
            text("SELECT name, type FROM sqlite_master WHERE lower(name) = lower(:name) AND type IN ('table', 'view', 'index')"),
            {"name": name},
        ).fetchone()
        if row is None:
            return None
        kind = RelationKind.TABLE if row.type == "table" else RelationKind.OTHER
        return row.name, kind

    def sequence_owner(self, conn: Connection, sequence_name: str) -> str | None:
        # An AUTOINCREMENT counter is named after the table it belongs to
        if self.owned_sequences(conn, sequence_name):
            return sequence_name
        return None

    def owned_sequences(self, conn: Connection, table_name: str) -> list[str]:
        sql = conn.execute(
            text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": table_name},
        ).scalar_one_or_none()
        if sql is None or "AUTOINCREMENT" not in sql.upper():
            return []
        return [table_name]

    def counter_origin(self, conn: Connection, sequence_name: str) -> int:
        return 1

    def last_drawn_value(self, conn: Connection, sequence_name: str) -> int | None:
        value = conn.execute(
            text("SELECT seq FROM sqlite_sequence WHERE name = :name"),
            {"name": sequence_name},
        ).scalar_one_or_none()
        return None if value is None else int(value)

    def wait_for_writers(self, conn: Connection, table_name: str, timeout_seconds: float) -> None:
        logger.debug("writer_wait_not_needed", relation=table_name, backend="sqlite")

    def source_name_candidates(self, conn: Connection, name: str) -> set[str]:
        return {name}

    def current_principal(self, conn: Connection) -> Principal:
        return Principal(name=getpass.getuser())


def catalog_for(dialect_name: str) -> Catalog:
    """Catalog implementation for a SQLAlchemy dialect name.

    Raises:
        ValueError: If the backend is not supported
    """
    if dialect_name == "postgresql":
        return PostgresCatalog()
    if dialect_name == "sqlite":
        return SqliteCatalog()
    raise ValueError(f"unsupported database backend: {dialect_name}")
