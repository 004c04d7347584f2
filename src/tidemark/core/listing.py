# src/tidemark/core/listing.py
"""List functions: named capabilities that enumerate candidate files.

A file list pipeline stores the name of its list function. At execution
time the name is resolved through the registry:

- built-in and application-registered Python callables (``glob``)
- on PostgreSQL, any other name is a set-returning SQL function taking a
  single text argument, e.g. ``crunchy_lake.list_files(pattern text)``
"""

import glob
import os
import threading
from collections.abc import Callable, Sequence

from sqlalchemy import Connection, text

from tidemark.contracts.errors import InvalidPipelineConfigError

ListFunction = Callable[[Connection, str], Sequence[str]]


def glob_files(conn: Connection, pattern: str) -> list[str]:
    """List local files matching a shell pattern, sorted by path.

    ``**`` matches across directory levels. Directories are not listed.
    """
    return sorted(path for path in glob.glob(pattern, recursive=True) if not os.path.isdir(path))


class SqlListFunction:
    """A set-returning SQL function called with the pattern as its only argument."""

    def __init__(self, qualified_name: str) -> None:
        self.qualified_name = qualified_name

    def __call__(self, conn: Connection, pattern: str) -> list[str]:
        rows = conn.execute(
            text(f"SELECT listing.path FROM {self.qualified_name}(:pattern) AS listing(path)"),
            {"pattern": pattern},
        ).fetchall()
        return [row.path for row in rows if row.path is not None]

    def __repr__(self) -> str:
        return f"SqlListFunction({self.qualified_name!r})"


class ListFunctionRegistry:
    """Registry of list functions by name.

    Thread-safe for concurrent registration and lookup.

    Example:
        registry = ListFunctionRegistry()
        registry.register("s3", list_s3_objects)

        name = registry.canonical_name(conn, "s3")   # validated at create time
        files = registry.get(conn, name)(conn, "s3://bucket/prefix/*.csv")
    """

    def __init__(self) -> None:
        self._functions: dict[str, ListFunction] = {"glob": glob_files}
        self._lock = threading.Lock()

    def register(self, name: str, function: ListFunction) -> None:
        """Register a Python list function, replacing any previous one of that name."""
        if not name or not name.strip():
            raise ValueError("list function name cannot be empty")
        with self._lock:
            self._functions[name] = function

    def names(self) -> list[str]:
        """Names of registered Python list functions."""
        with self._lock:
            return sorted(self._functions)

    def canonical_name(self, conn: Connection, name: str) -> str:
        """Validate a list function name and return the form to store.

        Registered names are returned as given. On PostgreSQL other names
        must refer to an existing function taking one text argument and are
        returned schema-qualified and quoted.

        Raises:
            InvalidPipelineConfigError: If no such list function exists
        """
        with self._lock:
            if name in self._functions:
                return name

        if conn.dialect.name != "postgresql":
            raise InvalidPipelineConfigError(f'no list function named "{name}"')

        row = conn.execute(
            text(
                "SELECT n.nspname, p.proname "
                "FROM pg_catalog.pg_proc p "
                "JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace "
                "WHERE p.oid = pg_catalog.to_regprocedure(:signature)"
            ),
            {"signature": f"{name}(text)"},
        ).fetchone()
        if row is None:
            raise InvalidPipelineConfigError(f"function {name}(text) does not exist")

        preparer = conn.dialect.identifier_preparer
        return f"{preparer.quote_schema(row.nspname)}.{preparer.quote(row.proname)}"

    def get(self, conn: Connection, name: str) -> ListFunction:
        """Resolve a stored list function name.

        Raises:
            InvalidPipelineConfigError: If the name no longer resolves
        """
        with self._lock:
            function = self._functions.get(name)
        if function is not None:
            return function
        if conn.dialect.name == "postgresql":
            return SqlListFunction(name)
        raise InvalidPipelineConfigError(f'no list function named "{name}"')
