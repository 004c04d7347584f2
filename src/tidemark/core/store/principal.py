"""Switching to the service identity for engine-internal statements.

PostgreSQL only: ``SET LOCAL ROLE`` scopes the switch to the current
transaction, and the previous role is restored once the block completes.
If the block raises, the transaction is rolled back and the role reverts
with it, so nothing is restored by hand.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Connection, text

from tidemark.contracts.identity import ServicePrincipal


@contextmanager
def elevated(conn: Connection, service: ServicePrincipal) -> Iterator[Connection]:
    """Run the enclosed statements as the service principal.

    A no-op when the service principal has no role or the backend has no
    role system (SQLite).
    """
    if service.role is None or conn.dialect.name != "postgresql":
        yield conn
        return

    preparer = conn.dialect.identifier_preparer
    previous_role = conn.execute(text("SELECT current_user")).scalar_one()
    conn.execute(text(f"SET LOCAL ROLE {preparer.quote(service.role)}"))
    yield conn
    conn.execute(text(f"SET LOCAL ROLE {preparer.quote(previous_role)}"))
