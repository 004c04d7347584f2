"""Caller and service identities.

Two identities take part in every pipeline operation:

- Principal: the caller. Used for ownership checks and for running the
  user command, so the command only sees what the caller may see.
- ServicePrincipal: the fixed engine identity used to read and write the
  engine-internal tables (registry, watermarks, ledger). End users do not
  need write access to those tables.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Principal:
    """Identity of whoever invokes a pipeline operation."""

    name: str
    is_superuser: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("principal name cannot be empty")

    def can_manage(self, owner_id: str) -> bool:
        """Whether this principal may execute, reset or drop a pipeline owned by owner_id."""
        return self.is_superuser or self.name == owner_id


@dataclass(frozen=True)
class ServicePrincipal:
    """Elevated identity for engine-internal reads and writes.

    Attributes:
        role: Database role to switch to for internal table access.
            None means the connection's own role is used (SQLite, or a
            PostgreSQL deployment where callers own the tables).
    """

    role: str | None = None
