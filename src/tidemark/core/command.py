# src/tidemark/core/command.py
"""User command preparation and execution.

Commands are SQL text written with positional placeholders, the way they
would be written for a PostgreSQL prepared statement:

    sequence / time interval:  $1 = range start, $2 = range end
    file list:                 $1 = a path, or an array of paths when batched

The engine never interprets the statement itself. Placeholders are found
outside string literals, quoted identifiers and comments, checked against
the arity of the pipeline kind and rewritten to SQLAlchemy bind parameters.
"""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import Connection, text

from tidemark.contracts.enums import PipelineKind
from tidemark.contracts.errors import InvalidPipelineConfigError

# Literal-aware tokenizer: quoted strings (plain, E'' escape and dollar-quoted),
# quoted identifiers, comments, positional placeholders. Anything else is
# passed through. A dollar-quote tag is empty or starts with a letter or
# underscore, so $1 is never read as one.
_TOKEN_PATTERN = re.compile(
    r"""
    (?P<escape_literal>(?<!\w)[eE]'(?:[^'\\]|\\.|'')*')
    | (?P<dollar_literal>(?<![\w$])\$(?P<tag>(?:[A-Za-z_]\w*)?)\$.*?\$(?P=tag)\$)
    | (?P<literal>'(?:[^']|'')*')
    | (?P<identifier>"(?:[^"]|"")*")
    | (?P<line_comment>--[^\n]*)
    | (?P<block_comment>/\*.*?\*/)
    | \$(?P<placeholder>\d+)
    """,
    re.VERBOSE | re.DOTALL,
)

# SQLite stores SQLAlchemy DateTime values as naive UTC text in this format
_SQLITE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


@dataclass(frozen=True)
class PreparedCommand:
    """A validated user command ready for execution.

    Attributes:
        command: Original command text, as stored in the registry
        statement: Text with placeholders rewritten as bind parameters
        placeholders: Positional parameter numbers referenced by the command
    """

    command: str
    statement: str
    placeholders: frozenset[int]

    def bind(self, params: Sequence[Any]) -> dict[str, Any]:
        """Bind values for the referenced placeholders."""
        return {f"p{number}": params[number - 1] for number in self.placeholders}


def _escape_colons(segment: str) -> str:
    # text() treats ":name" as a bind parameter; user casts like "::int" must survive
    return segment.replace(":", "\\:")


def prepare_command(command: str, kind: PipelineKind) -> PreparedCommand:
    """Validate a command against the parameters its pipeline kind supplies.

    Raises:
        InvalidPipelineConfigError: If the command is empty or references a
            parameter the kind does not supply
    """
    if not command or not command.strip():
        raise InvalidPipelineConfigError("command cannot be empty")

    arity = kind.command_arity
    placeholders: set[int] = set()
    parts: list[str] = []
    position = 0

    for match in _TOKEN_PATTERN.finditer(command):
        parts.append(_escape_colons(command[position : match.start()]))
        number = match.group("placeholder")
        if number is None:
            parts.append(_escape_colons(match.group(0)))
        else:
            value = int(number)
            if value < 1 or value > arity:
                raise InvalidPipelineConfigError(
                    f"command references ${value}, but {kind.label} pipelines supply {arity} parameter{'s' if arity > 1 else ''}"
                )
            placeholders.add(value)
            # Parenthesized so trailing casts ($1::bigint) bind to the parameter
            parts.append(f"(:p{value})")
        position = match.end()
    parts.append(_escape_colons(command[position:]))

    return PreparedCommand(command=command, statement="".join(parts), placeholders=frozenset(placeholders))


class CommandRunner(Protocol):
    """Executes a user command with resolved parameters on an open connection.

    Runs under the caller's identity, inside the unit-of-work transaction.
    Errors propagate unchanged; the executor decides how to report them.
    """

    def run(self, conn: Connection, command: PreparedCommand, params: Sequence[Any]) -> None: ...


class SqlCommandRunner:
    """Runs commands as SQL statements on the pipeline database."""

    def __init__(self, *, statement_timeout_seconds: float | None = None) -> None:
        """Initialize runner.

        Args:
            statement_timeout_seconds: Cancel commands running longer than
                this (PostgreSQL only). A cancelled command fails its unit
                like any other error.
        """
        self._statement_timeout_seconds = statement_timeout_seconds

    def run(self, conn: Connection, command: PreparedCommand, params: Sequence[Any]) -> None:
        dialect = conn.dialect.name
        if dialect == "postgresql" and self._statement_timeout_seconds is not None:
            timeout_ms = max(1, int(self._statement_timeout_seconds * 1000))
            conn.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        adapted = [_adapt_param(value, dialect) for value in params]
        conn.execute(text(command.statement), command.bind(adapted))


def _adapt_param(value: Any, dialect: str) -> Any:
    """Adapt parameter values to what the backend can bind.

    PostgreSQL binds datetimes and lists (as arrays) natively. SQLite gets
    naive UTC text matching how SQLAlchemy stores DateTime columns, and
    path arrays as JSON text usable with json_each().
    """
    if dialect == "postgresql":
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).replace(tzinfo=None).strftime(_SQLITE_DATETIME_FORMAT)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value
