# src/tidemark/cli.py
"""Tidemark Command Line Interface.

Entry point for the tidemark CLI tool. Every command builds a
PipelineManager from settings, performs one operation and exits; periodic
execution is left to the configured scheduler, which runs
``tidemark execute <pipeline>``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, assert_never

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from tidemark import __version__
from tidemark.contracts import (
    CommandFailedError,
    ExecutionOutcome,
    FileListPipelineState,
    Pipeline,
    PipelineState,
    Principal,
    SequencePipelineState,
    TidemarkError,
    TimeIntervalPipelineState,
)
from tidemark.core.config import TidemarkSettings, load_settings_or_default

if TYPE_CHECKING:
    from tidemark.engine.manager import PipelineManager

__all__ = ["app"]

app = typer.Typer(
    name="tidemark",
    help="Tidemark: incremental processing pipelines with durable watermarks.",
    no_args_is_help=True,
)


class OutputFormat(StrEnum):
    """Output format for commands that report results."""

    CONSOLE = "console"
    JSON = "json"


_INTERVAL_UNITS: dict[str, str] = {
    "s": "seconds",
    "sec": "seconds",
    "secs": "seconds",
    "second": "seconds",
    "seconds": "seconds",
    "m": "minutes",
    "min": "minutes",
    "mins": "minutes",
    "minute": "minutes",
    "minutes": "minutes",
    "h": "hours",
    "hour": "hours",
    "hours": "hours",
    "d": "days",
    "day": "days",
    "days": "days",
    "w": "weeks",
    "week": "weeks",
    "weeks": "weeks",
}

_INTERVAL_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


@dataclass(frozen=True)
class _CliOptions:
    """Global options shared by all subcommands."""

    settings_path: Path | None
    as_user: str | None
    as_superuser: bool


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"tidemark version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


def parse_interval(value: str) -> timedelta:
    """Parse an interval such as "15 minutes", "1h", "1 day 12 hours" or "01:30:00".

    Raises:
        typer.BadParameter: If the value is not a recognizable interval
    """
    text = value.strip().lower()
    if re.fullmatch(r"\d+:\d{2}:\d{2}", text):
        hours, minutes, seconds = (int(part) for part in text.split(":"))
        return timedelta(hours=hours, minutes=minutes, seconds=seconds)

    parts = _INTERVAL_PART.findall(text)
    if not parts or _INTERVAL_PART.sub("", text).strip():
        raise typer.BadParameter(f"invalid interval: {value!r}")

    total = timedelta(0)
    for amount, unit in parts:
        if unit not in _INTERVAL_UNITS:
            raise typer.BadParameter(f"unknown interval unit {unit!r} in {value!r}")
        total += timedelta(**{_INTERVAL_UNITS[unit]: float(amount)})
    return total


def _parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"invalid timestamp (expected ISO 8601): {value!r}") from None


def _load_settings(path: Path | None) -> TidemarkSettings:
    try:
        return load_settings_or_default(path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _manager(ctx: typer.Context) -> PipelineManager:
    from sqlalchemy.exc import SQLAlchemyError

    from tidemark.core.store import SchemaCompatibilityError
    from tidemark.engine.manager import PipelineManager

    options: _CliOptions = ctx.obj
    settings = _load_settings(options.settings_path)
    principal = None
    if options.as_user is not None:
        principal = Principal(name=options.as_user, is_superuser=options.as_superuser)
    try:
        return PipelineManager.from_settings(settings, principal=principal)
    except TidemarkError as e:
        raise _fail(e) from None
    except SchemaCompatibilityError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    except SQLAlchemyError as e:
        reason = getattr(e, "orig", None) or e
        typer.secho(f"Error: Cannot open pipeline database: {reason}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None


def _fail(error: TidemarkError) -> typer.Exit:
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    if isinstance(error, CommandFailedError):
        if error.completed_units:
            typer.echo(f"  {len(error.completed_units)} earlier unit(s) were committed", err=True)
        if error.__cause__ is not None:
            typer.echo(f"  caused by: {type(error.__cause__).__name__}", err=True)
    return typer.Exit(1)


def _state_fields(state: PipelineState) -> dict[str, Any]:
    match state:
        case SequencePipelineState():
            return {
                "sequence_name": state.sequence_name,
                "last_processed_sequence_number": state.last_processed_sequence_number,
            }
        case TimeIntervalPipelineState():
            return {
                "time_interval": str(state.time_interval),
                "min_delay": str(state.min_delay),
                "batched": state.batched,
                "start_time": state.start_time.isoformat() if state.start_time else None,
                "last_processed_time": state.last_processed_time.isoformat() if state.last_processed_time else None,
            }
        case FileListPipelineState():
            return {
                "file_pattern": state.file_pattern,
                "batched": state.batched,
                "list_function": state.list_function,
                "max_batch_size": state.max_batch_size,
            }
        case _:
            assert_never(state)


def _pipeline_fields(pipeline: Pipeline) -> dict[str, Any]:
    return {
        "pipeline_name": pipeline.pipeline_name,
        "pipeline_type": pipeline.pipeline_type.label,
        "owner_id": pipeline.owner_id,
        "source_relation": pipeline.source_relation,
        "command": pipeline.command,
        "created_at": pipeline.created_at.isoformat() if pipeline.created_at else None,
    }


def _outcome_fields(outcome: ExecutionOutcome) -> dict[str, Any]:
    return {
        "pipeline_name": outcome.pipeline_name,
        "status": outcome.status.value,
        "units": [unit.describe() for unit in outcome.units],
    }


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file (default: ./settings.yaml if present).",
    ),
    as_user: str | None = typer.Option(
        None,
        "--as-user",
        help="Act as this principal instead of the database connection's identity.",
    ),
    as_superuser: bool = typer.Option(
        False,
        "--superuser",
        help="With --as-user: the principal may manage pipelines it does not own.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Tidemark: incremental processing pipelines with durable watermarks."""
    from tidemark.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )

    settings_path = settings.expanduser() if settings is not None else None
    ctx.obj = _CliOptions(settings_path=settings_path, as_user=as_user, as_superuser=as_superuser)


# === Create ===


@app.command("create-sequence")
def create_sequence(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
    sequence: str = typer.Argument(..., help="Sequence owned by a table, or a table owning one sequence."),
    command: str = typer.Argument(..., help="SQL command; $1 and $2 are the range start and end (inclusive)."),
    schedule: str | None = typer.Option(None, "--schedule", help="Cron expression for periodic execution."),
    execute_now: bool = typer.Option(False, "--execute-now", help="Execute once right after creating."),
) -> None:
    """Create a pipeline that processes new sequence values."""
    manager = _manager(ctx)
    try:
        pipeline = manager.create_sequence_pipeline(
            name, sequence, command, schedule=schedule, execute_immediately=execute_now
        )
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()
    typer.echo(f"Created sequence pipeline {pipeline.pipeline_name} on {pipeline.source_relation}")


@app.command("create-time-interval")
def create_time_interval(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
    command: str = typer.Argument(..., help="SQL command; $1 and $2 are the interval start and end (exclusive)."),
    interval: str = typer.Option(..., "--interval", "-i", help='Interval width, e.g. "1 hour" or "15m".'),
    batched: bool = typer.Option(False, "--batched", help="Process all pending intervals in one command call."),
    start_time: str | None = typer.Option(
        None, "--start-time", help="ISO 8601 start of the first interval (required unless --batched)."
    ),
    source: str | None = typer.Option(None, "--source", help="Table the pipeline reads from."),
    min_delay: str = typer.Option("30 seconds", "--min-delay", help="Wait after an interval ends before processing it."),
    schedule: str | None = typer.Option(None, "--schedule", help="Cron expression for periodic execution."),
    execute_now: bool = typer.Option(False, "--execute-now", help="Execute once right after creating."),
) -> None:
    """Create a pipeline that processes fixed-width time intervals."""
    time_interval = parse_interval(interval)
    delay = parse_interval(min_delay) if min_delay.strip() not in ("0", "") else timedelta(0)
    start = _parse_datetime(start_time) if start_time is not None else None

    manager = _manager(ctx)
    try:
        pipeline = manager.create_time_interval_pipeline(
            name,
            time_interval,
            command,
            batched=batched,
            start_time=start,
            source_name=source,
            schedule=schedule,
            min_delay=delay,
            execute_immediately=execute_now,
        )
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()
    typer.echo(f"Created time interval pipeline {pipeline.pipeline_name} ({time_interval} intervals)")


@app.command("create-file-list")
def create_file_list(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
    pattern: str = typer.Argument(..., help="Pattern passed to the list function."),
    command: str = typer.Argument(..., help="SQL command; $1 is a path, or an array of paths with --batched."),
    batched: bool = typer.Option(False, "--batched", help="Pass files to the command as an array."),
    list_function: str | None = typer.Option(
        None, "--list-function", help="List function name (default from settings)."
    ),
    max_batch_size: int | None = typer.Option(
        None, "--max-batch-size", help="Largest array per command call with --batched."
    ),
    schedule: str | None = typer.Option(None, "--schedule", help="Cron expression for periodic execution."),
    execute_now: bool = typer.Option(False, "--execute-now", help="Execute once right after creating."),
) -> None:
    """Create a pipeline that processes new files."""
    manager = _manager(ctx)
    try:
        pipeline = manager.create_file_list_pipeline(
            name,
            pattern,
            command,
            batched=batched,
            list_function=list_function,
            max_batch_size=max_batch_size,
            schedule=schedule,
            execute_immediately=execute_now,
        )
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()
    typer.echo(f"Created file list pipeline {pipeline.pipeline_name} for {pattern}")


# === Execute / reset / drop ===


@app.command()
def execute(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
    output_format: OutputFormat = typer.Option(
        OutputFormat.CONSOLE,
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Execute a pipeline for everything that is safe to process now."""
    manager = _manager(ctx)
    try:
        outcome = manager.execute_pipeline(name)
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()

    if output_format is OutputFormat.JSON:
        typer.echo(json.dumps(_outcome_fields(outcome)))
        return
    if not outcome.units:
        typer.echo(f"Pipeline {name}: nothing to process")
        return
    for unit in outcome.units:
        typer.echo(f"Pipeline {name}: processed {unit.describe()}")


@app.command()
def reset(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
) -> None:
    """Rewind a pipeline so the next run starts from the beginning."""
    manager = _manager(ctx)
    try:
        manager.reset_pipeline(name)
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()
    typer.echo(f"Reset pipeline {name}")


@app.command()
def drop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
) -> None:
    """Delete a pipeline, its watermark and ledger, and its scheduled job."""
    manager = _manager(ctx)
    try:
        manager.drop_pipeline(name)
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()
    typer.echo(f"Dropped pipeline {name}")


@app.command("source-dropped")
def source_dropped(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Name of the dropped table or sequence."),
) -> None:
    """Delete every pipeline reading from a dropped table or sequence."""
    manager = _manager(ctx)
    try:
        deleted = manager.delete_pipelines_by_source(source)
    finally:
        manager.close()
    if not deleted:
        typer.echo(f"No pipelines read from {source}")
        return
    for pipeline_name in deleted:
        typer.echo(f"Dropped pipeline {pipeline_name}")


# === Inspect ===


@app.command("list")
def list_pipelines(
    ctx: typer.Context,
    output_format: OutputFormat = typer.Option(
        OutputFormat.CONSOLE,
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """List pipelines."""
    manager = _manager(ctx)
    try:
        pipelines = manager.list_pipelines()
    finally:
        manager.close()

    if output_format is OutputFormat.JSON:
        typer.echo(json.dumps([_pipeline_fields(p) for p in pipelines], indent=2))
        return
    if not pipelines:
        typer.echo("No pipelines.")
        return
    for pipeline in pipelines:
        source = f" on {pipeline.source_relation}" if pipeline.source_relation else ""
        typer.echo(f"{pipeline.pipeline_name}  [{pipeline.pipeline_type.label}]{source}  owner={pipeline.owner_id}")


@app.command()
def show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Pipeline name."),
    output_format: OutputFormat = typer.Option(
        OutputFormat.CONSOLE,
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Show a pipeline definition and its watermark."""
    manager = _manager(ctx)
    try:
        pipeline, state = manager.get_pipeline_state(name)
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()

    fields = {**_pipeline_fields(pipeline), **_state_fields(state)}
    if output_format is OutputFormat.JSON:
        typer.echo(json.dumps(fields, indent=2))
        return
    width = max(len(key) for key in fields)
    for key, value in fields.items():
        typer.echo(f"{key.ljust(width)}  {'' if value is None else value}")


@app.command("sequence-range")
def sequence_range(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Sequence pipeline name."),
) -> None:
    """Show the next range a sequence pipeline would process, without processing it."""
    manager = _manager(ctx)
    try:
        next_range = manager.sequence_range(name)
    except TidemarkError as e:
        raise _fail(e) from None
    finally:
        manager.close()

    if next_range is None:
        typer.echo(f"Pipeline {name}: no new sequence values")
        return
    typer.echo(f"{next_range.start} {next_range.end}")


if __name__ == "__main__":
    app()
