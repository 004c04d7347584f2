# src/tidemark/core/scheduler.py
"""Outbound integration with an external periodic scheduler.

The engine has no timer loop. Creating a pipeline with a schedule
registers a job named ``pipeline:<name>`` whose command executes the
pipeline; dropping the pipeline removes the job.

Backends:
    DisabledScheduler - rejects schedule requests (default)
    CrontabScheduler - manages entries in a crontab file
"""

import os
import re
import shlex
import tempfile
import threading
from pathlib import Path
from typing import Protocol

import structlog

from tidemark.contracts.errors import InvalidPipelineConfigError
from tidemark.core.config import SchedulerSettings

logger = structlog.get_logger(__name__)

_CRON_MACROS = frozenset({"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly", "@reboot"})

_MONTHS = {name: i for i, name in enumerate(("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1)}
_WEEKDAYS = {name: i for i, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))}

# (low, high, names) per field: minute, hour, day of month, month, day of week (0 and 7 are Sunday)
_CRON_FIELDS: tuple[tuple[int, int, dict[str, int]], ...] = (
    (0, 59, {}),
    (0, 23, {}),
    (1, 31, {}),
    (1, 12, _MONTHS),
    (0, 7, _WEEKDAYS),
)

# Marker line written above every managed crontab entry
_JOB_HEADER = re.compile(r"^# tidemark job (?P<job_id>\d+): (?P<job_name>.+)$")


class Scheduler(Protocol):
    """Periodic job scheduler."""

    def schedule(self, job_name: str, cron_expression: str, command: str) -> int:
        """Create or replace a job, returning its id.

        Raises:
            InvalidPipelineConfigError: If the expression is invalid or
                scheduling is not available
        """
        ...

    def unschedule(self, job_name: str) -> bool:
        """Remove a job if present; True if a job was removed."""
        ...


def job_name_for_pipeline(pipeline_name: str) -> str:
    return f"pipeline:{pipeline_name}"


def command_for_pipeline(command_template: str, pipeline_name: str) -> str:
    """Shell command that executes a pipeline, with the name shell-quoted."""
    return command_template.replace("{pipeline}", shlex.quote(pipeline_name))


def is_valid_cron_expression(expression: str) -> bool:
    parts = [part.strip() for part in str(expression or "").split() if part.strip()]
    if len(parts) == 1 and parts[0].lower() in _CRON_MACROS:
        return True
    if len(parts) != len(_CRON_FIELDS):
        return False
    return all(_is_valid_cron_field(part, *bounds) for part, bounds in zip(parts, _CRON_FIELDS, strict=True))


def _cron_value(token: str, low: int, high: int, names: dict[str, int]) -> int | None:
    if token.isdigit():
        value = int(token)
    elif token.lower() in names:
        value = names[token.lower()]
    else:
        return None
    return value if low <= value <= high else None


def _is_valid_cron_field(field: str, low: int, high: int, names: dict[str, int]) -> bool:
    for option in field.split(","):
        base, slash, step = option.partition("/")
        if slash and (not step.isdigit() or int(step) == 0):
            return False
        if base == "*":
            continue
        first, dash, last = base.partition("-")
        start = _cron_value(first, low, high, names)
        if start is None:
            return False
        if dash:
            end = _cron_value(last, low, high, names)
            if end is None or start > end:
                return False
    return True


class DisabledScheduler:
    """Scheduler used when no backend is configured."""

    def schedule(self, job_name: str, cron_expression: str, command: str) -> int:
        raise InvalidPipelineConfigError(
            f"cannot schedule {job_name}: no scheduler backend is configured (set scheduler.backend)"
        )

    def unschedule(self, job_name: str) -> bool:
        return False


class CrontabScheduler:
    """Keeps one entry per job in a crontab file.

    Each managed entry is a marker comment followed by the cron line:

        # tidemark job 3: pipeline:events-rollup
        */5 * * * * tidemark execute events-rollup

    Lines not managed by tidemark are preserved. The file is rewritten
    atomically (temp file + rename) so cron never reads a partial file.
    """

    def __init__(self, path: Path, *, user: str | None = None) -> None:
        """Initialize scheduler.

        Args:
            path: Crontab file to manage (created on first schedule)
            user: User column for system crontabs such as /etc/cron.d files
        """
        self._path = path
        self._user = user
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def schedule(self, job_name: str, cron_expression: str, command: str) -> int:
        if not is_valid_cron_expression(cron_expression):
            raise InvalidPipelineConfigError(f"invalid cron expression: {cron_expression!r}")
        if "\n" in command or "\n" in job_name:
            raise InvalidPipelineConfigError("job name and command must be single lines")

        with self._lock:
            preamble, jobs = self._read()
            existing = next((job_id for job_id, (name, _) in jobs.items() if name == job_name), None)
            job_id = existing if existing is not None else max(jobs, default=0) + 1
            jobs[job_id] = (job_name, self._entry(cron_expression, command))
            self._write(preamble, jobs)

        logger.info("cron_job_scheduled", job_name=job_name, job_id=job_id, schedule=cron_expression)
        return job_id

    def unschedule(self, job_name: str) -> bool:
        with self._lock:
            preamble, jobs = self._read()
            matching = [job_id for job_id, (name, _) in jobs.items() if name == job_name]
            if not matching:
                return False
            for job_id in matching:
                del jobs[job_id]
            self._write(preamble, jobs)

        logger.info("cron_job_unscheduled", job_name=job_name)
        return True

    def jobs(self) -> dict[int, tuple[str, str]]:
        """Managed jobs by id: (job name, cron line)."""
        with self._lock:
            _, jobs = self._read()
        return jobs

    def _entry(self, cron_expression: str, command: str) -> str:
        schedule = " ".join(cron_expression.split())
        # crontab treats an unescaped % as a newline
        escaped = command.replace("%", "\\%")
        if self._user:
            return f"{schedule} {self._user} {escaped}"
        return f"{schedule} {escaped}"

    def _read(self) -> tuple[list[str], dict[int, tuple[str, str]]]:
        if not self._path.exists():
            return [], {}

        preamble: list[str] = []
        jobs: dict[int, tuple[str, str]] = {}
        lines = self._path.read_text(encoding="utf-8").splitlines()
        index = 0
        while index < len(lines):
            match = _JOB_HEADER.match(lines[index])
            if match is not None and index + 1 < len(lines):
                jobs[int(match.group("job_id"))] = (match.group("job_name"), lines[index + 1])
                index += 2
                continue
            preamble.append(lines[index])
            index += 1
        return preamble, jobs

    def _write(self, preamble: list[str], jobs: dict[int, tuple[str, str]]) -> None:
        lines = list(preamble)
        for job_id in sorted(jobs):
            job_name, entry = jobs[job_id]
            lines.append(f"# tidemark job {job_id}: {job_name}")
            lines.append(entry)
        # cron ignores a final line without a newline
        content = "\n".join(lines) + "\n" if lines else ""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def scheduler_from_settings(settings: SchedulerSettings) -> Scheduler:
    """Build the configured scheduler backend."""
    if settings.backend == "crontab":
        # crontab_path presence is enforced by SchedulerSettings
        assert settings.crontab_path is not None
        return CrontabScheduler(settings.crontab_path, user=settings.crontab_user)
    return DisabledScheduler()
