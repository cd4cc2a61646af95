"""
Crontab probe.

Reads a user's crontab through an ordered list of sources, then parses it into
CronJob records with a human readable description and a rough next-run
estimate. Parsing is pure (text in, jobs out) and lives apart from the reads.
"""

from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import CronConfig
from .runner import ProcessRunner
from .types import CronJob, CronReport, CronSchedule

logger = logging.getLogger("health_agent")

SPOOL_DIRS = ("/var/spool/cron/crontabs", "/var/spool/cron")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class CrontabSource:
    content: str
    user: str
    method: str


CrontabStrategy = Callable[[], Optional[str]]


# ---------------------------------------------------------------------------
# Parsing (side-effect free)
# ---------------------------------------------------------------------------


def looks_like_cron_job(line: str) -> bool:
    # 5 time fields + command
    return len(line.split(None, 5)) >= 6


def parse_cron_line(line: str) -> Optional[tuple[CronSchedule, str]]:
    parts = line.split(None, 5)
    if len(parts) < 6:
        return None
    minute, hour, day, month, weekday, command = parts
    return CronSchedule(minute, hour, day, month, weekday), command


def describe_schedule(schedule: CronSchedule) -> str:
    minute, hour = schedule.minute, schedule.hour
    every_day = schedule.day == "*" and schedule.month == "*" and schedule.weekday == "*"

    if every_day and minute == "0" and hour == "0":
        return "Daily at midnight"
    if every_day and minute == "0" and hour != "*":
        return f"Daily at {hour}:00"
    if every_day and minute != "*" and hour != "*":
        return f"Daily at {hour}:{minute}"
    if schedule.day == "*" and schedule.month == "*" and schedule.weekday == "0":
        return f"Weekly on Sunday at {hour}:{minute}"
    return f"At {schedule}"


def estimate_next_run(schedule: CronSchedule, now: datetime) -> Optional[datetime]:
    """
    Next occurrence of a literal minute within the current or following hour.

    Only the minute field is considered; hours, days, steps and lists are
    ignored, so this is an estimate and not a cron evaluator.
    """
    if not schedule.minute.isdigit():
        return None
    minute = int(schedule.minute)
    if minute > 59:
        return None
    candidate = now.replace(minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(hours=1)
    return candidate


def parse_crontab(content: str, *, now: Optional[datetime] = None) -> list[CronJob]:
    now = now or datetime.now()
    jobs: list[CronJob] = []

    for index, raw in enumerate(content.splitlines()):
        line = raw.strip()
        if not line:
            continue

        disabled = False
        if line.startswith("#"):
            line = line.lstrip("# ")
            # A real comment, not a commented-out job
            if not line or not looks_like_cron_job(line):
                continue
            disabled = True

        parsed = parse_cron_line(line)
        if parsed is None:
            continue
        schedule, command = parsed
        next_run = estimate_next_run(schedule, now)

        jobs.append(
            CronJob(
                schedule=schedule,
                schedule_string=str(schedule),
                command=command,
                description=describe_schedule(schedule),
                next_run=next_run.strftime(TIMESTAMP_FORMAT) if next_run else None,
                disabled=disabled,
                original_line=line,
                line_number=index + 1,
            )
        )

    return jobs


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


class CrontabProbe:
    def __init__(
        self,
        config: CronConfig,
        *,
        runner: ProcessRunner,
        spool_dirs: Sequence[str] = SPOOL_DIRS,
        current_user: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._runner = runner
        self._spool_dirs = tuple(spool_dirs)
        self._current_user = current_user or getpass.getuser()
        self._clock = clock

    def _user_crontab(self, user: str) -> Optional[str]:
        return self._runner.run(["crontab", "-u", user, "-l"]).stdout

    def _own_crontab(self) -> Optional[str]:
        return self._runner.run(["crontab", "-l"]).stdout

    def _spool_file(self, user: str) -> Optional[str]:
        for directory in self._spool_dirs:
            try:
                return (Path(directory) / user).read_text(errors="replace")
            except OSError:
                continue
        return None

    def strategies(self) -> list[tuple[str, str, CrontabStrategy]]:
        """Ordered (user, description, reader) attempts; first non-empty output wins."""
        user = self._config.user
        current = self._current_user
        attempts: list[tuple[str, str, CrontabStrategy]] = []

        if user:
            attempts.append((user, f"specific user ({user})", lambda: self._user_crontab(user)))
        attempts.append((current, f"current user ({current})", self._own_crontab))
        if user and user != current:
            attempts.append((user, f"cron spool directory for {user}", lambda: self._spool_file(user)))
        return attempts

    def read_crontab(self) -> Optional[CrontabSource]:
        for user, method, read in self.strategies():
            try:
                output = read()
            except Exception as e:
                logger.debug(f"[cron] {method} failed: {e}")
                continue
            if output and output.strip():
                return CrontabSource(content=output, user=user, method=method)
        return None

    def check_cron_jobs(self) -> CronReport:
        user = self._config.user
        try:
            source = self.read_crontab()
            if source is None:
                return CronReport(
                    status="error",
                    user=user,
                    message=f"Unable to read crontab for user: {user or 'current user'}",
                )

            now = self._clock()
            jobs = parse_crontab(source.content, now=now)
            return CronReport(
                status="ok",
                jobs=jobs,
                user=source.user,
                method=source.method,
                last_checked=now.strftime(TIMESTAMP_FORMAT),
            )
        except Exception as e:
            logger.error(f"[cron] check failed: {e}", exc_info=True)
            return CronReport(status="error", user=user, message=str(e))
