"""
Supervisor probe.

Reads supervisord program definitions from its config directory, keeps the
programs that belong to this deployment, and asks supervisorctl for the live
state of each one (process groups included). Config parsing and status-output
parsing are pure functions so odd output can be unit tested directly.
"""

from __future__ import annotations

import configparser
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from .config import SupervisorConfig
from .runner import ProcessRunner
from .types import ERROR, PARTIAL, RUNNING, STOPPED, UNKNOWN, ProcessStatus, SupervisorReport

logger = logging.getLogger("health_agent")

CONTROL_PATHS = (
    "/usr/local/bin/supervisorctl",
    "/usr/bin/supervisorctl",
    "/opt/homebrew/bin/supervisorctl",
    "/usr/local/opt/supervisor/bin/supervisorctl",
)

SOCKET_PATHS = (
    "/opt/homebrew/var/run/supervisor.sock",
    "/usr/local/var/run/supervisor.sock",
    "/var/run/supervisor.sock",
    "/tmp/supervisor.sock",
)

# States supervisorctl prints in the second column of a status line.
SUPERVISOR_STATES = {
    "STOPPED",
    "STARTING",
    "RUNNING",
    "BACKOFF",
    "STOPPING",
    "EXITED",
    "FATAL",
    "UNKNOWN",
}

PROGRAM_PREFIX = "program:"

_PID_RE = re.compile(r"pid (\d+)")
_UPTIME_RE = re.compile(r"uptime ([0-9:]+)")
_FAILURE_TOKEN_RE = re.compile(r"\b(error|failed)\b|no such file", re.IGNORECASE)


@dataclass(frozen=True)
class ProgramConfig:
    name: str
    command: str = ""
    directory: str = ""
    user: str = ""
    autostart: str = "true"
    autorestart: str = "true"
    config_file: str = ""


# ---------------------------------------------------------------------------
# Config parsing (side-effect free)
# ---------------------------------------------------------------------------


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _program_from_section(section: str, data, config_file: str) -> ProgramConfig:
    return ProgramConfig(
        name=section[len(PROGRAM_PREFIX):],
        command=_unquote(data.get("command", "")),
        directory=_unquote(data.get("directory", "")),
        user=_unquote(data.get("user", "")),
        autostart=_unquote(data.get("autostart", "true")),
        autorestart=_unquote(data.get("autorestart", "true")),
        config_file=config_file,
    )


def parse_programs_ini(content: str, config_file: str = "") -> list[ProgramConfig]:
    """Structured parse. Raises ``configparser.Error`` on malformed input."""
    parser = configparser.ConfigParser(
        interpolation=None,
        inline_comment_prefixes=(";", "#"),
        strict=True,
    )
    parser.read_string(content, source=config_file or "<supervisor>")
    return [
        _program_from_section(section, parser[section], config_file)
        for section in parser.sections()
        if section.startswith(PROGRAM_PREFIX)
    ]


def parse_programs_manual(content: str, config_file: str = "") -> list[ProgramConfig]:
    """Line scanner for files configparser rejects (duplicates, stray text)."""
    programs: list[ProgramConfig] = []
    section: Optional[str] = None
    data: dict[str, str] = {}

    def flush() -> None:
        if section and section.startswith(PROGRAM_PREFIX):
            programs.append(_program_from_section(section, data, config_file))

    for raw in content.splitlines():
        line = raw.strip()
        if not line or line[0] in (";", "#"):
            continue

        header = re.match(r"^\[(.*)\]$", line)
        if header:
            flush()
            section = header.group(1).strip()
            data = {}
            continue

        if "=" in line:
            key, value = line.split("=", 1)
            value = value.strip()
            if value[:1] in ("'", '"'):
                end = value.find(value[0], 1)
                if end > 0:
                    value = value[1:end]
            else:
                value = re.split(r"\s[;#]", value, maxsplit=1)[0]
            data[key.strip().lower()] = value.strip()

    flush()
    return programs


CONFIG_PARSERS: tuple[Callable[[str, str], list[ProgramConfig]], ...] = (
    parse_programs_ini,
    parse_programs_manual,
)


def parse_supervisor_config(
    content: str,
    config_file: str = "",
    parsers: Sequence[Callable[[str, str], list[ProgramConfig]]] = CONFIG_PARSERS,
) -> list[ProgramConfig]:
    last_error: Optional[Exception] = None
    for parse in parsers:
        try:
            return parse(content, config_file)
        except (configparser.Error, ValueError) as e:
            logger.debug(f"[supervisor] {parse.__name__} rejected {config_file}: {e}")
            last_error = e
    raise ValueError(f"unable to parse {config_file}: {last_error}")


def belongs_to_project(program: ProgramConfig, project_root: Optional[str]) -> bool:
    if not project_root:
        return True
    root = project_root.rstrip("/") or project_root
    folder = Path(root).name
    if root in program.command or root in program.directory:
        return True
    return bool(folder) and (folder in program.name or folder in program.config_file)


# ---------------------------------------------------------------------------
# Status output parsing (side-effect free)
# ---------------------------------------------------------------------------


def parse_status_line(line: str) -> Optional[dict]:
    parts = line.split()
    if len(parts) < 2:
        return None
    pid = _PID_RE.search(line)
    uptime = _UPTIME_RE.search(line)
    return {
        "name": parts[0],
        "status": parts[1],
        "pid": int(pid.group(1)) if pid else None,
        "uptime": uptime.group(1) if uptime else None,
    }


def is_rejected_output(output: str) -> bool:
    """
    True when a supervisorctl answer should be discarded for the next query form.

    Error words inside a well-formed status line (second column is a known
    state) do not count; they are part of that process's description.
    """
    text = (output or "").strip()
    if not text:
        return True
    if "no such process" in text.lower():
        return True
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] in SUPERVISOR_STATES:
            continue
        if _FAILURE_TOKEN_RE.search(line):
            return True
    return False


def normalize_state(state: str) -> str:
    """Collapse a supervisorctl state to RUNNING, STOPPED or UNKNOWN."""
    if state == RUNNING:
        return RUNNING
    if state in SUPERVISOR_STATES and state != UNKNOWN:
        return STOPPED
    return UNKNOWN


def parse_status_output(output: str, name: str) -> ProcessStatus:
    entries = [e for e in (parse_status_line(l) for l in output.splitlines() if l.strip()) if e]
    if not entries:
        return ProcessStatus(name=name, status=UNKNOWN)

    if len(entries) == 1:
        entry = entries[0]
        return ProcessStatus(
            name=name,
            status=normalize_state(entry["status"]),
            state=entry["status"],
            pid=entry["pid"],
            pids=[entry["pid"]] if entry["pid"] is not None else [],
            uptime=entry["uptime"],
            uptimes=[entry["uptime"]] if entry["uptime"] else [],
        )

    running = [e for e in entries if e["status"] == RUNNING]
    if len(running) == len(entries):
        status = RUNNING
    elif not running:
        status = STOPPED
    else:
        status = PARTIAL

    pids = [e["pid"] for e in running if e["pid"] is not None]
    uptimes = [e["uptime"] for e in running if e["uptime"]]
    return ProcessStatus(
        name=name,
        status=status,
        pid=pids[0] if pids else None,
        pids=pids,
        uptime=uptimes[0] if uptimes else None,
        uptimes=uptimes,
        process_group=True,
        running_count=len(running),
        total_count=len(entries),
    )


def derive_supervisor_status(
    processes: Iterable[ProcessStatus],
    required_queues: Sequence[str],
    errors: Sequence[str],
) -> tuple[str, list[str], Optional[list[str]]]:
    """Returns (status, running_queue_names, missing_queue_names)."""
    processes = list(processes)
    running_names: list[str] = []
    for p in processes:
        if p.status == RUNNING and p.name not in running_names:
            running_names.append(p.name)

    if len(running_names) < len(required_queues):
        missing = sorted(set(required_queues) - set(running_names))
        return "error", running_names, missing
    if errors or any(p.status == UNKNOWN for p in processes):
        return "warning", running_names, None
    return "ok", running_names, None


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


class SupervisorProbe:
    def __init__(
        self,
        config: SupervisorConfig,
        *,
        runner: ProcessRunner,
        control_paths: Sequence[str] = CONTROL_PATHS,
        socket_paths: Sequence[str] = SOCKET_PATHS,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self._config = config
        self._runner = runner
        self._control_paths = tuple(control_paths)
        self._socket_paths = tuple(socket_paths)
        self._which = which
        self._control_args: Optional[list[str]] = None

    # -- discovery ---------------------------------------------------------

    def config_files(self) -> list[Path]:
        directory = Path(self._config.config_path)
        files: list[Path] = []
        for ext in self._config.extensions:
            files.extend(p for p in directory.glob(f"*{ext}") if p.is_file())
        return sorted(set(files))

    def find_supervisorctl(self) -> str:
        for path in self._control_paths:
            if os.path.isfile(path) and os.access(path, os.X_OK):
                return path
        found = self._which("supervisorctl")
        if found:
            return found
        return "supervisorctl"

    def find_socket(self) -> Optional[str]:
        candidates = [self._config.socket_path] if self._config.socket_path else list(self._socket_paths)
        for path in candidates:
            if path and os.path.exists(path):
                return path
        return None

    def control_args(self) -> list[str]:
        if self._control_args is None:
            args = [self.find_supervisorctl()]
            socket_path = self.find_socket()
            if socket_path:
                args += ["-s", f"unix://{socket_path}"]
            self._control_args = args
        return list(self._control_args)

    def load_programs(self, errors: list[str]) -> list[ProgramConfig]:
        programs: list[ProgramConfig] = []
        for path in self.config_files():
            try:
                content = path.read_text(errors="replace")
                programs.extend(parse_supervisor_config(content, path.name))
            except Exception as e:
                errors.append(f"Error processing {path.name}: {e}")
        return programs

    # -- live status -------------------------------------------------------

    def query_status(self, name: str) -> ProcessStatus:
        base = self.control_args()
        last_output = ""
        for target in (f"{name}:*", name):
            try:
                result = self._runner.run(base + ["status", target])
            except Exception as e:
                return ProcessStatus(name=name, status=ERROR, error=str(e))
            output = result.output.strip()
            if output:
                last_output = output
            if is_rejected_output(output):
                continue
            return parse_status_output(output, name)

        if not last_output:
            return ProcessStatus(
                name=name,
                status=UNKNOWN,
                error="Unable to execute supervisorctl or no output returned",
            )
        return ProcessStatus(name=name, status=ERROR, error=last_output)

    def check_processes(self) -> SupervisorReport:
        required = list(self._config.required_queues)
        directory = self._config.config_path

        if not os.path.isdir(directory):
            return SupervisorReport(
                status="error",
                required_queues=required,
                message=f"Supervisor config directory not found: {directory}",
            )

        if not self.config_files():
            return SupervisorReport(
                status="warning",
                required_queues=required,
                message=f"No supervisor config files found in: {directory}",
            )

        errors: list[str] = []
        programs = [
            p for p in self.load_programs(errors) if belongs_to_project(p, self._config.project_root)
        ]

        processes: list[ProcessStatus] = []
        for program in programs:
            live = self.query_status(program.name)
            live.command = program.command
            live.directory = program.directory
            live.user = program.user
            live.config_file = program.config_file
            processes.append(live)

        status, running_names, missing = derive_supervisor_status(processes, required, errors)

        messages: list[str] = []
        if missing:
            messages.append("Required queues not running: " + ", ".join(missing))
        if errors:
            messages.append("Config parsing errors: " + "; ".join(errors))

        logger.info(
            "[supervisor] status=%s processes=%s running_queues=%s/%s",
            status,
            len(processes),
            len(running_names),
            len(required),
        )

        return SupervisorReport(
            status=status,
            processes=processes,
            required_queues=required,
            running_queues=running_names,
            missing_queues=missing,
            errors=errors,
            message="; ".join(messages) or None,
        )
