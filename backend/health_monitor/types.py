from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SectionStatus = str  # "ok" | "warning" | "error" | "timeout" | "disabled"

RUNNING = "RUNNING"
STOPPED = "STOPPED"
PARTIAL = "PARTIAL"
UNKNOWN = "UNKNOWN"
ERROR = "ERROR"


def error_section(message: str) -> Dict[str, Any]:
    return {"status": "error", "message": message}


def overall_status(*sections: Dict[str, Any]) -> SectionStatus:
    """Worst section status wins; disabled sections are ignored."""
    statuses = {(s or {}).get("status") for s in sections} - {"disabled"}
    if statuses & {"error", "timeout"}:
        return "error"
    if "warning" in statuses or None in statuses:
        return "warning"
    return "ok"


@dataclass(frozen=True)
class CronSchedule:
    minute: str
    hour: str
    day: str
    month: str
    weekday: str

    def __str__(self) -> str:
        return " ".join((self.minute, self.hour, self.day, self.month, self.weekday))

    def to_dict(self) -> Dict[str, str]:
        return {
            "minute": self.minute,
            "hour": self.hour,
            "day": self.day,
            "month": self.month,
            "weekday": self.weekday,
        }


@dataclass(frozen=True)
class CronJob:
    schedule: CronSchedule
    schedule_string: str
    command: str
    description: str
    next_run: Optional[str]
    disabled: bool
    original_line: str
    line_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule": self.schedule.to_dict(),
            "schedule_string": self.schedule_string,
            "command": self.command,
            "description": self.description,
            "next_run": self.next_run,
            "disabled": self.disabled,
            "original_line": self.original_line,
            "line_number": self.line_number,
        }


@dataclass(frozen=True)
class CronReport:
    status: SectionStatus
    jobs: list[CronJob] = field(default_factory=list)
    user: Optional[str] = None
    method: Optional[str] = None
    last_checked: Optional[str] = None
    message: Optional[str] = None

    @property
    def total_jobs(self) -> int:
        return len(self.jobs)

    @property
    def disabled_jobs(self) -> int:
        return sum(1 for j in self.jobs if j.disabled)

    @property
    def active_jobs(self) -> int:
        return self.total_jobs - self.disabled_jobs

    def to_dict(self) -> Dict[str, Any]:
        if self.status == "error":
            return {
                "status": self.status,
                "message": self.message,
                "jobs": [],
                "checked_user": self.user or "current user",
            }
        return {
            "status": self.status,
            "user": self.user,
            "method": self.method,
            "total_jobs": self.total_jobs,
            "active_jobs": self.active_jobs,
            "disabled_jobs": self.disabled_jobs,
            "jobs": [j.to_dict() for j in self.jobs],
            "last_checked": self.last_checked,
        }


@dataclass
class ProcessStatus:
    name: str
    status: str = UNKNOWN
    state: Optional[str] = None  # raw supervisorctl state
    command: str = ""
    directory: str = ""
    user: str = ""
    config_file: str = ""
    pid: Optional[int] = None
    pids: list[int] = field(default_factory=list)
    uptime: Optional[str] = None
    uptimes: list[str] = field(default_factory=list)
    process_group: bool = False
    running_count: Optional[int] = None
    total_count: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "command": self.command,
            "directory": self.directory,
            "user": self.user,
            "config_file": self.config_file,
            "status": self.status,
            "pid": self.pid,
            "uptime": self.uptime,
            "process_group": self.process_group,
        }
        if self.process_group:
            data["running_count"] = self.running_count
            data["total_count"] = self.total_count
            data["pids"] = list(self.pids)
            data["uptimes"] = list(self.uptimes)
        if self.state:
            data["state"] = self.state
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class SupervisorReport:
    status: SectionStatus
    processes: list[ProcessStatus] = field(default_factory=list)
    required_queues: list[str] = field(default_factory=list)
    running_queues: list[str] = field(default_factory=list)
    missing_queues: Optional[list[str]] = None
    errors: list[str] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def total_processes(self) -> int:
        return len(self.processes)

    @property
    def running_processes(self) -> int:
        return sum(1 for p in self.processes if p.status == RUNNING)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "total_processes": self.total_processes,
            "running_processes": self.running_processes,
            "stopped_processes": self.total_processes - self.running_processes,
            "required_queues": list(self.required_queues),
            "running_queues": list(self.running_queues),
            "running_queue_count": len(self.running_queues),
            "required_queue_count": len(self.required_queues),
            "processes": [p.to_dict() for p in self.processes],
        }
        if self.missing_queues:
            data["missing_queues"] = list(self.missing_queues)
        if self.errors:
            data["errors"] = list(self.errors)
        if self.message:
            data["message"] = self.message
        return data


@dataclass(frozen=True)
class QueueProbeResult:
    queue_name: str
    status: SectionStatus  # "ok" | "timeout" | "error"
    test_id: str
    response_time: Optional[float] = None
    processed_at: Optional[float] = None
    pending_jobs: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "queue_name": self.queue_name,
            "status": self.status,
            "test_id": self.test_id,
        }
        if self.status == "ok":
            data["response_time"] = self.response_time
            data["processed_at"] = self.processed_at
        if self.status == "timeout":
            data["pending_jobs"] = self.pending_jobs
        if self.message:
            data["message"] = self.message
        return data


@dataclass(frozen=True)
class QueueHealthReport:
    results: list[QueueProbeResult]
    checked_at: str

    @property
    def ok_queues(self) -> int:
        return sum(1 for r in self.results if r.status == "ok")

    @property
    def status(self) -> SectionStatus:
        return "ok" if self.ok_queues == len(self.results) else "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "ok_queues": self.ok_queues,
            "total_queues": len(self.results),
            "queues": {r.queue_name: r.to_dict() for r in self.results},
            "checked_at": self.checked_at,
        }


@dataclass(frozen=True)
class HealthReport:
    server_name: str
    server_ip: str
    timestamp: str
    force_check: bool
    supervisor: Dict[str, Any]
    cron: Dict[str, Any]
    queues: Dict[str, Any]
    status: SectionStatus = "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "server_name": self.server_name,
            "server_ip": self.server_ip,
            "timestamp": self.timestamp,
            "force_check": self.force_check,
            "supervisor": self.supervisor,
            "cron": self.cron,
            "queues": self.queues,
        }


@dataclass(frozen=True)
class HealthCheckOutcome:
    """A report plus whether it reached the monitoring endpoint."""

    report: Dict[str, Any]
    sent: bool

    @property
    def disabled(self) -> bool:
        return self.report.get("status") == "disabled"
