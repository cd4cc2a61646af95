"""
Run logging for health checks and database backups.
Appends one JSON object per line to files under the log directory.

Writing a record never fails the caller; problems are reported on the
"health_agent" logger and the run continues.
"""
import json
import logging
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import HEALTH_MONITOR_LOG_DIR

logger = logging.getLogger("health_agent")

HEALTH_LOG_NAME = "health_check.jsonl"
BACKUP_LOG_NAME = "database_backup.jsonl"


def structured_log_line(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def _log_dir(log_dir: Optional[str]) -> Path:
    return Path(log_dir or HEALTH_MONITOR_LOG_DIR)


def _append(log_dir: Optional[str], filename: str, record: Dict[str, Any]) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **record}
    try:
        directory = _log_dir(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        with open(directory / filename, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
    except Exception as e:
        logger.warning(f"[run_log] Failed to write {record.get('event')} record: {e}")


def _error_fields(exc: BaseException) -> Dict[str, Any]:
    return {
        "error": str(exc),
        "exception_type": type(exc).__name__,
        "trace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def summarize_report(report: Dict[str, Any]) -> Dict[str, Any]:
    """Per-section status and counts; the full report is not repeated."""
    summary: Dict[str, Any] = {"status": report.get("status")}

    supervisor = report.get("supervisor")
    if isinstance(supervisor, dict):
        summary["supervisor"] = {
            "status": supervisor.get("status"),
            "total_processes": supervisor.get("total_processes", 0),
            "running_processes": supervisor.get("running_processes", 0),
        }

    cron = report.get("cron")
    if isinstance(cron, dict):
        summary["cron"] = {
            "status": cron.get("status"),
            "total_jobs": cron.get("total_jobs", 0),
            "active_jobs": cron.get("active_jobs", 0),
        }

    queues = report.get("queues")
    if isinstance(queues, dict):
        summary["queues"] = {
            "status": queues.get("status"),
            "ok_queues": queues.get("ok_queues", 0),
            "total_queues": queues.get("total_queues", 0),
        }
    return summary


# Health checks

def log_health_check_started(
    server_name: str,
    *,
    force: bool = False,
    output_format: str = "json",
    monitoring_url: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> None:
    _append(log_dir, HEALTH_LOG_NAME, {
        "event": "health_check_started",
        "server_name": server_name,
        "force": force,
        "output_format": output_format,
        "monitoring_url": monitoring_url,
    })


def log_health_check_completed(
    report: Dict[str, Any],
    duration_ms: int,
    *,
    sent: bool,
    log_dir: Optional[str] = None,
) -> None:
    _append(log_dir, HEALTH_LOG_NAME, {
        "event": "health_check_completed",
        "duration_ms": duration_ms,
        "sent": sent,
        "server_name": report.get("server_name"),
        "server_ip": report.get("server_ip"),
        **summarize_report(report),
    })


def log_health_check_failed(
    exc: BaseException,
    duration_ms: int,
    *,
    server_name: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> None:
    _append(log_dir, HEALTH_LOG_NAME, {
        "event": "health_check_failed",
        "duration_ms": duration_ms,
        "server_name": server_name,
        **_error_fields(exc),
    })


# Database backups

def log_backup_started(
    server_name: str,
    *,
    force: bool = False,
    upload: bool = False,
    log_dir: Optional[str] = None,
) -> None:
    _append(log_dir, BACKUP_LOG_NAME, {
        "event": "backup_started",
        "server_name": server_name,
        "force": force,
        "upload": upload,
    })


def log_backup_completed(
    result: Dict[str, Any],
    duration_ms: int,
    *,
    server_name: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> None:
    record: Dict[str, Any] = {
        "event": "backup_completed",
        "duration_ms": duration_ms,
        "server_name": server_name,
        "file_path": result.get("file_path"),
        "file_size_bytes": result.get("file_size", 0),
        "file_size_mb": round((result.get("file_size") or 0) / 1024 / 1024, 2),
        "uploaded": bool(result.get("uploaded")),
    }
    if result.get("uploaded"):
        record["s3_path"] = result.get("s3_path")
    _append(log_dir, BACKUP_LOG_NAME, record)


def log_backup_failed(
    exc: BaseException,
    duration_ms: int,
    *,
    server_name: Optional[str] = None,
    force: bool = False,
    upload: bool = False,
    log_dir: Optional[str] = None,
) -> None:
    _append(log_dir, BACKUP_LOG_NAME, {
        "event": "backup_failed",
        "duration_ms": duration_ms,
        "server_name": server_name,
        "force": force,
        "upload": upload,
        **_error_fields(exc),
    })


def read_run_records(filename: str = HEALTH_LOG_NAME, limit: int = 100, log_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Most recent records from one run log, newest first.
    Unreadable lines are skipped.
    """
    path = _log_dir(log_dir) / filename
    if not path.exists():
        return []

    records = []
    with open(path, "r") as f:
        lines = f.readlines()
    for line in lines[-limit:]:
        try:
            records.append(json.loads(line.strip()))
        except json.JSONDecodeError:
            continue
    records.reverse()
    return records
