#!/usr/bin/env python3
"""
Command line entry points. Safe for cron.

Usage:
    health-agent check [--force] [--output json|table]
    health-agent backup [--force] [--upload]
    health-agent history [--backups] [--limit 20]
    health-agent serve [--host 0.0.0.0] [--port 8000]
"""
import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from config import LOG_LEVEL
from health_monitor import HealthMonitorConfig, build_default_aggregator
from services_backup import DatabaseBackupService
from services_reporting import Reporter
import services_logging as run_log

logger = logging.getLogger("health_agent")


def load_config() -> HealthMonitorConfig:
    return HealthMonitorConfig.from_env()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def render_table(report: Dict[str, Any]) -> str:
    lines: List[str] = [
        f"Server: {report.get('server_name')} ({report.get('server_ip')})",
        f"Timestamp: {report.get('timestamp')}",
        f"Overall: {report.get('status')}",
        "",
        "Supervisor Status:",
    ]

    supervisor = report.get("supervisor") or {}
    if supervisor.get("status") == "ok":
        lines.append(f"  Total Processes: {supervisor.get('total_processes', 0)}")
        lines.append(f"  Running: {supervisor.get('running_processes', 0)}")
        lines.append(f"  Stopped: {supervisor.get('stopped_processes', 0)}")
        processes = supervisor.get("processes") or []
        if processes:
            rows = [("Process", "Status", "PID", "Uptime")]
            rows += [
                (p["name"], p["status"], str(p.get("pid") or "N/A"), p.get("uptime") or "N/A")
                for p in processes
            ]
            widths = [max(len(r[i]) for r in rows) for i in range(4)]
            for row in rows:
                lines.append("  " + "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    else:
        lines.append(f"  Status: {supervisor.get('status')}")
        if supervisor.get("message"):
            lines.append(f"  Message: {supervisor['message']}")

    cron = report.get("cron") or {}
    lines += ["", "Cron Status:"]
    if cron.get("status") == "ok":
        lines.append(f"  User: {cron.get('user')}")
        lines.append(f"  Total Jobs: {cron.get('total_jobs', 0)}")
        lines.append(f"  Active Jobs: {cron.get('active_jobs', 0)}")
        lines.append(f"  Disabled Jobs: {cron.get('disabled_jobs', 0)}")
    else:
        lines.append(f"  Status: {cron.get('status')}")
        if cron.get("message"):
            lines.append(f"  Message: {cron['message']}")

    queues = report.get("queues") or {}
    lines += ["", "Queue Health:"]
    lines.append(f"  Status: {queues.get('status')}")
    if queues.get("status") != "disabled":
        lines.append(f"  OK Queues: {queues.get('ok_queues', 0)}/{queues.get('total_queues', 0)}")
    return "\n".join(lines)


def run_check(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    cfg = load_config()
    run_log.log_health_check_started(
        cfg.server_name,
        force=args.force,
        output_format=args.output,
        monitoring_url=cfg.monitoring_url,
        log_dir=cfg.log_dir,
    )

    if not cfg.enabled and not args.force:
        print("Health monitor is disabled. Use --force to run anyway.", file=sys.stderr)
        return 1
    if args.force:
        cfg = replace(cfg, enabled=True)

    try:
        outcome = build_default_aggregator(cfg).perform_health_check(force_check=args.force)
    except Exception as e:
        run_log.log_health_check_failed(e, _elapsed_ms(start), server_name=cfg.server_name, log_dir=cfg.log_dir)
        logger.error(f"[cli] Health check failed: {e}", exc_info=True)
        print(f"Health check failed: {e}", file=sys.stderr)
        return 1

    run_log.log_health_check_completed(outcome.report, _elapsed_ms(start), sent=outcome.sent, log_dir=cfg.log_dir)

    if args.output == "table":
        print(render_table(outcome.report))
    else:
        print(json.dumps(outcome.report, indent=2, default=str))
    print(f"Health check completed. Report sent: {'yes' if outcome.sent else 'no'}")
    return 0


def run_backup(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    cfg = load_config()

    if not cfg.backup.enabled and not args.force:
        print("Database backup is disabled. Use --force to run anyway.", file=sys.stderr)
        return 1

    print("Starting database backup...")
    run_log.log_backup_started(cfg.server_name, force=args.force, upload=args.upload, log_dir=cfg.log_dir)

    try:
        service = DatabaseBackupService(cfg, reporter=Reporter(cfg))
        result = service.perform_backup(upload=args.upload)
    except Exception as e:
        run_log.log_backup_failed(
            e,
            _elapsed_ms(start),
            server_name=cfg.server_name,
            force=args.force,
            upload=args.upload,
            log_dir=cfg.log_dir,
        )
        print(f"Database backup failed: {e}", file=sys.stderr)
        return 1

    run_log.log_backup_completed(result, _elapsed_ms(start), server_name=cfg.server_name, log_dir=cfg.log_dir)
    print("Database backup completed successfully.")
    print(f"Backup file: {result['file_path']}")
    print(f"File size: {result['file_size'] / 1024 / 1024:.2f} MB")
    if result.get("uploaded"):
        print(f"Uploaded to S3: {result['s3_path']}")
    elif result.get("upload_error"):
        print(f"S3 upload failed: {result['upload_error']}", file=sys.stderr)
    return 0


def run_history(args: argparse.Namespace) -> int:
    cfg = load_config()
    filename = run_log.BACKUP_LOG_NAME if args.backups else run_log.HEALTH_LOG_NAME
    records = run_log.read_run_records(filename, limit=args.limit, log_dir=cfg.log_dir)
    if not records:
        print(f"No records in {filename}", file=sys.stderr)
        return 0
    for record in records:
        print(json.dumps(record, default=str))
    return 0


def run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("main:app", host=args.host, port=args.port, log_level=LOG_LEVEL.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="health-agent", description="Host health agent")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Run supervisor, cron and queue checks and send the report")
    check.add_argument("--force", action="store_true", help="Run even if the monitor is disabled")
    check.add_argument("--output", choices=["json", "table"], default="json", help="Output format")
    check.set_defaults(func=run_check)

    backup = sub.add_parser("backup", help="Dump, compress and optionally upload the database")
    backup.add_argument("--force", action="store_true", help="Run even if backups are disabled")
    backup.add_argument("--upload", action="store_true", help="Upload the archive to S3")
    backup.set_defaults(func=run_backup)

    history = sub.add_parser("history", help="Print recent run records, newest first")
    history.add_argument("--backups", action="store_true", help="Backup runs instead of health checks")
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(func=run_history)

    serve = sub.add_parser("serve", help="Serve the force-check and backup endpoints")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=run_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
