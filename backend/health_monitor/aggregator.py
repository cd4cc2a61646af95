"""
Health aggregator.

Runs the supervisor, cron and queue probes one after another, assembles the
report and hands it to the reporter. A probe that raises degrades only its own
section; delivery success is returned next to the report, never inside it.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from .config import HealthMonitorConfig
from .cron import CrontabProbe
from .queue_backends import InMemoryQueueBackend, build_queue_backend
from .queue_probe import QueueProbe, run_canary_payload
from .result_store import InMemoryResultStore, RedisResultStore
from .runner import SubprocessRunner
from .supervisor import SupervisorProbe
from .types import HealthCheckOutcome, HealthReport, error_section, overall_status

logger = logging.getLogger("health_agent")

DISABLED: Dict[str, Any] = {"status": "disabled"}

# Any routable address works; connecting a UDP socket sends nothing.
_ROUTE_PROBE_ADDRESS = ("8.8.8.8", 80)


class Reporter(Protocol):
    def send_report(self, report: Dict[str, Any]) -> bool: ...


class QueueSection(Protocol):
    def check_queue_health(self) -> Any: ...


# ---------------------------------------------------------------------------
# Server IP resolution
# ---------------------------------------------------------------------------


def lookup_public_ip(url: str, timeout: float = 5.0) -> Optional[str]:
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.debug(f"[aggregator] public IP lookup failed: {e}")
        return None
    ip = (resp.text or "").strip()
    return ip or None


def local_interface_ip() -> Optional[str]:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(_ROUTE_PROBE_ADDRESS)
            return s.getsockname()[0]
    except OSError:
        return None


def hostname_ip() -> Optional[str]:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return None


def resolve_server_ip(config: HealthMonitorConfig) -> str:
    """Configured value, else public lookup, else bound interface, else hostname."""
    if config.server_ip:
        return config.server_ip
    resolvers: list[Callable[[], Optional[str]]] = [
        lambda: lookup_public_ip(config.ip_lookup_url),
        local_interface_ip,
        hostname_ip,
    ]
    for resolve in resolvers:
        ip = resolve()
        if ip:
            return ip
    return "127.0.0.1"


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class HealthAggregator:
    def __init__(
        self,
        config: HealthMonitorConfig,
        *,
        supervisor: SupervisorProbe,
        cron: CrontabProbe,
        queue: Optional[QueueSection],
        reporter: Reporter,
        ip_resolver: Optional[Callable[[], str]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._cron = cron
        self._queue = queue
        self._reporter = reporter
        self._ip_resolver = ip_resolver or (lambda: resolve_server_ip(config))
        self._clock = clock

    def _section(self, name: str, check: Callable[[], Any]) -> Dict[str, Any]:
        try:
            return check().to_dict()
        except Exception as e:
            logger.error(f"[aggregator] {name} check failed: {e}", exc_info=True)
            return error_section(str(e))

    def check_supervisor(self) -> Dict[str, Any]:
        return self._section("supervisor", self._supervisor.check_processes)

    def check_cron(self) -> Dict[str, Any]:
        return self._section("cron", self._cron.check_cron_jobs)

    def check_queues(self) -> Dict[str, Any]:
        if not self._config.queue_check.enabled or self._queue is None:
            return dict(DISABLED)
        return self._section("queue", self._queue.check_queue_health)

    def build_report(self, force_check: bool = False) -> HealthReport:
        supervisor = self.check_supervisor()
        cron = self.check_cron()
        queues = self.check_queues()
        return HealthReport(
            server_name=self._config.server_name,
            server_ip=self._ip_resolver(),
            timestamp=self._clock().isoformat(),
            force_check=force_check,
            supervisor=supervisor,
            cron=cron,
            queues=queues,
            status=overall_status(supervisor, cron, queues),
        )

    def perform_health_check(self, force_check: bool = False) -> HealthCheckOutcome:
        if not self._config.enabled:
            logger.info("[aggregator] Health monitor is disabled")
            return HealthCheckOutcome(report=dict(DISABLED), sent=False)

        report = self.build_report(force_check).to_dict()

        try:
            sent = bool(self._reporter.send_report(report))
        except Exception as e:
            logger.error(f"[aggregator] report delivery raised: {e}")
            sent = False

        label = "Force health check completed" if force_check else "Health check completed"
        logger.info(
            "[aggregator] %s status=%s sent_successfully=%s",
            label,
            report["status"],
            sent,
        )
        return HealthCheckOutcome(report=report, sent=sent)


class UnavailableQueueProbe:
    """Queue section placeholder for a backend that could not be built."""

    def __init__(self, message: str) -> None:
        self.message = message

    def check_queue_health(self):
        raise RuntimeError(self.message)


def build_queue_probe(config: HealthMonitorConfig) -> QueueProbe:
    queue_check = config.queue_check
    if queue_check.backend == "memory":
        # Single-process hosts: the canary runs as soon as it is pushed
        store = InMemoryResultStore()
        backend = InMemoryQueueBackend(
            worker=lambda queue, raw: run_canary_payload(raw, store, queue_check.result_ttl_seconds)
        )
        return QueueProbe(queue_check, backend=backend, store=store)

    return QueueProbe(
        queue_check,
        backend=build_queue_backend(config),
        store=RedisResultStore.from_config(config.redis),
    )


def build_default_aggregator(config: HealthMonitorConfig) -> HealthAggregator:
    """Wire the production probes, stores and reporter from one config object."""
    from services_reporting import Reporter as HttpReporter

    runner = SubprocessRunner(timeout_seconds=config.command_timeout_seconds)

    queue_probe = None
    if config.queue_check.enabled:
        try:
            queue_probe = build_queue_probe(config)
        except Exception as e:
            logger.error(f"[aggregator] queue backend unavailable: {e}")
            queue_probe = UnavailableQueueProbe(str(e))

    return HealthAggregator(
        config,
        supervisor=SupervisorProbe(config.supervisor, runner=runner),
        cron=CrontabProbe(config.cron, runner=runner),
        queue=queue_probe,
        reporter=HttpReporter(config),
    )
