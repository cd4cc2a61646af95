"""Host health probes (backend/health_monitor).

This package checks three independent subsystems on the host:
- supervisord programs, including numbered process groups
- the configured user's crontab
- background queues, by dispatching a canary job and waiting for it

The aggregator combines them into one report and hands it to the reporter.
Everything is disabled unless `HEALTH_MONITOR_ENABLED=true`.
"""

from .aggregator import HealthAggregator, build_default_aggregator
from .config import HealthMonitorConfig
from .cron import CrontabProbe
from .queue_probe import CanaryJob, QueueProbe, run_canary_payload
from .supervisor import SupervisorProbe

__all__ = [
    "CanaryJob",
    "CrontabProbe",
    "HealthAggregator",
    "HealthMonitorConfig",
    "QueueProbe",
    "SupervisorProbe",
    "build_default_aggregator",
    "run_canary_payload",
]
