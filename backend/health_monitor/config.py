from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import Optional


def _truthy(value: str) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _csv_list(value: str) -> list[str]:
    items = []
    for raw in (value or "").split(","):
        item = raw.strip()
        if item and item not in items:
            items.append(item)
    return items


def _optional(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def normalize_queue_names(value) -> list[str]:
    """Accept a comma separated string or an explicit list; default to ``["default"]``."""
    if isinstance(value, str):
        names = _csv_list(value)
    elif isinstance(value, (list, tuple, set)):
        names = [str(v).strip() for v in value if str(v).strip()]
    else:
        names = []
    return names or ["default"]


@dataclass(frozen=True)
class SupervisorConfig:
    config_path: str = "/etc/supervisor/conf.d"
    socket_path: Optional[str] = None
    project_root: Optional[str] = None
    extensions: tuple[str, ...] = (".conf", ".ini")
    required_queues: tuple[str, ...] = ("default",)


@dataclass(frozen=True)
class CronConfig:
    user: Optional[str] = None


@dataclass(frozen=True)
class QueueCheckConfig:
    enabled: bool = True
    queues: tuple[str, ...] = ("default",)
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    backend: str = "redis"  # "redis" | "database" | "memory" (in-process worker)
    key_prefix: str = "queues"
    jobs_table: str = "jobs"
    result_ttl_seconds: int = 60  # lifetime of canary records written by the in-process worker


@dataclass(frozen=True)
class RedisConfig:
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass(frozen=True)
class BackupS3Config:
    bucket: Optional[str] = None
    path: str = "backups"
    region: str = "ap-northeast-1"


@dataclass(frozen=True)
class BackupConfig:
    enabled: bool = False
    database_url: Optional[str] = None
    directory: str = "storage/backups"
    retention_days: int = 30
    s3: BackupS3Config = field(default_factory=BackupS3Config)

    @property
    def upload_enabled(self) -> bool:
        return bool(self.s3.bucket)


@dataclass(frozen=True)
class HealthMonitorConfig:
    enabled: bool
    server_name: str
    server_ip: Optional[str] = None

    monitoring_url: Optional[str] = None
    backup_notification_url: Optional[str] = None
    api_key: Optional[str] = None
    http_timeout_seconds: float = 30.0
    ip_lookup_url: str = "http://ipecho.net/plain"

    command_timeout_seconds: Optional[float] = None
    log_dir: Optional[str] = None
    postgres_connection_string: Optional[str] = None

    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    cron: CronConfig = field(default_factory=CronConfig)
    queue_check: QueueCheckConfig = field(default_factory=QueueCheckConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)

    @property
    def reporting_configured(self) -> bool:
        return bool(self.monitoring_url and self.api_key)

    @classmethod
    def from_env(cls) -> "HealthMonitorConfig":
        # Importing config loads the .env files before anything is read.
        import config  # noqa: F401

        queues = tuple(normalize_queue_names(os.getenv("HEALTH_MONITOR_QUEUES", "default")))

        supervisor = SupervisorConfig(
            config_path=os.getenv("HEALTH_MONITOR_SUPERVISOR_CONFIG_PATH", "/etc/supervisor/conf.d"),
            socket_path=_optional(os.getenv("HEALTH_MONITOR_SUPERVISOR_SOCKET")),
            project_root=_optional(os.getenv("HEALTH_MONITOR_PROJECT_ROOT")),
            required_queues=queues,
        )

        queue_check = QueueCheckConfig(
            enabled=_truthy(os.getenv("HEALTH_MONITOR_QUEUE_CHECK_ENABLED", "true")),
            queues=queues,
            timeout_seconds=max(1.0, float(os.getenv("HEALTH_MONITOR_QUEUE_TIMEOUT", "30") or 30)),
            backend=(os.getenv("HEALTH_MONITOR_QUEUE_BACKEND", "redis") or "redis").strip().lower(),
            key_prefix=os.getenv("QUEUE_KEY_PREFIX", "queues") or "queues",
            jobs_table=os.getenv("QUEUE_JOBS_TABLE", "jobs") or "jobs",
            result_ttl_seconds=max(1, int(os.getenv("HEALTH_MONITOR_QUEUE_RESULT_TTL", "60") or 60)),
        )

        redis_cfg = RedisConfig(
            url=_optional(os.getenv("REDIS_URL")),
            host=os.getenv("REDIS_HOST", "localhost") or "localhost",
            port=int(os.getenv("REDIS_PORT", "6379") or 6379),
            db=int(os.getenv("REDIS_DB", "0") or 0),
            password=_optional(os.getenv("REDIS_PASSWORD")),
        )

        backup = BackupConfig(
            enabled=_truthy(os.getenv("DB_BACKUP_ENABLED", "false")),
            database_url=_optional(os.getenv("DB_BACKUP_DATABASE_URL")),
            directory=os.getenv("DB_BACKUP_DIR", "storage/backups") or "storage/backups",
            retention_days=max(1, int(os.getenv("DB_BACKUP_RETENTION_DAYS", "30") or 30)),
            s3=BackupS3Config(
                bucket=_optional(os.getenv("DB_BACKUP_S3_BUCKET")),
                path=os.getenv("DB_BACKUP_S3_PATH", "backups") or "backups",
                region=os.getenv("DB_BACKUP_S3_REGION", "ap-northeast-1") or "ap-northeast-1",
            ),
        )

        command_timeout = _optional(os.getenv("HEALTH_MONITOR_COMMAND_TIMEOUT"))
        monitoring_url = _optional(os.getenv("HEALTH_MONITOR_URL"))

        return cls(
            enabled=_truthy(os.getenv("HEALTH_MONITOR_ENABLED", "false")),
            server_name=os.getenv("HEALTH_MONITOR_SERVER_NAME") or socket.gethostname(),
            server_ip=_optional(os.getenv("HEALTH_MONITOR_SERVER_IP")),
            monitoring_url=monitoring_url,
            backup_notification_url=_optional(os.getenv("HEALTH_MONITOR_BACKUP_URL")) or monitoring_url,
            api_key=_optional(os.getenv("HEALTH_MONITOR_API_KEY")),
            http_timeout_seconds=float(os.getenv("HEALTH_MONITOR_TIMEOUT", "30") or 30),
            ip_lookup_url=os.getenv("HEALTH_MONITOR_IP_LOOKUP_URL", "http://ipecho.net/plain"),
            command_timeout_seconds=float(command_timeout) if command_timeout else None,
            log_dir=_optional(os.getenv("HEALTH_MONITOR_LOG_DIR")),
            postgres_connection_string=_optional(os.getenv("POSTGRES_CONNECTION_STRING")),
            supervisor=supervisor,
            cron=CronConfig(user=_optional(os.getenv("HEALTH_MONITOR_CRON_USER"))),
            queue_check=queue_check,
            redis=redis_cfg,
            backup=backup,
        )
