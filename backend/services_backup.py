"""
Database backup pipeline.

dump -> zip (password protected when the database has a password) -> optional
S3 upload -> notification to the monitoring server -> retention cleanup.

Dump and zip go through the injected ProcessRunner so tests never spawn real
tools. Failures remove the temporary dump and re-raise.
"""
from __future__ import annotations

import logging
import os
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote, urlsplit, urlunsplit

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from health_monitor.config import HealthMonitorConfig
from health_monitor.runner import ProcessRunner, SubprocessRunner

logger = logging.getLogger("health_agent")

DEFAULT_PORTS = {"mysql": 3306, "postgresql": 5432}


class BackupError(RuntimeError):
    pass


@dataclass(frozen=True)
class DatabaseTarget:
    engine: str  # "mysql" | "postgresql"
    host: str
    port: int
    user: str
    password: Optional[str]
    database: str
    url: str

    @property
    def encrypted_backup(self) -> bool:
        return bool(self.password)


def parse_database_url(url: str) -> DatabaseTarget:
    parts = urlsplit(url)
    scheme = (parts.scheme or "").split("+", 1)[0].lower()
    if scheme in ("postgres", "postgresql"):
        engine = "postgresql"
    elif scheme in ("mysql", "mariadb"):
        engine = "mysql"
    else:
        raise BackupError(f"Unsupported database URL scheme: {parts.scheme or '(none)'}")

    database = parts.path.lstrip("/")
    if not database:
        raise BackupError("Database URL has no database name")

    return DatabaseTarget(
        engine=engine,
        host=parts.hostname or "localhost",
        port=parts.port or DEFAULT_PORTS[engine],
        user=unquote(parts.username or ""),
        password=unquote(parts.password) if parts.password else None,
        database=database,
        url=url,
    )


def _without_password(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None:
        return url
    userinfo, hostport = parts.netloc.rsplit("@", 1)
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{user}@{hostport}"))


def dump_command(target: DatabaseTarget, output_path: str) -> List[str]:
    """argv for the dump tool. The password never appears here; see dump_environment."""
    if target.engine == "mysql":
        return [
            "mysqldump",
            f"--host={target.host}",
            f"--port={target.port}",
            f"--user={target.user}",
            "--single-transaction",
            "--routines",
            "--triggers",
            f"--result-file={output_path}",
            target.database,
        ]
    return ["pg_dump", f"--dbname={_without_password(target.url)}", f"--file={output_path}", "--no-owner"]


def dump_environment(target: DatabaseTarget) -> Dict[str, str]:
    if not target.password:
        return {}
    if target.engine == "mysql":
        return {"MYSQL_PWD": target.password}
    return {"PGPASSWORD": target.password}


def get_s3_client(region: str):
    return boto3.client("s3", region_name=region)


def bucket_accessible(s3_client, bucket: str) -> bool:
    try:
        s3_client.head_bucket(Bucket=bucket)
        return True
    except (BotoCoreError, ClientError) as e:
        logger.warning(f"[backup] Cannot access S3 bucket {bucket}: {e}")
        return False


def generate_download_url(s3_client, bucket: str, key: str, expires_in: int) -> Optional[str]:
    try:
        return s3_client.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": bucket,
                "Key": key,
                "ResponseContentDisposition": f'attachment; filename="{os.path.basename(key)}"',
            },
            ExpiresIn=int(expires_in),
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"[backup] Failed to presign s3://{bucket}/{key}: {e}")
        return None


class DatabaseBackupService:
    def __init__(
        self,
        config: HealthMonitorConfig,
        *,
        runner: Optional[ProcessRunner] = None,
        reporter=None,
        s3_client=None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._backup = config.backup
        self._runner = runner or SubprocessRunner(timeout_seconds=config.command_timeout_seconds)
        self._reporter = reporter
        self._s3 = s3_client
        self._clock = clock

    @property
    def backup_dir(self) -> Path:
        return Path(self._backup.directory)

    def database_target(self) -> DatabaseTarget:
        url = self._backup.database_url or self._config.postgres_connection_string
        if not url:
            raise BackupError("No database configured for backups (DB_BACKUP_DATABASE_URL)")
        return parse_database_url(url)

    def _s3_client(self):
        if self._s3 is None:
            self._s3 = get_s3_client(self._backup.s3.region)
        return self._s3

    # -- steps -------------------------------------------------------------

    def create_dump(self, target: DatabaseTarget, output_path: Path) -> None:
        result = self._runner.run(dump_command(target, str(output_path)), env=dump_environment(target))
        if not result.ok:
            raise BackupError(f"Database dump failed: {result.output.strip()}")
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise BackupError("Database dump produced empty or missing file")

    def compress(self, sql_path: Path, password: Optional[str]) -> Path:
        zip_path = sql_path.with_suffix(".zip")
        if password:
            # zip only accepts the archive password on argv
            result = self._runner.run(["zip", "-j", "-P", password, str(zip_path), str(sql_path)])
            if not result.ok:
                raise BackupError(f"ZIP compression with password failed: {result.output.strip()}")
        else:
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.write(sql_path, arcname=sql_path.name)

        if not zip_path.exists():
            raise BackupError("Failed to create compressed backup file")
        return zip_path

    def upload(self, zip_path: Path) -> Dict[str, Any]:
        bucket = self._backup.s3.bucket
        key = f"{self._backup.s3.path.strip('/')}/{zip_path.name}".lstrip("/")
        try:
            with open(zip_path, "rb") as f:
                self._s3_client().put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=f,
                    ServerSideEncryption="AES256",
                    Metadata={
                        "server-name": self._config.server_name,
                        "backup-date": self._clock().isoformat(),
                        "file-size": str(zip_path.stat().st_size),
                    },
                )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"[backup] S3 upload failed: {e}")
            return {"uploaded": False, "upload_error": str(e)}

        return {
            "uploaded": True,
            "s3_bucket": bucket,
            "s3_path": key,
            "s3_url": f"https://{bucket}.s3.{self._backup.s3.region}.amazonaws.com/{key}",
        }

    def notify(self, backup_info: Dict[str, Any]) -> None:
        if self._reporter is None:
            return
        try:
            self._reporter.send_backup_notification(backup_info)
        except Exception as e:
            logger.warning(f"[backup] Failed to send backup notification: {e}")

    def cleanup_old_backups(self) -> List[str]:
        directory = self.backup_dir
        if not directory.is_dir():
            return []
        cutoff = (self._clock() - timedelta(days=self._backup.retention_days)).timestamp()
        removed = []
        for path in sorted(directory.glob("*.zip")):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path.name)
                logger.info(f"[backup] Deleted old backup file {path.name}")
        return removed

    # -- pipeline ----------------------------------------------------------

    def perform_backup(self, upload: bool = True) -> Dict[str, Any]:
        started = time.monotonic()
        now = self._clock()
        filename = f"backup_{self._config.server_name}_{now.strftime('%Y-%m-%d_%H-%M-%S')}.sql"
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        sql_path = self.backup_dir / filename

        try:
            target = self.database_target()
            self.create_dump(target, sql_path)
            zip_path = self.compress(sql_path, target.password)
            sql_path.unlink()

            result: Dict[str, Any] = {
                "file_path": str(zip_path),
                "file_size": zip_path.stat().st_size,
                "duration": round(time.monotonic() - started, 2),
                "timestamp": now.isoformat(),
                "uploaded": False,
                "encrypted": target.encrypted_backup,
            }

            if upload and self._backup.upload_enabled:
                result.update(self.upload(zip_path))

            self.notify(result)
            self.cleanup_old_backups()
            return result
        except Exception as e:
            if sql_path.exists():
                sql_path.unlink()
            logger.error(
                f"[backup] Database backup failed: {e} duration={round(time.monotonic() - started, 2)}s"
            )
            raise
