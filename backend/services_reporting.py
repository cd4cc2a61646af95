"""
Outbound reporting to the monitoring server.

Health reports and backup notifications are POSTed as JSON with a fresh HMAC
bearer token. Delivery problems are logged and returned as False; nothing here
raises to the caller and nothing is retried.
"""
from __future__ import annotations

import logging
import platform
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from auth import generate_auth_token
from config import PACKAGE_VERSION
from health_monitor.aggregator import resolve_server_ip
from health_monitor.config import HealthMonitorConfig

logger = logging.getLogger("health_agent")

USER_AGENT = "HealthMonitor/1.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat()


def build_metadata() -> Dict[str, Any]:
    return {
        "package_version": PACKAGE_VERSION,
        "python_version": platform.python_version(),
        "platform": platform.platform(),
        "server_time": _now_iso(),
        "timezone": time.tzname[0] if time.tzname else "UTC",
    }


class Reporter:
    def __init__(self, config: HealthMonitorConfig) -> None:
        self._config = config

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {generate_auth_token(self._config.server_name, self._config.api_key or '')}",
            "X-Server-Name": self._config.server_name,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if extra:
            headers.update(extra)
        return headers

    def send_report(self, report: Dict[str, Any]) -> bool:
        url = self._config.monitoring_url
        if not url or not self._config.api_key:
            logger.warning("[reporting] Missing monitoring URL or API key; report not sent")
            return False

        payload = {"report": report, "metadata": build_metadata()}
        try:
            resp = requests.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self._config.http_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"[reporting] Health report request failed url={url} error={e}")
            return False
        except Exception as e:
            logger.error(f"[reporting] Health report unexpected error: {e}")
            return False

        if resp.status_code == 200:
            logger.info("[reporting] Health report sent successfully")
            return True

        logger.error(
            "[reporting] Health report failed status_code=%s response=%s",
            resp.status_code,
            (resp.text or "")[:500],
        )
        return False

    def send_backup_notification(self, backup_info: Dict[str, Any]) -> bool:
        url = self._config.backup_notification_url or self._config.monitoring_url
        if not url:
            logger.warning("[reporting] Missing backup notification URL")
            return False
        if not self._config.api_key:
            logger.warning("[reporting] Missing API key; backup notification not sent")
            return False

        try:
            payload = {
                "type": "backup_notification",
                "server_name": self._config.server_name,
                "server_ip": resolve_server_ip(self._config),
                "backup_info": backup_info,
                "timestamp": _now_iso(),
            }
            resp = requests.post(
                url,
                json=payload,
                headers=self._headers({"X-Message-Type": "backup"}),
                timeout=self._config.http_timeout_seconds,
            )
        except Exception as e:
            logger.error(f"[reporting] Backup notification failed: {e}")
            return False

        if resp.status_code != 200:
            logger.error(f"[reporting] Backup notification rejected status_code={resp.status_code}")
            return False
        return True
