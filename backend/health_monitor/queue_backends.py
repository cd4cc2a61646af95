"""
Queue backends the canary can be dispatched through.

A backend only needs to push a serialized canary onto a named queue. Reporting
queue depth is optional and best-effort; depth is advisory and never decides
the health verdict.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Protocol

import psycopg2
from psycopg2 import sql

from .config import HealthMonitorConfig
from .result_store import get_redis_client

logger = logging.getLogger("health_agent")

CANARY_JOB_TYPE = "queue_health_check"
# Compact JSON as emitted by pydantic's model_dump_json
CANARY_MARKER = f'"job_type":"{CANARY_JOB_TYPE}"'


class CanaryPayload(Protocol):
    def model_dump_json(self) -> str: ...


class QueueBackend(Protocol):
    def push_canary(self, queue: str, job: CanaryPayload) -> None: ...

    def pending_jobs(self, queue: str) -> Optional[int]: ...


def is_canary_payload(raw: str) -> bool:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return False
    return isinstance(data, dict) and data.get("job_type") == CANARY_JOB_TYPE


class RedisListQueueBackend:
    """LPUSH JSON payloads onto ``<prefix>:<queue>`` lists."""

    def __init__(self, client, *, key_prefix: str = "queues") -> None:
        self._redis = client
        self._prefix = key_prefix

    def queue_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}"

    def push_canary(self, queue: str, job: CanaryPayload) -> None:
        self._redis.lpush(self.queue_key(queue), job.model_dump_json())

    def pending_jobs(self, queue: str) -> Optional[int]:
        try:
            entries = self._redis.lrange(self.queue_key(queue), 0, -1)
        except Exception as e:
            logger.warning(f"[queue_backend] Redis depth lookup failed for {queue}: {e}")
            return None
        # Entries without a readable job_type still count as real work
        return sum(1 for raw in entries if not is_canary_payload(raw))


class PostgresTableQueueBackend:
    """Jobs table with ``queue``, ``payload`` and ``reserved_at`` columns."""

    def __init__(
        self,
        connection_string: str,
        *,
        table: str = "jobs",
        connect: Callable = psycopg2.connect,
    ) -> None:
        self._dsn = connection_string
        self._table = table
        self._connect = connect

    def push_canary(self, queue: str, job: CanaryPayload) -> None:
        query = sql.SQL("INSERT INTO {} (queue, payload) VALUES (%s, %s)").format(
            sql.Identifier(self._table)
        )
        conn = self._connect(self._dsn)
        try:
            with conn.cursor() as cur:
                cur.execute(query, (queue, job.model_dump_json()))
            conn.commit()
        finally:
            conn.close()

    def pending_jobs(self, queue: str) -> Optional[int]:
        query = sql.SQL(
            "SELECT COUNT(*) FROM {} WHERE queue = %s AND reserved_at IS NULL AND payload NOT LIKE %s"
        ).format(sql.Identifier(self._table))
        try:
            conn = self._connect(self._dsn)
        except Exception as e:
            logger.warning(f"[queue_backend] Database depth lookup failed for {queue}: {e}")
            return None
        try:
            with conn.cursor() as cur:
                cur.execute(query, (queue, f"%{CANARY_MARKER}%"))
                row = cur.fetchone()
            return int(row[0]) if row else 0
        except Exception as e:
            logger.warning(f"[queue_backend] Database depth lookup failed for {queue}: {e}")
            return None
        finally:
            conn.close()


class InMemoryQueueBackend:
    """
    Process-local queues.

    ``worker`` is called with (queue, raw_payload) right after a push, which
    lets an in-process consumer (or a test) pick the canary up immediately.
    """

    def __init__(self, worker: Optional[Callable[[str, str], None]] = None) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._worker = worker

    def push(self, queue: str, raw: str) -> None:
        if self._worker is not None:
            self._worker(queue, raw)
            return
        self._queues[queue].appendleft(raw)

    def push_canary(self, queue: str, job: CanaryPayload) -> None:
        self.push(queue, job.model_dump_json())

    def pop(self, queue: str) -> Optional[str]:
        items = self._queues.get(queue)
        if not items:
            return None
        return items.pop()

    def pending_jobs(self, queue: str) -> Optional[int]:
        return sum(1 for raw in self._queues.get(queue, ()) if not is_canary_payload(raw))


def build_queue_backend(config: HealthMonitorConfig) -> QueueBackend:
    kind = config.queue_check.backend
    if kind == "redis":
        return RedisListQueueBackend(
            get_redis_client(config.redis), key_prefix=config.queue_check.key_prefix
        )
    if kind == "database":
        if not config.postgres_connection_string:
            raise ValueError("POSTGRES_CONNECTION_STRING is required for the database queue backend")
        return PostgresTableQueueBackend(
            config.postgres_connection_string, table=config.queue_check.jobs_table
        )
    raise ValueError(f"Unknown queue backend: {kind}")
