"""
Queue probe.

Dispatches a canary job onto each watched queue and waits for a worker to
record that it ran. The record lives in a shared result store under
``queue_health_check:<test_id>`` with a short TTL.

Worker side: a host worker that pops a canary payload calls
``run_canary_payload(raw, store)``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel

from .config import QueueCheckConfig
from .queue_backends import CANARY_JOB_TYPE, QueueBackend
from .result_store import ResultStore, result_key
from .types import QueueHealthReport, QueueProbeResult

logger = logging.getLogger("health_agent")

RESULT_TTL_SECONDS = 60


class CanaryJob(BaseModel):
    job_type: Literal["queue_health_check"] = CANARY_JOB_TYPE
    test_id: str
    dispatched_at: float
    queue: str = "default"

    def _record(self, status: str, **extra: Any) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "dispatched_at": self.dispatched_at,
            "processed_at": time.time(),
            "queue": self.queue,
            "status": status,
            **extra,
        }

    def handle(self, store: ResultStore, ttl_seconds: int = RESULT_TTL_SECONDS) -> None:
        store.set(result_key(self.test_id), self._record("processed"), ttl_seconds)
        logger.info(f"[queue_canary] processed test_id={self.test_id} queue={self.queue}")

    def failed(self, store: ResultStore, exc: BaseException, ttl_seconds: int = RESULT_TTL_SECONDS) -> None:
        store.set(result_key(self.test_id), self._record("failed", error=str(exc)), ttl_seconds)
        logger.error(f"[queue_canary] failed test_id={self.test_id} queue={self.queue} error={exc}")


def run_canary_payload(raw: str, store: ResultStore, ttl_seconds: int = RESULT_TTL_SECONDS) -> CanaryJob:
    job = CanaryJob.model_validate_json(raw)
    try:
        job.handle(store, ttl_seconds)
    except Exception as e:
        job.failed(store, e, ttl_seconds)
        raise
    return job


class QueueProbe:
    def __init__(
        self,
        config: QueueCheckConfig,
        *,
        backend: QueueBackend,
        store: ResultStore,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._backend = backend
        self._store = store
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

    def _pending_jobs(self, queue: str) -> Optional[int]:
        try:
            return self._backend.pending_jobs(queue)
        except Exception as e:
            logger.warning(f"[queue_probe] pending job count unavailable for {queue}: {e}")
            return None

    def _wait_for_record(self, key: str) -> Optional[Dict[str, Any]]:
        deadline = self._clock() + self._config.timeout_seconds
        while True:
            if self._store.exists(key):
                record = self._store.get(key) or {}
                self._store.delete(key)
                return record
            if self._clock() >= deadline:
                return None
            self._sleep(self._config.poll_interval_seconds)

    def check_queue(self, queue: str) -> QueueProbeResult:
        test_id = uuid4().hex
        key = result_key(test_id)
        try:
            dispatched_at = self._wall_clock()
            self._backend.push_canary(
                queue, CanaryJob(test_id=test_id, dispatched_at=dispatched_at, queue=queue)
            )

            record = self._wait_for_record(key)
            if record is None:
                return QueueProbeResult(
                    queue_name=queue,
                    status="timeout",
                    test_id=test_id,
                    pending_jobs=self._pending_jobs(queue),
                    message=f"Canary job not processed within {self._config.timeout_seconds:g}s",
                )

            if record.get("status") == "failed":
                return QueueProbeResult(
                    queue_name=queue,
                    status="error",
                    test_id=test_id,
                    message=f"Canary job failed: {record.get('error') or 'unknown error'}",
                )

            processed_at = record.get("processed_at")
            response_time = None
            if isinstance(processed_at, (int, float)):
                response_time = round(processed_at - dispatched_at, 3)
            return QueueProbeResult(
                queue_name=queue,
                status="ok",
                test_id=test_id,
                response_time=response_time,
                processed_at=processed_at,
            )
        except Exception as e:
            logger.error(f"[queue_probe] check failed for queue {queue}: {e}")
            return QueueProbeResult(queue_name=queue, status="error", test_id=test_id, message=str(e))

    def check_queue_health(self) -> QueueHealthReport:
        results = []
        for queue in self._config.queues:
            result = self.check_queue(queue)
            logger.info(
                "[queue_probe] queue=%s status=%s response_time=%s",
                queue,
                result.status,
                result.response_time,
            )
            results.append(result)
        return QueueHealthReport(results=results, checked_at=datetime.now().isoformat())
