"""
Inbound force-check trigger.

The monitoring server calls this to ask for an immediate health report. The
caller must present X-Server-Name matching this host and a valid HMAC bearer
token for that name (see auth.py).
"""
import logging
from typing import Callable

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from auth import require_server_auth
from health_monitor import HealthAggregator, HealthMonitorConfig, build_default_aggregator

logger = logging.getLogger("health_agent")

router = APIRouter(prefix="/health-monitor", tags=["health-monitor"])

AggregatorFactory = Callable[[HealthMonitorConfig], HealthAggregator]


def get_aggregator_factory() -> AggregatorFactory:
    return build_default_aggregator


def _response(success: bool, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": success, "message": message})


@router.post("/force-check")
def force_check(
    config: HealthMonitorConfig = Depends(require_server_auth),
    make_aggregator: AggregatorFactory = Depends(get_aggregator_factory),
):
    """Run a full check now and push the report. Blocks until the check finishes."""
    try:
        outcome = make_aggregator(config).perform_health_check(force_check=True)
    except Exception as e:
        logger.error(f"[force_check] Force health check failed: {e}", exc_info=True)
        return _response(False, f"Failed to trigger health check: {e}", 500)

    logger.info(f"[force_check] completed sent={outcome.sent} disabled={outcome.disabled}")
    return _response(True, "Health check triggered successfully", 200)
