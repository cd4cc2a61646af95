"""
Liveness endpoint for the agent process itself.
"""
from fastapi import APIRouter, Depends

from auth import get_monitor_config
from health_monitor import HealthMonitorConfig

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_check(config: HealthMonitorConfig = Depends(get_monitor_config)):
    """Basic liveness check. Does not run any probe."""
    return {
        "status": "ok",
        "service": "health-agent",
        "monitor_enabled": config.enabled,
        "reporting_configured": config.reporting_configured,
    }
