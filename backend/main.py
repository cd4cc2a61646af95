from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
import logging
import time
import uuid

from api_backup import router as backup_router
from api_force_check import router as force_check_router
from api_health import router as health_router

from auth import ServerAuthError
from config import LOG_LEVEL, PACKAGE_VERSION
from health_monitor import HealthMonitorConfig
from services_logging import structured_log_line

logging.basicConfig(level=LOG_LEVEL, format="%(message)s")
logger = logging.getLogger("health_agent")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Read the monitor config once at startup; routes reach it via auth.get_monitor_config."""
    cfg = HealthMonitorConfig.from_env()
    app.state.monitor_config = cfg
    logger.info(
        structured_log_line(
            {
                "event": "startup",
                "server_name": cfg.server_name,
                "monitor_enabled": cfg.enabled,
                "reporting_configured": cfg.reporting_configured,
                "queue_check_enabled": cfg.queue_check.enabled,
                "queues": list(cfg.queue_check.queues),
                "backup_enabled": cfg.backup.enabled,
            }
        )
    )
    if cfg.enabled and not cfg.reporting_configured:
        logger.warning("Health monitor is enabled but HEALTH_MONITOR_URL or HEALTH_MONITOR_API_KEY is missing")

    yield

    logger.info(structured_log_line({"event": "shutdown", "server_name": cfg.server_name}))


app = FastAPI(
    title="Health Agent",
    description="Host health probes, reporting and force-check trigger.",
    version=PACKAGE_VERSION,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(force_check_router)
app.include_router(backup_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One JSON line per request; echoes or assigns x-request-id."""
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["x-request-id"] = request_id
        return response
    finally:
        logger.info(
            structured_log_line(
                {
                    "event": "request",
                    "request_id": request_id,
                    "method": request.method,
                    "route": request.url.path,
                    "status": status_code,
                    "latency_ms": int((time.perf_counter() - started) * 1000),
                    "server_name": request.headers.get("x-server-name"),
                }
            )
        )


# Error responses
@app.exception_handler(ServerAuthError)
async def server_auth_exception_handler(request: Request, exc: ServerAuthError):
    # Reason already logged by auth.require_server_auth; callers never learn it
    return JSONResponse(
        status_code=401,
        content={"success": False, "message": "Authentication failed"},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed trigger or download-url payloads: 422 with pydantic's error list."""
    logger.warning(
        f"[api] Validation error on {request.method} {request.url.path}",
        extra={"path": request.url.path, "errors": exc.errors()},
    )
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Anything a route or dependency let escape (an S3 client that cannot be
    built, a config that cannot be read). Full traceback goes to the log,
    the caller only sees a generic 500.
    """
    logger.exception(
        f"[api] Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra={"path": request.url.path, "exception_type": type(exc).__name__},
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Health agent is running"}
