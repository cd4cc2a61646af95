"""
Server-to-server authentication.

Provides:
- Short-lived HMAC tokens (outbound reports and inbound triggers share them)
- Bearer / X-Server-Name extraction from requests
- FastAPI dependency for route protection

Token format: base64("<unix_ts>.<hex hmac_sha256(key=api_key, msg="<server_name>:<unix_ts>")>").
Tokens are accepted within TOKEN_MAX_AGE_SECONDS of the verifier's clock in
either direction.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import Depends, Request

from health_monitor.config import HealthMonitorConfig

logger = logging.getLogger("health_agent")

TOKEN_MAX_AGE_SECONDS = 300


class ServerAuthError(Exception):
    """Raised by require_server_auth; rendered as a generic 401 by main.py."""


def _sign(server_name: str, timestamp: int, secret: str) -> str:
    payload = f"{server_name}:{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def generate_auth_token(server_name: str, secret: str, now: Optional[float] = None) -> str:
    timestamp = int(time.time() if now is None else now)
    signature = _sign(server_name, timestamp, secret)
    return base64.b64encode(f"{timestamp}.{signature}".encode("utf-8")).decode("ascii")


def verify_auth_token(token: str, server_name: str, secret: str, now: Optional[float] = None) -> bool:
    """
    Check a token for this server name.

    Returns False for anything malformed, stale, or signed with another key.
    Never raises.
    """
    if not token or not server_name or not secret:
        return False
    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
        ts_part, signature = decoded.split(".", 1)
        timestamp = int(ts_part)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return False

    current = int(time.time() if now is None else now)
    if abs(current - timestamp) > TOKEN_MAX_AGE_SECONDS:
        return False

    expected = _sign(server_name, timestamp, secret)
    # Bytes, so a non-ASCII signature is a mismatch rather than a TypeError
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def get_monitor_config(request: Request) -> HealthMonitorConfig:
    """Config loaded at startup (main.py lifespan), or read now if absent."""
    cfg = getattr(request.app.state, "monitor_config", None)
    if cfg is None:
        cfg = HealthMonitorConfig.from_env()
        request.app.state.monitor_config = cfg
    return cfg


def authenticate_request(request: Request, config: HealthMonitorConfig) -> bool:
    server_name = request.headers.get("X-Server-Name")
    token = extract_bearer_token(request)
    if not server_name or not token or not config.api_key:
        return False
    if server_name != config.server_name:
        return False
    return verify_auth_token(token, server_name, config.api_key)


def require_server_auth(
    request: Request,
    config: HealthMonitorConfig = Depends(get_monitor_config),
) -> HealthMonitorConfig:
    """
    FastAPI dependency for trigger-style routes.

    Every failure looks the same to the caller; the reason is only logged.
    """
    if not authenticate_request(request, config):
        logger.warning(
            "[auth] rejected %s %s from %s",
            request.method,
            request.url.path,
            request.client.host if request.client else "unknown",
        )
        raise ServerAuthError()
    return config
