"""
Backup download links.

The monitoring server asks for a short-lived presigned URL to a backup this
host uploaded. Same HMAC authentication as the force-check trigger.
"""
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from auth import require_server_auth
from health_monitor import HealthMonitorConfig
from services_backup import bucket_accessible, generate_download_url, get_s3_client

logger = logging.getLogger("health_agent")

router = APIRouter(prefix="/api/backup", tags=["backup"])


class DownloadUrlRequest(BaseModel):
    filename: str = Field(..., min_length=1)
    s3_bucket: str = Field(..., min_length=1)
    s3_path: str = Field(..., min_length=1)
    expires_in: int = Field(300, ge=60, le=3600)


def get_backup_s3_client(config: HealthMonitorConfig = Depends(require_server_auth)):
    return get_s3_client(config.backup.s3.region)


def _failure(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@router.post("/download-url")
def create_download_url(payload: DownloadUrlRequest, s3_client=Depends(get_backup_s3_client)):
    try:
        if not bucket_accessible(s3_client, payload.s3_bucket):
            return _failure("Access denied to S3 bucket", 403)

        url = generate_download_url(s3_client, payload.s3_bucket, payload.s3_path, payload.expires_in)
        if not url:
            return _failure("Failed to generate download URL", 500)
    except Exception as e:
        logger.error(f"[backup_api] Failed to generate download URL: {e}", exc_info=True)
        return _failure("Internal server error", 500)

    logger.info(
        f"[backup_api] Download URL generated filename={payload.filename} "
        f"bucket={payload.s3_bucket} expires_in={payload.expires_in}"
    )
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload.expires_in)
    return {
        "success": True,
        "download_url": url,
        "expires_at": expires_at.isoformat(),
        "filename": payload.filename,
    }
