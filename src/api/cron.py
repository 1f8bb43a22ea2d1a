from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from loguru import logger

from src.config import get_settings
from src.db.tracker_store import TrackerStoreUnavailableError
from src.scheduler.jobs import process_feedback_emails

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _check_cron_secret(authorization: Optional[str]) -> None:
    settings = get_settings()
    if not settings.cron_secret:
        logger.error("CRON_SECRET not configured")
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        logger.error("Unauthorized cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")


# Plain def: FastAPI runs it in the threadpool, the pass itself is blocking
@router.api_route("/process-emails", methods=["GET", "POST"])
def process_emails(authorization: Optional[str] = Header(None)):
    _check_cron_secret(authorization)

    started = time.monotonic()
    try:
        summary = process_feedback_emails()
    except TrackerStoreUnavailableError as e:
        logger.error(f"Cron email pass failed: {e}")
        raise HTTPException(status_code=503, detail="Tracker store unavailable")

    return {
        "success": True,
        "message": "Email processing completed",
        "results": summary.to_dict(),
        "duration": int((time.monotonic() - started) * 1000),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
