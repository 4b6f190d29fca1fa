"""
Health endpoints for the load balancer and uptime checks.

/health/ready also reports the webhook retry backlog so a stuck cron job
shows up next to database status.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import __version__
from ..database import get_db
from ..models.webhook_retry import WebhookRetryRecord, WebhookRetryStatus

router = APIRouter(prefix="/health", tags=["Health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_database(db: Session) -> dict:
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "down", "error": str(e)[:100]}
    return {
        "status": "up",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "type": db.get_bind().dialect.name,
    }


def retry_backlog(db: Session) -> dict:
    """Pending retry records and how overdue the oldest one is"""
    count, oldest = db.query(
        func.count(WebhookRetryRecord.id),
        func.min(WebhookRetryRecord.next_retry_at),
    ).filter(WebhookRetryRecord.status == WebhookRetryStatus.PENDING.value).one()
    overdue = 0
    if oldest is not None:
        overdue = max(0, int((datetime.utcnow() - oldest).total_seconds()))
    return {"pending": count, "oldest_overdue_seconds": overdue}


@router.get("")
async def health():
    return {"status": "healthy", "timestamp": _now(), "version": __version__}


@router.get("/live")
async def liveness():
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
def readiness(db: Session = Depends(get_db)):
    database = check_database(db)
    if database["status"] != "up":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "reason": "database_unavailable", "timestamp": _now()},
        )
    return {
        "status": "ready",
        "timestamp": _now(),
        "database": database,
        "webhook_retries": retry_backlog(db),
    }
