"""
Structured Logging Configuration

JSON lines for log aggregation. Every line carries the request id and the
acting admin (or "system") when set, plus booking/webhook fields when the
caller logs through StructuredLogger.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
actor_id_var: ContextVar[str] = ContextVar('actor_id', default='')

# LogRecord attributes promoted to top-level JSON keys
CONTEXT_FIELDS = ("booking_id", "webhook_record_id", "webhook_type", "attempt", "outcome")


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, var in (("request_id", request_id_var), ("actor_id", actor_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        details = getattr(record, "details", None)
        if details:
            entry["details"] = details

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        elif record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """LoggerAdapter with helpers for the two events worth querying on"""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def booking_status_changed(
        self, booking_id: str, old_status: str, new_status: str, actor_id: Optional[str] = None
    ):
        self.info(
            f"Booking {booking_id}: {old_status} -> {new_status}",
            extra={
                "booking_id": booking_id,
                "details": {"from": old_status, "to": new_status, "by": actor_id},
            },
        )

    def webhook_outcome(
        self, record_id: str, webhook_type: str, outcome: str, attempt: int, error: Optional[str] = None
    ):
        self.log(
            logging.INFO if error is None else logging.WARNING,
            f"Webhook {webhook_type} record {record_id}: {outcome} after attempt {attempt}",
            extra={
                "webhook_record_id": record_id,
                "webhook_type": webhook_type,
                "attempt": attempt,
                "outcome": outcome,
                "details": {"error": error} if error else None,
            },
        )


def setup_logging(level: str = "INFO", json_format: bool = True, include_uvicorn: bool = True) -> None:
    """
    Configure the root logger once per process.

    json_format=False gives plain lines for local runs; include_uvicorn routes
    uvicorn's loggers through the same handler (off for worker.py).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(
        JSONFormatter() if json_format
        else logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(name).handlers = [handler]

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, actor_id: Optional[str] = None):
    request_id_var.set(request_id)
    if actor_id:
        actor_id_var.set(actor_id)


def clear_request_context():
    request_id_var.set('')
    actor_id_var.set('')
