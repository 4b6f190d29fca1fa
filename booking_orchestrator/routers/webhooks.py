"""
Provider Webhook Endpoints (FAST PATH)

Verify signature -> record_incoming_event -> 200. Processing happens in a
background task right after the response and, on failure, through the
retry batches. Once an event is durably queued the provider always gets
200, whatever the processing outcome.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..config import settings
from ..database import get_db
from ..exceptions import AdapterNotConfiguredError, NonRetryableAdapterError, NonRetryableError, RetryableAdapterError
from ..models.webhook_retry import WebhookType
from ..schemas.webhook import WebhookAck
from ..services.payment_adapter import PAYPAL_SIGNATURE_HEADERS, PayPalClient
from ..services.webhook_handlers import HANDLERS
from ..services.webhook_retry_engine import WebhookRetryEngine, process_record_in_new_session
from ..utils.rate_limiter import get_rate_limit, limiter
from ..utils.security import verify_hmac_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


def get_paypal_verifier() -> PayPalClient:
    return PayPalClient()


async def _read_payload(request: Request) -> Tuple[bytes, Dict[str, Any]]:
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
    return body, payload


def _queue_event(
    db: Session,
    background_tasks: BackgroundTasks,
    webhook_type: str,
    webhook_id: Optional[str],
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> WebhookAck:
    engine = WebhookRetryEngine(db)
    try:
        result = engine.record_incoming_event(webhook_type, webhook_id, payload, headers)
    except NonRetryableError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    if result.created:
        background_tasks.add_task(process_record_in_new_session, result.record_id)

    return WebhookAck(record_id=result.record_id, duplicate=result.duplicate)


@router.post("/paypal", response_model=WebhookAck)
@limiter.limit(get_rate_limit("webhook"))
async def paypal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    verifier: PayPalClient = Depends(get_paypal_verifier),
):
    """
    Receive PayPal webhooks.

    The transmission headers are required. When PAYPAL_WEBHOOK_ID is
    configured they are verified with PayPal's verify-webhook-signature API;
    outside production an unconfigured id only logs a warning.
    """
    _, payload = await _read_payload(request)
    headers = {k.lower(): v for k, v in request.headers.items()}

    missing = [name for name in PAYPAL_SIGNATURE_HEADERS if not headers.get(name)]
    if missing:
        logger.warning(f"PayPal webhook rejected, missing headers: {missing}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing PayPal signature headers")

    if verifier.webhook_id:
        try:
            verified = await run_in_threadpool(verifier.verify_webhook_signature, headers, payload)
        except (RetryableAdapterError, AdapterNotConfiguredError) as e:
            logger.error(f"PayPal signature verification unavailable: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Signature verification unavailable",
            )
        except NonRetryableAdapterError as e:
            logger.warning(f"PayPal signature verification rejected: {e}")
            verified = False
        if not verified:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid PayPal signature")
    elif settings.is_production:
        logger.error("PAYPAL_WEBHOOK_ID is not configured; refusing unverifiable webhook")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signature verification not configured",
        )
    else:
        logger.warning("PAYPAL_WEBHOOK_ID not set, skipping PayPal signature verification")

    handler = HANDLERS[WebhookType.PAYPAL.value]
    signature_headers = {name: headers[name] for name in PAYPAL_SIGNATURE_HEADERS}
    return _queue_event(
        db, background_tasks, WebhookType.PAYPAL.value,
        handler.extract_webhook_id(payload), payload, signature_headers,
    )


@router.post("/docuseal", response_model=WebhookAck)
@limiter.limit(get_rate_limit("webhook"))
async def docuseal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_docuseal_signature: Optional[str] = Header(None, alias="X-DocuSeal-Signature"),
    db: Session = Depends(get_db),
):
    """Receive DocuSeal webhooks; signed with HMAC-SHA256 of the raw body"""
    body, payload = await _read_payload(request)

    secret = settings.docuseal_webhook_secret
    if secret:
        if not verify_hmac_signature(secret, body, x_docuseal_signature or ""):
            logger.warning("DocuSeal webhook rejected: invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid DocuSeal signature")
    elif settings.is_production:
        logger.error("DOCUSEAL_WEBHOOK_SECRET is not configured; refusing unverifiable webhook")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signature verification not configured",
        )
    else:
        logger.warning("DOCUSEAL_WEBHOOK_SECRET not set, skipping DocuSeal signature verification")

    handler = HANDLERS[WebhookType.DOCUSEAL.value]
    return _queue_event(
        db, background_tasks, WebhookType.DOCUSEAL.value,
        handler.extract_webhook_id(payload), payload,
        {"x-docuseal-signature": x_docuseal_signature} if x_docuseal_signature else {},
    )
