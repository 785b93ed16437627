import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from conversa.config import settings
from conversa.database import get_db
from conversa.logging_config import get_logger
from conversa.schemas.webhook import WebhookAck, WebhookPayload
from conversa.services.ingestion_service import JOB_WEBHOOK_PROCESS
from conversa.services.job_service import enqueue_job

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])


def _signature_valid(raw: bytes, header: str | None) -> bool:
    if not settings.whatsapp_app_secret:
        return True
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(settings.whatsapp_app_secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header[len("sha256="):])


@router.get("/whatsapp", response_class=PlainTextResponse)
async def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the verify token matches."""
    if (
        mode == "subscribe"
        and settings.whatsapp_verify_token
        and token is not None
        and hmac.compare_digest(token, settings.whatsapp_verify_token)
    ):
        logger.info("Webhook verified")
        return challenge or ""
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/whatsapp", response_model=WebhookAck)
async def receive_webhook(request: Request, db: Session = Depends(get_db)):
    """Accept a delivery, enqueue it for the worker and acknowledge immediately."""
    try:
        raw = await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during body read")
        return WebhookAck(success=True, message="Client disconnected")

    if not _signature_valid(raw, request.headers.get("X-Hub-Signature-256")):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    if not raw.strip():
        logger.info("Webhook probe with empty body")
        return WebhookAck(success=True, message="Empty payload")

    try:
        body = json.loads(raw)
        WebhookPayload.model_validate(body)
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Webhook payload rejected",
            extra={"context": {"error": str(exc)[:300], "body_preview": raw[:200].decode("utf-8", "replace")}},
        )
        return WebhookAck(success=False, message="Invalid payload")

    job = enqueue_job(db, JOB_WEBHOOK_PROCESS, {"body": body})
    db.commit()
    logger.info("Webhook enqueued", extra={"context": {"job_id": str(job.id)}})
    return WebhookAck(success=True, job_id=str(job.id))
