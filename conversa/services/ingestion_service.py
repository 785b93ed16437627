"""Turns WhatsApp Cloud API webhook payloads into persisted messages and follow-up jobs."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from conversa.database import insert_ignore, utcnow
from conversa.logging_config import get_logger
from conversa.models import Account, Message
from conversa.schemas.webhook import InboundMessage, StatusEvent, WebhookPayload
from conversa.services import campaign_service, notification_service, storage_service
from conversa.services.conversation_service import resolve_conversation, touch_inbound, upsert_contact
from conversa.services.job_service import enqueue_job, job_handler

logger = get_logger("ingestion_service")

JOB_WEBHOOK_PROCESS = "webhook.process"
JOB_DIALOGUE_HANDLE = "dialogue.handle"
JOB_MEDIA_DOWNLOAD = "media.download"

STATUS_TIMESTAMP_FIELDS = {"sent": "sent_at", "delivered": "delivered_at", "read": "read_at"}


class IngestionError(Exception):
    """Some events of a batch could not be stored; the batch is retried (stored events dedupe)."""


def _event_time(timestamp: Optional[str]) -> datetime:
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return utcnow()


def _audit_key(business_account_id: Optional[str], account: Account, contact: str, external_id: str) -> str:
    return f"webhooks/{business_account_id or 'unknown'}/{account.phone_number_id}/{contact}/{external_id}.json"


def process_webhook(db: Session, payload: dict) -> dict:
    """Process one webhook delivery. Replays are no-ops: every message is deduplicated by its external id."""
    summary = {"messages": 0, "duplicates": 0, "statuses": 0, "dropped": 0, "errors": 0}
    try:
        webhook = WebhookPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Malformed webhook payload dropped", extra={"context": {"error": str(exc)}})
        summary["dropped"] += 1
        return summary

    for entry in webhook.entry:
        for change in entry.changes:
            if change.field not in (None, "messages"):
                continue
            value = change.value
            phone_number_id = value.metadata.phone_number_id if value.metadata else None
            account = (
                db.query(Account).filter(Account.phone_number_id == phone_number_id).first()
                if phone_number_id
                else None
            )
            if account is None:
                logger.warning(
                    "Webhook for unknown account dropped",
                    extra={"context": {"phone_number_id": phone_number_id, "business_account_id": entry.id}},
                )
                summary["dropped"] += 1
                continue

            names = {c.wa_id: c.profile.name for c in value.contacts if c.profile and c.profile.name}
            business_account_id = entry.id or account.business_account_id

            for message in value.messages:
                outcome = _ingest_message(db, account, message, names.get(message.sender), business_account_id)
                summary[outcome] += 1

            for status in value.statuses:
                if _apply_status(db, account, status, business_account_id):
                    summary["statuses"] += 1

    logger.info("Webhook processed", extra={"context": summary})
    if summary["errors"]:
        raise IngestionError(f"{summary['errors']} events failed")
    return summary


def _ingest_message(
    db: Session,
    account: Account,
    event: InboundMessage,
    profile_name: Optional[str],
    business_account_id: Optional[str],
) -> str:
    external_id = event.id
    context = {"external_id": external_id, "account_id": str(account.id)}

    if db.query(Message.id).filter(Message.external_id == external_id).first() is not None:
        logger.info("Duplicate message skipped", extra={"context": context})
        return "duplicates"

    received_at = _event_time(event.timestamp)
    media = event.extract_media()
    try:
        contact = upsert_contact(db, event.sender, profile_name)
        conversation, is_fresh = resolve_conversation(db, account, contact, received_at)
        message_id = uuid.uuid4()
        inserted = insert_ignore(
            db,
            Message,
            {
                "id": message_id,
                "conversation_id": conversation.id,
                "contact_id": contact.id,
                "external_id": external_id,
                "direction": "inbound",
                "type": event.type,
                "status": "delivered",
                "content": event.extract_content(),
                "media": media,
                "metadata": event.raw(),
                "is_ai_generated": False,
                "created_at": received_at,
            },
            ["external_id"],
        )
        if not inserted:
            # a concurrent worker stored the same event first: drop everything this event did
            db.rollback()
            logger.info("Duplicate message skipped (concurrent insert)", extra={"context": context})
            return "duplicates"

        touch_inbound(db, conversation, received_at)
        contact.last_seen_at = received_at

        if media and media.get("id"):
            enqueue_job(db, JOB_MEDIA_DOWNLOAD, {"message_id": str(message_id)})
        if event.type != "audio" or not (media and media.get("id")):
            enqueue_job(db, JOB_DIALOGUE_HANDLE, {"message_id": str(message_id)})

        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to store inbound message", extra={"context": {**context, "error": str(exc)}})
        return "errors"

    message = db.get(Message, message_id)
    context.update({"message_id": str(message_id), "conversation_id": str(conversation.id), "fresh": is_fresh})
    logger.info("Inbound message stored", extra={"context": context})

    storage_service.store_raw_payload(
        _audit_key(business_account_id, account, event.sender, external_id), event.raw()
    )
    notification_service.publish(notification_service.MESSAGE_RECEIVED, notification_service.message_payload(message))
    return "messages"


def _apply_status(db: Session, account: Account, event: StatusEvent, business_account_id: Optional[str]) -> bool:
    """Correlate a delivery callback with an outbound message and/or a campaign recipient."""
    at = _event_time(event.timestamp)
    message = db.query(Message).filter(Message.external_id == event.id).first()
    if message is not None:
        message.status = event.status
        if event.status in STATUS_TIMESTAMP_FIELDS:
            setattr(message, STATUS_TIMESTAMP_FIELDS[event.status], at)
        elif event.status == "failed":
            message.error = event.errors or [{"title": "unknown"}]
            message.failed_at = at

    recipient_updated = campaign_service.apply_delivery_status(db, event.id, event.status, at, event.errors)
    if message is None and not recipient_updated:
        db.rollback()
        return False
    db.commit()

    if message is not None:
        notification_service.publish(
            notification_service.MESSAGE_STATUS,
            {"id": str(message.id), "conversation_id": str(message.conversation_id), "status": event.status},
        )
        storage_service.store_raw_payload(
            _audit_key(business_account_id, account, event.recipient_id or "unknown", f"{event.id}_status"),
            event.model_dump(),
        )
    return True


@job_handler(JOB_WEBHOOK_PROCESS)
def run_webhook_process(db: Session, payload: dict) -> None:
    process_webhook(db, payload["body"])
