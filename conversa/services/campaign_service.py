"""Bulk template campaigns: segments, lifecycle, rate-limited sending and analytics."""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from sqlalchemy import exists, update
from sqlalchemy.orm import Session

from conversa.database import ensure_aware, insert_ignore, utcnow
from conversa.logging_config import get_logger
from conversa.models import Account, Campaign, CampaignContact, Contact
from conversa.services import whatsapp_service
from conversa.services.dispatch_service import safe_rate, schedule_sends
from conversa.services.job_service import cancel_jobs, job_handler

logger = get_logger("campaign_service")

JOB_CAMPAIGN_SEND = "campaign.send"

DRAFT = "draft"
SCHEDULED = "scheduled"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
CANCELLED = "cancelled"

CONTACT_FIELDS = {"name", "phone_number", "status"}


class CampaignError(Exception):
    def __init__(self, message: str, code: str = "campaign_error"):
        self.code = code
        super().__init__(message)


# === SEGMENTS ===


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _tags_match(contact: Contact, operator: str, value: Any) -> bool:
    tags = contact.tags or []
    if operator == "contains":
        return value in tags
    if operator == "not_contains":
        return value not in tags
    raise ValueError(f"unsupported operator {operator!r} for tags")


def _last_seen_match(contact: Contact, operator: str, value: Any) -> bool:
    seen = ensure_aware(contact.last_seen_at)
    if operator == "between":
        start, end = (_parse_datetime(v) for v in value)
        return seen is not None and start <= seen <= end
    bound = _parse_datetime(value)
    if operator == "after":
        return seen is not None and seen > bound
    if operator == "before":
        return seen is not None and seen < bound
    raise ValueError(f"unsupported operator {operator!r} for last_seen_at")


def _custom_field_match(contact: Contact, flt: dict) -> bool:
    key = flt["custom_field"]
    actual = (contact.custom_fields or {}).get(key)
    if flt["operator"] == "equals":
        return actual == flt["value"]
    if flt["operator"] == "not_equals":
        return actual != flt["value"]
    raise ValueError(f"unsupported operator {flt['operator']!r} for custom_fields")


def _phone_match(contact: Contact, operator: str, value: Any) -> bool:
    phone, value = contact.phone_number or "", str(value)
    if operator == "starts_with":
        return phone.startswith(value)
    if operator == "ends_with":
        return phone.endswith(value)
    if operator == "contains":
        return value in phone
    raise ValueError(f"unsupported operator {operator!r} for phone_number")


def _column_match(contact: Contact, field: str, operator: str, value: Any) -> bool:
    if field not in CONTACT_FIELDS:
        raise ValueError(f"unknown field {field!r}")
    actual = getattr(contact, field)
    if operator == "equals":
        return actual == value
    if operator == "not_equals":
        return actual != value
    if operator == "like":
        return str(value).lower() in str(actual or "").lower()
    raise ValueError(f"unsupported operator {operator!r} for {field}")


def _filter_predicate(flt: dict):
    field, operator, value = flt["field"], flt["operator"], flt.get("value")
    if field == "tags":
        check = lambda c: _tags_match(c, operator, value)  # noqa: E731
    elif field == "last_seen_at":
        check = lambda c: _last_seen_match(c, operator, value)  # noqa: E731
    elif field == "custom_fields":
        check = lambda c: _custom_field_match(c, flt)  # noqa: E731
    elif field == "phone_number":
        check = lambda c: _phone_match(c, operator, value)  # noqa: E731
    else:
        check = lambda c: _column_match(c, field, operator, value)  # noqa: E731
    return check


def apply_segment_filters(db: Session, filters: Optional[Iterable[dict]]) -> list[Contact]:
    """Active contacts matching every filter. A malformed filter is logged and ignored."""
    contacts = db.query(Contact).filter(Contact.status == "active").order_by(Contact.created_at).all()
    for flt in filters or []:
        try:
            check = _filter_predicate(flt)
            contacts = [contact for contact in contacts if check(contact)]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Segment filter ignored", extra={"context": {"filter": flt, "error": str(exc)}})
    return contacts


# === PERSONALIZATION ===


def media_format_from_url(url: str) -> str:
    extension = urlparse(url).path.rsplit(".", 1)[-1].lower() if "." in urlparse(url).path else ""
    if extension in ("jpg", "jpeg", "png"):
        return "image"
    if extension == "mp4":
        return "video"
    return "document"


def _field_value(contact: Contact, field: str) -> str:
    if field.startswith("custom."):
        value = (contact.custom_fields or {}).get(field[len("custom."):])
    elif field in CONTACT_FIELDS:
        value = getattr(contact, field)
    else:
        value = None
    return "" if value is None else str(value)


def _override(overrides: dict, position: int) -> Optional[str]:
    body = overrides.get("body", overrides)
    if isinstance(body, list):
        return body[position] if position < len(body) else None
    if isinstance(body, dict):
        return body.get(str(position))
    return None


def personalize_parameters(template_parameters: Optional[dict], contact: Contact, overrides: Optional[dict] = None) -> dict:
    """Build template components for one recipient: {"header": [...], "body": [...]}."""
    template_parameters = template_parameters or {}
    overrides = overrides or {}
    final: dict[str, list] = {"header": [], "body": []}

    header = template_parameters.get("header")
    if isinstance(header, dict) and header.get("type") == "media" and header.get("url"):
        media_format = media_format_from_url(header["url"])
        final["header"].append({"type": media_format, media_format: {"link": header["url"]}})

    for position, param in enumerate(template_parameters.get("body") or []):
        override = _override(overrides, position)
        if override is not None:
            value = str(override)
        elif isinstance(param, dict) and param.get("type") == "field":
            value = _field_value(contact, str(param.get("value", "")))
        elif isinstance(param, dict):
            value = "" if param.get("value") is None else str(param["value"])
        else:
            value = str(param)
        final["body"].append({"type": "text", "text": value})
    return final


# === LIFECYCLE ===


def _get_locked(db: Session, campaign_id) -> Campaign:
    campaign = db.query(Campaign).filter(Campaign.id == campaign_id).with_for_update().first()
    if campaign is None:
        raise CampaignError("Campaign not found", "not_found")
    return campaign


def _require_status(campaign: Campaign, allowed: set[str], action: str) -> None:
    if campaign.status not in allowed:
        raise CampaignError(f"Cannot {action} a {campaign.status} campaign", "invalid_status")


def create_campaign(
    db: Session,
    *,
    account_id,
    name: str,
    template_name: str,
    template_language: str = "pt_BR",
    template_parameters: Optional[dict] = None,
    segment_filters: Optional[list] = None,
    rate_limit_per_minute: Optional[int] = None,
    scheduled_at: Optional[datetime] = None,
) -> Campaign:
    """Create a campaign and materialize its recipients from the segment filters."""
    campaign = Campaign(
        account_id=account_id,
        name=name,
        status=SCHEDULED if scheduled_at else DRAFT,
        template_name=template_name,
        template_language=template_language,
        template_parameters=template_parameters or {},
        segment_filters=segment_filters or [],
        rate_limit_per_minute=rate_limit_per_minute,
        scheduled_at=scheduled_at,
    )
    db.add(campaign)
    db.flush()

    contacts = apply_segment_filters(db, campaign.segment_filters)
    for contact in contacts:
        insert_ignore(
            db,
            CampaignContact,
            {"id": uuid.uuid4(), "campaign_id": campaign.id, "contact_id": contact.id, "status": "pending"},
            ["campaign_id", "contact_id"],
        )
    campaign.total_contacts = len(contacts)
    db.flush()
    logger.info(
        "Campaign created", extra={"context": {"campaign_id": str(campaign.id), "total_contacts": len(contacts)}}
    )
    return campaign


def _dispatch_pending(db: Session, campaign: Campaign) -> int:
    """(Re)derive send delays for the pending recipients. Jobs of earlier dispatches become no-ops."""
    campaign.dispatch_generation = (campaign.dispatch_generation or 0) + 1
    pending = (
        db.query(CampaignContact.id)
        .filter(CampaignContact.campaign_id == campaign.id, CampaignContact.status == "pending")
        .order_by(CampaignContact.created_at, CampaignContact.id)
        .all()
    )
    payloads = [
        {"campaign_id": str(campaign.id), "recipient_id": str(row.id), "generation": campaign.dispatch_generation}
        for row in pending
    ]
    schedule_sends(db, JOB_CAMPAIGN_SEND, payloads, campaign.rate_limit_per_minute)
    return len(payloads)


def start_campaign(db: Session, campaign_id) -> int:
    """Start sending. Returns the number of sends scheduled."""
    campaign = _get_locked(db, campaign_id)
    _require_status(campaign, {DRAFT, SCHEDULED}, "start")
    campaign.status = RUNNING
    campaign.started_at = utcnow()
    scheduled = _dispatch_pending(db, campaign)
    db.flush()
    _complete_if_done(db, campaign.id)
    db.commit()
    logger.info("Campaign started", extra={"context": {"campaign_id": str(campaign_id), "scheduled": scheduled}})
    return scheduled


def _cancel_scheduled_sends(db: Session, campaign_id) -> int:
    return cancel_jobs(db, JOB_CAMPAIGN_SEND, lambda payload: payload.get("campaign_id") == str(campaign_id))


def pause_campaign(db: Session, campaign_id) -> None:
    campaign = _get_locked(db, campaign_id)
    _require_status(campaign, {RUNNING}, "pause")
    campaign.status = PAUSED
    campaign.paused_at = utcnow()
    cancelled = _cancel_scheduled_sends(db, campaign_id)
    db.commit()
    logger.info("Campaign paused", extra={"context": {"campaign_id": str(campaign_id), "cancelled_jobs": cancelled}})


def resume_campaign(db: Session, campaign_id) -> int:
    campaign = _get_locked(db, campaign_id)
    _require_status(campaign, {PAUSED}, "resume")
    campaign.status = RUNNING
    campaign.paused_at = None
    scheduled = _dispatch_pending(db, campaign)
    db.flush()
    _complete_if_done(db, campaign.id)
    db.commit()
    logger.info("Campaign resumed", extra={"context": {"campaign_id": str(campaign_id), "scheduled": scheduled}})
    return scheduled


def cancel_campaign(db: Session, campaign_id) -> None:
    campaign = _get_locked(db, campaign_id)
    _require_status(campaign, {DRAFT, SCHEDULED, RUNNING, PAUSED}, "cancel")
    campaign.status = CANCELLED
    campaign.cancelled_at = utcnow()
    _cancel_scheduled_sends(db, campaign_id)
    db.commit()
    logger.info("Campaign cancelled", extra={"context": {"campaign_id": str(campaign_id)}})


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def get_analytics(db: Session, campaign_id) -> dict:
    campaign = db.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignError("Campaign not found", "not_found")
    processed = campaign.sent_count + campaign.failed_count
    return {
        "campaign_id": str(campaign.id),
        "status": campaign.status,
        "total_contacts": campaign.total_contacts,
        "sent_count": campaign.sent_count,
        "delivered_count": campaign.delivered_count,
        "read_count": campaign.read_count,
        "failed_count": campaign.failed_count,
        "progress_percentage": _percentage(processed, campaign.total_contacts),
        "success_rate": _percentage(campaign.delivered_count, campaign.sent_count),
        "read_rate": _percentage(campaign.read_count, campaign.delivered_count),
        "rate_limit_per_minute": safe_rate(campaign.rate_limit_per_minute),
        "started_at": campaign.started_at,
        "completed_at": campaign.completed_at,
    }


# === SENDING ===


def _increment(db: Session, campaign_id, **counters: int) -> None:
    values = {name: getattr(Campaign, name) + delta for name, delta in counters.items()}
    db.execute(
        update(Campaign).where(Campaign.id == campaign_id).values(**values).execution_options(synchronize_session=False)
    )


def _complete_if_done(db: Session, campaign_id) -> bool:
    """running -> completed once no recipient is pending. The conditional UPDATE makes it happen once."""
    pending = exists().where(CampaignContact.campaign_id == campaign_id, CampaignContact.status == "pending")
    result = db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.status == RUNNING, ~pending)
        .values(status=COMPLETED, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Campaign completed", extra={"context": {"campaign_id": str(campaign_id)}})
    return result.rowcount == 1


def send_campaign_message(db: Session, campaign_id, recipient_id, generation: int) -> str:
    """Send the template to one recipient. Returns sent, failed or skipped."""
    context = {"campaign_id": str(campaign_id), "recipient_id": str(recipient_id), "generation": generation}
    campaign = db.get(Campaign, campaign_id)
    if campaign is None or campaign.status != RUNNING or campaign.dispatch_generation != generation:
        logger.info("Campaign send skipped", extra={"context": {**context, "status": getattr(campaign, "status", None)}})
        return "skipped"

    recipient = db.query(CampaignContact).filter(CampaignContact.id == recipient_id).with_for_update().first()
    if recipient is None or recipient.status != "pending":
        return "skipped"

    contact = db.get(Contact, recipient.contact_id)
    account = db.get(Account, campaign.account_id)
    now = utcnow()
    if contact is None:
        result_error = "contact no longer exists"
        result = None
    else:
        parameters = personalize_parameters(campaign.template_parameters, contact, recipient.personalized_parameters)
        result = whatsapp_service.for_account(account).send_template(
            contact.phone_number, campaign.template_name, campaign.template_language, parameters
        )
        result_error = result.error

    if result is not None and result.ok:
        recipient.status = "sent"
        recipient.message_id = result.value
        recipient.sent_at = now
        _increment(db, campaign.id, sent_count=1)
        outcome = "sent"
    else:
        recipient.status = "failed"
        recipient.error_message = result_error
        recipient.failed_at = now
        _increment(db, campaign.id, failed_count=1)
        outcome = "failed"
        logger.warning("Campaign message failed", extra={"context": {**context, "error": result_error}})

    db.flush()
    _complete_if_done(db, campaign.id)
    db.commit()
    return outcome


def apply_delivery_status(db: Session, message_id: str, status: str, at: datetime, errors=None) -> bool:
    """Advance a campaign recipient from a delivery callback. Each counter moves at most once per recipient."""
    recipient = db.query(CampaignContact).filter(CampaignContact.message_id == message_id).with_for_update().first()
    if recipient is None:
        return False

    if status in ("delivered", "read") and recipient.delivered_at is None:
        recipient.delivered_at = at
        _increment(db, recipient.campaign_id, delivered_count=1)
    if status == "read" and recipient.read_at is None:
        recipient.read_at = at
        _increment(db, recipient.campaign_id, read_count=1)
    if status == "failed" and recipient.status == "sent":
        recipient.status = "failed"
        recipient.failed_at = at
        recipient.error_message = (errors or [{}])[0].get("title") or "delivery failed"
        _increment(db, recipient.campaign_id, sent_count=-1, failed_count=1)
    db.flush()
    return True


@job_handler(JOB_CAMPAIGN_SEND)
def run_campaign_send(db: Session, payload: dict) -> None:
    send_campaign_message(
        db, uuid.UUID(payload["campaign_id"]), uuid.UUID(payload["recipient_id"]), int(payload["generation"])
    )
