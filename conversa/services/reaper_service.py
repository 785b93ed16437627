from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.database import ensure_aware, utcnow
from conversa.logging_config import get_logger
from conversa.models import Conversation, Message
from conversa.services import delivery_service, notification_service
from conversa.services.conversation_service import last_inbound_message
from conversa.services.state_machine import ConversationStatus, close

logger = get_logger("reaper_service")

CLOSING_NOTICE = (
    "Olá! Parece que ficamos sem interagir por um tempo. Para manter tudo organizado, estou encerrando "
    "esta conversa por agora. Se precisar de mais alguma coisa, é só chamar! 👋"
)


def _last_message(db: Session, conversation: Conversation) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.desc())
        .first()
    )


def _idle_candidates(db: Session, cutoff: datetime) -> list:
    return [
        row.id
        for row in db.query(Conversation.id)
        .filter(
            Conversation.status == ConversationStatus.OPEN.value,
            Conversation.is_ai_handled.is_(True),
            Conversation.updated_at < cutoff,
        )
        .all()
    ]


def close_inactive_conversations(db: Session, now: Optional[datetime] = None) -> dict:
    """Close idle bot conversations whose last word was ours, sending a closing notice first."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.inactivity_close_minutes)
    summary = {"checked": 0, "closed": 0, "skipped": 0, "notice_failed": 0}

    for conversation_id in _idle_candidates(db, cutoff):
        summary["checked"] += 1
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .with_for_update(skip_locked=True)
            .first()
        )
        # re-check under the lock; a dialogue turn may have run since selection
        if (
            conversation is None
            or conversation.status != ConversationStatus.OPEN.value
            or not conversation.is_ai_handled
            or ensure_aware(conversation.updated_at) >= cutoff
        ):
            db.rollback()
            summary["skipped"] += 1
            continue

        last = _last_message(db, conversation)
        if last is not None and last.direction == "inbound":
            db.rollback()
            summary["skipped"] += 1
            continue

        last_inbound = last_inbound_message(db, conversation)
        as_audio = last_inbound is not None and last_inbound.type == "audio"
        result = delivery_service.send_response(db, conversation, CLOSING_NOTICE, as_audio=as_audio)
        if not result.ok:
            summary["notice_failed"] += 1
            logger.warning(
                "Closing notice not delivered",
                extra={"context": {"conversation_id": str(conversation.id), "error": result.error}},
            )

        conversation.status = close(ConversationStatus(conversation.status)).value
        conversation.closed_at = now
        db.commit()
        summary["closed"] += 1
        notification_service.publish(
            notification_service.CONVERSATION_CLOSED,
            {"conversation_id": str(conversation.id), "reason": "inactivity"},
        )
        logger.info("Inactive conversation closed", extra={"context": {"conversation_id": str(conversation.id)}})

    if summary["checked"]:
        logger.info("Inactivity sweep finished", extra={"context": summary})
    return summary
