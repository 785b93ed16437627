import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.database import ensure_aware, insert_ignore, utcnow
from conversa.logging_config import get_logger
from conversa.models import Account, Contact, Conversation, Message
from conversa.services import whatsapp_service
from conversa.services.result import Result
from conversa.services.state_machine import ConversationStatus, close, reopen

logger = get_logger("conversation_service")


def upsert_contact(db: Session, phone_number: str, name: Optional[str] = None) -> Contact:
    """Get-or-create a contact by address. First writer creates the row, concurrent losers re-read it.

    The display name is always refreshed to the latest known value.
    """
    now = utcnow()
    insert_ignore(
        db,
        Contact,
        {"id": uuid.uuid4(), "phone_number": phone_number, "name": name, "created_at": now, "updated_at": now},
        ["phone_number"],
    )
    contact = db.query(Contact).filter(Contact.phone_number == phone_number).one()
    if name and contact.name != name:
        contact.name = name
        db.flush()
    return contact


def _is_stale(conversation: Conversation, now: datetime) -> bool:
    window = settings.conversation_reuse_window_hours
    if not window:
        return False
    last_activity = ensure_aware(conversation.last_message_at or conversation.created_at)
    return last_activity is not None and now - last_activity > timedelta(hours=window)


def _new_conversation(db: Session, account: Account, contact: Contact) -> Conversation:
    conversation = Conversation(
        account_id=account.id,
        contact_id=contact.id,
        status=ConversationStatus.OPEN.value,
        is_ai_handled=True,
        chatbot_state=None,
        chatbot_context={},
        unread_count=0,
    )
    db.add(conversation)
    db.flush()
    return conversation


def _reopen(conversation: Conversation) -> None:
    conversation.status = reopen(ConversationStatus(conversation.status)).value
    conversation.is_ai_handled = True
    conversation.chatbot_state = None
    conversation.chatbot_context = {}
    conversation.assigned_user_id = None
    conversation.closed_at = None
    conversation.escalated_at = None


def resolve_conversation(
    db: Session, account: Account, contact: Contact, now: Optional[datetime] = None
) -> tuple[Conversation, bool]:
    """Find the conversation an inbound message belongs to.

    Returns (conversation, is_fresh). is_fresh is True for a new or reopened conversation.
    Resolution for one contact is serialized by a row lock on the contact.
    """
    now = now or utcnow()
    db.query(Contact).filter(Contact.id == contact.id).with_for_update().one()

    latest = (
        db.query(Conversation)
        .filter(Conversation.account_id == account.id, Conversation.contact_id == contact.id)
        .order_by(Conversation.created_at.desc())
        .first()
    )
    context = {"contact_id": str(contact.id), "account_id": str(account.id)}

    if latest is None:
        conversation = _new_conversation(db, account, contact)
        logger.info("Conversation created", extra={"context": {**context, "conversation_id": str(conversation.id)}})
        return conversation, True

    if latest.status == ConversationStatus.CLOSED.value:
        _reopen(latest)
        db.flush()
        logger.info("Conversation reopened", extra={"context": {**context, "conversation_id": str(latest.id)}})
        return latest, True

    if _is_stale(latest, now):
        latest.status = close(ConversationStatus(latest.status)).value
        latest.closed_at = now
        conversation = _new_conversation(db, account, contact)
        logger.info(
            "Stale conversation closed, new one created",
            extra={"context": {**context, "stale_id": str(latest.id), "conversation_id": str(conversation.id)}},
        )
        return conversation, True

    return latest, False


def touch_inbound(db: Session, conversation: Conversation, at: datetime) -> None:
    """Count an accepted inbound message. unread_count is incremented in SQL."""
    conversation.unread_count = Conversation.unread_count + 1
    conversation.last_message_at = at
    db.flush()


def touch_outbound(conversation: Conversation, at: Optional[datetime] = None) -> None:
    at = at or utcnow()
    conversation.last_message_at = at
    conversation.updated_at = at


def conversation_history(
    db: Session, conversation: Conversation, *, limit: int = 10, exclude_id=None
) -> list[dict]:
    """Recent text exchange, oldest first, in chat-completion role format."""
    query = db.query(Message).filter(Message.conversation_id == conversation.id, Message.content.isnot(None))
    if exclude_id is not None:
        query = query.filter(Message.id != exclude_id)
    rows = (
        query.order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {"role": "user" if row.direction == "inbound" else "assistant", "content": row.content}
        for row in reversed(rows)
    ]


def last_inbound_message(db: Session, conversation: Conversation) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id, Message.direction == "inbound")
        .order_by(Message.created_at.desc())
        .first()
    )


def mark_read(db: Session, conversation: Conversation) -> Result[bool]:
    """Operator opened the conversation: reset the unread counter and send a read receipt."""
    conversation.unread_count = 0
    db.flush()

    last_inbound = last_inbound_message(db, conversation)
    if last_inbound is None or not last_inbound.external_id:
        return Result.success(False)

    transport = whatsapp_service.for_account(conversation.account)
    result = transport.mark_read(last_inbound.external_id)
    if not result.ok:
        logger.warning(
            "Read receipt failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": result.error}},
        )
    return result
