from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from conversa.database import utcnow
from conversa.logging_config import get_logger
from conversa.models import Campaign, Conversation, Job
from conversa.services.state_machine import ConversationStatus, DialogueState

logger = get_logger("health_service")


def check_and_heal_conversations(db: Session) -> dict:
    """Check conversation invariants and repair violations."""
    healed = []
    now = utcnow()

    # Invariant 1: at most one non-closed conversation per (contact, account); the newest wins
    duplicated_pairs = (
        db.query(Conversation.contact_id, Conversation.account_id)
        .filter(Conversation.status != ConversationStatus.CLOSED.value)
        .group_by(Conversation.contact_id, Conversation.account_id)
        .having(func.count(Conversation.id) > 1)
        .all()
    )
    for contact_id, account_id in duplicated_pairs:
        conversations = (
            db.query(Conversation)
            .filter(
                Conversation.contact_id == contact_id,
                Conversation.account_id == account_id,
                Conversation.status != ConversationStatus.CLOSED.value,
            )
            .order_by(Conversation.created_at.desc())
            .all()
        )
        for conv in conversations[1:]:
            conv.status = ConversationStatus.CLOSED.value
            conv.closed_at = now
            healed.append(
                {
                    "conversation_id": str(conv.id),
                    "issue": "duplicate_active_conversation",
                    "action": f"closed_in_favor_of_{conversations[0].id}",
                }
            )
            logger.warning(f"Healed conversation {conv.id}: duplicate of {conversations[0].id}")

    # Invariant 2: an escalated conversation is no longer handled by the bot
    half_escalated = (
        db.query(Conversation)
        .filter(
            Conversation.is_ai_handled.is_(True),
            Conversation.status != ConversationStatus.CLOSED.value,
            or_(
                Conversation.status == ConversationStatus.PENDING.value,
                Conversation.chatbot_state == DialogueState.TRANSFERRED.value,
            ),
        )
        .all()
    )
    for conv in half_escalated:
        issue = f"{conv.status}_{conv.chatbot_state or 'new'}_ai_handled"
        conv.is_ai_handled = False
        conv.status = ConversationStatus.PENDING.value
        conv.chatbot_state = DialogueState.TRANSFERRED.value
        conv.escalated_at = conv.escalated_at or now
        healed.append({"conversation_id": str(conv.id), "issue": issue, "action": "completed_escalation"})
        logger.warning(f"Healed conversation {conv.id}: {issue}")

    db.commit()

    return {
        "healed_count": len(healed),
        "details": healed,
        "checked_at": now.isoformat(),
    }


def _count_by(db: Session, column) -> dict:
    return {value: count for value, count in db.query(column, func.count()).group_by(column).all()}


def get_system_health(db: Session) -> dict:
    conversations = _count_by(db, Conversation.status)
    jobs = _count_by(db, Job.status)
    running_campaigns = db.query(Campaign).filter(Campaign.status == "running").count()

    return {
        "conversations": {
            "open": conversations.get(ConversationStatus.OPEN.value, 0),
            "pending": conversations.get(ConversationStatus.PENDING.value, 0),
            "closed": conversations.get(ConversationStatus.CLOSED.value, 0),
        },
        "jobs": jobs,
        "campaigns": {"running": running_campaigns},
        "checked_at": utcnow().isoformat(),
    }
