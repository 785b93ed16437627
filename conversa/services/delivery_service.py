from typing import Optional

from sqlalchemy.orm import Session

from conversa.database import utcnow
from conversa.logging_config import get_logger
from conversa.models import Conversation, Message
from conversa.services import notification_service, speech_service, whatsapp_service
from conversa.services.conversation_service import touch_outbound
from conversa.services.result import Result

logger = get_logger("delivery_service")


def _record_outbound(
    db: Session,
    conversation: Conversation,
    *,
    external_id: str,
    message_type: str,
    content: Optional[str],
    media: Optional[dict] = None,
    metadata: Optional[dict] = None,
) -> Message:
    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        contact_id=conversation.contact_id,
        external_id=external_id,
        direction="outbound",
        type=message_type,
        status="sent",
        content=content,
        media=media,
        message_metadata=metadata or {},
        is_ai_generated=True,
        sent_at=now,
        created_at=now,
    )
    db.add(message)
    touch_outbound(conversation, now)
    db.flush()

    notification_service.publish(notification_service.MESSAGE_SENT, notification_service.message_payload(message))
    logger.info(
        "Outbound message recorded",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "message_id": str(message.id),
                "external_id": external_id,
                "type": message_type,
            }
        },
    )
    return message


def send_response(db: Session, conversation: Conversation, text: str, *, as_audio: bool = False) -> Result[Message]:
    """Send a reply, as a voice note when asked and possible, otherwise as text.

    Exactly one outbound Message is persisted per successful send; nothing is persisted when every
    channel failed.
    """
    to = conversation.contact.phone_number
    transport = whatsapp_service.for_account(conversation.account)
    context = {"conversation_id": str(conversation.id)}

    if as_audio:
        audio_url = speech_service.synthesize(text, str(conversation.id))
        if audio_url:
            result = transport.send_audio(to, audio_url)
            if result.ok:
                message = _record_outbound(
                    db,
                    conversation,
                    external_id=result.value,
                    message_type="audio",
                    content=text,
                    media={"url": audio_url, "mime_type": "audio/ogg"},
                )
                return Result.success(message)
            logger.warning("Audio send failed, falling back to text", extra={"context": {**context, "error": result.error}})
        else:
            logger.info("No synthesized audio, falling back to text", extra={"context": context})

    result = transport.send_text(to, text)
    if not result.ok:
        logger.warning("Outbound send failed", extra={"context": {**context, "error": result.error}})
        return Result.failure(result.error or "send failed", "delivery_failed")

    message = _record_outbound(db, conversation, external_id=result.value, message_type="text", content=text)
    return Result.success(message)


def send_interactive_form(
    db: Session,
    conversation: Conversation,
    body: str,
    *,
    flow_id: str,
    flow_cta: str,
    flow_token: str,
    screen: Optional[str] = None,
    data: Optional[dict] = None,
) -> Result[Message]:
    transport = whatsapp_service.for_account(conversation.account)
    result = transport.send_interactive_form(
        conversation.contact.phone_number,
        body,
        flow_id=flow_id,
        flow_cta=flow_cta,
        flow_token=flow_token,
        screen=screen,
        data=data,
    )
    if not result.ok:
        logger.warning(
            "Interactive form send failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": result.error}},
        )
        return Result.failure(result.error or "send failed", "delivery_failed")

    message = _record_outbound(
        db,
        conversation,
        external_id=result.value,
        message_type="interactive",
        content=body,
        metadata={"interactive": {"type": "flow", "flow_id": flow_id, "flow_token": flow_token}},
    )
    return Result.success(message)
