"""Realtime events for the live dashboard, fanned out over Redis pub/sub."""

import json
from typing import Optional

import redis

from conversa.config import settings
from conversa.database import utcnow
from conversa.logging_config import get_logger

logger = get_logger("notification_service")

MESSAGE_RECEIVED = "message.received"
MESSAGE_SENT = "message.sent"
MESSAGE_STATUS = "message.status"
CONVERSATION_ESCALATED = "conversation.escalated"
CONVERSATION_CLOSED = "conversation.closed"
SURVEY_SUBMITTED = "survey.submitted"

_redis_client = None
_redis_url: Optional[str] = None


def _get_redis():
    global _redis_client, _redis_url
    if not settings.redis_url:
        return None
    if _redis_client is None or _redis_url != settings.redis_url:
        _redis_url = settings.redis_url
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
    return _redis_client


def publish(event: str, payload: dict) -> bool:
    """Publish an event. Delivery is best effort: failures are logged and reported as False."""
    client = _get_redis()
    if client is None:
        logger.debug(f"Event {event} not published (no REDIS_URL)", extra={"context": payload})
        return False

    data = json.dumps({"event": event, "payload": payload, "published_at": utcnow().isoformat()}, default=str)
    try:
        client.publish(settings.notification_channel, data)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish {event}", extra={"context": {"error": str(e)}})
        return False
    return True


def message_payload(message) -> dict:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "contact_id": str(message.contact_id),
        "external_id": message.external_id,
        "direction": message.direction,
        "type": message.type,
        "status": message.status,
        "content": message.content,
        "created_at": message.created_at,
    }
