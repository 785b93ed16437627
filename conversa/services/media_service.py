"""Background media work: download inbound attachments, transcribe voice notes."""

import uuid

from sqlalchemy.orm import Session

from conversa.logging_config import get_logger
from conversa.models import Message
from conversa.services import speech_service, storage_service, whatsapp_service
from conversa.services.dialogue_service import escalate_from_job_failure
from conversa.services.ingestion_service import JOB_DIALOGUE_HANDLE, JOB_MEDIA_DOWNLOAD
from conversa.services.job_service import enqueue_job, job_handler
from conversa.services.whatsapp_service import TransportError

logger = get_logger("media_service")

JOB_MEDIA_TRANSCRIBE = "media.transcribe"


def _load_message(db: Session, payload: dict) -> Message | None:
    message = db.get(Message, uuid.UUID(payload["message_id"]))
    if message is None:
        logger.warning("Media job for unknown message", extra={"context": payload})
    return message


def download_media(db: Session, message: Message) -> dict:
    """Fetch the attachment from the platform into the local store and fill media.url."""
    media = dict(message.media or {})
    if media.get("url"):
        return media

    conversation = message.conversation
    account = conversation.account
    transport = whatsapp_service.for_account(account)

    info = transport.get_media_info(media["id"])
    if not info.ok or not info.value.get("url"):
        raise TransportError(f"media info unavailable: {info.error}")
    content = transport.download_media(info.value["url"])
    if not content.ok:
        raise TransportError(f"media download failed: {content.error}")

    mime_type = info.value.get("mime_type") or media.get("mime_type")
    relative_path = storage_service.store_media(
        content.value,
        prefix=f"media/{account.phone_number_id}/{conversation.contact.phone_number}",
        extension=storage_service.extension_for_mime(mime_type),
    )
    media.update(
        {
            "mime_type": mime_type,
            "path": relative_path,
            "url": storage_service.build_signed_media_url(relative_path),
            "file_size": info.value.get("file_size"),
        }
    )
    message.media = media
    logger.info(
        "Media downloaded",
        extra={"context": {"message_id": str(message.id), "path": relative_path, "bytes": len(content.value)}},
    )
    return media


def _audio_without_download(db: Session, payload: dict, error: str) -> None:
    """A voice note that never downloaded still gets a (generic) reply."""
    message = db.get(Message, uuid.UUID(payload["message_id"]))
    if message is not None and message.type == "audio":
        enqueue_job(db, JOB_DIALOGUE_HANDLE, {"message_id": str(message.id)})


@job_handler(JOB_MEDIA_DOWNLOAD, on_permanent_failure=_audio_without_download)
def run_media_download(db: Session, payload: dict) -> None:
    message = _load_message(db, payload)
    if message is None or not (message.media or {}).get("id"):
        return
    download_media(db, message)
    if message.type == "audio":
        enqueue_job(db, JOB_MEDIA_TRANSCRIBE, {"message_id": str(message.id)})
    db.commit()


def _transcription_failed(db: Session, payload: dict, error: str) -> None:
    escalate_from_job_failure(db, payload, error, kind=JOB_MEDIA_TRANSCRIBE)


@job_handler(JOB_MEDIA_TRANSCRIBE, on_permanent_failure=_transcription_failed)
def run_media_transcribe(db: Session, payload: dict) -> None:
    message = _load_message(db, payload)
    if message is None:
        return
    if not message.content:
        media = message.media or {}
        source = media.get("path") or media.get("url")
        if not source:
            raise TransportError("audio not downloaded")
        transcript = speech_service.transcribe(source)
        if transcript:
            message.content = transcript
            logger.info(
                "Audio transcribed", extra={"context": {"message_id": str(message.id), "chars": len(transcript)}}
            )
        else:
            # no text: the dialogue answers with the generic audio acknowledgment
            logger.warning("Audio not transcribed", extra={"context": {"message_id": str(message.id)}})
    enqueue_job(db, JOB_DIALOGUE_HANDLE, {"message_id": str(message.id)})
    db.commit()
