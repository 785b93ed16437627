"""Speech-to-text and text-to-speech on top of the OpenAI audio endpoints."""

from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from conversa.config import settings
from conversa.logging_config import get_logger
from conversa.services import storage_service
from conversa.services.llm import OpenAIProvider
from conversa.services.llm.openai_provider import OpenAIError

logger = get_logger("speech_service")

_provider: Optional[OpenAIProvider] = None


def _get_provider() -> Optional[OpenAIProvider]:
    global _provider
    if not settings.openai_api_key:
        return None
    if _provider is None:
        _provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.llm_model)
    return _provider


def _load_audio(audio_url: str) -> Optional[bytes]:
    """Local store paths (plain or signed /media/ URLs) are read from disk, anything else is fetched."""
    parsed = urlparse(audio_url)
    if not parsed.scheme:
        return storage_service.read_media(audio_url)
    if parsed.path.startswith("/media/") and audio_url.startswith(settings.public_base_url.rstrip("/")):
        return storage_service.read_media(unquote(parsed.path[len("/media/"):]))
    with httpx.Client(timeout=settings.whatsapp_timeout_seconds, follow_redirects=True) as client:
        response = client.get(audio_url)
    if response.status_code != 200:
        logger.warning(f"Audio fetch failed: HTTP {response.status_code}")
        return None
    return response.content


def transcribe(audio_url: str) -> Optional[str]:
    """Returns the transcript, or None when the audio could not be transcribed."""
    provider = _get_provider()
    if provider is None:
        logger.warning("Transcription skipped: OPENAI_API_KEY not configured")
        return None
    try:
        audio_bytes = _load_audio(audio_url)
        if not audio_bytes:
            return None
        filename = urlparse(audio_url).path.rsplit("/", 1)[-1] or "audio.ogg"
        transcript = provider.transcribe_audio(
            audio_bytes=audio_bytes,
            filename=filename,
            model=settings.stt_model,
            language="pt",
            timeout_seconds=settings.llm_timeout_seconds,
        )
    except (OpenAIError, httpx.HTTPError, ValueError, OSError) as e:
        logger.warning("Transcription failed", extra={"context": {"audio_url": audio_url, "error": str(e)}})
        return None
    return transcript or None


def synthesize(text: str, conversation_key: str) -> Optional[str]:
    """Render text as an ogg/opus voice note and return its public URL, or None on any failure."""
    provider = _get_provider()
    if provider is None:
        return None
    try:
        audio = provider.synthesize_speech(
            text=text,
            model=settings.tts_model,
            voice=settings.tts_voice,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        relative_path = storage_service.store_media(audio, prefix=f"tts/{conversation_key}", extension="ogg")
    except (OpenAIError, httpx.HTTPError, ValueError, OSError) as e:
        logger.warning(
            "Speech synthesis failed", extra={"context": {"conversation_id": conversation_key, "error": str(e)}}
        )
        return None
    return storage_service.build_signed_media_url(relative_path)
