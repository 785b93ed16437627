"""Content-addressed media store on local disk, served through HMAC-signed URLs."""

import hashlib
import hmac
import json
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from conversa.config import settings
from conversa.logging_config import get_logger

logger = get_logger("storage_service")

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "audio/aac": "aac",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
    "audio/amr": "amr",
    "audio/ogg": "ogg",
    "application/pdf": "pdf",
}


def extension_for_mime(mime_type: Optional[str]) -> str:
    # "audio/ogg; codecs=opus" -> "audio/ogg"
    mime = (mime_type or "").split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(mime, "bin")


def _base_dir() -> Path:
    return Path(settings.media_storage_dir)


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Build signed public URL for a file under MEDIA_STORAGE_DIR."""
    if not settings.media_signing_secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return None
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 60)
    normalized_path = _normalize_media_path(relative_path)
    signature = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{settings.public_base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    if not settings.media_signing_secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return False
    if not signature:
        return False
    if expires < int(time.time()):
        return False
    normalized_path = _normalize_media_path(relative_path)
    expected = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    return hmac.compare_digest(expected, signature)


def resolve_media_path(relative_path: str) -> Optional[Path]:
    """Absolute path of a stored file, or None when the path escapes the store or does not exist."""
    normalized_path = _normalize_media_path(relative_path)
    if not normalized_path:
        return None
    base_dir = _base_dir().resolve()
    target_path = (base_dir / normalized_path).resolve()
    if base_dir not in target_path.parents:
        return None
    if not target_path.is_file():
        return None
    return target_path


def store_media(content: bytes, *, prefix: str, extension: str) -> str:
    """Write bytes under prefix/<sha256>.<ext>; identical content maps to the same path.

    Returns the store-relative path.
    """
    digest = hashlib.sha256(content).hexdigest()
    relative_path = f"{_normalize_media_path(prefix).rstrip('/')}/{digest}.{extension.lstrip('.')}"
    target = _base_dir() / relative_path
    if not target.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(content)
        tmp.replace(target)
    logger.debug(f"Stored media {relative_path} ({len(content)} bytes)")
    return relative_path


def store_raw_payload(key: str, payload: dict) -> Optional[str]:
    """Keep the raw webhook payload for audit. Failures are logged, never raised."""
    relative_path = _normalize_media_path(key)
    try:
        target = _base_dir() / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to store raw payload", extra={"context": {"key": key, "error": str(e)}})
        return None
    return relative_path


def read_media(relative_path: str) -> Optional[bytes]:
    path = resolve_media_path(relative_path)
    if path is None:
        return None
    return path.read_bytes()
