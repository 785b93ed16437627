from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conversa.config import settings
from conversa.database import Base, utcnow
from conversa.models import Account, Contact, Conversation, Message
from conversa.services import ai_service, notification_service, speech_service, whatsapp_service
from conversa.services.result import Result


@pytest.fixture
def db_session():
    """In-memory SQLite session with the full schema."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Keep tests off the network and the real media directory."""
    monkeypatch.setattr(settings, "media_storage_dir", str(tmp_path / "media"))
    monkeypatch.setattr(settings, "media_signing_secret", "test-signing-secret")
    monkeypatch.setattr(settings, "public_base_url", "https://conversa.test")
    monkeypatch.setattr(settings, "redis_url", None)
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "intent_strategy", "classify")
    monkeypatch.setattr(settings, "conversation_reuse_window_hours", None)
    monkeypatch.setattr(settings, "survey_flow_id", None)
    # tests assign these directly; registering them restores the defaults afterwards
    for name in (
        "default_rate_limit_per_minute",
        "job_retry_backoff_seconds",
        "location_directory_file",
        "location_max_distance_km",
        "whatsapp_app_secret",
        "whatsapp_verify_token",
    ):
        monkeypatch.setattr(settings, name, getattr(settings, name))
    return settings


@pytest.fixture(autouse=True)
def notifier(monkeypatch):
    publish = Mock(return_value=True)
    monkeypatch.setattr(notification_service, "publish", publish)
    return publish


class FakeTransport:
    """Stands in for WhatsAppService; records every send and returns sequential wamids."""

    def __init__(self):
        self.sent = []
        self.read_receipts = []
        self.fail = set()
        self.media_content = b"OggS-fake-audio"
        self._counter = 0

    def _send(self, kind: str, to: str, payload) -> Result[str]:
        if kind in self.fail:
            return Result.failure(f"{kind} rejected", "transport_rejected")
        self._counter += 1
        self.sent.append((kind, to, payload))
        return Result.success(f"wamid.out.{self._counter}")

    @property
    def texts(self) -> list[str]:
        return [payload for kind, _, payload in self.sent if kind == "text"]

    def send_text(self, to, body):
        return self._send("text", to, body)

    def send_audio(self, to, audio_url):
        return self._send("audio", to, audio_url)

    def send_template(self, to, template_name, language, parameters=None):
        return self._send("template", to, {"name": template_name, "language": language, "parameters": parameters})

    def send_interactive_form(self, to, body, **kwargs):
        return self._send("interactive", to, {"body": body, **kwargs})

    def mark_read(self, external_id):
        if "read" in self.fail:
            return Result.failure("read rejected", "transport_rejected")
        self.read_receipts.append(external_id)
        return Result.success(True)

    def get_media_info(self, media_id):
        if "media" in self.fail:
            return Result.failure("media rejected", "transport_rejected")
        return Result.success(
            {"url": f"https://lookaside.test/{media_id}", "mime_type": "audio/ogg", "file_size": len(self.media_content)}
        )

    def download_media(self, url):
        return Result.success(self.media_content)


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(whatsapp_service, "for_account", lambda account: fake)
    return fake


@pytest.fixture
def language_model(monkeypatch):
    model = Mock()
    model.classify_intent.return_value = ai_service.INTENT_QUESTION
    model.answer_question.return_value = "O CRAS atende de segunda a sexta, das 8h às 17h."
    monkeypatch.setattr(ai_service, "get_language_model", lambda: model)
    return model


@pytest.fixture
def speech(monkeypatch):
    mock = Mock()
    mock.synthesize.return_value = "https://conversa.test/media/tts/reply.ogg?expires=1&sig=x"
    mock.transcribe.return_value = "quero agendar um atendimento"
    monkeypatch.setattr(speech_service, "synthesize", mock.synthesize)
    monkeypatch.setattr(speech_service, "transcribe", mock.transcribe)
    return mock


class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def account(self, **kwargs) -> Account:
        account = Account(
            name=kwargs.pop("name", "Secretaria"),
            phone_number_id=kwargs.pop("phone_number_id", f"PNID-{self._next()}"),
            business_account_id=kwargs.pop("business_account_id", "WABA-1"),
            access_token=kwargs.pop("access_token", "token"),
            **kwargs,
        )
        self.db.add(account)
        self.db.flush()
        return account

    def contact(self, **kwargs) -> Contact:
        contact = Contact(
            phone_number=kwargs.pop("phone_number", f"55619990000{self._next():02d}"),
            name=kwargs.pop("name", "Maria"),
            **kwargs,
        )
        self.db.add(contact)
        self.db.flush()
        return contact

    def conversation(self, account=None, contact=None, **kwargs) -> Conversation:
        account = account or self.account()
        contact = contact or self.contact()
        conversation = Conversation(
            account_id=account.id,
            contact_id=contact.id,
            status=kwargs.pop("status", "open"),
            is_ai_handled=kwargs.pop("is_ai_handled", True),
            chatbot_state=kwargs.pop("chatbot_state", None),
            chatbot_context=kwargs.pop("chatbot_context", {}),
            **kwargs,
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def message(self, conversation, content="Olá", **kwargs) -> Message:
        direction = kwargs.pop("direction", "inbound")
        created_at = kwargs.pop("created_at", utcnow() + timedelta(microseconds=self._next()))
        message = Message(
            conversation_id=conversation.id,
            contact_id=conversation.contact_id,
            external_id=kwargs.pop("external_id", f"wamid.test.{self._next()}"),
            direction=direction,
            type=kwargs.pop("type", "text"),
            status=kwargs.pop("status", "delivered" if direction == "inbound" else "sent"),
            content=content,
            message_metadata=kwargs.pop("message_metadata", {"text": {"body": content}} if content else {}),
            created_at=created_at,
            **kwargs,
        )
        self.db.add(message)
        self.db.flush()
        return message


@pytest.fixture
def factory(db_session):
    return Factory(db_session)
