"""Automated dialogue: decides the next bot action for each inbound message."""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.database import utcnow
from conversa.logging_config import LoggerAdapter, get_logger
from conversa.models import Conversation, Message
from conversa.services import ai_service, delivery_service, location_service, notification_service, survey_service
from conversa.services.alert_service import alert_critical
from conversa.services.conversation_service import conversation_history
from conversa.services.ingestion_service import JOB_DIALOGUE_HANDLE
from conversa.services.job_service import enqueue_job, job_handler
from conversa.services.state_machine import (
    ConversationStatus,
    DialogueState,
    InvalidTransitionError,
    escalate,
    parse_state,
    transition,
)
from conversa.services.whatsapp_service import TransportError

logger = get_logger("dialogue_service")

JOB_LOCATION_LOOKUP = "location.lookup"

GREETING = (
    "Olá! Sou o SIM Social, seu assistente virtual da Secretaria de Desenvolvimento Social. "
    "Me diga como posso te ajudar hoje. Você pode me mandar uma mensagem de texto ou um áudio, se preferir."
)
LOCATION_REQUEST = (
    "Entendi! Para atualizar dados ou agendar um atendimento, o caminho é o CRAS. Para eu encontrar a unidade "
    "mais próxima e já verificar um horário, pode me enviar sua localização ou apenas digitar seu CEP?"
)
LOCATION_RETRY = (
    "Não consegui reconhecer esse endereço. 🤔 Pode digitar só o seu CEP (por exemplo, 70610-410) "
    "ou me enviar sua localização pelo WhatsApp?"
)
LOCATION_ACK = "Ótimo! Já estou localizando o CRAS mais próximo de {target} para você. Aguarde um instante!"
LOCATION_RESULT = (
    "Prontinho! Encontrei a unidade mais próxima para você.\n\n*{name}*\n*Endereço:* {address}\n\n"
    "Consegui um horário para você na *{date}, {time}*. Fica bom? Posso confirmar?"
)
LOCATION_NOT_FOUND = (
    "Desculpe, não encontrei uma unidade do CRAS perto dessa localização. "
    "Quer que eu te transfira para um de nossos atendentes?"
)
APPOINTMENT_CONFIRMED = (
    "Agendamento confirmado! Lembre-se de levar um documento com foto e comprovante de residência. "
    "Se precisar de mais alguma coisa, é só chamar!"
)
APPOINTMENT_DECLINED = "Tudo bem, o agendamento não foi confirmado. Se quiser tentar outra data, é só me pedir."
TRANSFER_OFFER = "Desculpe, não consegui ajudar com isso. Quer que eu te transfira para um de nossos atendentes?"
TRANSFER_DECLINED = "Tudo bem! Se mudar de ideia, é só me chamar."
TRANSFER_NOTICE = (
    "Combinado! Estou transferindo sua conversa. Por favor, aguarde um momento que logo um atendente irá te responder."
)
PRIVACY_REFUSAL = (
    "Para sua segurança, não envie documentos, e-mails ou telefones por aqui. 🔒 "
    "Posso te ajudar com agendamentos no CRAS ou dúvidas sobre programas sociais."
)
OFF_TOPIC_REPLY = (
    "Eu só consigo ajudar com assuntos da assistência social, como agendamento no CRAS, "
    "atualização do cadastro e dúvidas sobre programas e benefícios."
)
SURVEY_PENDING = "Para registrar sua opinião, toque no botão da pesquisa que enviei e preencha o formulário, por favor. 📝"

GENERIC_MEDIA_REPLIES = {
    "image": "Recebi sua imagem!",
    "video": "Vídeo recebido! Vou dar uma olhada.",
    "sticker": "Adorei o sticker!",
    "audio": "Recebi seu áudio, mas não consegui entender. Poderia gravar novamente ou digitar sua dúvida?",
    "document": "Recebi seu documento, obrigado!",
}
GENERIC_MEDIA_DEFAULT = "Recebi seu anexo, obrigado!"

REDACTED_CONTENT = "[mensagem removida: continha dados pessoais]"

APPOINTMENT_AFFIRMATIONS = frozenset({"sim", "s", "pode", "confirma", "confirmo", "ok"})
TRANSFER_AFFIRMATIONS = frozenset({"sim", "s", "quero", "pode ser", "gostaria", "sim por favor"})

UPDATE_KEYWORDS = ("atualizar", "mudar", "alterar", "corrigir", "meus dados", "meu cadastro")
SCHEDULE_KEYWORDS = ("agendar", "marcar", "agendamento", "horário", "atendimento", "cras")
TRANSFER_KEYWORDS = ("atendente", "humano", "pessoa", "falar com alguém")

PII_PATTERNS = (
    ("cpf", re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b")),
    ("email", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")),
    ("phone", re.compile(r"(?:\+?55\s?)?\(?\b\d{2}\)?\s?9?\d{4}[-\s]?\d{4}\b")),
)


class DeliveryError(TransportError):
    """A bot reply could not be delivered; the dialogue job is retried."""


def normalize_reply(text: Optional[str]) -> str:
    """Lowercase, drop punctuation and collapse whitespace: "Sim, por favor!" -> "sim por favor"."""
    cleaned = re.sub(r"[^\w\s]", " ", (text or "").lower())
    return " ".join(cleaned.split())


def detect_keyword_intent(text: str) -> Optional[str]:
    lowered = text.lower()
    if any(keyword in lowered for keyword in UPDATE_KEYWORDS + SCHEDULE_KEYWORDS):
        return ai_service.INTENT_SCHEDULE
    if any(keyword in lowered for keyword in TRANSFER_KEYWORDS):
        return ai_service.INTENT_TRANSFER
    return None


def detect_pii(text: str) -> Optional[str]:
    for pii_type, pattern in PII_PATTERNS:
        if pattern.search(text):
            return pii_type
    return None


@dataclass
class Turn:
    """One inbound message being answered."""

    db: Session
    conversation: Conversation
    message: Optional[Message]
    as_audio: bool
    log: LoggerAdapter

    @property
    def state(self) -> Optional[DialogueState]:
        return parse_state(self.conversation.chatbot_state)

    def reply(
        self, text: str, *, next_state: Optional[DialogueState] = None, as_audio: Optional[bool] = None
    ) -> Message:
        """Send a reply and commit it with the state it leads to.

        Once the transport accepted a reply, its Message row and the state change must survive
        a failure later in the same turn, or a retry would repeat the reply.
        """
        new_state = transition(self.state, next_state) if next_state is not None else None
        result = delivery_service.send_response(
            self.db, self.conversation, text, as_audio=self.as_audio if as_audio is None else as_audio
        )
        if not result.ok:
            raise DeliveryError(result.error)
        if new_state is not None:
            self.conversation.chatbot_state = new_state.value
        self.db.commit()
        self.db.refresh(self.conversation, with_for_update=True)
        return result.value


def _turn(db: Session, conversation: Conversation, message: Optional[Message], as_audio: bool) -> Turn:
    log = LoggerAdapter(
        logger,
        {"conversation_id": str(conversation.id), "message_id": str(message.id) if message else None},
    )
    return Turn(db=db, conversation=conversation, message=message, as_audio=as_audio, log=log)


def _lock_conversation(db: Session, conversation_id) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()


def handle_message(db: Session, message_id) -> None:
    """Run the dialogue for one inbound message. Re-entry after a completed run is a no-op."""
    message = db.get(Message, message_id)
    if message is None or message.direction != "inbound":
        logger.warning("Dialogue skipped: no inbound message", extra={"context": {"message_id": str(message_id)}})
        return

    conversation = _lock_conversation(db, message.conversation_id)
    db.refresh(message)
    turn = _turn(db, conversation, message, as_audio=message.type == "audio")

    if message.processed_at is not None:
        turn.log.info("Dialogue skipped: message already processed")
        return

    if survey_service.is_form_reply(message):
        survey_service.handle_form_reply(db, conversation, message)
        _finish(turn)
        return

    if not conversation.is_ai_handled or conversation.status != ConversationStatus.OPEN.value:
        turn.log.info("Dialogue skipped: conversation not handled by the bot", context={"status": conversation.status})
        _finish(turn)
        return

    if turn.state is None:
        turn.reply(GREETING, next_state=DialogueState.GENERAL)

    _dispatch(turn)
    _finish(turn)


def _finish(turn: Turn) -> None:
    turn.message.processed_at = utcnow()
    turn.db.commit()
    turn.log.info("Dialogue turn done", context={"state": turn.conversation.chatbot_state})


def _dispatch(turn: Turn) -> None:
    text = (turn.message.content or "").strip()
    state = turn.state

    if state == DialogueState.TRANSFERRED:
        return
    if not text:
        handle_generic_media(turn)
        return

    if state == DialogueState.AWAITING_LOCATION:
        handle_location_input(turn, text)
    elif state == DialogueState.AWAITING_APPOINTMENT_CONFIRMATION:
        handle_appointment_confirmation(turn, text)
    elif state == DialogueState.CONFIRMING_TRANSFER:
        handle_transfer_confirmation(turn, text)
    elif state == DialogueState.AWAITING_SURVEY:
        turn.reply(SURVEY_PENDING)
    else:
        # baseline, and questions asked while the unit lookup is running
        handle_general_query(turn, text)


def handle_generic_media(turn: Turn) -> None:
    turn.reply(GENERIC_MEDIA_REPLIES.get(turn.message.type, GENERIC_MEDIA_DEFAULT))


def handle_general_query(turn: Turn, text: str) -> None:
    pii_type = detect_pii(text)
    if pii_type:
        refuse_personal_data(turn, pii_type)
        return

    intent = detect_keyword_intent(text)
    model = None
    history: list[dict] = []
    if intent is None:
        model = ai_service.get_language_model()
        history = conversation_history(turn.db, turn.conversation, exclude_id=turn.message.id)
        if settings.intent_strategy == "analyze":
            analysis = model.analyze_message(history, text)
            if analysis.contains_pii:
                refuse_personal_data(turn, analysis.pii_type or "other")
                return
            if analysis.detected_postal_code and location_service.is_postal_code(analysis.detected_postal_code):
                accept_location(turn, analysis.detected_postal_code.strip())
                return
            if analysis.off_topic:
                turn.reply(OFF_TOPIC_REPLY)
                return
            intent = analysis.intent
        else:
            intent = model.classify_intent(history, text)
        turn.log.info("Intent classified", context={"intent": intent, "strategy": settings.intent_strategy})

    if intent == ai_service.INTENT_SCHEDULE:
        turn.reply(LOCATION_REQUEST, next_state=DialogueState.AWAITING_LOCATION)
    elif intent == ai_service.INTENT_TRANSFER:
        offer_transfer(turn)
    else:
        answer = model.answer_question(history, text) if model else None
        if answer:
            turn.reply(answer)
        else:
            offer_transfer(turn)


def refuse_personal_data(turn: Turn, pii_type: str) -> None:
    """Never keep personal data typed into the chat: redact the message and stay at baseline."""
    message = turn.message
    message.content = REDACTED_CONTENT
    metadata = dict(message.message_metadata or {})
    if "text" in metadata:
        metadata["text"] = {"body": REDACTED_CONTENT}
    message.message_metadata = metadata
    turn.log.warning("Personal data redacted", context={"pii_type": pii_type})
    turn.reply(PRIVACY_REFUSAL, next_state=DialogueState.GENERAL)


def offer_transfer(turn: Turn, text: str = TRANSFER_OFFER) -> None:
    turn.reply(text, next_state=DialogueState.CONFIRMING_TRANSFER)


def handle_location_input(turn: Turn, text: str) -> None:
    if not location_service.is_location(text):
        turn.log.info("Location not recognized, asking again")
        turn.reply(LOCATION_RETRY)
        return
    accept_location(turn, text)


def accept_location(turn: Turn, location: str) -> None:
    target = "sua localização" if location_service.parse_coordinates(location) else f"o CEP {location}"
    turn.conversation.chatbot_context = {**(turn.conversation.chatbot_context or {}), "location": location}
    enqueue_job(
        turn.db,
        JOB_LOCATION_LOOKUP,
        {"conversation_id": str(turn.conversation.id), "location": location, "as_audio": turn.as_audio},
        delay_seconds=settings.location_lookup_delay_seconds,
    )
    turn.reply(LOCATION_ACK.format(target=target), next_state=DialogueState.AWAITING_CRAS_RESULT)


def handle_appointment_confirmation(turn: Turn, text: str) -> None:
    if normalize_reply(text) in APPOINTMENT_AFFIRMATIONS:
        context = dict(turn.conversation.chatbot_context or {})
        if context.get("appointment"):
            context["appointment"] = {**context["appointment"], "confirmed": True}
            turn.conversation.chatbot_context = context
        turn.reply(APPOINTMENT_CONFIRMED, next_state=DialogueState.GENERAL)
    else:
        turn.reply(APPOINTMENT_DECLINED, next_state=DialogueState.GENERAL)


def handle_transfer_confirmation(turn: Turn, text: str) -> None:
    if normalize_reply(text) in TRANSFER_AFFIRMATIONS:
        escalate_to_human(turn.db, turn.conversation, reason="user_request")
        return
    turn.reply(TRANSFER_DECLINED, next_state=DialogueState.GENERAL)


def send_location_result(db: Session, conversation_id, location: str, *, as_audio: bool = False) -> bool:
    """Deliver the unit found for a location. Returns False when the conversation moved on meanwhile."""
    conversation = _lock_conversation(db, conversation_id)
    if conversation is None:
        return False
    turn = _turn(db, conversation, None, as_audio=as_audio)
    if not conversation.is_ai_handled or turn.state != DialogueState.AWAITING_CRAS_RESULT:
        turn.log.info("Location result dropped: conversation moved on", context={"state": conversation.chatbot_state})
        return False

    unit = location_service.find_nearest_unit(location)
    if unit is None:
        turn.log.info("No unit found for location", context={"location": location})
        offer_transfer(turn, LOCATION_NOT_FOUND)
        return True

    slot = location_service.propose_slot(unit)
    turn.conversation.chatbot_context = {**(conversation.chatbot_context or {}), "appointment": slot.as_dict()}
    turn.reply(LOCATION_RESULT.format(**slot.as_dict()), next_state=DialogueState.AWAITING_APPOINTMENT_CONFIRMATION)
    return True


def escalate_to_human(db: Session, conversation: Conversation, *, reason: str, notify: bool = True) -> bool:
    """Hand the conversation to a human operator. Idempotent: returns False if it was already escalated."""
    context = {"conversation_id": str(conversation.id), "reason": reason}
    already = (
        conversation.status == ConversationStatus.PENDING.value
        and not conversation.is_ai_handled
        and conversation.chatbot_state == DialogueState.TRANSFERRED.value
    )
    if already:
        logger.info("Escalation skipped: already with a human", extra={"context": context})
        return False

    current = ConversationStatus(conversation.status)
    if current != ConversationStatus.PENDING:
        try:
            escalate(current)
        except InvalidTransitionError:
            logger.warning("Escalation skipped: conversation is closed", extra={"context": context})
            return False

    if notify:
        result = delivery_service.send_response(db, conversation, TRANSFER_NOTICE)
        if not result.ok:
            logger.warning("Transfer notice not delivered", extra={"context": {**context, "error": result.error}})

    conversation.status = ConversationStatus.PENDING.value
    conversation.is_ai_handled = False
    conversation.chatbot_state = DialogueState.TRANSFERRED.value
    conversation.escalated_at = utcnow()
    db.flush()

    notification_service.publish(notification_service.CONVERSATION_ESCALATED, context)
    logger.info("Conversation escalated to human", extra={"context": context})
    return True


def escalate_from_job_failure(db: Session, payload: dict, error: str, *, kind: str) -> None:
    """Safety net for jobs that exhausted their retries: a human takes over."""
    conversation = None
    if payload.get("conversation_id"):
        conversation = db.get(Conversation, uuid.UUID(payload["conversation_id"]))
    elif payload.get("message_id"):
        message = db.get(Message, uuid.UUID(payload["message_id"]))
        conversation = message.conversation if message else None

    context = {"kind": kind, "error": error, **payload}
    logger.critical("Job failed permanently, escalating to human", extra={"context": context})
    if conversation is None:
        return

    escalate_to_human(db, conversation, reason=f"job_failure:{kind}")
    alert_critical("Conversation escalated after permanent job failure", {**context, "conversation_id": conversation.id})


def _dialogue_failed(db: Session, payload: dict, error: str) -> None:
    escalate_from_job_failure(db, payload, error, kind=JOB_DIALOGUE_HANDLE)


def _lookup_failed(db: Session, payload: dict, error: str) -> None:
    escalate_from_job_failure(db, payload, error, kind=JOB_LOCATION_LOOKUP)


@job_handler(JOB_DIALOGUE_HANDLE, on_permanent_failure=_dialogue_failed)
def run_dialogue_handle(db: Session, payload: dict) -> None:
    handle_message(db, uuid.UUID(payload["message_id"]))


@job_handler(JOB_LOCATION_LOOKUP, on_permanent_failure=_lookup_failed)
def run_location_lookup(db: Session, payload: dict) -> None:
    send_location_result(
        db, uuid.UUID(payload["conversation_id"]), payload["location"], as_audio=bool(payload.get("as_audio"))
    )
    db.commit()
