"""Satisfaction survey answered through a WhatsApp Flow (interactive nfm_reply)."""

import json
from typing import Optional

from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.logging_config import get_logger
from conversa.models import Conversation, Message, Survey
from conversa.services import delivery_service, notification_service
from conversa.services.result import Result
from conversa.services.state_machine import DialogueState, parse_state, transition

logger = get_logger("survey_service")

RESTAURANT_PLACEHOLDER = "{{restaurante}}"

SURVEY_INVITE = (
    "Olá! Queremos saber como foi sua experiência no Restaurante Comunitário {restaurant}. "
    "Leva menos de um minuto: toque no botão abaixo para responder."
)
SURVEY_THANKS = "Obrigado por participar da nossa pesquisa! Sua opinião é muito importante para nós. ✨"
SURVEY_UNREADABLE = (
    "Não consegui ler as respostas do formulário. 😕 Poderia abrir a pesquisa e enviar novamente, por favor?"
)
SURVEY_UNKNOWN_RESTAURANT = (
    "Peço desculpas, mas não consegui identificar a unidade do Restaurante Comunitário para registrar sua "
    "pesquisa. 🤔\n\nPor favor, tente ler o QR Code da unidade novamente para que eu possa registrar sua "
    "opinião corretamente. Agradeço a sua compreensão!"
)

FIELD_FULL_NAME = "screen_0_Nome_Completo_0"
FIELD_CPF = "screen_0_CPF_1"
FIELD_ADDRESS = "screen_0_Endereco_Completo_2"
FIELD_CEP = "screen_0_CEP_3"
FIELD_RATING = "screen_0_Avaliacao_4"
FIELD_COMMENTS = "screen_0_Comentarios_5"
FIELD_RESTAURANT = "restaurante"


def is_form_reply(message: Message) -> bool:
    """Flow replies share the "interactive" type with button and list replies."""
    if message.type != "interactive":
        return False
    interactive = (message.message_metadata or {}).get("interactive") or {}
    return interactive.get("type") == "nfm_reply"


def parse_rating(raw: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    """ "0_Excelente" -> (5, "Excelente") ... "4_Péssimo" -> (1, "Péssimo"). Anything else has no rating."""
    if not raw or not isinstance(raw, str):
        return None, None
    index, sep, label = raw.partition("_")
    if not sep:
        return None, raw
    try:
        position = int(index)
    except ValueError:
        return None, label or raw
    if not 0 <= position <= 4:
        return None, label
    return 5 - position, label


def _form_response(message: Message) -> Optional[dict]:
    interactive = (message.message_metadata or {}).get("interactive") or {}
    response_json = (interactive.get("nfm_reply") or {}).get("response_json")
    if isinstance(response_json, dict):
        return response_json
    if not response_json:
        return None
    try:
        data = json.loads(response_json)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _restaurant_name(form: dict, conversation: Conversation) -> Optional[str]:
    in_form = form.get(FIELD_RESTAURANT)
    if in_form and in_form != RESTAURANT_PLACEHOLDER:
        return in_form
    return (conversation.chatbot_context or {}).get("restaurant_name")


def summarize(survey: Survey) -> str:
    rating = f"{survey.rating}/5" if survey.rating is not None else "sem nota"
    lines = [
        "☑️ Resposta da Pesquisa de Satisfação:",
        f"Restaurante: {survey.restaurant_name}",
        f"Avaliação: {survey.rating_label or 'N/A'} ({rating})",
    ]
    if survey.comments:
        lines.append(f'Comentários: "{survey.comments}"')
    if survey.full_name:
        lines.append(f"Nome: {survey.full_name}")
    return "\n".join(lines)


def handle_form_reply(db: Session, conversation: Conversation, message: Message) -> Optional[Survey]:
    """Persist a survey from a Flow reply, summarize it into the message and thank the user."""
    context = {"conversation_id": str(conversation.id), "message_id": str(message.id)}

    form = _form_response(message)
    if form is None:
        logger.warning("Unreadable flow response", extra={"context": context})
        delivery_service.send_response(db, conversation, SURVEY_UNREADABLE)
        return None

    restaurant = _restaurant_name(form, conversation)
    if not restaurant:
        logger.warning("Survey without restaurant, apology sent", extra={"context": context})
        delivery_service.send_response(db, conversation, SURVEY_UNKNOWN_RESTAURANT)
        return None

    rating, rating_label = parse_rating(form.get(FIELD_RATING))
    survey = Survey(
        account_id=conversation.account_id,
        contact_id=message.contact_id,
        message_id=message.id,
        restaurant_name=restaurant,
        full_name=form.get(FIELD_FULL_NAME),
        cpf=form.get(FIELD_CPF),
        cep=form.get(FIELD_CEP),
        address=form.get(FIELD_ADDRESS),
        rating=rating,
        rating_label=rating_label,
        comments=form.get(FIELD_COMMENTS),
        raw_response=form,
    )
    db.add(survey)
    message.content = summarize(survey)
    db.flush()
    logger.info("Survey saved", extra={"context": {**context, "restaurant": restaurant, "rating": rating}})

    delivery_service.send_response(db, conversation, SURVEY_THANKS)
    if conversation.is_ai_handled:
        conversation.chatbot_state = transition(parse_state(conversation.chatbot_state), DialogueState.GENERAL).value
        conversation.chatbot_context = {}
    notification_service.publish(
        notification_service.SURVEY_SUBMITTED,
        {"survey_id": str(survey.id), "restaurant_name": restaurant, "rating": rating},
    )
    return survey


def start_survey(db: Session, conversation: Conversation, restaurant_name: str) -> Result[Message]:
    """Send the survey Flow and wait for its reply."""
    if not settings.survey_flow_id:
        return Result.failure("SURVEY_FLOW_ID not configured", "not_configured")

    next_state = transition(parse_state(conversation.chatbot_state), DialogueState.AWAITING_SURVEY)
    result = delivery_service.send_interactive_form(
        db,
        conversation,
        SURVEY_INVITE.format(restaurant=restaurant_name),
        flow_id=settings.survey_flow_id,
        flow_cta=settings.survey_flow_cta,
        flow_token=f"survey:{conversation.id}",
        screen=settings.survey_flow_screen,
        data={FIELD_RESTAURANT: restaurant_name},
    )
    if not result.ok:
        return result

    conversation.chatbot_context = {**(conversation.chatbot_context or {}), "restaurant_name": restaurant_name}
    conversation.chatbot_state = next_state.value
    db.flush()
    return result
