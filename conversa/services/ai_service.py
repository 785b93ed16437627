import json
import re
from typing import List, Optional

import httpx

from conversa.config import settings
from conversa.logging_config import get_logger
from conversa.services.llm import LanguageModel, MessageAnalysis, OpenAIProvider
from conversa.services.llm.openai_provider import OpenAIError

logger = get_logger("ai_service")

INTENT_SCHEDULE = "schedule_or_update"
INTENT_TRANSFER = "transfer_human"
INTENT_QUESTION = "question"
INTENT_OTHER = "other"
INTENT_TAGS = {INTENT_SCHEDULE, INTENT_TRANSFER, INTENT_QUESTION, INTENT_OTHER}

MAX_HISTORY_MESSAGES = 8

ASSISTANT_PROFILE = (
    "Você é o SIM Social, assistente virtual de atendimento da assistência social (CRAS) no WhatsApp. "
    "Você ajuda cidadãos com agendamento de atendimento no CRAS, atualização do Cadastro Único e "
    "dúvidas sobre programas e benefícios sociais."
)

CLASSIFY_PROMPT = (
    ASSISTANT_PROFILE
    + "\nClassifique a ÚLTIMA mensagem do cidadão em exatamente uma etiqueta:\n"
    "- schedule_or_update: quer agendar/marcar atendimento ou atualizar/corrigir dados cadastrais\n"
    "- transfer_human: pede para falar com um atendente humano\n"
    "- question: faz uma pergunta sobre programas, benefícios ou serviços\n"
    "- other: qualquer outra coisa\n"
    "Responda APENAS com a etiqueta, sem pontuação."
)

ANSWER_PROMPT = (
    ASSISTANT_PROFILE
    + "\nDiretrizes:\n"
    "- Seja sempre educado, prestativo e objetivo\n"
    "- Responda em português brasileiro, em no máximo 3 frases curtas\n"
    "- Nunca peça CPF, NIS, senha ou outros documentos pelo chat\n"
    "- Se não souber a resposta com segurança, responda exatamente NAO_SEI"
)

ANALYZE_PROMPT = (
    ASSISTANT_PROFILE
    + "\nAnalise a ÚLTIMA mensagem do cidadão e responda APENAS com JSON no formato "
    '{"off_topic":true/false,"contains_pii":true/false,"pii_type":"cpf|email|phone|rg|other|null",'
    '"detected_postal_code":"00000-000 ou null","intent":"schedule_or_update|transfer_human|question|other"}.\n'
    "off_topic=true quando o assunto não tem relação com assistência social. "
    "contains_pii=true quando a mensagem traz documento, e-mail ou telefone. "
    "detected_postal_code só quando houver um CEP completo na mensagem."
)

UNKNOWN_ANSWER_MARKER = "NAO_SEI"


def _history_messages(history: List[dict]) -> List[dict]:
    recent = [item for item in history if item.get("content")][-MAX_HISTORY_MESSAGES:]
    return [{"role": item.get("role", "user"), "content": item["content"]} for item in recent]


def _parse_json_object(content: str) -> Optional[dict]:
    try:
        payload = json.loads(content)
    except ValueError:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if not match:
            return None
        try:
            payload = json.loads(match.group(0))
        except ValueError:
            return None
    return payload if isinstance(payload, dict) else None


def normalize_intent(raw: Optional[str]) -> str:
    tag = (raw or "").strip().strip(".\"'").lower()
    return tag if tag in INTENT_TAGS else INTENT_OTHER


class OpenAILanguageModel(LanguageModel):
    """LanguageModel backed by OpenAI chat completions. Every call is bounded by tokens and a timeout."""

    def __init__(self, provider: OpenAIProvider, model: Optional[str] = None):
        self.provider = provider
        self.model = model or settings.llm_model

    def _complete(self, system_prompt: str, history: List[dict], text: str, *, max_tokens: int, json_mode=False):
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(_history_messages(history))
        messages.append({"role": "user", "content": text})
        response = self.provider.generate(
            messages,
            model=self.model,
            temperature=0.0 if json_mode else 0.3,
            max_tokens=max_tokens,
            timeout_seconds=settings.llm_timeout_seconds,
            json_mode=json_mode,
        )
        return (response.content or "").strip()

    def classify_intent(self, history: List[dict], text: str) -> str:
        try:
            content = self._complete(CLASSIFY_PROMPT, history, text, max_tokens=10)
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.warning(f"Intent classification failed: {exc}")
            return INTENT_OTHER
        return normalize_intent(content)

    def answer_question(self, history: List[dict], text: str) -> Optional[str]:
        try:
            content = self._complete(ANSWER_PROMPT, history, text, max_tokens=settings.llm_max_tokens)
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.warning(f"Answer generation failed: {exc}")
            return None
        if not content or UNKNOWN_ANSWER_MARKER in content:
            return None
        return content

    def analyze_message(self, history: List[dict], text: str) -> MessageAnalysis:
        try:
            content = self._complete(ANALYZE_PROMPT, history, text, max_tokens=120, json_mode=True)
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.warning(f"Message analysis failed: {exc}")
            return MessageAnalysis()

        payload = _parse_json_object(content)
        if payload is None:
            logger.warning("Message analysis returned non-JSON content", extra={"context": {"content": content[:200]}})
            return MessageAnalysis()

        postal_code = payload.get("detected_postal_code")
        pii_type = payload.get("pii_type")
        return MessageAnalysis(
            off_topic=bool(payload.get("off_topic")),
            contains_pii=bool(payload.get("contains_pii")),
            pii_type=pii_type if pii_type not in (None, "null", "") else None,
            detected_postal_code=postal_code if postal_code not in (None, "null", "") else None,
            intent=normalize_intent(payload.get("intent")),
        )


_language_model: Optional[LanguageModel] = None


def get_language_model() -> LanguageModel:
    """Get or create the process-wide language model."""
    global _language_model
    if _language_model is None:
        provider = OpenAIProvider(api_key=settings.openai_api_key or "", default_model=settings.llm_model)
        _language_model = OpenAILanguageModel(provider)
    return _language_model
