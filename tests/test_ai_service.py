from unittest.mock import Mock

import httpx
import pytest

from conversa.services import ai_service
from conversa.services.ai_service import (
    INTENT_OTHER,
    INTENT_QUESTION,
    INTENT_SCHEDULE,
    OpenAILanguageModel,
    normalize_intent,
)
from conversa.services.llm import LLMResponse, MessageAnalysis
from conversa.services.llm.openai_provider import OpenAIError


@pytest.fixture
def provider():
    mock = Mock()
    mock.generate.return_value = LLMResponse(content="question", model="gpt-4o-mini")
    return mock


@pytest.fixture
def model(provider):
    return OpenAILanguageModel(provider, model="gpt-4o-mini")


def _reply(provider, content):
    provider.generate.return_value = LLMResponse(content=content, model="gpt-4o-mini")


class TestNormalizeIntent:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("question", INTENT_QUESTION),
            (" Schedule_or_update. ", INTENT_SCHEDULE),
            ('"question"', INTENT_QUESTION),
            ("agendar", INTENT_OTHER),
            (None, INTENT_OTHER),
        ],
    )
    def test_unknown_tags_become_other(self, raw, expected):
        assert normalize_intent(raw) == expected


class TestClassifyIntent:
    def test_sends_history_and_text(self, model, provider):
        history = [{"role": "user", "content": "oi"}, {"role": "assistant", "content": "Olá!"}, {"role": "user", "content": None}]

        assert model.classify_intent(history, "qual o horário do CRAS?") == INTENT_QUESTION

        messages = provider.generate.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert messages[1:] == [
            {"role": "user", "content": "oi"},
            {"role": "assistant", "content": "Olá!"},
            {"role": "user", "content": "qual o horário do CRAS?"},
        ]
        assert provider.generate.call_args.kwargs["max_tokens"] == 10

    def test_history_is_bounded(self, model, provider):
        history = [{"role": "user", "content": f"m{n}"} for n in range(20)]

        model.classify_intent(history, "oi")

        messages = provider.generate.call_args.args[0]
        assert len(messages) == 1 + ai_service.MAX_HISTORY_MESSAGES + 1

    def test_provider_error_is_other(self, model, provider):
        provider.generate.side_effect = OpenAIError(500, "boom")

        assert model.classify_intent([], "oi") == INTENT_OTHER

    def test_timeout_is_other(self, model, provider):
        provider.generate.side_effect = httpx.ReadTimeout("timed out")

        assert model.classify_intent([], "oi") == INTENT_OTHER


class TestAnswerQuestion:
    def test_answer(self, model, provider):
        _reply(provider, "O CRAS abre às 8h.")

        assert model.answer_question([], "que horas abre?") == "O CRAS abre às 8h."

    def test_unknown_marker_means_no_answer(self, model, provider):
        _reply(provider, "NAO_SEI")

        assert model.answer_question([], "qual a cotação do dólar?") is None

    def test_failure_means_no_answer(self, model, provider):
        provider.generate.side_effect = httpx.ConnectError("refused")

        assert model.answer_question([], "que horas abre?") is None


class TestAnalyzeMessage:
    def test_json_analysis(self, model, provider):
        _reply(
            provider,
            '{"off_topic": false, "contains_pii": true, "pii_type": "cpf", '
            '"detected_postal_code": "null", "intent": "schedule_or_update"}',
        )

        analysis = model.analyze_message([], "meu cpf é 123.456.789-09")

        assert analysis == MessageAnalysis(
            off_topic=False, contains_pii=True, pii_type="cpf", detected_postal_code=None, intent=INTENT_SCHEDULE
        )
        assert provider.generate.call_args.kwargs["json_mode"] is True

    def test_json_wrapped_in_prose(self, model, provider):
        _reply(provider, 'Claro: {"off_topic": true, "intent": "other"}')

        analysis = model.analyze_message([], "quem ganhou o jogo?")

        assert analysis.off_topic is True
        assert analysis.intent == INTENT_OTHER

    def test_non_json_is_neutral(self, model, provider):
        _reply(provider, "não sei")

        assert model.analyze_message([], "oi") == MessageAnalysis()

    def test_failure_is_neutral(self, model, provider):
        provider.generate.side_effect = OpenAIError(429, "rate limited")

        assert model.analyze_message([], "oi") == MessageAnalysis()


class TestGetLanguageModel:
    def test_singleton(self, monkeypatch):
        monkeypatch.setattr(ai_service, "_language_model", None)

        first = ai_service.get_language_model()

        assert isinstance(first, OpenAILanguageModel)
        assert ai_service.get_language_model() is first
