import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from conversa.database import ensure_aware, utcnow
from conversa.models import Job, Message, Survey
from conversa.services import dialogue_service, notification_service
from conversa.services.dialogue_service import (
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_DECLINED,
    GENERIC_MEDIA_REPLIES,
    GREETING,
    LOCATION_NOT_FOUND,
    LOCATION_REQUEST,
    LOCATION_RETRY,
    PRIVACY_REFUSAL,
    REDACTED_CONTENT,
    SURVEY_PENDING,
    TRANSFER_DECLINED,
    TRANSFER_NOTICE,
    TRANSFER_OFFER,
    DeliveryError,
    detect_keyword_intent,
    detect_pii,
    escalate_from_job_failure,
    escalate_to_human,
    handle_message,
    normalize_reply,
    send_location_result,
)
from conversa.services.ingestion_service import JOB_DIALOGUE_HANDLE
from conversa.services.job_service import STATUS_DONE, STATUS_PENDING, claim_due_jobs, enqueue_job, run_job
from conversa.services.llm import MessageAnalysis
from conversa.services.result import Result


@pytest.fixture
def conversation(factory):
    return factory.conversation(chatbot_state="general_conversation")


def _say(db, factory, conversation, text, **kwargs):
    message = factory.message(conversation, text, **kwargs)
    db.commit()
    handle_message(db, message.id)
    db.refresh(conversation)
    db.refresh(message)
    return message


class TestHelpers:
    def test_normalize_reply(self):
        assert normalize_reply("  Sim, por favor!! ") == "sim por favor"
        assert normalize_reply("OK.") == "ok"
        assert normalize_reply(None) == ""

    def test_keyword_intent(self):
        assert detect_keyword_intent("Quero AGENDAR no cras") == "schedule_or_update"
        assert detect_keyword_intent("preciso atualizar meu cadastro") == "schedule_or_update"
        assert detect_keyword_intent("quero falar com um atendente") == "transfer_human"
        assert detect_keyword_intent("o que é o bolsa família?") is None

    def test_pii_detection(self):
        assert detect_pii("meu cpf é 123.456.789-09") == "cpf"
        assert detect_pii("me escreve em maria@example.com") == "email"
        assert detect_pii("liga (61) 99999-1234") == "phone"
        assert detect_pii("meu cep é 70610-410") is None


class TestGreetingAndGeneralQuery:
    def test_new_conversation_is_greeted_then_answered(self, db_session, factory, transport, language_model):
        conversation = factory.conversation()

        message = _say(db_session, factory, conversation, "Oi, como funciona o bolsa família?")

        assert transport.texts == [GREETING, language_model.answer_question.return_value]
        assert conversation.chatbot_state == "general_conversation"
        assert message.processed_at is not None

    def test_schedule_keyword_asks_for_location(self, db_session, factory, conversation, transport, language_model):
        _say(db_session, factory, conversation, "quero agendar um atendimento")

        assert transport.texts == [LOCATION_REQUEST]
        assert conversation.chatbot_state == "awaiting_location"
        language_model.classify_intent.assert_not_called()

    def test_model_intent_transfer_offers_transfer(self, db_session, factory, conversation, transport, language_model):
        language_model.classify_intent.return_value = "transfer_human"

        _say(db_session, factory, conversation, "isso não resolve meu problema")

        assert transport.texts == [TRANSFER_OFFER]
        assert conversation.chatbot_state == "confirming_transfer"

    def test_unanswered_question_offers_transfer(self, db_session, factory, conversation, transport, language_model):
        language_model.answer_question.return_value = None

        _say(db_session, factory, conversation, "qual o valor do auxílio gás?")

        assert transport.texts == [TRANSFER_OFFER]
        assert conversation.chatbot_state == "confirming_transfer"

    def test_answer_keeps_baseline_state(self, db_session, factory, conversation, transport, language_model):
        _say(db_session, factory, conversation, "qual o horário do posto?")

        assert conversation.chatbot_state == "general_conversation"
        history, text = language_model.answer_question.call_args.args
        assert text == "qual o horário do posto?"

    def test_personal_data_is_refused_and_redacted(self, db_session, factory, conversation, transport, language_model):
        message = _say(db_session, factory, conversation, "meu cpf é 123.456.789-09")

        assert transport.texts == [PRIVACY_REFUSAL]
        assert message.content == REDACTED_CONTENT
        assert message.message_metadata["text"] == {"body": REDACTED_CONTENT}
        assert conversation.chatbot_state == "general_conversation"
        language_model.classify_intent.assert_not_called()

    def test_media_without_text_gets_generic_reply(self, db_session, factory, conversation, transport, language_model):
        _say(db_session, factory, conversation, None, type="image")

        assert transport.texts == [GENERIC_MEDIA_REPLIES["image"]]
        language_model.classify_intent.assert_not_called()


class TestAnalyzeStrategy:
    @pytest.fixture(autouse=True)
    def analyze(self, test_settings):
        test_settings.intent_strategy = "analyze"

    def test_detected_postal_code_goes_straight_to_lookup(self, db_session, factory, conversation, transport, language_model):
        language_model.analyze_message.return_value = MessageAnalysis(detected_postal_code="70610-410", intent="other")

        _say(db_session, factory, conversation, "moro no setor sudoeste, cep setenta mil seiscentos e dez")

        assert conversation.chatbot_state == "awaiting_cras_result"
        assert db_session.query(Job).filter(Job.kind == "location.lookup").count() == 1

    def test_model_detected_pii_is_refused(self, db_session, factory, conversation, transport, language_model):
        language_model.analyze_message.return_value = MessageAnalysis(contains_pii=True, pii_type="rg")

        message = _say(db_session, factory, conversation, "meu rg é doze milhões")

        assert transport.texts == [PRIVACY_REFUSAL]
        assert message.content == REDACTED_CONTENT

    def test_off_topic_gets_scope_reply(self, db_session, factory, conversation, transport, language_model):
        language_model.analyze_message.return_value = MessageAnalysis(off_topic=True, intent="other")

        _say(db_session, factory, conversation, "quem ganhou o jogo ontem?")

        assert transport.texts == [dialogue_service.OFF_TOPIC_REPLY]
        assert conversation.chatbot_state == "general_conversation"


class TestLocationFlow:
    def test_postal_code_is_accepted_and_lookup_scheduled(self, db_session, factory, transport, test_settings):
        conversation = factory.conversation(chatbot_state="awaiting_location")
        before = utcnow()

        _say(db_session, factory, conversation, "70610-410")

        assert "o CEP 70610-410" in transport.texts[0]
        assert conversation.chatbot_state == "awaiting_cras_result"
        assert conversation.chatbot_context["location"] == "70610-410"
        job = db_session.query(Job).filter(Job.kind == "location.lookup").one()
        assert job.payload == {"conversation_id": str(conversation.id), "location": "70610-410", "as_audio": False}
        assert ensure_aware(job.run_at) >= before + timedelta(seconds=test_settings.location_lookup_delay_seconds)

    def test_coordinates_are_accepted(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_location")

        _say(db_session, factory, conversation, "-15.8235,-47.9033", type="location")

        assert "sua localização" in transport.texts[0]
        assert conversation.chatbot_state == "awaiting_cras_result"

    def test_invalid_location_asks_again(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_location")

        _say(db_session, factory, conversation, "perto da rodoviária")

        assert transport.texts == [LOCATION_RETRY]
        assert conversation.chatbot_state == "awaiting_location"
        assert db_session.query(Job).count() == 0

    def test_result_proposes_unit_and_slot(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_cras_result", chatbot_context={"location": "70610-410"})
        db_session.commit()

        delivered = send_location_result(db_session, conversation.id, "70610-410")
        db_session.commit()

        assert delivered is True
        assert "CRAS Brasília (Asa Sul)" in transport.texts[0]
        assert conversation.chatbot_state == "awaiting_appointment_confirmation"
        assert conversation.chatbot_context["appointment"]["name"] == "CRAS Brasília (Asa Sul)"

    def test_result_dropped_when_conversation_moved_on(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="general_conversation")
        db_session.commit()

        assert send_location_result(db_session, conversation.id, "70610-410") is False
        assert transport.sent == []

    def test_unknown_region_offers_transfer(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_cras_result")
        db_session.commit()

        send_location_result(db_session, conversation.id, "01310-100")

        assert transport.texts == [LOCATION_NOT_FOUND]
        assert conversation.chatbot_state == "confirming_transfer"

    def test_question_while_waiting_is_answered(self, db_session, factory, transport, language_model):
        conversation = factory.conversation(chatbot_state="awaiting_cras_result")

        _say(db_session, factory, conversation, "preciso levar algum documento?")

        assert transport.texts == [language_model.answer_question.return_value]
        assert conversation.chatbot_state == "awaiting_cras_result"


class TestConfirmations:
    @pytest.mark.parametrize("reply", ["Sim", "sim!", "OK", "confirmo", "pode"])
    def test_appointment_affirmations(self, db_session, factory, transport, reply):
        conversation = factory.conversation(
            chatbot_state="awaiting_appointment_confirmation",
            chatbot_context={"appointment": {"name": "CRAS Brasília (Asa Sul)"}},
        )

        _say(db_session, factory, conversation, reply)

        assert transport.texts == [APPOINTMENT_CONFIRMED]
        assert conversation.chatbot_state == "general_conversation"
        assert conversation.chatbot_context["appointment"]["confirmed"] is True

    def test_appointment_declined(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_appointment_confirmation")

        _say(db_session, factory, conversation, "não, obrigado")

        assert transport.texts == [APPOINTMENT_DECLINED]
        assert conversation.chatbot_state == "general_conversation"

    def test_transfer_accepted_escalates(self, db_session, factory, transport, notifier):
        conversation = factory.conversation(chatbot_state="confirming_transfer")

        _say(db_session, factory, conversation, "Sim, por favor")

        assert transport.texts == [TRANSFER_NOTICE]
        assert conversation.status == "pending"
        assert conversation.is_ai_handled is False
        assert conversation.chatbot_state == "transferred"
        assert conversation.escalated_at is not None
        events = [c.args[0] for c in notifier.call_args_list]
        assert notification_service.CONVERSATION_ESCALATED in events

    def test_transfer_declined(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="confirming_transfer")

        _say(db_session, factory, conversation, "não precisa")

        assert transport.texts == [TRANSFER_DECLINED]
        assert conversation.status == "open"
        assert conversation.chatbot_state == "general_conversation"


class TestSurveyReplies:
    def test_form_reply_is_handled_before_anything_else(self, db_session, factory, transport, language_model):
        conversation = factory.conversation(chatbot_state="awaiting_survey", chatbot_context={"restaurant_name": "Ceilândia"})
        form = {"screen_0_Avaliacao_4": "0_Excelente", "restaurante": "Ceilândia"}
        metadata = {"interactive": {"type": "nfm_reply", "nfm_reply": {"response_json": json.dumps(form)}}}

        _say(db_session, factory, conversation, None, type="interactive", message_metadata=metadata)

        survey = db_session.query(Survey).one()
        assert survey.rating == 5
        assert conversation.chatbot_state == "general_conversation"
        language_model.classify_intent.assert_not_called()

    def test_text_while_survey_pending_asks_for_the_form(self, db_session, factory, transport):
        conversation = factory.conversation(chatbot_state="awaiting_survey")

        _say(db_session, factory, conversation, "foi ótimo")

        assert transport.texts == [SURVEY_PENDING]
        assert conversation.chatbot_state == "awaiting_survey"


class TestTurnGuards:
    def test_human_handled_conversation_is_left_alone(self, db_session, factory, transport):
        conversation = factory.conversation(status="pending", is_ai_handled=False, chatbot_state="transferred")

        message = _say(db_session, factory, conversation, "alô?")

        assert transport.sent == []
        assert message.processed_at is not None

    def test_processed_message_is_not_answered_twice(self, db_session, factory, conversation, transport, language_model):
        message = _say(db_session, factory, conversation, "qual o endereço?")

        handle_message(db_session, message.id)

        assert len(transport.texts) == 1

    def test_audio_gets_audio_reply(self, db_session, factory, conversation, transport, language_model, speech):
        _say(db_session, factory, conversation, "qual o endereço do posto?", type="audio")

        assert [kind for kind, _, _ in transport.sent] == ["audio"]
        outbound = db_session.query(Message).filter(Message.direction == "outbound").one()
        assert outbound.type == "audio"
        assert outbound.content == language_model.answer_question.return_value
        assert outbound.media["url"] == speech.synthesize.return_value

    def test_failed_delivery_raises_for_retry(self, db_session, factory, conversation, transport, language_model):
        transport.fail.add("text")
        message = factory.message(conversation, "qual o endereço?")
        db_session.commit()

        with pytest.raises(DeliveryError):
            handle_message(db_session, message.id)
        db_session.rollback()

        assert db_session.get(Message, message.id).processed_at is None


class TestEscalation:
    def test_escalation_is_idempotent(self, db_session, factory, conversation, transport, notifier):
        assert escalate_to_human(db_session, conversation, reason="user_request") is True
        assert escalate_to_human(db_session, conversation, reason="user_request") is False

        assert transport.texts == [TRANSFER_NOTICE]
        escalations = [c for c in notifier.call_args_list if c.args[0] == notification_service.CONVERSATION_ESCALATED]
        assert len(escalations) == 1

    def test_closed_conversation_is_not_escalated(self, db_session, factory, transport):
        conversation = factory.conversation(status="closed")

        assert escalate_to_human(db_session, conversation, reason="user_request") is False
        assert conversation.status == "closed"

    def test_escalates_even_when_notice_fails(self, db_session, factory, conversation, transport):
        transport.fail.add("text")

        assert escalate_to_human(db_session, conversation, reason="job_failure") is True
        assert conversation.status == "pending"

    def test_permanent_job_failure_escalates_and_alerts(self, db_session, factory, conversation, transport):
        message = factory.message(conversation, "oi")
        db_session.commit()

        with patch("conversa.services.dialogue_service.alert_critical") as mock_alert:
            escalate_from_job_failure(
                db_session, {"message_id": str(message.id)}, "DeliveryError: boom", kind="dialogue.handle"
            )

        assert conversation.status == "pending"
        assert conversation.chatbot_state == "transferred"
        mock_alert.assert_called_once()


class TestInterruptedTurn:
    """A turn that fails halfway keeps the replies the user already received."""

    def _enqueue(self, db_session, factory, conversation, text):
        message = factory.message(conversation, text)
        enqueue_job(db_session, JOB_DIALOGUE_HANDLE, {"message_id": str(message.id)}, max_attempts=3)
        db_session.commit()
        return message

    def _run_next(self, db_session):
        jobs = claim_due_jobs(db_session)
        assert len(jobs) == 1
        return run_job(db_session, jobs[0])

    def _outbound(self, db_session):
        return db_session.query(Message).filter(Message.direction == "outbound").order_by(Message.created_at).all()

    def test_second_send_failing_keeps_the_delivered_greeting(
        self, db_session, factory, transport, language_model, test_settings, monkeypatch
    ):
        test_settings.job_retry_backoff_seconds = 0
        conversation = factory.conversation()
        message = self._enqueue(db_session, factory, conversation, "qual o endereço?")
        send_text = transport.send_text
        calls = []

        def second_text_rejected(to, body):
            calls.append(body)
            if len(calls) == 2:
                return Result.failure("text rejected", "transport_rejected")
            return send_text(to, body)

        monkeypatch.setattr(transport, "send_text", second_text_rejected)

        assert self._run_next(db_session) == STATUS_PENDING

        db_session.refresh(conversation)
        assert [m.content for m in self._outbound(db_session)] == [GREETING]
        assert conversation.chatbot_state == "general_conversation"
        assert db_session.get(Message, message.id).processed_at is None

        assert self._run_next(db_session) == STATUS_DONE

        answer = language_model.answer_question.return_value
        assert transport.texts == [GREETING, answer]
        assert [m.content for m in self._outbound(db_session)] == [GREETING, answer]
        assert db_session.get(Message, message.id).processed_at is not None

    def test_model_error_is_retried_without_greeting_again(
        self, db_session, factory, transport, language_model, test_settings
    ):
        test_settings.job_retry_backoff_seconds = 0
        language_model.classify_intent.side_effect = [RuntimeError("model timeout"), "question"]
        conversation = factory.conversation()
        self._enqueue(db_session, factory, conversation, "como funciona o bolsa família?")

        assert self._run_next(db_session) == STATUS_PENDING
        assert transport.texts == [GREETING]
        assert len(self._outbound(db_session)) == 1

        assert self._run_next(db_session) == STATUS_DONE

        assert transport.texts == [GREETING, language_model.answer_question.return_value]
        assert len(self._outbound(db_session)) == 2
        db_session.refresh(conversation)
        assert conversation.status == "open"
        assert conversation.chatbot_state == "general_conversation"
