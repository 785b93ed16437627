from datetime import timedelta

from conversa.database import utcnow
from conversa.models import Contact, Conversation
from conversa.services.conversation_service import (
    conversation_history,
    mark_read,
    resolve_conversation,
    upsert_contact,
)


class TestUpsertContact:
    def test_creates_then_refreshes_name(self, db_session):
        first = upsert_contact(db_session, "5561999990001", "Maria")
        second = upsert_contact(db_session, "5561999990001", "Maria Souza")

        assert first.id == second.id
        assert db_session.query(Contact).count() == 1
        assert second.name == "Maria Souza"

    def test_missing_name_keeps_the_known_one(self, db_session):
        upsert_contact(db_session, "5561999990001", "Maria")
        contact = upsert_contact(db_session, "5561999990001", None)

        assert contact.name == "Maria"


class TestResolveConversation:
    def test_creates_open_ai_handled_conversation(self, db_session, factory):
        account, contact = factory.account(), factory.contact()

        conversation, is_fresh = resolve_conversation(db_session, account, contact)

        assert is_fresh is True
        assert conversation.status == "open"
        assert conversation.is_ai_handled is True
        assert conversation.chatbot_state is None

    def test_reuses_pending_conversation(self, db_session, factory):
        account, contact = factory.account(), factory.contact()
        existing = factory.conversation(account, contact, status="pending", is_ai_handled=False)

        conversation, is_fresh = resolve_conversation(db_session, account, contact)

        assert conversation.id == existing.id
        assert is_fresh is False
        assert conversation.is_ai_handled is False

    def test_reopens_closed_conversation(self, db_session, factory):
        account, contact = factory.account(), factory.contact()
        existing = factory.conversation(
            account,
            contact,
            status="closed",
            is_ai_handled=False,
            chatbot_state="transferred",
            assigned_user_id="agent-7",
            closed_at=utcnow(),
        )

        conversation, is_fresh = resolve_conversation(db_session, account, contact)

        assert conversation.id == existing.id
        assert is_fresh is True
        assert conversation.status == "open"
        assert conversation.is_ai_handled is True
        assert conversation.chatbot_state is None
        assert conversation.assigned_user_id is None
        assert db_session.query(Conversation).count() == 1

    def test_old_conversation_reused_without_window(self, db_session, factory):
        account, contact = factory.account(), factory.contact()
        existing = factory.conversation(account, contact, last_message_at=utcnow() - timedelta(days=30))

        conversation, _ = resolve_conversation(db_session, account, contact)

        assert conversation.id == existing.id

    def test_conversations_are_per_account(self, db_session, factory):
        contact = factory.contact()
        other = factory.conversation(factory.account(), contact)

        conversation, is_fresh = resolve_conversation(db_session, factory.account(), contact)

        assert conversation.id != other.id
        assert is_fresh is True


class TestHistoryAndReadReceipts:
    def test_history_is_oldest_first_with_roles(self, db_session, factory):
        conversation = factory.conversation()
        factory.message(conversation, "oi")
        factory.message(conversation, "Olá! Como posso ajudar?", direction="outbound")
        current = factory.message(conversation, "quero agendar")

        history = conversation_history(db_session, conversation, exclude_id=current.id)

        assert history == [
            {"role": "user", "content": "oi"},
            {"role": "assistant", "content": "Olá! Como posso ajudar?"},
        ]

    def test_mark_read_resets_unread_and_sends_receipt(self, db_session, factory, transport):
        conversation = factory.conversation(unread_count=3)
        factory.message(conversation, "primeira", external_id="wamid.in.1")
        factory.message(conversation, "segunda", external_id="wamid.in.2")

        result = mark_read(db_session, conversation)

        assert result.ok is True
        assert conversation.unread_count == 0
        assert transport.read_receipts == ["wamid.in.2"]

    def test_mark_read_without_inbound_messages(self, db_session, factory, transport):
        conversation = factory.conversation(unread_count=1)

        result = mark_read(db_session, conversation)

        assert result.value is False
        assert transport.read_receipts == []
