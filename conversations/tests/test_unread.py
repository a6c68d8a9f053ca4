from datetime import timedelta

from django.test import TestCase

from conversations.message_store import MessageStore
from conversations.models import Conversation, ConversationMessage
from conversations.unread import UnreadAggregator


class UnreadAggregatorTest(TestCase):
    def setUp(self):
        self.conversation = Conversation.objects.create(
            customer_id="7", provider_id="9", status=Conversation.STATUS_ACTIVE
        )
        self.conversation_id = self.conversation.conversation_id

    def test_customer_message_is_unread_for_provider(self):
        MessageStore.append(self.conversation_id, "7", "Hola, necesito ayuda")

        summary = UnreadAggregator.unread_summary("9")

        self.assertEqual(len(summary), 1)
        self.assertEqual(summary[0].conversation_id, self.conversation_id)
        self.assertEqual(summary[0].unread_count, 1)
        self.assertIsNotNone(summary[0].last_message_at)

    def test_own_messages_never_count(self):
        MessageStore.append(self.conversation_id, "7", "Hola, necesito ayuda")

        self.assertEqual(UnreadAggregator.unread_summary("7")[0].unread_count, 0)
        self.assertEqual(UnreadAggregator.total_unread("7"), 0)

    def test_mark_read_clears_only_the_readers_side(self):
        MessageStore.append(self.conversation_id, "7", "Hola, necesito ayuda")
        MessageStore.append(self.conversation_id, "9", "Claro, dime")

        MessageStore.mark_read_by_recipient(self.conversation_id, "9")

        self.assertEqual(UnreadAggregator.conversation_unread(self.conversation_id, "9"), 0)
        self.assertEqual(UnreadAggregator.conversation_unread(self.conversation_id, "7"), 1)

    def test_conversations_without_messages_sort_last(self):
        empty = Conversation.objects.create(customer_id="7", provider_id="10")
        older = Conversation.objects.create(customer_id="7", provider_id="11")
        MessageStore.append(older.conversation_id, "11", "first")
        newer_message = MessageStore.append(self.conversation_id, "9", "second")
        ConversationMessage.objects.filter(id=newer_message.id).update(
            created_at=newer_message.created_at + timedelta(minutes=5)
        )

        summary = UnreadAggregator.unread_summary("7")

        self.assertEqual(
            [entry.conversation_id for entry in summary],
            [self.conversation_id, older.conversation_id, empty.conversation_id],
        )
        self.assertIsNone(summary[-1].last_message_at)
        self.assertEqual(summary[-1].unread_count, 0)

    def test_total_unread_spans_conversations(self):
        other = Conversation.objects.create(customer_id="3", provider_id="9")
        MessageStore.append(self.conversation_id, "7", "one")
        MessageStore.append(self.conversation_id, "7", "two")
        MessageStore.append(other.conversation_id, "3", "three")
        MessageStore.append(other.conversation_id, "9", "mine")

        self.assertEqual(UnreadAggregator.total_unread("9"), 3)
        self.assertEqual(
            sum(entry.unread_count for entry in UnreadAggregator.unread_summary("9")),
            UnreadAggregator.total_unread("9"),
        )

    def test_unrelated_user_sees_nothing(self):
        MessageStore.append(self.conversation_id, "7", "private")
        self.assertEqual(UnreadAggregator.unread_summary("8"), [])
        self.assertEqual(UnreadAggregator.total_unread("8"), 0)
