from django.db import IntegrityError, transaction
from django.test import TestCase
from conversations.models import Conversation, ConversationMessage


class ConversationModelTest(TestCase):
    def setUp(self):
        self.conversation = Conversation.objects.create(
            customer_id="7",
            provider_id="9",
            booking_id="42",
        )

    def test_conversation_creation(self):
        """Test that a conversation gets an opaque id and starts pending"""
        self.assertTrue(self.conversation.conversation_id.startswith("conv_"))
        self.assertEqual(self.conversation.status, Conversation.STATUS_PENDING)
        self.assertEqual(self.conversation.participants, ["7", "9"])
        self.assertIsNotNone(self.conversation.created_at)
        self.assertIsNotNone(self.conversation.updated_at)

    def test_conversation_str_representation(self):
        self.assertEqual(str(self.conversation), f"Conversation {self.conversation.conversation_id}")

    def test_participant_helpers(self):
        self.assertTrue(self.conversation.is_participant("7"))
        self.assertTrue(self.conversation.is_participant(9))
        self.assertFalse(self.conversation.is_participant("8"))
        self.assertEqual(self.conversation.other_participant("7"), "9")
        self.assertEqual(self.conversation.other_participant("9"), "7")

    def test_terminal_statuses(self):
        for status in (Conversation.STATUS_REJECTED, Conversation.STATUS_COMPLETED, Conversation.STATUS_CANCELLED):
            self.conversation.status = status
            self.assertTrue(self.conversation.is_terminal)
        self.conversation.status = Conversation.STATUS_ACTIVE
        self.assertFalse(self.conversation.is_terminal)

    def test_duplicate_triple_is_rejected_by_the_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Conversation.objects.create(customer_id="7", provider_id="9", booking_id="42")

    def test_duplicate_pair_without_booking_is_rejected(self):
        Conversation.objects.create(customer_id="7", provider_id="9")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Conversation.objects.create(customer_id="7", provider_id="9", booking_id=None)

    def test_same_pair_with_another_booking_is_allowed(self):
        other = Conversation.objects.create(customer_id="7", provider_id="9", booking_id="43")
        self.assertNotEqual(other.conversation_id, self.conversation.conversation_id)

    def test_delete_cascades_to_messages(self):
        ConversationMessage.objects.create(conversation=self.conversation, sender_id="7", content="hi")
        self.conversation.delete()
        self.assertEqual(ConversationMessage.objects.count(), 0)


class ConversationMessageModelTest(TestCase):
    def setUp(self):
        self.conversation = Conversation.objects.create(customer_id="user1", provider_id="user2")
        self.message = ConversationMessage.objects.create(
            conversation=self.conversation,
            sender_id="user1",
            content="Test message content"
        )

    def test_message_creation(self):
        self.assertEqual(self.message.sender_id, "user1")
        self.assertEqual(self.message.content, "Test message content")
        self.assertEqual(self.message.message_type, ConversationMessage.TYPE_TEXT)
        self.assertFalse(self.message.is_read)
        self.assertIsNone(self.message.correlation_token)

    def test_message_str_representation(self):
        self.assertEqual(str(self.message), "user1: Test message content...")

    def test_message_ordering(self):
        """Messages are ordered by creation time then id"""
        message2 = ConversationMessage.objects.create(
            conversation=self.conversation,
            sender_id="user2",
            content="Second message"
        )

        messages = list(self.conversation.messages.all())
        self.assertEqual(messages, [self.message, message2])

    def test_correlation_token_unique_per_sender(self):
        ConversationMessage.objects.create(
            conversation=self.conversation, sender_id="user1", content="a", correlation_token="tok-1"
        )
        # Same token from the other participant is a different message
        ConversationMessage.objects.create(
            conversation=self.conversation, sender_id="user2", content="b", correlation_token="tok-1"
        )
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ConversationMessage.objects.create(
                    conversation=self.conversation, sender_id="user1", content="c", correlation_token="tok-1"
                )
