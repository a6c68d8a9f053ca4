from unittest.mock import patch

from django.test import TestCase

from conversations.exceptions import (
    ActionNotAllowed,
    ConversationAlreadyProcessed,
    ConversationClosed,
    ConversationNotActive,
    ConversationNotFound,
    NotAParticipant,
    SelfConversationNotAllowed,
)
from conversations.lifecycle import ACCEPTANCE_GREETING, ConversationLifecycle
from conversations.models import Conversation, ConversationMessage
from conversations.unread import UnreadAggregator
from event_bus import backends
from event_bus.backends import LocmemBackend
from event_bus.dispatcher import NotificationDispatcher


CUSTOMER = "7"
PROVIDER = "9"
STRANGER = "8"


class LifecycleTestCase(TestCase):
    def setUp(self):
        backends.outbox.clear()
        self.dispatcher = NotificationDispatcher(backend=LocmemBackend(), run_async=False)
        self.lifecycle = ConversationLifecycle(dispatcher=self.dispatcher)

    def tearDown(self):
        backends.outbox.clear()

    def open_conversation(self, actor=CUSTOMER, booking_id=None):
        conversation, _ = self.lifecycle.create(actor, CUSTOMER, PROVIDER, booking_id)
        return conversation

    def accepted_conversation(self, booking_id=None):
        conversation = self.open_conversation(booking_id=booking_id)
        return self.lifecycle.accept(conversation.conversation_id, PROVIDER)


class ConversationCreateTest(LifecycleTestCase):
    def test_customer_opens_pending_conversation(self):
        conversation, created = self.lifecycle.create(CUSTOMER, CUSTOMER, PROVIDER)

        self.assertTrue(created)
        self.assertEqual(conversation.status, Conversation.STATUS_PENDING)
        self.assertEqual(conversation.customer_id, CUSTOMER)
        self.assertEqual(conversation.provider_id, PROVIDER)
        self.assertIsNone(conversation.booking_id)

    def test_provider_opens_active_conversation(self):
        conversation, created = self.lifecycle.create(PROVIDER, CUSTOMER, PROVIDER, booking_id=42)

        self.assertTrue(created)
        self.assertEqual(conversation.status, Conversation.STATUS_ACTIVE)
        self.assertEqual(conversation.booking_id, "42")

    def test_duplicate_create_returns_existing_conversation(self):
        first, _ = self.lifecycle.create(CUSTOMER, CUSTOMER, PROVIDER, booking_id="42")
        second, created = self.lifecycle.create(PROVIDER, CUSTOMER, PROVIDER, booking_id="42")

        self.assertFalse(created)
        self.assertEqual(first.conversation_id, second.conversation_id)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_concurrent_create_resolves_to_same_conversation(self):
        """The loser of a creation race gets the winner's conversation"""
        winner, _ = self.lifecycle.create(CUSTOMER, CUSTOMER, PROVIDER, booking_id="42")

        with patch.object(Conversation.objects, 'filter') as mocked_filter:
            # Both callers miss the pre-insert lookup
            mocked_filter.return_value.first.return_value = None
            loser, created = self.lifecycle.create(CUSTOMER, CUSTOMER, PROVIDER, booking_id="42")

        self.assertFalse(created)
        self.assertEqual(loser.conversation_id, winner.conversation_id)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_booking_distinguishes_conversations(self):
        without_booking = self.open_conversation()
        with_booking = self.open_conversation(booking_id="42")
        self.assertNotEqual(without_booking.conversation_id, with_booking.conversation_id)

    def test_create_with_yourself_is_rejected(self):
        with self.assertRaises(SelfConversationNotAllowed):
            self.lifecycle.create(CUSTOMER, CUSTOMER, CUSTOMER)
        self.assertEqual(Conversation.objects.count(), 0)

    def test_third_party_cannot_open_conversation(self):
        with self.assertRaises(NotAParticipant):
            self.lifecycle.create(STRANGER, CUSTOMER, PROVIDER)

    def test_existing_closed_conversation_is_returned_as_is(self):
        conversation = self.open_conversation()
        self.lifecycle.reject(conversation.conversation_id, PROVIDER)

        again, created = self.lifecycle.create(CUSTOMER, CUSTOMER, PROVIDER)
        self.assertFalse(created)
        self.assertEqual(again.status, Conversation.STATUS_REJECTED)


class ConversationTransitionTest(LifecycleTestCase):
    def test_accept_activates_and_greets(self):
        conversation = self.open_conversation()

        with self.captureOnCommitCallbacks(execute=True):
            accepted = self.lifecycle.accept(conversation.conversation_id, PROVIDER)

        self.assertEqual(accepted.status, Conversation.STATUS_ACTIVE)
        greeting = ConversationMessage.objects.get(conversation=accepted)
        self.assertEqual(greeting.message_type, ConversationMessage.TYPE_SYSTEM)
        self.assertEqual(greeting.content, ACCEPTANCE_GREETING)
        self.assertEqual(greeting.sender_id, PROVIDER)

        self.assertEqual(len(backends.outbox), 1)
        event = backends.outbox[0]
        self.assertEqual(event.event_type, "conversation_accepted")
        self.assertEqual(event.actor_id, PROVIDER)
        self.assertEqual(event.recipient_id, CUSTOMER)

    def test_greeting_counts_as_unread_for_customer_only(self):
        conversation = self.open_conversation()
        self.lifecycle.accept(conversation.conversation_id, PROVIDER)

        self.assertEqual(UnreadAggregator.conversation_unread(conversation.conversation_id, CUSTOMER), 1)
        self.assertEqual(UnreadAggregator.conversation_unread(conversation.conversation_id, PROVIDER), 0)

    def test_only_provider_may_accept(self):
        conversation = self.open_conversation()
        with self.assertRaises(ActionNotAllowed):
            self.lifecycle.accept(conversation.conversation_id, CUSTOMER)
        with self.assertRaises(NotAParticipant):
            self.lifecycle.accept(conversation.conversation_id, STRANGER)

        conversation.refresh_from_db()
        self.assertEqual(conversation.status, Conversation.STATUS_PENDING)

    def test_reject_records_reason(self):
        conversation = self.open_conversation()

        with self.captureOnCommitCallbacks(execute=True):
            rejected = self.lifecycle.reject(conversation.conversation_id, PROVIDER, reason="Fully booked")

        self.assertEqual(rejected.status, Conversation.STATUS_REJECTED)
        self.assertEqual(rejected.rejection_reason, "Fully booked")
        self.assertEqual(backends.outbox[0].event_type, "conversation_rejected")
        self.assertIn("Fully booked", backends.outbox[0].summary_text)

    def test_accept_after_reject_is_already_processed(self):
        conversation = self.open_conversation()
        self.lifecycle.reject(conversation.conversation_id, PROVIDER)

        with self.assertRaises(ConversationAlreadyProcessed):
            self.lifecycle.accept(conversation.conversation_id, PROVIDER)

    def test_complete_requires_active(self):
        conversation = self.open_conversation()
        with self.assertRaises(ConversationAlreadyProcessed):
            self.lifecycle.complete(conversation.conversation_id, PROVIDER)

        self.lifecycle.accept(conversation.conversation_id, PROVIDER)
        completed = self.lifecycle.complete(conversation.conversation_id, PROVIDER)
        self.assertEqual(completed.status, Conversation.STATUS_COMPLETED)

    def test_only_provider_may_complete(self):
        conversation = self.accepted_conversation()
        with self.assertRaises(ActionNotAllowed):
            self.lifecycle.complete(conversation.conversation_id, CUSTOMER)

    def test_either_participant_may_cancel(self):
        pending = self.open_conversation()
        active = self.accepted_conversation(booking_id="42")

        cancelled = self.lifecycle.cancel(pending.conversation_id, CUSTOMER, reason="Changed my mind")
        self.assertEqual(cancelled.status, Conversation.STATUS_CANCELLED)
        self.assertEqual(cancelled.cancellation_reason, "Changed my mind")

        cancelled = self.lifecycle.cancel(active.conversation_id, PROVIDER)
        self.assertEqual(cancelled.status, Conversation.STATUS_CANCELLED)

    def test_terminal_states_accept_no_transition(self):
        conversation = self.accepted_conversation()
        self.lifecycle.complete(conversation.conversation_id, PROVIDER)

        for call in (
            lambda: self.lifecycle.accept(conversation.conversation_id, PROVIDER),
            lambda: self.lifecycle.reject(conversation.conversation_id, PROVIDER),
            lambda: self.lifecycle.complete(conversation.conversation_id, PROVIDER),
            lambda: self.lifecycle.cancel(conversation.conversation_id, CUSTOMER),
        ):
            with self.assertRaises(ConversationAlreadyProcessed):
                call()

    def test_stale_accept_loses_to_concurrent_reject(self):
        """Accept and reject on the same pending conversation have exactly one winner"""
        conversation = self.open_conversation()
        competitor = ConversationLifecycle(dispatcher=self.dispatcher)
        load = self.lifecycle._load

        def load_then_lose_race(conversation_id):
            loaded = load(conversation_id)
            competitor.reject(conversation_id, PROVIDER)
            return loaded

        with patch.object(self.lifecycle, '_load', side_effect=load_then_lose_race):
            with self.assertRaises(ConversationAlreadyProcessed):
                self.lifecycle.accept(conversation.conversation_id, PROVIDER)

        conversation.refresh_from_db()
        self.assertEqual(conversation.status, Conversation.STATUS_REJECTED)
        self.assertFalse(ConversationMessage.objects.filter(conversation=conversation).exists())

    def test_unknown_conversation(self):
        with self.assertRaises(ConversationNotFound):
            self.lifecycle.accept("conv_missing", PROVIDER)


class SendMessageTest(LifecycleTestCase):
    def test_provider_cannot_send_before_accepting(self):
        conversation = self.open_conversation()

        with self.assertRaises(ConversationNotActive):
            self.lifecycle.send_message(conversation.conversation_id, PROVIDER, "Hi there")
        with self.assertRaises(ConversationNotActive):
            self.lifecycle.send_message(conversation.conversation_id, CUSTOMER, "Hello?")
        self.assertEqual(ConversationMessage.objects.count(), 0)

    def test_send_on_active_conversation(self):
        conversation = self.accepted_conversation()
        backends.outbox.clear()

        with self.captureOnCommitCallbacks(execute=True):
            _, message, created = self.lifecycle.send_message(
                conversation.conversation_id, CUSTOMER, "Hola, necesito ayuda"
            )

        self.assertTrue(created)
        self.assertFalse(message.is_read)
        self.assertEqual(len(backends.outbox), 1)
        event = backends.outbox[0]
        self.assertEqual(event.event_type, "new_message")
        self.assertEqual(event.recipient_id, PROVIDER)
        self.assertEqual(event.summary_text, "You have a new message: Hola, necesito ayuda")

    def test_retried_send_notifies_once(self):
        conversation = self.accepted_conversation()
        backends.outbox.clear()

        with self.captureOnCommitCallbacks(execute=True):
            _, first, _ = self.lifecycle.send_message(
                conversation.conversation_id, CUSTOMER, "hello", correlation_token="tok-1"
            )
            _, second, created = self.lifecycle.send_message(
                conversation.conversation_id, CUSTOMER, "hello", correlation_token="tok-1"
            )

        self.assertFalse(created)
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(backends.outbox), 1)

    def test_completed_conversation_is_closed_to_both_parties(self):
        conversation = self.accepted_conversation()
        self.lifecycle.complete(conversation.conversation_id, PROVIDER)

        for sender in (CUSTOMER, PROVIDER):
            with self.assertRaises(ConversationClosed):
                self.lifecycle.send_message(conversation.conversation_id, sender, "one more thing")

    def test_retry_after_complete_returns_stored_message(self):
        conversation = self.accepted_conversation()
        _, first, _ = self.lifecycle.send_message(
            conversation.conversation_id, CUSTOMER, "see you at 5", correlation_token="tok"
        )
        self.lifecycle.complete(conversation.conversation_id, PROVIDER)

        _, again, created = self.lifecycle.send_message(
            conversation.conversation_id, CUSTOMER, "see you at 5", correlation_token="tok"
        )

        self.assertFalse(created)
        self.assertEqual(again.id, first.id)
        self.assertEqual(ConversationMessage.objects.filter(correlation_token="tok").count(), 1)

        # A new token is still refused
        with self.assertRaises(ConversationClosed):
            self.lifecycle.send_message(
                conversation.conversation_id, CUSTOMER, "one more", correlation_token="tok-2"
            )

    def test_retry_by_stranger_is_still_refused(self):
        conversation = self.accepted_conversation()
        self.lifecycle.send_message(conversation.conversation_id, CUSTOMER, "hi", correlation_token="tok")

        with self.assertRaises(NotAParticipant):
            self.lifecycle.send_message(conversation.conversation_id, STRANGER, "hi", correlation_token="tok")

    def test_rejected_conversation_is_closed(self):
        conversation = self.open_conversation()
        self.lifecycle.reject(conversation.conversation_id, PROVIDER)

        with self.assertRaises(ConversationClosed):
            self.lifecycle.send_message(conversation.conversation_id, CUSTOMER, "why?")

    def test_stranger_cannot_send(self):
        conversation = self.accepted_conversation()
        with self.assertRaises(NotAParticipant):
            self.lifecycle.send_message(conversation.conversation_id, STRANGER, "hi")

    def test_system_messages_skip_status_gate(self):
        conversation = self.open_conversation()
        self.lifecycle.ensure_sendable(conversation, PROVIDER, ConversationMessage.TYPE_SYSTEM)

    def test_failed_notification_does_not_fail_send(self):
        conversation = self.accepted_conversation()
        with patch.object(LocmemBackend, 'send', side_effect=RuntimeError("broker down")):
            with self.assertLogs('event_bus.dispatcher', level='ERROR'):
                with self.captureOnCommitCallbacks(execute=True):
                    _, message, created = self.lifecycle.send_message(
                        conversation.conversation_id, CUSTOMER, "still delivered"
                    )

        self.assertTrue(created)
        self.assertTrue(ConversationMessage.objects.filter(id=message.id).exists())


class ConversationQueryTest(LifecycleTestCase):
    def test_get_for_participant(self):
        conversation = self.open_conversation()
        self.assertEqual(
            self.lifecycle.get_for_participant(conversation.conversation_id, CUSTOMER).pk,
            conversation.pk,
        )
        with self.assertRaises(NotAParticipant):
            self.lifecycle.get_for_participant(conversation.conversation_id, STRANGER)

    def test_list_for_user(self):
        mine = self.open_conversation()
        Conversation.objects.create(customer_id="1", provider_id="2")

        self.assertEqual([c.pk for c in self.lifecycle.list_for_user(CUSTOMER)], [mine.pk])
        self.assertEqual([c.pk for c in self.lifecycle.list_for_user(PROVIDER)], [mine.pk])
        self.assertEqual(self.lifecycle.list_for_user(STRANGER), [])

    def test_delete_removes_messages(self):
        conversation = self.accepted_conversation()
        self.lifecycle.send_message(conversation.conversation_id, CUSTOMER, "bye")

        self.lifecycle.delete(conversation.conversation_id, CUSTOMER)

        self.assertFalse(Conversation.objects.exists())
        self.assertFalse(ConversationMessage.objects.exists())

    def test_stranger_cannot_delete(self):
        conversation = self.open_conversation()
        with self.assertRaises(NotAParticipant):
            self.lifecycle.delete(conversation.conversation_id, STRANGER)
        self.assertTrue(Conversation.objects.exists())
