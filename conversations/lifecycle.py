"""
Conversation Lifecycle Manager.

Owns the state machine that decides whether a conversation may exchange
messages::

    create (by customer) -> pending
    create (by provider) -> active
    pending  --accept-->   active      (provider only)
    pending  --reject-->   rejected    (provider only)
    active   --complete--> completed   (provider only)
    pending/active --cancel--> cancelled (either participant)

``rejected``, ``completed`` and ``cancelled`` are terminal. Each transition
is a single compare-and-swap on the ``status`` column so concurrent
accept/reject calls have exactly one winner.
"""

import logging
from typing import List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from event_bus.dispatcher import get_dispatcher
from event_bus.models.conversation_event_payload import (
    EVENT_CONVERSATION_ACCEPTED,
    EVENT_CONVERSATION_CANCELLED,
    EVENT_CONVERSATION_COMPLETED,
    EVENT_CONVERSATION_REJECTED,
    ConversationEventPayload,
)

from .exceptions import (
    ActionNotAllowed,
    ConversationAlreadyProcessed,
    ConversationClosed,
    ConversationNotActive,
    ConversationNotFound,
    NotAParticipant,
    SelfConversationNotAllowed,
)
from .message_store import MessageStore
from .models import Conversation, ConversationMessage

logger = logging.getLogger(__name__)

ACCEPTANCE_GREETING = "The provider accepted your request. You can now chat."

TRANSITION_EVENTS = {
    'accept': EVENT_CONVERSATION_ACCEPTED,
    'reject': EVENT_CONVERSATION_REJECTED,
    'complete': EVENT_CONVERSATION_COMPLETED,
    'cancel': EVENT_CONVERSATION_CANCELLED,
}

PROVIDER_ONLY_EVENTS = frozenset({'accept', 'reject', 'complete'})


class ConversationLifecycle:
    """
    Service layer for conversation creation, status transitions and the
    send guard.
    """

    def __init__(self, dispatcher=None):
        self._dispatcher = dispatcher

    @property
    def dispatcher(self):
        return self._dispatcher or get_dispatcher()

    # Queries

    def get(self, conversation_id: str) -> Conversation:
        try:
            return Conversation.objects.get(conversation_id=conversation_id)
        except Conversation.DoesNotExist:
            raise ConversationNotFound()

    def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        if not conversation.is_participant(user_id):
            raise NotAParticipant()
        return conversation

    def list_for_user(self, user_id: str) -> List[Conversation]:
        user_id = str(user_id)
        return list(
            Conversation.objects.filter(
                Q(customer_id=user_id) | Q(provider_id=user_id)
            ).order_by('-updated_at', '-id')
        )

    # Creation

    def create(
        self,
        actor_id: str,
        customer_id: str,
        provider_id: str,
        booking_id: Optional[str] = None,
        title: str = '',
    ) -> Tuple[Conversation, bool]:
        """
        Create the conversation for a (customer, provider, booking) triple or
        return the one that already exists.

        Returns:
            ``(conversation, created)``
        """
        actor_id, customer_id, provider_id = str(actor_id), str(customer_id), str(provider_id)
        booking_id = str(booking_id) if booking_id not in (None, '') else None

        if customer_id == provider_id:
            raise SelfConversationNotAllowed()
        if actor_id not in (customer_id, provider_id):
            raise NotAParticipant("Only the customer or the provider can open this conversation")

        lookup = {'customer_id': customer_id, 'provider_id': provider_id, 'booking_id': booking_id}

        existing = Conversation.objects.filter(**lookup).first()
        if existing:
            return existing, False

        initial_status = (
            Conversation.STATUS_ACTIVE if actor_id == provider_id else Conversation.STATUS_PENDING
        )

        try:
            with transaction.atomic():
                conversation = Conversation.objects.create(
                    status=initial_status, title=title or '', **lookup
                )
        except IntegrityError:
            # Lost a creation race for the same triple; the winner's row is the answer
            logger.info(f"Conversation for {lookup} created concurrently, returning existing row")
            return Conversation.objects.get(**lookup), False

        logger.info(
            f"Conversation {conversation.conversation_id} created by {actor_id} "
            f"with status {conversation.status}"
        )
        return conversation, True

    # Transitions

    def accept(self, conversation_id: str, actor_id: str) -> Conversation:
        return self._transition(conversation_id, actor_id, 'accept')

    def reject(self, conversation_id: str, actor_id: str, reason: str = '') -> Conversation:
        return self._transition(conversation_id, actor_id, 'reject', reason=reason)

    def complete(self, conversation_id: str, actor_id: str) -> Conversation:
        return self._transition(conversation_id, actor_id, 'complete')

    def cancel(self, conversation_id: str, actor_id: str, reason: str = '') -> Conversation:
        return self._transition(conversation_id, actor_id, 'cancel', reason=reason)

    def _load(self, conversation_id: str) -> Conversation:
        return self.get(conversation_id)

    def _transition(self, conversation_id: str, actor_id: str, event: str, reason: str = '') -> Conversation:
        actor_id = str(actor_id)
        sources, target = Conversation.TRANSITIONS[event]

        conversation = self._load(conversation_id)
        if not conversation.is_participant(actor_id):
            raise NotAParticipant()
        if event in PROVIDER_ONLY_EVENTS and actor_id != conversation.provider_id:
            raise ActionNotAllowed(f"Only the provider can {event} this conversation")

        observed = conversation.status
        if observed not in sources:
            raise ConversationAlreadyProcessed(
                f"Cannot {event} a conversation that is {observed}"
            )

        updates = {'status': target, 'updated_at': timezone.now()}
        if event == 'reject':
            updates['rejection_reason'] = reason or ''
        elif event == 'cancel':
            updates['cancellation_reason'] = reason or ''

        with transaction.atomic():
            swapped = Conversation.objects.filter(
                pk=conversation.pk, status=observed
            ).update(**updates)
            if not swapped:
                logger.warning(
                    f"{event} on {conversation_id} by {actor_id} lost a race "
                    f"(status was {observed})"
                )
                raise ConversationAlreadyProcessed()

            conversation.refresh_from_db()

            if event == 'accept':
                MessageStore.append(
                    conversation.conversation_id,
                    conversation.provider_id,
                    ACCEPTANCE_GREETING,
                    message_type=ConversationMessage.TYPE_SYSTEM,
                )
                conversation.refresh_from_db(fields=['updated_at'])

            self.dispatcher.dispatch_on_commit(
                ConversationEventPayload.for_transition(
                    TRANSITION_EVENTS[event], conversation, actor_id, reason
                )
            )

        logger.info(f"Conversation {conversation_id}: {observed} -> {target} by {actor_id}")
        return conversation

    # Messaging

    def ensure_sendable(self, conversation: Conversation, sender_id: str, message_type: str) -> None:
        """
        Raise unless ``sender_id`` may post ``message_type`` right now.

        System messages are authored by this manager and skip the status gate.
        """
        if not conversation.is_participant(sender_id):
            raise NotAParticipant()
        if message_type == ConversationMessage.TYPE_SYSTEM:
            return
        if conversation.is_terminal:
            raise ConversationClosed(f"Conversation is {conversation.status}")
        if conversation.status != Conversation.STATUS_ACTIVE:
            raise ConversationNotActive()

    def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = ConversationMessage.TYPE_TEXT,
        correlation_token: Optional[str] = None,
    ) -> Tuple[Conversation, ConversationMessage, bool]:
        """
        Guard and append a participant message.

        Returns:
            ``(conversation, message, created)``; ``created`` is False when a
            retried correlation token matched an already stored message.
        """
        sender_id = str(sender_id)

        with transaction.atomic():
            # Status cannot change between the guard and the append
            try:
                conversation = Conversation.objects.select_for_update().get(
                    conversation_id=conversation_id
                )
            except Conversation.DoesNotExist:
                raise ConversationNotFound()
            if not conversation.is_participant(sender_id):
                raise NotAParticipant()

            # A retry of an already stored send succeeds even if the conversation closed since
            if correlation_token:
                existing = ConversationMessage.objects.filter(
                    conversation=conversation,
                    sender_id=sender_id,
                    correlation_token=correlation_token,
                ).first()
                if existing:
                    return conversation, existing, False

            self.ensure_sendable(conversation, sender_id, message_type)

            message, created = MessageStore.append_once(
                conversation_id, sender_id, content, message_type, correlation_token
            )
            if created:
                self.dispatcher.dispatch_on_commit(
                    ConversationEventPayload.for_new_message(conversation, message)
                )

        return conversation, message, created

    # Deletion

    def delete(self, conversation_id: str, actor_id: str) -> None:
        """Irreversibly delete a conversation and all of its messages."""
        conversation = self.get_for_participant(conversation_id, actor_id)
        conversation.delete()
        logger.info(f"Conversation {conversation_id} deleted by {actor_id}")
