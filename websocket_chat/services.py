"""
Real-time transport service.

Turns typed client commands into calls on the lifecycle manager and the
message store, then fans the resulting events out through the connection
registry. Nothing here depends on a live socket, so the whole flow is
testable with a fake registry.
"""

import logging
import time
from typing import Optional

from channels.db import database_sync_to_async

from conversations.exceptions import ConversationError
from conversations.lifecycle import ConversationLifecycle
from conversations.message_store import MessageStore
from conversations.models import ConversationMessage
from conversations.serializers import ConversationMessageSerializer
from conversations.unread import UnreadAggregator

from .protocol import (
    AcceptConversation,
    CancelConversation,
    CommandFailed,
    CompleteConversation,
    ConversationJoined,
    ConversationLeft,
    ConversationStatusChanged,
    Heartbeat,
    HeartbeatResponse,
    JoinConversation,
    LeaveConversation,
    MarkRead,
    MessageDelivered,
    MessageStatusChanged,
    RejectConversation,
    SendMessage,
    SendRejected,
    Typing,
    TypingStart,
    TypingStop,
    UnreadSummaryChanged,
)

logger = logging.getLogger(__name__)


def serialize_message(message: ConversationMessage) -> dict:
    return dict(ConversationMessageSerializer(message).data)


def latest_system_message(conversation) -> Optional[ConversationMessage]:
    return ConversationMessage.objects.filter(
        conversation=conversation,
        message_type=ConversationMessage.TYPE_SYSTEM,
    ).select_related('conversation').order_by('-created_at', '-id').first()


def unread_counts(conversation_id: str, user_id: str):
    return (
        UnreadAggregator.conversation_unread(conversation_id, user_id),
        UnreadAggregator.total_unread(user_id),
    )


class ChatTransport:
    """
    Service layer between websocket connections and the messaging core.

    Every ``handle_*`` coroutine returns the event to send back to the
    originating connection only, or None when everything it produced was
    broadcast.
    """

    def __init__(self, registry, lifecycle=None):
        self.registry = registry
        self.lifecycle = lifecycle or ConversationLifecycle()
        self._handlers = {
            SendMessage: self.handle_send_message,
            MarkRead: self.handle_mark_read,
            AcceptConversation: self.handle_transition,
            RejectConversation: self.handle_transition,
            CompleteConversation: self.handle_transition,
            CancelConversation: self.handle_transition,
            JoinConversation: self.handle_join,
            LeaveConversation: self.handle_leave,
            TypingStart: self.handle_typing,
            TypingStop: self.handle_typing,
            Heartbeat: self.handle_heartbeat,
        }

    async def handle(self, user_id: str, command):
        handler = self._handlers[type(command)]
        return await handler(str(user_id), command)

    # Messaging

    async def handle_send_message(self, user_id: str, command: SendMessage):
        try:
            conversation, message, created = await database_sync_to_async(self.lifecycle.send_message)(
                command.conversation_id,
                user_id,
                command.content,
                command.message_type,
                command.correlation_token,
            )
        except ConversationError as exc:
            logger.warning(
                f"Send by {user_id} to {command.conversation_id} rejected: {exc.error_kind}"
            )
            return SendRejected(
                correlation_token=command.correlation_token,
                error_kind=exc.error_kind,
                conversation_id=command.conversation_id,
                detail=exc.detail,
            )

        await self.publish_message(conversation, message, command.correlation_token, notify_unread=created)
        return None

    async def publish_message(self, conversation, message, correlation_token=None, notify_unread=True):
        """Deliver the canonical ``message`` to every connection of both participants."""
        payload = await database_sync_to_async(serialize_message)(message)
        await self.registry.broadcast(
            conversation.participants,
            MessageDelivered(
                conversation_id=conversation.conversation_id,
                message=payload,
                correlation_token=correlation_token,
            ),
        )

        recipient_id = conversation.other_participant(message.sender_id)
        if notify_unread:
            await self.publish_unread(conversation.conversation_id, recipient_id)

        if await self.registry.is_online(recipient_id):
            await self.registry.broadcast(
                [message.sender_id],
                MessageStatusChanged(
                    conversation_id=conversation.conversation_id,
                    status='delivered',
                    message_ids=[message.id],
                ),
            )

    async def publish_unread(self, conversation_id: str, user_id: str):
        unread, total = await database_sync_to_async(unread_counts)(conversation_id, user_id)
        await self.registry.broadcast(
            [user_id],
            UnreadSummaryChanged(
                conversation_id=conversation_id,
                unread_count=unread,
                total_unread=total,
            ),
        )

    async def handle_mark_read(self, user_id: str, command: MarkRead):
        try:
            conversation = await database_sync_to_async(self.lifecycle.get_for_participant)(
                command.conversation_id, user_id
            )
            updated = await database_sync_to_async(MessageStore.mark_read_by_recipient)(
                command.conversation_id, user_id
            )
        except ConversationError as exc:
            return self._command_failed(command, exc)

        await self.publish_read(conversation, user_id, updated)
        return None

    async def publish_read(self, conversation, reader_id: str, updated: int):
        await self.publish_unread(conversation.conversation_id, reader_id)
        if updated:
            await self.registry.broadcast(
                [conversation.other_participant(reader_id)],
                MessageStatusChanged(
                    conversation_id=conversation.conversation_id,
                    status='read',
                    reader_id=reader_id,
                ),
            )

    # Lifecycle

    async def handle_transition(self, user_id: str, command):
        try:
            if isinstance(command, AcceptConversation):
                conversation = await database_sync_to_async(self.lifecycle.accept)(
                    command.conversation_id, user_id
                )
            elif isinstance(command, RejectConversation):
                conversation = await database_sync_to_async(self.lifecycle.reject)(
                    command.conversation_id, user_id, command.reason
                )
            elif isinstance(command, CompleteConversation):
                conversation = await database_sync_to_async(self.lifecycle.complete)(
                    command.conversation_id, user_id
                )
            else:
                conversation = await database_sync_to_async(self.lifecycle.cancel)(
                    command.conversation_id, user_id, command.reason
                )
        except ConversationError as exc:
            return self._command_failed(command, exc)

        await self.publish_status(conversation, user_id)
        return None

    async def publish_status(self, conversation, actor_id: Optional[str] = None):
        await self.registry.broadcast(
            conversation.participants,
            ConversationStatusChanged(
                conversation_id=conversation.conversation_id,
                status=conversation.status,
                actor_id=actor_id,
            ),
        )
        if conversation.status == conversation.STATUS_ACTIVE:
            greeting = await database_sync_to_async(latest_system_message)(conversation)
            if greeting is not None:
                await self.publish_message(conversation, greeting)

    # Presence

    async def handle_join(self, user_id: str, command: JoinConversation):
        try:
            await database_sync_to_async(self.lifecycle.get_for_participant)(
                command.conversation_id, user_id
            )
        except ConversationError as exc:
            return self._command_failed(command, exc)
        return ConversationJoined(conversation_id=command.conversation_id)

    async def handle_leave(self, user_id: str, command: LeaveConversation):
        return ConversationLeft(conversation_id=command.conversation_id)

    async def handle_typing(self, user_id: str, command):
        try:
            conversation = await database_sync_to_async(self.lifecycle.get_for_participant)(
                command.conversation_id, user_id
            )
        except ConversationError as exc:
            return self._command_failed(command, exc)

        await self.registry.broadcast(
            [conversation.other_participant(user_id)],
            Typing(
                conversation_id=command.conversation_id,
                user_id=user_id,
                is_typing=isinstance(command, TypingStart),
            ),
        )
        return None

    async def handle_heartbeat(self, user_id: str, command: Heartbeat):
        return HeartbeatResponse(timestamp=time.time())

    def _command_failed(self, command, exc: ConversationError) -> CommandFailed:
        logger.warning(
            f"{command.type} on {getattr(command, 'conversation_id', None)} failed: {exc.error_kind}"
        )
        return CommandFailed(
            command=command.type,
            error_kind=exc.error_kind,
            conversation_id=getattr(command, 'conversation_id', None),
            detail=exc.detail,
        )
