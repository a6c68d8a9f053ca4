"""
Message Store: append-only persistence of conversation messages.

Messages are totally ordered within a conversation by ``(created_at, id)``.
Pagination is keyset based on that pair, so appends that happen while a
client is paging never produce duplicates or gaps.
"""

import base64
import json
import logging
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils.dateparse import parse_datetime

from .exceptions import ConversationNotFound, InvalidContent, InvalidCursor, NotAParticipant
from .models import Conversation, ConversationMessage

logger = logging.getLogger(__name__)

VALID_MESSAGE_TYPES = {choice for choice, _ in ConversationMessage.MESSAGE_TYPE_CHOICES}


def encode_cursor(message: ConversationMessage) -> str:
    raw = json.dumps({'t': message.created_at.isoformat(), 'id': message.id})
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str):
    try:
        raw = json.loads(base64.urlsafe_b64decode(cursor.encode()).decode())
        created_at = parse_datetime(raw['t'])
        message_id = int(raw['id'])
    except (ValueError, KeyError, TypeError, UnicodeError) as e:
        raise InvalidCursor(f"Invalid cursor: {e}")
    if created_at is None:
        raise InvalidCursor("Invalid cursor timestamp")
    return created_at, message_id


class MessageStore:
    """
    Service layer for message persistence, history pagination and read marking.
    """

    @staticmethod
    def get_conversation(conversation_id: str) -> Conversation:
        try:
            return Conversation.objects.get(conversation_id=conversation_id)
        except Conversation.DoesNotExist:
            raise ConversationNotFound()

    @staticmethod
    def validate_content(content, message_type: str) -> str:
        """Return the trimmed content or raise ``InvalidContent``."""
        if message_type not in VALID_MESSAGE_TYPES:
            raise InvalidContent(f"Unsupported message type '{message_type}'")
        if not isinstance(content, str) or not content.strip():
            raise InvalidContent("Message content is required")

        content = content.strip()
        max_length = getattr(settings, 'MESSAGE_MAX_LENGTH', 1000)
        if len(content) > max_length:
            raise InvalidContent(f"Message content exceeds {max_length} characters")
        return content

    @staticmethod
    def append_once(
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = ConversationMessage.TYPE_TEXT,
        correlation_token: Optional[str] = None,
    ) -> Tuple[ConversationMessage, bool]:
        """
        Append a message unless the sender already stored one with the same
        correlation token in this conversation.

        Returns:
            ``(message, created)``; ``created`` is False when an earlier
            attempt with the same token is returned instead.
        """
        content = MessageStore.validate_content(content, message_type)
        sender_id = str(sender_id)

        with transaction.atomic():
            conversation = MessageStore.get_conversation(conversation_id)
            if not conversation.is_participant(sender_id):
                raise NotAParticipant()

            if correlation_token:
                existing = ConversationMessage.objects.filter(
                    conversation=conversation,
                    sender_id=sender_id,
                    correlation_token=correlation_token,
                ).first()
                if existing:
                    logger.info(
                        f"Duplicate send for token {correlation_token} in {conversation_id}, "
                        f"returning message {existing.id}"
                    )
                    return existing, False

            try:
                with transaction.atomic():
                    message = ConversationMessage.objects.create(
                        conversation=conversation,
                        sender_id=sender_id,
                        content=content,
                        message_type=message_type,
                        correlation_token=correlation_token or None,
                    )
            except IntegrityError:
                if not correlation_token:
                    raise
                # A concurrent retry with the same token won the insert
                message = ConversationMessage.objects.get(
                    conversation=conversation,
                    sender_id=sender_id,
                    correlation_token=correlation_token,
                )
                return message, False

            Conversation.objects.filter(pk=conversation.pk).update(updated_at=message.created_at)

        return message, True

    @staticmethod
    def append(
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = ConversationMessage.TYPE_TEXT,
        correlation_token: Optional[str] = None,
    ) -> ConversationMessage:
        message, _ = MessageStore.append_once(
            conversation_id, sender_id, content, message_type, correlation_token
        )
        return message

    @staticmethod
    def list_page(
        conversation_id: str,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[ConversationMessage], Optional[str]]:
        """
        Get one page of messages, oldest first.

        Args:
            conversation_id: Public conversation id
            cursor: Opaque cursor returned by the previous call, or None for the first page
            limit: Page size, clamped to ``MESSAGES_PAGE_SIZE_MAX``

        Returns:
            ``(messages, next_cursor)``; ``next_cursor`` is None when no
            further messages exist yet.
        """
        conversation = MessageStore.get_conversation(conversation_id)

        default_size = getattr(settings, 'MESSAGES_PAGE_SIZE', 50)
        max_size = getattr(settings, 'MESSAGES_PAGE_SIZE_MAX', 100)
        limit = max(1, min(int(limit or default_size), max_size))

        queryset = ConversationMessage.objects.filter(
            conversation=conversation
        ).order_by('created_at', 'id')

        if cursor:
            created_at, message_id = decode_cursor(cursor)
            queryset = queryset.filter(
                Q(created_at__gt=created_at) | Q(created_at=created_at, id__gt=message_id)
            )

        rows = list(queryset[:limit + 1])
        messages = rows[:limit]
        next_cursor = encode_cursor(messages[-1]) if len(rows) > limit else None
        return messages, next_cursor

    @staticmethod
    def recent(conversation_id: str, limit: Optional[int] = None) -> List[ConversationMessage]:
        """Newest ``limit`` messages, returned oldest first."""
        conversation = MessageStore.get_conversation(conversation_id)
        limit = max(1, min(int(limit or getattr(settings, 'MESSAGES_PAGE_SIZE', 50)),
                           getattr(settings, 'MESSAGES_PAGE_SIZE_MAX', 100)))
        messages = ConversationMessage.objects.filter(
            conversation=conversation
        ).order_by('-created_at', '-id')[:limit]
        return list(reversed(messages))

    @staticmethod
    def get_message(message_id: int) -> Optional[ConversationMessage]:
        return ConversationMessage.objects.filter(id=message_id).select_related('conversation').first()

    @staticmethod
    def mark_read_by_recipient(conversation_id: str, reader_id: str) -> int:
        """
        Mark every message not sent by ``reader_id`` as read.

        Only unread rows are touched, so repeated or concurrent calls are
        idempotent and never flip ``is_read`` back.
        """
        reader_id = str(reader_id)
        conversation = MessageStore.get_conversation(conversation_id)
        if not conversation.is_participant(reader_id):
            raise NotAParticipant()

        updated = ConversationMessage.objects.filter(
            conversation=conversation,
            is_read=False,
        ).exclude(sender_id=reader_id).update(is_read=True)

        if updated:
            logger.debug(f"Marked {updated} messages read in {conversation_id} for {reader_id}")
        return updated
