"""
Unread Aggregator.

Unread counts are derived on demand from message rows; nothing is cached,
so there is no counter to drift under concurrent send/read races.
"""

from datetime import datetime
from typing import List, NamedTuple, Optional

from django.db.models import Count, F, Max, Q

from .models import Conversation, ConversationMessage


class UnreadEntry(NamedTuple):
    conversation_id: str
    unread_count: int
    last_message_at: Optional[datetime]


class UnreadAggregator:

    @staticmethod
    def _user_conversations(user_id: str):
        return Conversation.objects.filter(Q(customer_id=user_id) | Q(provider_id=user_id))

    @staticmethod
    def unread_summary(user_id: str) -> List[UnreadEntry]:
        """
        Per-conversation unread counts for ``user_id``, most recent activity
        first; conversations without messages come last.
        """
        user_id = str(user_id)
        rows = UnreadAggregator._user_conversations(user_id).annotate(
            unread_count=Count(
                'messages',
                filter=Q(messages__is_read=False) & ~Q(messages__sender_id=user_id),
            ),
            last_message_at=Max('messages__created_at'),
        ).order_by(
            F('last_message_at').desc(nulls_last=True), '-created_at', '-id'
        ).values_list('conversation_id', 'unread_count', 'last_message_at')

        return [UnreadEntry(*row) for row in rows]

    @staticmethod
    def conversation_unread(conversation_id: str, user_id: str) -> int:
        return ConversationMessage.objects.filter(
            conversation__conversation_id=conversation_id,
            is_read=False,
        ).exclude(sender_id=str(user_id)).count()

    @staticmethod
    def total_unread(user_id: str) -> int:
        user_id = str(user_id)
        result = ConversationMessage.objects.filter(
            Q(conversation__customer_id=user_id) | Q(conversation__provider_id=user_id),
            is_read=False,
        ).exclude(sender_id=user_id).aggregate(total=Count('id'))
        return result['total'] or 0
