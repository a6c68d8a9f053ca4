import uuid

from django.db import models
from django.db.models import Q


def generate_conversation_id():
    return f"conv_{uuid.uuid4().hex[:12]}"


class Conversation(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_ACTIVE = 'active'
    STATUS_REJECTED = 'rejected'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACTIVE, 'Active'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    TERMINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_COMPLETED, STATUS_CANCELLED})

    # event -> (allowed source statuses, target status)
    TRANSITIONS = {
        'accept': ((STATUS_PENDING,), STATUS_ACTIVE),
        'reject': ((STATUS_PENDING,), STATUS_REJECTED),
        'complete': ((STATUS_ACTIVE,), STATUS_COMPLETED),
        'cancel': ((STATUS_PENDING, STATUS_ACTIVE), STATUS_CANCELLED),
    }

    conversation_id = models.CharField(max_length=100, unique=True, default=generate_conversation_id)
    customer_id = models.CharField(max_length=100, db_index=True)
    provider_id = models.CharField(max_length=100, db_index=True)
    booking_id = models.CharField(max_length=100, null=True, blank=True)
    title = models.CharField(max_length=200, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    rejection_reason = models.TextField(blank=True)
    cancellation_reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'conversations_conversation'
        constraints = [
            models.UniqueConstraint(
                fields=['customer_id', 'provider_id', 'booking_id'],
                condition=Q(booking_id__isnull=False),
                name='unique_conversation_per_booking',
            ),
            models.UniqueConstraint(
                fields=['customer_id', 'provider_id'],
                condition=Q(booking_id__isnull=True),
                name='unique_conversation_without_booking',
            ),
        ]

    def __str__(self):
        return f"Conversation {self.conversation_id}"

    @property
    def participants(self):
        return [self.customer_id, self.provider_id]

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def is_participant(self, user_id):
        return str(user_id) in self.participants

    def other_participant(self, user_id):
        """Return the participant that is not ``user_id``."""
        return self.provider_id if str(user_id) == self.customer_id else self.customer_id


class ConversationMessage(models.Model):
    TYPE_TEXT = 'text'
    TYPE_IMAGE = 'image'
    TYPE_SYSTEM = 'system'

    MESSAGE_TYPE_CHOICES = [
        (TYPE_TEXT, 'Text'),
        (TYPE_IMAGE, 'Image'),
        (TYPE_SYSTEM, 'System'),
    ]

    conversation = models.ForeignKey(Conversation, on_delete=models.CASCADE, related_name='messages')
    sender_id = models.CharField(max_length=100)
    content = models.TextField()
    message_type = models.CharField(max_length=10, choices=MESSAGE_TYPE_CHOICES, default=TYPE_TEXT)
    is_read = models.BooleanField(default=False)
    correlation_token = models.CharField(max_length=100, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'conversations_conversationmessage'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['conversation', 'created_at', 'id'], name='conv_message_order_idx'),
            models.Index(fields=['conversation', 'is_read'], name='conv_message_unread_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['conversation', 'sender_id', 'correlation_token'],
                condition=Q(correlation_token__isnull=False),
                name='unique_message_correlation_token',
            ),
        ]

    def __str__(self):
        return f"{self.sender_id}: {self.content[:50]}..."
