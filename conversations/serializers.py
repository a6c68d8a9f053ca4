import html

import bleach
from rest_framework import serializers
from .models import Conversation, ConversationMessage


def strip_markup(content):
    """Remove HTML tags from user content, leaving the text exactly as typed"""
    if not isinstance(content, str):
        return content
    # bleach entity-escapes the text it keeps
    return html.unescape(bleach.clean(content, tags=[], attributes={}, strip=True))


class ConversationMessageSerializer(serializers.ModelSerializer):
    conversation_id = serializers.CharField(source='conversation.conversation_id', read_only=True)
    status = serializers.SerializerMethodField()

    class Meta:
        model = ConversationMessage
        fields = ['id', 'conversation_id', 'sender_id', 'content', 'message_type',
                  'is_read', 'status', 'correlation_token', 'created_at']
        read_only_fields = fields

    def get_status(self, obj):
        """Server side delivery status: a stored message is 'sent' until its recipient reads it"""
        return 'read' if obj.is_read else 'sent'


class ConversationSerializer(serializers.ModelSerializer):
    """Conversation with the requesting user's unread count and a last message preview"""
    unread_count = serializers.SerializerMethodField()
    last_message = serializers.SerializerMethodField()

    class Meta:
        model = Conversation
        fields = ['conversation_id', 'customer_id', 'provider_id', 'booking_id', 'title',
                  'status', 'rejection_reason', 'cancellation_reason', 'created_at',
                  'updated_at', 'unread_count', 'last_message']
        read_only_fields = fields

    def get_unread_count(self, obj):
        user_id = self.context.get('user_id')
        if not user_id:
            return 0
        if hasattr(obj, 'unread_count'):
            return obj.unread_count
        return obj.messages.filter(is_read=False).exclude(sender_id=user_id).count()

    def get_last_message(self, obj):
        """Get only the last message preview (not full message)"""
        last_message = obj.messages.order_by('-created_at', '-id').first()
        if last_message:
            content = last_message.content
            return {
                'sender_id': last_message.sender_id,
                'content': content[:100] + '...' if len(content) > 100 else content,
                'message_type': last_message.message_type,
                'created_at': last_message.created_at,
                'is_read': last_message.is_read
            }
        return None


class ConversationCreateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=100, required=False)
    provider_id = serializers.CharField(max_length=100, required=False)
    booking_id = serializers.CharField(max_length=100, required=False, allow_null=True, allow_blank=True)
    title = serializers.CharField(max_length=200, required=False, allow_blank=True)


class SendMessageSerializer(serializers.Serializer):
    content = serializers.CharField(trim_whitespace=False, allow_blank=True)
    message_type = serializers.ChoiceField(
        choices=[ConversationMessage.TYPE_TEXT, ConversationMessage.TYPE_IMAGE],
        default=ConversationMessage.TYPE_TEXT,
    )
    correlation_token = serializers.CharField(max_length=100, required=False, allow_null=True)

    def validate_content(self, value):
        return strip_markup(value)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')
