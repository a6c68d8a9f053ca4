from django.contrib import admin
from .models import Conversation, ConversationMessage


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['conversation_id', 'customer_id', 'provider_id', 'booking_id', 'status', 'updated_at']
    list_filter = ['status']
    search_fields = ['conversation_id', 'customer_id', 'provider_id', 'booking_id']
    # Status only moves through ConversationLifecycle
    readonly_fields = ['status', 'created_at', 'updated_at']


@admin.register(ConversationMessage)
class ConversationMessageAdmin(admin.ModelAdmin):
    list_display = ['id', 'conversation', 'sender_id', 'message_type', 'is_read', 'created_at']
    list_filter = ['message_type', 'is_read']
    search_fields = ['sender_id']
    readonly_fields = ['conversation', 'sender_id', 'content', 'message_type', 'correlation_token', 'created_at']
