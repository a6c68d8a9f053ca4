import logging

from asgiref.sync import async_to_sync
from django.db import transaction
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from websocket_chat.registry import ConnectionRegistry
from websocket_chat.services import ChatTransport

from .exceptions import (
    ConversationAlreadyProcessed,
    ConversationClosed,
    ConversationError,
    ConversationNotActive,
    ConversationNotFound,
    InvalidContent,
    InvalidCursor,
    NotAParticipant,
    SelfConversationNotAllowed,
)
from .lifecycle import ConversationLifecycle
from .message_store import MessageStore, encode_cursor
from .models import Conversation
from .serializers import (
    ConversationCreateSerializer,
    ConversationMessageSerializer,
    ConversationSerializer,
    ReasonSerializer,
    SendMessageSerializer,
)
from .unread import UnreadAggregator

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ConversationNotFound: status.HTTP_404_NOT_FOUND,
    NotAParticipant: status.HTTP_403_FORBIDDEN,
    InvalidContent: status.HTTP_400_BAD_REQUEST,
    InvalidCursor: status.HTTP_400_BAD_REQUEST,
    SelfConversationNotAllowed: status.HTTP_400_BAD_REQUEST,
    ConversationNotActive: status.HTTP_409_CONFLICT,
    ConversationClosed: status.HTTP_409_CONFLICT,
    ConversationAlreadyProcessed: status.HTTP_409_CONFLICT,
}


def error_response(exc: ConversationError):
    code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
        status.HTTP_400_BAD_REQUEST,
    )
    return Response({'error': exc.detail, 'error_kind': exc.error_kind}, status=code)


def push_realtime(method, *args, **kwargs):
    """Push an HTTP-originated change to live connections once it is committed"""
    def _push():
        transport = ChatTransport(ConnectionRegistry())
        async_to_sync(getattr(transport, method))(*args, **kwargs)

    transaction.on_commit(_push)


class ConversationListView(APIView):
    """List the requesting user's conversations, most recent activity first"""

    def get(self, request):
        user_id = request.user_id
        summary = UnreadAggregator.unread_summary(user_id)
        conversations = Conversation.objects.in_bulk(
            [entry.conversation_id for entry in summary], field_name='conversation_id'
        )

        ordered = []
        for entry in summary:
            conversation = conversations[entry.conversation_id]
            conversation.unread_count = entry.unread_count
            ordered.append(conversation)

        serializer = ConversationSerializer(ordered, many=True, context={'user_id': user_id})
        return Response({
            'user_id': user_id,
            'results': serializer.data,
            'total_count': len(ordered)
        })


class ConversationCreateView(APIView):
    """Create a conversation for a (customer, provider, booking) triple or return the existing one"""

    def post(self, request):
        serializer = ConversationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        user_id = request.user_id
        is_provider = getattr(request, 'user_role', None) == 'provider'
        customer_id = data.get('customer_id') or (None if is_provider else user_id)
        provider_id = data.get('provider_id') or (user_id if is_provider else None)

        if not customer_id or not provider_id:
            return Response(
                {'error': 'Both customer_id and provider_id are required'},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            conversation, created = ConversationLifecycle().create(
                actor_id=user_id,
                customer_id=customer_id,
                provider_id=provider_id,
                booking_id=data.get('booking_id'),
                title=data.get('title', ''),
            )
        except ConversationError as exc:
            return error_response(exc)

        if created:
            push_realtime('publish_status', conversation, user_id)

        return Response({
            'message': 'Conversation created successfully' if created else 'Conversation found',
            'conversation': ConversationSerializer(conversation, context={'user_id': user_id}).data,
            'is_new': created
        }, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


class UnreadSummaryView(APIView):
    """Unread counts per conversation and in total for the requesting user"""

    def get(self, request):
        summary = UnreadAggregator.unread_summary(request.user_id)
        return Response({
            'results': [entry._asdict() for entry in summary],
            'total_unread': sum(entry.unread_count for entry in summary),
        })


class ConversationDetailView(APIView):

    def get(self, request, conversation_id):
        try:
            conversation = ConversationLifecycle().get_for_participant(conversation_id, request.user_id)
        except ConversationError as exc:
            return error_response(exc)

        serializer = ConversationSerializer(conversation, context={'user_id': request.user_id})
        return Response(serializer.data)

    def delete(self, request, conversation_id):
        try:
            ConversationLifecycle().delete(conversation_id, request.user_id)
        except ConversationError as exc:
            return error_response(exc)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ConversationMessagesView(APIView):
    """
    Cursor-paginated message history (GET) and sending over HTTP (POST)
    """

    def get(self, request, conversation_id):
        try:
            ConversationLifecycle().get_for_participant(conversation_id, request.user_id)
            messages, next_cursor = MessageStore.list_page(
                conversation_id,
                cursor=request.GET.get('cursor'),
                limit=request.GET.get('limit') or None,
            )
        except ConversationError as exc:
            return error_response(exc)
        except ValueError:
            return Response({'error': 'limit must be an integer'}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            'messages': ConversationMessageSerializer(messages, many=True).data,
            'next_cursor': next_cursor,
            'latest_cursor': encode_cursor(messages[-1]) if messages else request.GET.get('cursor'),
        })

    def post(self, request, conversation_id):
        serializer = SendMessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            conversation, message, created = ConversationLifecycle().send_message(
                conversation_id,
                request.user_id,
                data['content'],
                data['message_type'],
                data.get('correlation_token'),
            )
        except ConversationError as exc:
            return error_response(exc)

        push_realtime(
            'publish_message', conversation, message,
            data.get('correlation_token'), notify_unread=created,
        )
        return Response(
            ConversationMessageSerializer(message).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class MarkMessagesAsReadView(APIView):

    def post(self, request, conversation_id):
        try:
            conversation = ConversationLifecycle().get_for_participant(conversation_id, request.user_id)
            updated = MessageStore.mark_read_by_recipient(conversation_id, request.user_id)
        except ConversationError as exc:
            return error_response(exc)

        push_realtime('publish_read', conversation, request.user_id, updated)
        return Response({'updated_count': updated})


class ConversationTransitionView(APIView):
    """Apply one lifecycle event (accept, reject, complete, cancel)"""
    event = None

    def post(self, request, conversation_id):
        lifecycle = ConversationLifecycle()
        try:
            if self.event in ('reject', 'cancel'):
                serializer = ReasonSerializer(data=request.data)
                serializer.is_valid(raise_exception=True)
                conversation = getattr(lifecycle, self.event)(
                    conversation_id, request.user_id, serializer.validated_data['reason']
                )
            else:
                conversation = getattr(lifecycle, self.event)(conversation_id, request.user_id)
        except ConversationError as exc:
            return error_response(exc)

        push_realtime('publish_status', conversation, request.user_id)
        return Response(ConversationSerializer(conversation, context={'user_id': request.user_id}).data)
