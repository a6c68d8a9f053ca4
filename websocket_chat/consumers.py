import json
import asyncio
import logging
from channels.generic.websocket import AsyncWebsocketConsumer
from django.conf import settings
from django.db import DatabaseError
from conversations.serializers import strip_markup

from .protocol import Error, LeaveConversation, JoinConversation, ProtocolError, SendMessage, parse_command
from .registry import ConnectionRegistry
from .services import ChatTransport

logger = logging.getLogger(__name__)

CLOSE_UNAUTHENTICATED = 4001
CLOSE_SERVICE_UNAVAILABLE = 1011


class ChatConsumer(AsyncWebsocketConsumer):
    """
    WebSocket consumer for real-time marketplace chat.

    Delivery is routed by participant identity: every connection of a user
    receives that user's events whether or not it joined a conversation.
    """

    registry = None

    def __init__(self, *args, registry=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.registry = registry or ConnectionRegistry()
        self.transport = None
        self.user_id = None
        self.user_role = None
        self.current_conversation = None
        self.heartbeat_task = None

    async def connect(self):
        """Handle WebSocket connection and register it for the user"""
        self.user_id = self.scope.get('user_id')
        self.user_role = self.scope.get('user_role')
        if not self.user_id:
            await self.close(code=CLOSE_UNAUTHENTICATED)
            return

        self.user_id = str(self.user_id)
        self.transport = ChatTransport(self.registry)

        await self.accept()
        await self.registry.add(self.user_id, self.channel_name)

        interval = getattr(settings, 'WEBSOCKET_HEARTBEAT_INTERVAL', 30)
        if interval:
            self.heartbeat_task = asyncio.create_task(self.heartbeat_loop(interval))

        logger.info(f"User {self.user_id} connected on {self.channel_name}")

    async def disconnect(self, code):
        """Handle WebSocket disconnection and cleanup"""
        if self.heartbeat_task:
            self.heartbeat_task.cancel()

        if self.user_id:
            await self.registry.remove(self.user_id, self.channel_name)
            logger.info(f"User {self.user_id} disconnected ({code})")

    async def receive(self, text_data=None, bytes_data=None):
        """Handle incoming WebSocket messages"""
        if text_data is None:
            await self.send_event(Error(message="Binary frames are not supported"))
            return

        if len(text_data) > getattr(settings, 'WEBSOCKET_MAX_MESSAGE_SIZE', 8192):
            await self.send_event(Error(message="Message too large"))
            return

        try:
            command = parse_command(json.loads(text_data))
        except json.JSONDecodeError:
            await self.send_event(Error(message="Invalid JSON format"))
            return
        except ProtocolError as e:
            await self.send_event(Error(message=str(e)))
            return

        if isinstance(command, SendMessage):
            command = SendMessage(
                conversation_id=command.conversation_id,
                content=self.sanitize_message(command.content),
                message_type=command.message_type,
                correlation_token=command.correlation_token,
            )

        try:
            reply = await self.transport.handle(self.user_id, command)
        except DatabaseError:
            logger.exception(f"Persistence failure while handling {command.type} for {self.user_id}")
            await self.send_event(Error(
                message="Service temporarily unavailable",
                error_kind='service_unavailable',
            ))
            await self.close(code=CLOSE_SERVICE_UNAVAILABLE)
            return

        if isinstance(command, JoinConversation) and reply is not None and reply.type == 'conversation_joined':
            self.current_conversation = command.conversation_id
        elif isinstance(command, LeaveConversation):
            self.current_conversation = None

        if reply is not None:
            await self.send_event(reply)

    async def chat_event(self, event):
        """Forward an event broadcast through the registry to this socket"""
        await self.send(text_data=json.dumps(event['event']))

    async def send_event(self, event):
        await self.send(text_data=json.dumps(event.to_dict()))

    async def heartbeat_loop(self, interval):
        """Send periodic heartbeat to keep connection alive"""
        while True:
            try:
                await asyncio.sleep(interval)
                await self.send(text_data=json.dumps({
                    'type': 'heartbeat',
                    'timestamp': asyncio.get_event_loop().time()
                }))
            except asyncio.CancelledError:
                break
            except Exception:
                logger.debug(f"Heartbeat stopped for {self.user_id}")
                break

    def sanitize_message(self, content):
        """Strip markup from message content the same way the HTTP API does"""
        return strip_markup(content)
