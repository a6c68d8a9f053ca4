"""
Wire protocol for the chat websocket.

Inbound JSON frames are parsed into typed commands; outbound pushes are typed
events. Both carry a ``type`` discriminator on the wire.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


class ProtocolError(ValueError):
    """Raised when an inbound frame cannot be turned into a command."""


# Client -> server commands

@dataclass(frozen=True)
class SendMessage:
    type = 'send_message'
    conversation_id: str
    content: str
    message_type: str = 'text'
    correlation_token: Optional[str] = None


@dataclass(frozen=True)
class MarkRead:
    type = 'mark_read'
    conversation_id: str


@dataclass(frozen=True)
class AcceptConversation:
    type = 'accept_conversation'
    conversation_id: str


@dataclass(frozen=True)
class RejectConversation:
    type = 'reject_conversation'
    conversation_id: str
    reason: str = ''


@dataclass(frozen=True)
class CompleteConversation:
    type = 'complete_conversation'
    conversation_id: str


@dataclass(frozen=True)
class CancelConversation:
    type = 'cancel_conversation'
    conversation_id: str
    reason: str = ''


@dataclass(frozen=True)
class JoinConversation:
    type = 'join_conversation'
    conversation_id: str


@dataclass(frozen=True)
class LeaveConversation:
    type = 'leave_conversation'
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class TypingStart:
    type = 'typing_start'
    conversation_id: str


@dataclass(frozen=True)
class TypingStop:
    type = 'typing_stop'
    conversation_id: str


@dataclass(frozen=True)
class Heartbeat:
    type = 'heartbeat'


# Only text and image can come from clients; system messages are server authored
CLIENT_MESSAGE_TYPES = ('text', 'image')

COMMANDS = {
    command.type: command
    for command in (
        SendMessage, MarkRead, AcceptConversation, RejectConversation,
        CompleteConversation, CancelConversation, JoinConversation,
        LeaveConversation, TypingStart, TypingStop, Heartbeat,
    )
}


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ProtocolError(f"'{key}' is required")
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ProtocolError(f"'{key}' must be a string")
    return str(value)


def _optional_str(data: Dict[str, Any], key: str, default=None):
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ProtocolError(f"'{key}' must be a string")
    return value


def parse_command(data: Any):
    """Build the typed command for a decoded JSON frame."""
    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")

    command_type = data.get('type')
    command_class = COMMANDS.get(command_type)
    if command_class is None:
        raise ProtocolError("Unknown message type")

    if command_class is Heartbeat:
        return Heartbeat()

    if command_class is LeaveConversation:
        return LeaveConversation(conversation_id=_optional_str(data, 'conversation_id'))

    conversation_id = _require_str(data, 'conversation_id')

    if command_class is SendMessage:
        content = data.get('content')
        if not isinstance(content, str):
            raise ProtocolError("'content' must be a string")
        message_type = _optional_str(data, 'message_type', 'text')
        if message_type not in CLIENT_MESSAGE_TYPES:
            raise ProtocolError(f"Unsupported message type '{message_type}'")
        token = data.get('correlation_token')
        if token is not None:
            token = _require_str(data, 'correlation_token')
        return SendMessage(
            conversation_id=conversation_id,
            content=content,
            message_type=message_type,
            correlation_token=token,
        )

    if command_class in (RejectConversation, CancelConversation):
        return command_class(
            conversation_id=conversation_id,
            reason=_optional_str(data, 'reason', '') or '',
        )

    return command_class(conversation_id=conversation_id)


# Server -> client events

class Event:
    type = 'event'

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload['type'] = self.type
        return payload


@dataclass
class MessageDelivered(Event):
    type = 'message_delivered'
    conversation_id: str
    message: Dict[str, Any]
    correlation_token: Optional[str] = None


@dataclass
class ConversationStatusChanged(Event):
    type = 'conversation_status_changed'
    conversation_id: str
    status: str
    actor_id: Optional[str] = None


@dataclass
class SendRejected(Event):
    type = 'send_rejected'
    correlation_token: Optional[str]
    error_kind: str
    conversation_id: Optional[str] = None
    detail: str = ''


@dataclass
class CommandFailed(Event):
    type = 'command_failed'
    command: str
    error_kind: str
    conversation_id: Optional[str] = None
    detail: str = ''


@dataclass
class UnreadSummaryChanged(Event):
    type = 'unread_summary_changed'
    conversation_id: str
    unread_count: int
    total_unread: Optional[int] = None


@dataclass
class MessageStatusChanged(Event):
    type = 'message_status_changed'
    conversation_id: str
    status: str
    message_ids: List[int] = field(default_factory=list)
    reader_id: Optional[str] = None


@dataclass
class Typing(Event):
    type = 'typing'
    conversation_id: str
    user_id: str
    is_typing: bool


@dataclass
class ConversationJoined(Event):
    type = 'conversation_joined'
    conversation_id: str


@dataclass
class ConversationLeft(Event):
    type = 'conversation_left'
    conversation_id: Optional[str]


@dataclass
class HeartbeatResponse(Event):
    type = 'heartbeat_response'
    timestamp: float


@dataclass
class Error(Event):
    type = 'error'
    message: str
    error_kind: str = 'protocol_error'
