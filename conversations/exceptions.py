"""
Typed, recoverable errors raised by the messaging core.

Each error carries a stable ``error_kind`` string which the websocket
transport forwards to clients and the HTTP views map onto status codes.
"""


class ConversationError(Exception):
    error_kind = 'conversation_error'
    default_detail = 'Conversation operation failed'

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotAParticipant(ConversationError):
    error_kind = 'not_a_participant'
    default_detail = 'User is not a participant of this conversation'


class ActionNotAllowed(NotAParticipant):
    error_kind = 'action_not_allowed'
    default_detail = 'This participant may not perform that action'


class InvalidContent(ConversationError):
    error_kind = 'invalid_content'
    default_detail = 'Message content is invalid'


class InvalidCursor(ConversationError):
    error_kind = 'invalid_cursor'
    default_detail = 'Pagination cursor is invalid'


class ConversationNotActive(ConversationError):
    error_kind = 'conversation_not_active'
    default_detail = 'Conversation has not been accepted yet'


class ConversationClosed(ConversationError):
    error_kind = 'conversation_closed'
    default_detail = 'Conversation is closed'


class ConversationAlreadyProcessed(ConversationError):
    error_kind = 'conversation_already_processed'
    default_detail = 'Conversation status changed before this action was applied'


class SelfConversationNotAllowed(ConversationError):
    error_kind = 'self_conversation_not_allowed'
    default_detail = 'Customer and provider must be different users'


class ConversationNotFound(ConversationError):
    error_kind = 'conversation_not_found'
    default_detail = 'Conversation not found'
