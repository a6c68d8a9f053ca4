import json
from datetime import datetime, timezone
from typing import Dict, Optional


NOTIFICATION_ROUTING_KEY_PREFIX: str = "marketplace.notification"

EVENT_CONVERSATION_ACCEPTED = "conversation_accepted"
EVENT_CONVERSATION_REJECTED = "conversation_rejected"
EVENT_CONVERSATION_COMPLETED = "conversation_completed"
EVENT_CONVERSATION_CANCELLED = "conversation_cancelled"
EVENT_NEW_MESSAGE = "new_message"

EVENT_TYPES = (
    EVENT_CONVERSATION_ACCEPTED,
    EVENT_CONVERSATION_REJECTED,
    EVENT_CONVERSATION_COMPLETED,
    EVENT_CONVERSATION_CANCELLED,
    EVENT_NEW_MESSAGE,
)

SUMMARY_PREVIEW_LENGTH = 50


class ConversationEventPayload:
    SOURCE_SERVICE_ID: str = "io.marketplace.messaging"

    def __init__(
        self,
        event_type: str,
        conversation_id: str,
        actor_id: str,
        recipient_id: str,
        summary_text: str,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """
        Initializes a notification event for the notification collaborator.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self.event_type = event_type
        self.conversation_id = conversation_id
        self.actor_id = actor_id
        self.recipient_id = recipient_id
        self.summary_text = summary_text
        self.occurred_at = occurred_at or datetime.now(timezone.utc)

    def __repr__(self):
        return (
            f"ConversationEventPayload({self.event_type!r}, {self.conversation_id!r}, "
            f"actor={self.actor_id!r}, recipient={self.recipient_id!r})"
        )

    @property
    def routing_key(self) -> str:
        return f"{NOTIFICATION_ROUTING_KEY_PREFIX}.{self.event_type}"

    @classmethod
    def for_transition(cls, event_type: str, conversation, actor_id: str, reason: str = ""):
        summaries = {
            EVENT_CONVERSATION_ACCEPTED: "Your conversation request was accepted",
            EVENT_CONVERSATION_REJECTED: "Your conversation request was declined",
            EVENT_CONVERSATION_COMPLETED: "The service was marked as completed",
            EVENT_CONVERSATION_CANCELLED: "The conversation was cancelled",
        }
        summary = summaries[event_type]
        if reason:
            summary = f"{summary}: {reason}"
        return cls(
            event_type=event_type,
            conversation_id=conversation.conversation_id,
            actor_id=str(actor_id),
            recipient_id=conversation.other_participant(actor_id),
            summary_text=summary,
        )

    @classmethod
    def for_new_message(cls, conversation, message):
        content = message.content
        if len(content) > SUMMARY_PREVIEW_LENGTH:
            content = f"{content[:SUMMARY_PREVIEW_LENGTH]}..."
        return cls(
            event_type=EVENT_NEW_MESSAGE,
            conversation_id=conversation.conversation_id,
            actor_id=message.sender_id,
            recipient_id=conversation.other_participant(message.sender_id),
            summary_text=f"You have a new message: {content}",
        )

    def to_dict(self) -> Dict:
        return {
            "event_type": self.event_type,
            "conversation_id": self.conversation_id,
            "actor_id": self.actor_id,
            "recipient_id": self.recipient_id,
            "summary_text": self.summary_text,
        }

    def to_json(self) -> str:
        """
        Converts the event to the JSON envelope published on the bus.
        """
        meta = {
            "source_service_id": self.SOURCE_SERVICE_ID,
            "occurred_at": self.occurred_at.isoformat(),
        }
        return json.dumps({"event": self.to_dict(), "meta": meta})
