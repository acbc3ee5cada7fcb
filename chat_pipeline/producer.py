"""
Ingestion producer: turns a raw send request into a ChatEvent and appends
it to the chat topic of the Event Log.

Persistence is not done here; the batch consumer owns the write to the
Message Store. A returned event means "accepted into the pipeline".
"""

import logging
import secrets
import string
import time
from typing import Any, Optional, Protocol

from chat_pipeline import metrics
from chat_pipeline.errors import PublishError
from chat_pipeline.schemas import (
    ChatEvent,
    MessageMetadata,
    MessageStatus,
    MessageType,
    Priority,
    SendMessageRequest,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_ROOM_ID = "general"
ANONYMOUS_SENDER = "anonymous"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class EventPublisher(Protocol):
    async def publish(self, topic: str, value: str, key: str) -> Any: ...


def generate_message_id() -> str:
    """
    Build a message id from the current epoch milliseconds and a random
    base-36 suffix: msg_<millis>_<9 chars>.
    """
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"msg_{int(time.time() * 1000)}_{suffix}"


class IngestionProducer:
    """Accepts send requests and publishes them to the Event Log."""

    def __init__(self, event_log: Optional[EventPublisher], topic: str = "chat-messages") -> None:
        self._event_log = event_log
        self._topic = topic

    @property
    def is_available(self) -> bool:
        return self._event_log is not None

    def detach(self) -> None:
        """Stop publishing; submit raises PublishError from now on."""
        self._event_log = None

    def build_event(
        self,
        raw: SendMessageRequest | dict[str, Any],
        connection_id: Optional[str] = None,
    ) -> ChatEvent:
        """
        Validate the raw request and resolve every default.

        Raises:
            pydantic.ValidationError: the request is missing its content or
                carries an unknown type/priority
        """
        request = raw if isinstance(raw, SendMessageRequest) else SendMessageRequest.model_validate(raw)
        return ChatEvent(
            message_id=generate_message_id(),
            room_id=request.room_id or DEFAULT_ROOM_ID,
            sender_id=request.sender_id or connection_id or ANONYMOUS_SENDER,
            content=request.content,
            message_type=request.message_type or MessageType.TEXT,
            status=MessageStatus.PENDING,
            recipients=request.recipients or [],
            metadata=MessageMetadata(
                requires_delivery=True,
                priority=request.priority or Priority.NORMAL,
            ),
            timestamp=utc_timestamp(),
        )

    async def submit(
        self,
        raw: SendMessageRequest | dict[str, Any],
        connection_id: Optional[str] = None,
    ) -> ChatEvent:
        """
        Publish a message to the chat topic keyed by its roomId.

        Returns:
            The published event, once the Event Log acknowledged the append

        Raises:
            pydantic.ValidationError: invalid request payload
            PublishError: the Event Log is not configured or rejected the publish
        """
        event = self.build_event(raw, connection_id=connection_id)

        if self._event_log is None:
            metrics.record_publish("error")
            raise PublishError("Event log is not available")

        try:
            await self._event_log.publish(self._topic, event.to_wire(), key=event.room_id)
        except PublishError:
            metrics.record_publish("error")
            logger.error(f"Failed to publish message {event.message_id} to {self._topic}")
            raise
        except Exception as e:
            metrics.record_publish("error")
            logger.error(f"Failed to publish message {event.message_id} to {self._topic}: {e}")
            raise PublishError(str(e)) from e

        metrics.record_publish("ok")
        logger.info(f"Message published to event log: {event.message_id} (room={event.room_id})")
        return event

