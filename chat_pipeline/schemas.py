"""
Pydantic schemas for events, socket payloads and HTTP request/response validation.

This module contains:
- Enumerations for message type, status and priority
- The ChatEvent record published to the Event Log
- Inbound socket payloads and the raw send request
- Response models for the HTTP surface
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision and Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# =============================================================================
# Enumerations
# =============================================================================

class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Lifecycle rank used to reject regressions. FAILED is handled separately.
STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

# Statuses that still need delivery to their recipients
UNDELIVERED_STATUSES = (MessageStatus.PENDING.value, MessageStatus.SENT.value)


class CamelModel(BaseModel):
    """Base model using camelCase names on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Event Log Records
# =============================================================================

class MessageMetadata(CamelModel):
    requires_delivery: bool = Field(default=True, description="Recipient must receive this message")
    priority: Priority = Field(default=Priority.NORMAL, description="Delivery priority")


class ChatEvent(CamelModel):
    """
    Wire shape of a chat message on the Event Log.

    Same fields as a persisted ChatMessage plus the producer-assigned
    timestamp. All defaults are resolved by the producer before publish,
    so a consumed event is always complete.
    """
    message_id: str = Field(..., min_length=1, description="Globally unique message identifier")
    room_id: str = Field(..., min_length=1, description="Conversation identifier")
    sender_id: str = Field(..., min_length=1, description="Originating party")
    content: str = Field(..., min_length=1, description="Text payload or media reference")
    message_type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.PENDING
    recipients: list[str] = Field(default_factory=list, description="Recipient identifiers")
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    timestamp: str = Field(..., description="Producer timestamp, ISO-8601 UTC")

    @field_validator("recipients")
    @classmethod
    def dedupe_recipients(cls, v: list[str]) -> list[str]:
        """Recipients are a set; drop duplicates and blanks, keep first-seen order."""
        seen: dict[str, None] = {}
        for recipient in v:
            if recipient:
                seen.setdefault(recipient, None)
        return list(seen)

    @field_validator("timestamp")
    @classmethod
    def validate_iso8601_utc(cls, v: str) -> str:
        if not v.endswith("Z"):
            raise ValueError("timestamp must end with 'Z' (UTC timezone)")
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 UTC timestamp")
        return v

    def to_document(self) -> dict[str, Any]:
        """Flatten the event into the column layout used by the Message Store."""
        return {
            "message_id": self.message_id,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "message_type": self.message_type.value,
            "status": self.status.value,
            "recipients": list(self.recipients),
            "requires_delivery": self.metadata.requires_delivery,
            "priority": self.metadata.priority.value,
            "created_at": self.timestamp,
            "updated_at": self.timestamp,
        }

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# Inbound Socket Payloads
# =============================================================================

class SendMessageRequest(CamelModel):
    """
    Raw `chat:send` payload. Everything but the text is optional; defaults
    are applied by the ingestion producer.
    """
    content: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("message", "content"),
        description="Message text (wire name 'message')",
    )
    room_id: Optional[str] = None
    sender_id: Optional[str] = None
    message_type: Optional[MessageType] = None
    recipients: Optional[list[str]] = None
    priority: Optional[Priority] = None


class StatusUpdateEvent(CamelModel):
    message_id: str = Field(..., min_length=1)
    status: MessageStatus


class RoomEvent(CamelModel):
    room_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class UserOnlineEvent(CamelModel):
    user_id: str = Field(..., min_length=1)


class SocketFrame(BaseModel):
    """A single JSON frame on the socket: {"event": ..., "data": ...}."""
    event: str = Field(..., min_length=1)
    data: Any = None


# =============================================================================
# HTTP Request Models
# =============================================================================

class MarkDeliveredRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    message_ids: list[str] = Field(..., description="Messages to mark delivered")


class StatusUpdateRequest(BaseModel):
    status: MessageStatus


# =============================================================================
# HTTP Response Models
# =============================================================================

class ChatMessageResponse(CamelModel):
    """A persisted message as returned by the HTTP surface."""
    message_id: str
    room_id: str
    sender_id: str
    content: str
    message_type: MessageType
    status: MessageStatus
    recipients: list[str] = Field(default_factory=list)
    metadata: MessageMetadata
    created_at: str
    updated_at: str

    @classmethod
    def from_message(cls, message: Any) -> "ChatMessageResponse":
        """Build the response from a Message ORM row."""
        return cls(
            message_id=message.message_id,
            room_id=message.room_id,
            sender_id=message.sender_id,
            content=message.content,
            message_type=message.message_type,
            status=message.status,
            recipients=message.recipients,
            metadata=MessageMetadata(
                requires_delivery=message.requires_delivery,
                priority=message.priority,
            ),
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class Pagination(BaseModel):
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)
    count: int = Field(..., ge=0)


class RoomMessagesResponse(BaseModel):
    success: bool = True
    data: list[ChatMessageResponse] = Field(default_factory=list)
    pagination: Pagination


class UnreadMessagesResponse(BaseModel):
    success: bool = True
    data: list[ChatMessageResponse] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class RoomStats(CamelModel):
    total_messages: int = Field(0, ge=0)
    total_delivered: int = Field(0, ge=0)
    total_read: int = Field(0, ge=0)


class RoomStatsResponse(BaseModel):
    success: bool = True
    data: RoomStats


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    components: Optional[dict[str, Any]] = Field(None, description="Pipeline component state")
