"""
SQLAlchemy ORM models for the Message Store.

This module contains database table definitions using SQLAlchemy.
For Pydantic event and response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from chat_pipeline.storage import Base


class Message(Base):
    """
    A durably persisted chat message.

    Table: messages
    Unique key: message_id (ensures idempotent batch writes)
    seq preserves insertion order for messages sharing a timestamp.
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True, index=True)
    room_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(String, nullable=False, default="text")
    status = Column(String, nullable=False, default="pending")
    requires_delivery = Column(Boolean, nullable=False, default=True)
    priority = Column(String, nullable=False, default="normal")
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC
    updated_at = Column(String, nullable=False)

    recipient_rows = relationship(
        "MessageRecipient",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_messages_room_created", "room_id", "created_at"),
        Index("ix_messages_sender_created", "sender_id", "created_at"),
        Index("ix_messages_status_created", "status", "created_at"),
    )

    @property
    def recipients(self) -> list[str]:
        return [row.user_id for row in self.recipient_rows]


class MessageRecipient(Base):
    """
    Recipient membership of a message. Fixed at creation; used only to
    answer "is this user a recipient", delivery state lives on Message.
    """
    __tablename__ = "message_recipients"

    message_seq = Column(
        Integer,
        ForeignKey("messages.seq", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String, primary_key=True, index=True)

    message = relationship("Message", back_populates="recipient_rows")
