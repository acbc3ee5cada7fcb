"""
Exception types for the chat pipeline.

Transport and infrastructure failures are caught at component boundaries
and either surfaced to the caller or logged and degraded. These types let
callers tell the cases apart.
"""

from typing import Optional


class ChatPipelineError(Exception):
    """Base class for all chat pipeline errors."""


class PublishError(ChatPipelineError):
    """The Event Log is unreachable or rejected a publish."""


class ParseError(ChatPipelineError):
    """An event consumed from the log could not be decoded."""

    def __init__(self, message: str, offset: Optional[str] = None):
        super().__init__(message)
        self.offset = offset


class PersistenceError(ChatPipelineError):
    """A Message Store write failed for part or all of a batch."""


class ConnectivityError(ChatPipelineError):
    """The Event Log or the pub/sub broker is not available."""


class MessageNotFoundError(ChatPipelineError):
    """No stored message has the requested messageId."""


class InvalidStatusTransitionError(ChatPipelineError):
    """A status update would move a message backwards or out of 'failed'."""

    def __init__(self, message_id: str, current: str, requested: str):
        super().__init__(
            f"cannot move message {message_id} from '{current}' to '{requested}'"
        )
        self.message_id = message_id
        self.current = current
        self.requested = requested
