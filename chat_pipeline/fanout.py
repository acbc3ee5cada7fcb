"""
Real-time fan-out over Redis pub/sub.

Every gateway instance publishes freshly sent messages and notifications
here and subscribes to both channels, re-broadcasting what it receives to
its locally connected sockets. Delivery on this path is best-effort and
at-most-once; missed messages are recovered by the offline catch-up.

Without a broker, publish and subscribe are no-ops that log a warning.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from chat_pipeline import metrics
from chat_pipeline.errors import ConnectivityError

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

CHAT_CHANNEL = "CHAT_MESSAGES"
NOTIFICATION_CHANNEL = "NOTIFICATION_MESSAGES"

Handler = Callable[[Any], Awaitable[None]]


class RealtimeFanout:
    """Publishes to and dispatches from the pub/sub broker."""

    def __init__(self, redis: Optional[AsyncRedis] = None) -> None:
        self._redis = redis
        self._handlers: Dict[str, List[Handler]] = {}
        self._pubsub: Optional["PubSub"] = None
        self._listener: Optional[asyncio.Task] = None
        self._publish_count = 0
        self._error_count = 0

    @classmethod
    def from_url(cls, url: Optional[str]) -> "RealtimeFanout":
        if not url:
            logger.warning("REDIS_URL not configured. Real-time fan-out is disabled.")
            return cls(None)
        return cls(AsyncRedis.from_url(url, encoding="utf-8", decode_responses=True))

    @property
    def is_enabled(self) -> bool:
        return self._redis is not None

    async def disable(self) -> None:
        """Drop the broker; publish/subscribe become no-ops."""
        if self._redis is not None:
            with suppress(RedisError, OSError):
                await self._redis.aclose()
        self._redis = None
        logger.warning("Real-time fan-out disabled, delivering to local sockets only")

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.is_enabled,
            "listening": self.is_listening,
            "channels": sorted(self._handlers),
            "publish_count": self._publish_count,
            "error_count": self._error_count,
        }

    async def publish(self, channel: str, payload: Any) -> int:
        """
        Publish a JSON payload to a channel.

        Returns:
            Number of subscribers that received it (0 on failure or when disabled)
        """
        if self._redis is None:
            metrics.record_fanout(channel, "disabled")
            logger.warning(f"Fan-out disabled, skipping publish to {channel}")
            return 0

        try:
            receivers: int = await self._redis.publish(channel, json.dumps(payload))
        except (RedisError, OSError, TypeError, ValueError) as e:
            # Best-effort path: durability lives in the Message Store
            self._error_count += 1
            metrics.record_fanout(channel, "error")
            logger.error(f"Failed to publish to {channel}: {e}")
            return 0

        self._publish_count += 1
        metrics.record_fanout(channel, "ok")
        logger.debug(f"Published to {channel} (subscribers: {receivers})")
        return receivers

    def subscribe(self, channel: str, handler: Handler) -> None:
        """
        Register a coroutine handler for a channel. Takes effect for the
        broker subscription opened by start().
        """
        if self._redis is None:
            logger.warning(f"Fan-out disabled, subscription to {channel} is a no-op")
        self._handlers.setdefault(channel, []).append(handler)

    async def start(self) -> bool:
        """
        Open the broker subscription for every registered channel and start
        dispatching.

        Raises:
            ConnectivityError: the broker could not be reached
        """
        if self._redis is None or not self._handlers:
            return False
        if self.is_listening:
            return True

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(*self._handlers.keys())
        except (RedisError, OSError) as e:
            with suppress(RedisError, OSError):
                await pubsub.aclose()
            raise ConnectivityError(f"Pub/sub broker unreachable: {e}") from e

        self._pubsub = pubsub
        self._listener = asyncio.create_task(self._listen(pubsub), name="fanout-listener")
        logger.info(f"Fan-out subscribed to channels: {', '.join(self._handlers)}")
        return True

    async def _listen(self, pubsub: "PubSub") -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.dispatch(message["channel"], message["data"])
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            # No resubscribe: is_listening turns False and the gateway
            # delivers to local sockets directly until restart.
            self._error_count += 1
            logger.error(f"Fan-out listener stopped, falling back to local delivery: {e}")
            with suppress(RedisError, OSError):
                await pubsub.aclose()
            if self._pubsub is pubsub:
                self._pubsub = None

    async def dispatch(self, channel: str, raw: str | bytes) -> None:
        """Decode a broker message and hand it to every handler of channel."""
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring undecodable payload on {channel}: {e}")
            return

        for handler in self._handlers.get(channel, []):
            try:
                await handler(payload)
            except Exception as e:
                logger.error(f"Fan-out handler for {channel} failed: {e}")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._pubsub is not None:
            with suppress(RedisError, OSError):
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            with suppress(RedisError, OSError):
                await self._redis.aclose()
        logger.info("Fan-out stopped")
