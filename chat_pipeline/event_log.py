"""
Partitioned, append-only Event Log backed by Redis Streams.

Each topic is split into a fixed number of partitions, one stream per
partition named "<topic>:<partition>". A record's key picks its partition,
so all records sharing a key (the roomId for chat events) land on the same
stream and are read back in append order.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from chat_pipeline.errors import ConnectivityError, PublishError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogRecord:
    """A single record read from or appended to the Event Log."""
    topic: str
    partition: int
    offset: str
    key: Optional[str]
    value: str


class RedisStreamSubscription:
    """
    Reader over every partition of one topic.

    Positions are tracked per partition so no entry appended between two
    blocking reads is skipped.
    """

    def __init__(
        self,
        redis: AsyncRedis,
        topic: str,
        positions: dict[str, str],
        partitions: dict[str, int],
        block_ms: int,
        count: int,
    ) -> None:
        self._redis = redis
        self._topic = topic
        self._positions = positions
        self._partitions = partitions
        self._block_ms = block_ms
        self._count = count
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def records(self) -> AsyncIterator[LogRecord]:
        """Yield records as they are appended until the subscription is closed."""
        while not self._closed:
            try:
                response = await self._redis.xread(
                    self._positions, count=self._count, block=self._block_ms
                )
            except RedisError as e:
                raise ConnectivityError(f"Event log read failed: {e}") from e

            if not response:
                continue
            items = response.items() if isinstance(response, dict) else response
            for stream, entries in items:
                for entry in entries:
                    entry_id, fields = entry[0], entry[1]
                    self._positions[stream] = entry_id
                    fields = fields or {}
                    yield LogRecord(
                        topic=self._topic,
                        partition=self._partitions.get(stream, -1),
                        offset=entry_id,
                        key=fields.get("key"),
                        value=fields.get("value", ""),
                    )

    async def close(self) -> None:
        self._closed = True


class RedisStreamEventLog:
    """Event Log client: publish keyed records and subscribe to topics."""

    def __init__(
        self,
        redis: AsyncRedis,
        partitions: int = 3,
        maxlen: Optional[int] = 100_000,
        block_ms: int = 1000,
        read_count: int = 100,
    ) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._redis = redis
        self._partitions = partitions
        self._maxlen = maxlen
        self._block_ms = block_ms
        self._read_count = read_count
        self._connected = False

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamEventLog":
        redis = AsyncRedis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(redis, **kwargs)

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def partitions(self) -> int:
        return self._partitions

    async def connect(self) -> None:
        """
        Verify the log is reachable.

        Raises:
            ConnectivityError: the Redis server cannot be reached
        """
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self._connected = False
            raise ConnectivityError(f"Event log unreachable: {e}") from e
        self._connected = True
        logger.info(f"Event log connected ({self._partitions} partitions per topic)")

    def partition_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % self._partitions

    @staticmethod
    def stream_key(topic: str, partition: int) -> str:
        return f"{topic}:{partition}"

    async def publish(self, topic: str, value: str, key: str) -> LogRecord:
        """
        Append a record to the partition chosen by key.

        Raises:
            PublishError: the append was not acknowledged
        """
        partition = self.partition_for(key)
        stream = self.stream_key(topic, partition)
        try:
            offset = await self._redis.xadd(
                stream,
                {"key": key, "value": value},
                maxlen=self._maxlen,
                approximate=True,
            )
        except (RedisError, OSError) as e:
            raise PublishError(f"Failed to publish to {stream}: {e}") from e
        logger.debug(f"Appended record {offset} to {stream}")
        return LogRecord(topic=topic, partition=partition, offset=offset, key=key, value=value)

    async def subscribe(self, topic: str, from_beginning: bool = False) -> RedisStreamSubscription:
        """
        Open a subscription on every partition of topic.

        With from_beginning=False only records appended after this call
        are delivered.

        Raises:
            ConnectivityError: partition positions could not be resolved
        """
        positions: dict[str, str] = {}
        partitions: dict[str, int] = {}
        try:
            for partition in range(self._partitions):
                stream = self.stream_key(topic, partition)
                partitions[stream] = partition
                if from_beginning:
                    positions[stream] = "0-0"
                    continue
                last = await self._redis.xrevrange(stream, count=1)
                positions[stream] = last[0][0] if last else "0-0"
        except (RedisError, OSError) as e:
            raise ConnectivityError(f"Failed to subscribe to {topic}: {e}") from e

        logger.info(f"Subscribed to event log topic: {topic}")
        return RedisStreamSubscription(
            self._redis,
            topic,
            positions,
            partitions,
            block_ms=self._block_ms,
            count=self._read_count,
        )

    async def close(self) -> None:
        self._connected = False
        await self._redis.aclose()
        logger.info("Event log connection closed")
