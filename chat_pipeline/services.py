"""
Composition root for the chat pipeline.

build_services() wires the Event Log, producer, batch consumer, fan-out
and gateway from settings. ChatServices.start() brings them up, treating
chat ingestion and real-time fan-out as optional: if the Event Log or the
broker is unreachable the process keeps serving everything else.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_pipeline import storage
from chat_pipeline.config import Settings
from chat_pipeline.consumer import BatchConsumer
from chat_pipeline.errors import ChatPipelineError
from chat_pipeline.event_log import RedisStreamEventLog
from chat_pipeline.fanout import RealtimeFanout
from chat_pipeline.gateway import ConnectionGateway
from chat_pipeline.producer import IngestionProducer

logger = logging.getLogger(__name__)


@dataclass
class ChatServices:
    """Process-wide pipeline services with an explicit start/stop lifecycle."""
    event_log: Optional[Any]
    producer: IngestionProducer
    consumer: BatchConsumer
    fanout: RealtimeFanout
    gateway: ConnectionGateway
    session_factory: Callable[[], Session]
    retention_days: int = 90
    retention_interval: float = 3600.0
    chat_available: bool = False
    _retention_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        await self._start_ingestion()
        await self._start_fanout()
        self._retention_task = asyncio.create_task(self._retention_loop(), name="retention-sweep")

    async def _start_ingestion(self) -> None:
        if self.event_log is None:
            logger.warning("EVENT_LOG_URL not configured. Chat ingestion is unavailable.")
            self.producer.detach()
            return
        self.consumer.on_failure = self._ingestion_lost
        try:
            await self.event_log.connect()
            await self.consumer.start_consuming()
        except Exception as e:
            logger.warning(f"Event log unavailable, continuing without chat ingestion: {e}")
            self.producer.detach()
            self.chat_available = False
            return
        self.chat_available = True
        logger.info("Chat ingestion pipeline started")

    def _ingestion_lost(self, reason: str) -> None:
        logger.error(f"Chat ingestion lost, switching to degraded mode: {reason}")
        self.chat_available = False
        self.producer.detach()

    async def _start_fanout(self) -> None:
        self.gateway.attach_fanout()
        try:
            await self.fanout.start()
        except ChatPipelineError as e:
            logger.warning(f"Pub/sub broker unavailable: {e}")
            await self.fanout.disable()

    async def stop(self) -> None:
        if self._retention_task is not None:
            self._retention_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._retention_task
            self._retention_task = None

        if self.consumer.is_running:
            await self.consumer.stop_consuming()
        await self.fanout.stop()
        if self.event_log is not None:
            try:
                await self.event_log.close()
            except Exception as e:
                logger.warning(f"Event log close failed: {e}")
        logger.info("Chat services stopped")

    def status(self) -> dict[str, Any]:
        return {
            "chatIngestion": "available" if self.chat_available else "degraded",
            "consumer": self.consumer.get_status(),
            "fanout": self.fanout.get_stats(),
            "connections": len(self.gateway.connections),
        }

    def purge_expired(self) -> int:
        with self.session_factory() as db:
            return storage.purge_expired_messages(db, self.retention_days)

    async def _retention_loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.purge_expired)
            except SQLAlchemyError as e:
                logger.error(f"Retention sweep failed: {e}")
            await asyncio.sleep(self.retention_interval)


def build_services(
    settings: Settings,
    session_factory: Callable[[], Session] = storage.SessionLocal,
) -> ChatServices:
    event_log = None
    if settings.EVENT_LOG_URL:
        event_log = RedisStreamEventLog.from_url(
            settings.EVENT_LOG_URL,
            partitions=settings.EVENT_LOG_PARTITIONS,
            maxlen=settings.EVENT_LOG_MAXLEN,
            block_ms=settings.EVENT_LOG_BLOCK_MS,
        )

    producer = IngestionProducer(event_log, topic=settings.TOPIC_CHAT_MESSAGES)
    consumer = BatchConsumer(
        event_log,
        session_factory,
        topic=settings.TOPIC_CHAT_MESSAGES,
        batch_size=settings.CONSUMER_BATCH_SIZE,
        flush_interval=settings.CONSUMER_FLUSH_INTERVAL_MS / 1000,
        drain_timeout=settings.CONSUMER_DRAIN_TIMEOUT_SECONDS,
        max_read_retries=settings.CONSUMER_READ_RETRIES,
        retry_backoff=settings.CONSUMER_RETRY_BACKOFF_MS / 1000,
    )
    fanout = RealtimeFanout.from_url(settings.REDIS_URL)
    gateway = ConnectionGateway(
        producer,
        fanout,
        session_factory,
        catchup_limit=settings.CATCHUP_LIMIT,
    )
    return ChatServices(
        event_log=event_log,
        producer=producer,
        consumer=consumer,
        fanout=fanout,
        gateway=gateway,
        session_factory=session_factory,
        retention_days=settings.MESSAGE_RETENTION_DAYS,
        retention_interval=settings.RETENTION_SWEEP_INTERVAL_SECONDS,
    )
