"""
Batch consumer: reads chat events from the Event Log, buffers them in
memory and flushes them to the Message Store in batches.

A flush is triggered when the buffer reaches batch_size or when the flush
timer fires, whichever comes first. The buffer is snapshotted and cleared
synchronously before any I/O, and flushes run one at a time, so the size
trigger and the timer can never write the same event twice.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_pipeline import metrics, storage
from chat_pipeline.errors import ChatPipelineError, ConnectivityError, ParseError, PersistenceError
from chat_pipeline.schemas import ChatEvent

logger = logging.getLogger(__name__)


class ConsumerState(str, Enum):
    STOPPED = "stopped"
    SUBSCRIBING = "subscribing"
    RUNNING = "running"
    DRAINING = "draining"


class Subscription(Protocol):
    def records(self) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


class EventSource(Protocol):
    async def subscribe(self, topic: str, from_beginning: bool = False) -> Subscription: ...


@dataclass
class FlushResult:
    """Outcome of one batch flush."""
    trigger: str
    size: int
    inserted: int
    duplicates: int
    failed: int
    diagnostic: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "size": self.size,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "diagnostic": self.diagnostic,
        }


class BatchConsumer:
    """
    Single-worker consumer of the chat topic.

    Lifecycle: STOPPED -> start_consuming -> SUBSCRIBING -> RUNNING
    -> stop_consuming -> DRAINING -> STOPPED. Calls made in the wrong
    state log a warning and return False.

    A failed read is retried with exponential backoff, resuming from the
    subscription's last positions. After max_read_retries consecutive
    failures the consumer drains, stops and calls on_failure with the
    reason.
    """

    MAX_BACKOFF = 10.0
    FAILURE_WINDOW = 30.0

    def __init__(
        self,
        event_log: Optional[EventSource],
        session_factory: Callable[[], Session],
        topic: str = "chat-messages",
        batch_size: int = 50,
        flush_interval: float = 2.0,
        drain_timeout: Optional[float] = 10.0,
        max_read_retries: int = 5,
        retry_backoff: float = 0.5,
        on_failure: Optional[Callable[[str], None]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        self._event_log = event_log
        self._session_factory = session_factory
        self._topic = topic
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._drain_timeout = drain_timeout
        self._max_read_retries = max_read_retries
        self._retry_backoff = retry_backoff
        self.on_failure = on_failure

        self._state = ConsumerState.STOPPED
        self._buffer: list[ChatEvent] = []
        self._flush_lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._consume_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._last_flush: Optional[FlushResult] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ConsumerState.RUNNING

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def last_flush(self) -> Optional[FlushResult]:
        return self._last_flush

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "isRunning": self.is_running,
            "bufferSize": self.buffer_size,
            "batchSize": self._batch_size,
            "flushIntervalMs": int(self._flush_interval * 1000),
            "lastFlush": self._last_flush.as_dict() if self._last_flush else None,
            "lastError": self._last_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_consuming(self) -> bool:
        """
        Subscribe to the chat topic from the latest offset and start the
        consume loop and the flush timer.

        Raises:
            ConnectivityError: no Event Log is configured, or subscribing failed
        """
        if self._state != ConsumerState.STOPPED:
            logger.warning(f"Batch consumer is already {self._state.value}; start ignored")
            return False
        if self._event_log is None:
            raise ConnectivityError("Batch consumer has no event log configured")

        self._state = ConsumerState.SUBSCRIBING
        try:
            self._subscription = await self._event_log.subscribe(self._topic, from_beginning=False)
        except Exception as e:
            self._state = ConsumerState.STOPPED
            self._last_error = str(e)
            logger.error(f"Failed to start batch consumer: {e}")
            raise

        self._last_error = None
        self._state = ConsumerState.RUNNING
        self._consume_task = asyncio.create_task(self._consume_loop(), name="chat-batch-consumer")
        self._timer_task = asyncio.create_task(self._flush_timer(), name="chat-batch-flush-timer")
        logger.info(
            f"Batch consumer started on {self._topic} "
            f"(batch_size={self._batch_size}, flush_interval={self._flush_interval}s)"
        )
        return True

    async def stop_consuming(self) -> bool:
        """
        Stop reading, drain the buffer into the Message Store and release
        the subscription. The final flush is bounded by drain_timeout.
        """
        if self._state != ConsumerState.RUNNING:
            logger.warning(f"Batch consumer is {self._state.value}; stop ignored")
            return False

        self._state = ConsumerState.DRAINING
        try:
            if self._subscription is not None:
                await self._subscription.close()
            for task in (self._consume_task, self._timer_task):
                if task is not None:
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task

            # A flush interrupted by the cancel keeps writing in its thread
            if self._inflight is not None and not self._inflight.done():
                await self._inflight

            try:
                await asyncio.wait_for(self.flush(trigger="drain"), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    f"Drain did not finish within {self._drain_timeout}s; "
                    f"{self.buffer_size} buffered events not persisted"
                )
        finally:
            self._subscription = None
            self._consume_task = None
            self._timer_task = None
            self._state = ConsumerState.STOPPED
        logger.info("Batch consumer stopped")
        return True

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    @staticmethod
    def parse_record(record: Any) -> ChatEvent:
        """
        Decode one log record into a ChatEvent.

        Raises:
            ParseError: the value is not valid JSON or not a complete event
        """
        offset = getattr(record, "offset", None)
        value = getattr(record, "value", record)
        try:
            return ChatEvent.model_validate_json(value)
        except (ValidationError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed chat event: {e}", offset=offset) from e

    async def handle_record(self, record: Any) -> None:
        """Parse a record into the buffer; flush when the batch is full."""
        try:
            event = self.parse_record(record)
        except ParseError as e:
            metrics.record_dropped_event("parse_error")
            logger.warning(f"Dropping malformed event at offset {e.offset}: {e}")
            return

        self._buffer.append(event)
        logger.debug(f"Buffered event {event.message_id} (buffer={len(self._buffer)})")
        if len(self._buffer) >= self._batch_size:
            await self.flush(trigger="size")

    def _backoff(self, failures: int) -> float:
        return min(self._retry_backoff * 2 ** (failures - 1), self.MAX_BACKOFF)

    async def _consume_loop(self) -> None:
        failures = 0
        last_failure = 0.0
        loop = asyncio.get_running_loop()
        while self._state == ConsumerState.RUNNING:
            try:
                # records() resumes from the subscription's last positions
                async for record in self._subscription.records():
                    failures = 0
                    await self.handle_record(record)
                return
            except asyncio.CancelledError:
                raise
            except ChatPipelineError as e:
                # Blocking reads that return nothing never reset the count
                if loop.time() - last_failure > self.FAILURE_WINDOW:
                    failures = 0
                failures += 1
                last_failure = loop.time()
                self._last_error = str(e)
                if failures > self._max_read_retries:
                    logger.error(f"Event log read failed {failures} times in a row; giving up: {e}")
                    await self._abandon(str(e))
                    return
                delay = self._backoff(failures)
                logger.warning(
                    f"Event log read failed ({failures}/{self._max_read_retries}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            except Exception as e:
                self._last_error = str(e)
                logger.exception(f"Event log consumption crashed: {e}")
                await self._abandon(str(e))
                return

    async def _abandon(self, reason: str) -> None:
        """Drain what is buffered, stop, and report the failure."""
        self._state = ConsumerState.DRAINING
        try:
            if self._timer_task is not None:
                self._timer_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._timer_task
            try:
                await asyncio.wait_for(self.flush(trigger="drain"), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Drain after read failure timed out; {self.buffer_size} events not persisted")
            if self._subscription is not None:
                await self._subscription.close()
        finally:
            self._subscription = None
            self._consume_task = None
            self._timer_task = None
            self._state = ConsumerState.STOPPED
        logger.error(f"Batch consumer stopped after read failure: {reason}")
        if self.on_failure is not None:
            self.on_failure(reason)

    async def _flush_timer(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush(trigger="timer")
            except Exception as e:
                logger.error(f"Timed flush failed: {e}")

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self, trigger: str = "manual") -> Optional[FlushResult]:
        """
        Write the buffered events to the Message Store.

        No-op when the buffer is empty. Failures inside the batch are
        logged and counted, never raised.
        """
        if not self._buffer:
            return None

        # Snapshot-and-clear before any await
        batch = self._buffer
        self._buffer = []

        try:
            await self._flush_lock.acquire()
        except asyncio.CancelledError:
            # Cancelled before writing: hand the batch back to the drain
            self._buffer[:0] = batch
            raise
        try:
            self._inflight = asyncio.ensure_future(asyncio.to_thread(self._persist, batch, trigger))
            return await asyncio.shield(self._inflight)
        finally:
            self._flush_lock.release()

    def _persist(self, batch: list[ChatEvent], trigger: str) -> FlushResult:
        documents = [event.to_document() for event in batch]
        logger.info(f"Flushing {len(documents)} buffered messages (trigger={trigger})")

        diagnostic = None
        try:
            with self._session_factory() as db:
                result = storage.bulk_insert_messages(db, documents)
        except SQLAlchemyError as e:
            logger.error(f"Batch write failed before any insert: {e}")
            result = storage.BulkWriteResult(
                failed=[(doc["message_id"], str(e)) for doc in documents]
            )

        if result.inserted == 0 and result.failed:
            logger.error(f"No messages were inserted from a batch of {len(documents)}")
            failed_id = result.failed[0][0]
            target = next((d for d in documents if d.get("message_id") == failed_id), documents[0])
            diagnostic = self._diagnose(target)
            if diagnostic is None:
                result.inserted += 1
                result.failed = result.failed[1:]

        metrics.record_flush(trigger, result.inserted, result.duplicates, result.failed_count)
        flush_result = FlushResult(
            trigger=trigger,
            size=len(documents),
            inserted=result.inserted,
            duplicates=result.duplicates,
            failed=result.failed_count,
            diagnostic=diagnostic,
        )
        self._last_flush = flush_result
        return flush_result

    def _diagnose(self, document: dict[str, Any]) -> Optional[str]:
        """
        Retry the first failed document on its own to surface the underlying error.

        Returns:
            None if the single insert succeeded, otherwise the error text
        """
        try:
            with self._session_factory() as db:
                storage.insert_message(db, document)
        except (PersistenceError, SQLAlchemyError) as e:
            logger.error(f"Individual save of {document.get('message_id')} failed: {e}")
            return str(e)
        logger.info(f"Individual save of {document.get('message_id')} succeeded")
        return None
