"""
Pytest configuration and shared fixtures.

Points the Message Store at a temporary SQLite file and clears the cached
settings before any application import, so every test runs against a
throwaway database with the Event Log and broker unset.
"""

import asyncio
import os
import tempfile
import time
from datetime import datetime, timedelta, timezone

_TEST_DIR = tempfile.mkdtemp(prefix="chat-pipeline-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("EVENT_LOG_URL", None)
os.environ.pop("REDIS_URL", None)

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chat_pipeline.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from chat_pipeline import models  # noqa: F401
from chat_pipeline.consumer import BatchConsumer
from chat_pipeline.errors import ConnectivityError, PublishError
from chat_pipeline.event_log import LogRecord
from chat_pipeline.fanout import RealtimeFanout
from chat_pipeline.gateway import ConnectionGateway
from chat_pipeline.main import create_app
from chat_pipeline.producer import IngestionProducer
from chat_pipeline.schemas import utc_timestamp
from chat_pipeline.services import ChatServices
from chat_pipeline.storage import Base, SessionLocal, engine

CHAT_TOPIC = "chat-messages"


# =============================================================================
# In-memory Event Log
# =============================================================================

class InMemorySubscription:
    """
    Receives records published after it was opened, in publish order.

    The first read_failures calls to records() fail; queued records are
    kept, like a stream read resumed from its last position.
    """

    _CLOSED = object()

    def __init__(self, topic: str, read_failures: int = 0):
        self.topic = topic
        self.read_failures = read_failures
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, record: LogRecord) -> None:
        self._queue.put_nowait(record)

    async def records(self):
        if self.read_failures > 0:
            self.read_failures -= 1
            raise ConnectivityError("Event log read failed: Timeout reading from socket")
        while True:
            record = await self._queue.get()
            if record is self._CLOSED:
                return
            yield record

    async def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)


class InMemoryEventLog:
    """Stand-in for RedisStreamEventLog with switchable failures."""

    def __init__(self, fail_connect: bool = False, fail_publish: bool = False, read_failures: int = 0):
        self.fail_connect = fail_connect
        self.fail_publish = fail_publish
        self.read_failures = read_failures
        self.published: list[LogRecord] = []
        self.subscriptions: list[InMemorySubscription] = []
        self.closed = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectivityError("Event log unreachable: connection refused")

    async def publish(self, topic: str, value: str, key: str) -> LogRecord:
        if self.fail_publish:
            raise PublishError("Event log rejected the publish")
        record = LogRecord(topic=topic, partition=0, offset=f"{len(self.published)}-0", key=key, value=value)
        self.published.append(record)
        for subscription in self.subscriptions:
            if subscription.topic == topic:
                subscription.deliver(record)
        return record

    async def subscribe(self, topic: str, from_beginning: bool = False) -> InMemorySubscription:
        if self.fail_connect:
            raise ConnectivityError(f"Failed to subscribe to {topic}")
        subscription = InMemorySubscription(topic, read_failures=self.read_failures)
        self.subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        self.closed = True


def make_services(
    event_log=None,
    fanout=None,
    batch_size: int = 1,
    flush_interval: float = 0.05,
    max_read_retries: int = 5,
    retry_backoff: float = 0.01,
) -> ChatServices:
    """Wire ChatServices the way build_services does, around test doubles."""
    producer = IngestionProducer(event_log, topic=CHAT_TOPIC)
    consumer = BatchConsumer(
        event_log,
        SessionLocal,
        topic=CHAT_TOPIC,
        batch_size=batch_size,
        flush_interval=flush_interval,
        drain_timeout=5.0,
        max_read_retries=max_read_retries,
        retry_backoff=retry_backoff,
    )
    fanout = fanout or RealtimeFanout(None)
    gateway = ConnectionGateway(producer, fanout, SessionLocal, catchup_limit=100)
    return ChatServices(
        event_log=event_log,
        producer=producer,
        consumer=consumer,
        fanout=fanout,
        gateway=gateway,
        session_factory=SessionLocal,
    )


def make_document(
    message_id: str,
    room_id: str = "r1",
    sender_id: str = "u1",
    content: str = "hello",
    recipients=None,
    status: str = "pending",
    created_at: str = None,
    requires_delivery: bool = True,
) -> dict:
    """A flattened message document as produced by ChatEvent.to_document."""
    created_at = created_at or utc_timestamp()
    return {
        "message_id": message_id,
        "room_id": room_id,
        "sender_id": sender_id,
        "content": content,
        "message_type": "text",
        "status": status,
        "recipients": list(recipients or []),
        "requires_delivery": requires_delivery,
        "priority": "normal",
        "created_at": created_at,
        "updated_at": created_at,
    }


def seconds_ago(seconds: float) -> str:
    return utc_timestamp(datetime.now(timezone.utc) - timedelta(seconds=seconds))


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    """Poll predicate from the test thread until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db_tables():
    """Create tables for a test and drop them afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def event_log():
    return InMemoryEventLog()


@pytest.fixture
def services(event_log):
    return make_services(event_log)


@pytest.fixture
def client(db_tables, services):
    """Test client running the full lifespan around the in-memory pipeline."""
    app = create_app(services_factory=lambda: services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def degraded_client(db_tables):
    """Test client whose Event Log is unreachable at startup."""
    degraded = make_services(InMemoryEventLog(fail_connect=True))
    app = create_app(services_factory=lambda: degraded)
    with TestClient(app) as test_client:
        yield test_client
