"""
Tests for the Redis pub/sub fan-out.

Tests cover:
- Disabled mode (no broker): publish/subscribe are no-ops
- Publish success and best-effort failure
- Handler dispatch and handler isolation
- Broker unreachable at start
- Listener loss: the subscription is released and listening stops
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_pipeline.errors import ConnectivityError
from chat_pipeline.fanout import CHAT_CHANNEL, NOTIFICATION_CHANNEL, RealtimeFanout


class TestDisabled:

    def test_from_url_without_url(self):
        assert RealtimeFanout.from_url(None).is_enabled is False

    @pytest.mark.asyncio
    async def test_publish_is_noop(self):
        fanout = RealtimeFanout(None)
        assert await fanout.publish(CHAT_CHANNEL, {"id": "m1"}) == 0

    @pytest.mark.asyncio
    async def test_start_is_noop(self):
        fanout = RealtimeFanout(None)
        fanout.subscribe(CHAT_CHANNEL, AsyncMock())
        assert await fanout.start() is False
        assert fanout.is_listening is False


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_serialises_payload(self):
        redis = AsyncMock()
        redis.publish.return_value = 2
        fanout = RealtimeFanout(redis)

        receivers = await fanout.publish(CHAT_CHANNEL, {"id": "m1", "message": "hi"})

        assert receivers == 2
        channel, raw = redis.publish.await_args.args
        assert channel == CHAT_CHANNEL
        assert json.loads(raw) == {"id": "m1", "message": "hi"}
        assert fanout.get_stats()["publish_count"] == 1

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_raise(self):
        redis = AsyncMock()
        redis.publish.side_effect = RedisConnectionError("broker gone")
        fanout = RealtimeFanout(redis)

        assert await fanout.publish(NOTIFICATION_CHANNEL, {"title": "x"}) == 0
        assert fanout.get_stats()["error_count"] == 1

    @pytest.mark.asyncio
    async def test_disable_closes_client(self):
        redis = AsyncMock()
        fanout = RealtimeFanout(redis)

        await fanout.disable()

        redis.aclose.assert_awaited_once()
        assert fanout.is_enabled is False


class TestDispatch:

    @pytest.mark.asyncio
    async def test_handlers_receive_decoded_payload(self):
        fanout = RealtimeFanout(None)
        first, second = AsyncMock(), AsyncMock()
        fanout.subscribe(CHAT_CHANNEL, first)
        fanout.subscribe(CHAT_CHANNEL, second)

        await fanout.dispatch(CHAT_CHANNEL, json.dumps({"id": "m1"}))

        first.assert_awaited_once_with({"id": "m1"})
        second.assert_awaited_once_with({"id": "m1"})

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        fanout = RealtimeFanout(None)
        healthy = AsyncMock()
        fanout.subscribe(CHAT_CHANNEL, AsyncMock(side_effect=RuntimeError("boom")))
        fanout.subscribe(CHAT_CHANNEL, healthy)

        await fanout.dispatch(CHAT_CHANNEL, '{"id": "m1"}')

        healthy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_ignored(self):
        fanout = RealtimeFanout(None)
        handler = AsyncMock()
        fanout.subscribe(CHAT_CHANNEL, handler)

        await fanout.dispatch(CHAT_CHANNEL, "not-json")

        handler.assert_not_awaited()


class TestStart:

    @pytest.mark.asyncio
    async def test_unreachable_broker(self):
        pubsub = AsyncMock()
        pubsub.subscribe.side_effect = RedisConnectionError("refused")
        redis = AsyncMock()
        redis.pubsub = MagicMock(return_value=pubsub)
        fanout = RealtimeFanout(redis)
        fanout.subscribe(CHAT_CHANNEL, AsyncMock())

        with pytest.raises(ConnectivityError):
            await fanout.start()

        pubsub.aclose.assert_awaited_once()
        assert fanout.is_listening is False

    @pytest.mark.asyncio
    async def test_subscribes_all_registered_channels(self):
        pubsub = AsyncMock()
        pubsub.listen = MagicMock(return_value=_subscribe_confirmations())
        redis = AsyncMock()
        redis.pubsub = MagicMock(return_value=pubsub)
        fanout = RealtimeFanout(redis)
        fanout.subscribe(CHAT_CHANNEL, AsyncMock())
        fanout.subscribe(NOTIFICATION_CHANNEL, AsyncMock())

        assert await fanout.start() is True

        pubsub.subscribe.assert_awaited_once_with(CHAT_CHANNEL, NOTIFICATION_CHANNEL)
        await fanout.stop()

    @pytest.mark.asyncio
    async def test_listener_failure_stops_listening(self):
        pubsub = AsyncMock()
        pubsub.listen = MagicMock(return_value=_dropped_connection())
        redis = AsyncMock()
        redis.pubsub = MagicMock(return_value=pubsub)
        fanout = RealtimeFanout(redis)
        fanout.subscribe(CHAT_CHANNEL, AsyncMock())
        await fanout.start()

        for _ in range(10):
            if not fanout.is_listening:
                break
            await asyncio.sleep(0)

        assert fanout.is_listening is False
        assert fanout.is_enabled is True
        assert fanout.get_stats()["error_count"] == 1
        pubsub.aclose.assert_awaited_once()


async def _subscribe_confirmations():
    for message in ({"type": "subscribe", "channel": CHAT_CHANNEL, "data": 1},):
        yield message


async def _dropped_connection():
    yield {"type": "subscribe", "channel": CHAT_CHANNEL, "data": 1}
    raise RedisConnectionError("Connection closed by server.")
