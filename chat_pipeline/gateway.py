"""
Connection gateway: per-client WebSocket connections, room membership,
chat/notification events and offline catch-up.

Frames on the socket are JSON objects {"event": <name>, "data": <payload>}.
Each inbound event runs through a supervisor that turns any handler
failure into a logged HandlerResult, so one bad event never closes the
connection or affects other events on it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chat_pipeline import metrics, storage
from chat_pipeline.errors import ChatPipelineError
from chat_pipeline.fanout import CHAT_CHANNEL, NOTIFICATION_CHANNEL, RealtimeFanout
from chat_pipeline.logging_utils import bind_connection
from chat_pipeline.producer import IngestionProducer
from chat_pipeline.schemas import (
    ChatEvent,
    MessageStatus,
    RoomEvent,
    SocketFrame,
    StatusUpdateEvent,
    UserOnlineEvent,
    utc_timestamp,
)

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    IN_ROOM = "in_room"
    CLOSED = "closed"


@dataclass
class HandlerResult:
    """Outcome of one socket event handler."""
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "HandlerResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "HandlerResult":
        return cls(ok=False, error=error)


class Connection:
    """One client socket and the state the gateway keeps for it."""

    def __init__(self, websocket: Any, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user_id: Optional[str] = None
        self.rooms: Set[str] = set()
        self.online = False
        self.closed = False

    @property
    def state(self) -> ConnectionState:
        if self.closed:
            return ConnectionState.CLOSED
        if self.rooms:
            return ConnectionState.IN_ROOM
        return ConnectionState.CONNECTED

    async def emit(self, event: str, data: Any) -> bool:
        """Send one frame. Returns False if the socket is gone."""
        if self.closed:
            return False
        try:
            await self.websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.warning(f"Send of {event} to connection {self.id} failed: {e}")
            return False


def chat_receive_payload(event: ChatEvent, status: str) -> Dict[str, Any]:
    return {
        "id": event.message_id,
        "message": event.content,
        "senderId": event.sender_id,
        "roomId": event.room_id,
        "timestamp": event.timestamp,
        "status": status,
    }


Handler = Callable[[Connection, Any], Awaitable[HandlerResult]]


class ConnectionGateway:
    """Owns the local connections and the socket event handlers."""

    def __init__(
        self,
        producer: IngestionProducer,
        fanout: RealtimeFanout,
        session_factory: Callable[[], Session],
        catchup_limit: int = 100,
    ) -> None:
        self._producer = producer
        self._fanout = fanout
        self._session_factory = session_factory
        self._catchup_limit = catchup_limit
        self._connections: Dict[str, Connection] = {}
        self._handlers: Dict[str, Handler] = {
            "chat:send": self.handle_chat_send,
            "message:status": self.handle_message_status,
            "room:join": self.handle_room_join,
            "room:leave": self.handle_room_leave,
            "user:online": self.handle_user_online,
            "notification:send": self.handle_notification_send,
        }

    def attach_fanout(self) -> None:
        """Re-broadcast both fan-out channels to local sockets."""
        self._fanout.subscribe(CHAT_CHANNEL, self._on_chat_broadcast)
        self._fanout.subscribe(NOTIFICATION_CHANNEL, self._on_notification_broadcast)

    # ------------------------------------------------------------------
    # Connection registry
    # ------------------------------------------------------------------

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def register(self, websocket: Any) -> Connection:
        conn = Connection(websocket)
        self._connections[conn.id] = conn
        metrics.socket_connections.inc()
        logger.info(f"Socket connected: {conn.id}. Total connections: {len(self._connections)}")
        return conn

    async def unregister(self, conn: Connection) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        conn.online = False
        conn.closed = True
        conn.rooms.clear()
        metrics.socket_connections.dec()
        logger.info(f"Socket disconnected: {conn.id}. Total connections: {len(self._connections)}")

    def is_user_online(self, user_id: str) -> bool:
        return any(c.online and c.user_id == user_id for c in self._connections.values())

    async def broadcast_local(
        self,
        event: str,
        data: Any,
        room_id: Optional[str] = None,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Emit to local connections, optionally only members of room_id."""
        targets = [
            c for c in self._connections.values()
            if c is not exclude and (room_id is None or room_id in c.rooms)
        ]
        sent = await asyncio.gather(*(c.emit(event, data) for c in targets))
        return sum(1 for ok in sent if ok)

    async def _fan_out(self, channel: str, event: str, data: Any) -> None:
        """
        Publish to the broker. Local sockets are served directly when the
        publish reached nobody or this instance is no longer subscribed.
        """
        receivers = await self._fanout.publish(channel, data)
        if receivers == 0 or not self._fanout.is_listening:
            if self._fanout.is_enabled:
                logger.warning(f"Fan-out on {channel} unavailable, delivering {event} to local sockets")
            await self.broadcast_local(event, data)

    # ------------------------------------------------------------------
    # Socket loop and supervisor
    # ------------------------------------------------------------------

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it disconnects."""
        await websocket.accept()
        conn = self.register(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                frame = self.parse_frame(raw, conn)
                if frame is not None:
                    await self.dispatch(conn, frame.event, frame.data)
        except WebSocketDisconnect:
            pass
        finally:
            await self.unregister(conn)

    @staticmethod
    def parse_frame(raw: str, conn: Optional[Connection] = None) -> Optional[SocketFrame]:
        try:
            return SocketFrame.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed frame on {conn.id if conn else '?'}: {e}")
            return None

    async def dispatch(self, conn: Connection, event: str, data: Any) -> HandlerResult:
        """Run the handler for event, containing any failure."""
        with bind_connection(conn.id):
            handler = self._handlers.get(event)
            if handler is None:
                logger.warning(f"Unknown socket event: {event}")
                return HandlerResult.failure(f"unknown event '{event}'")

            try:
                result = await handler(conn, data)
            except Exception as e:
                logger.exception(f"Handler for {event} raised")
                result = HandlerResult.failure(str(e))

            metrics.record_socket_event(event, result.ok)
            if not result.ok:
                logger.error(f"Socket event {event} failed: {result.error}")
            return result

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def handle_chat_send(self, conn: Connection, data: Any) -> HandlerResult:
        logger.info(f"Received chat message on {conn.id}")
        try:
            event = await self._producer.submit(data if isinstance(data, dict) else {}, connection_id=conn.id)
        except Exception as e:
            # The sender always hears about a failed send
            await conn.emit("message:error", {"message": "Failed to send message", "error": str(e)})
            return HandlerResult.failure(str(e))

        payload = chat_receive_payload(event, status=MessageStatus.SENT.value)
        await self._fan_out(CHAT_CHANNEL, "chat:receive", payload)

        await conn.emit("message:delivered", {
            "id": event.message_id,
            "message": event.content,
            "timestamp": event.timestamp,
            "status": MessageStatus.SENT.value,
        })
        return HandlerResult.success()

    async def handle_message_status(self, conn: Connection, data: Any) -> HandlerResult:
        update = StatusUpdateEvent.model_validate(data)
        try:
            await asyncio.to_thread(self._update_status, update.message_id, update.status)
        except ChatPipelineError as e:
            return HandlerResult.failure(str(e))
        return HandlerResult.success()

    async def handle_room_join(self, conn: Connection, data: Any) -> HandlerResult:
        room = RoomEvent.model_validate(data)
        conn.rooms.add(room.room_id)
        if room.user_id:
            conn.user_id = room.user_id
        logger.info(f"User {room.user_id} joined room {room.room_id}")
        await self.broadcast_local(
            "user:joined",
            {"userId": room.user_id, "roomId": room.room_id, "timestamp": utc_timestamp()},
            room_id=room.room_id,
            exclude=conn,
        )
        return HandlerResult.success()

    async def handle_room_leave(self, conn: Connection, data: Any) -> HandlerResult:
        room = RoomEvent.model_validate(data)
        conn.rooms.discard(room.room_id)
        logger.info(f"User {room.user_id} left room {room.room_id}")
        await self.broadcast_local(
            "user:left",
            {"userId": room.user_id, "roomId": room.room_id, "timestamp": utc_timestamp()},
            room_id=room.room_id,
            exclude=conn,
        )
        return HandlerResult.success()

    async def handle_user_online(self, conn: Connection, data: Any) -> HandlerResult:
        presence = UserOnlineEvent.model_validate(data)
        conn.user_id = presence.user_id
        conn.online = True
        logger.info(f"User {presence.user_id} is online")

        pending = await asyncio.to_thread(self._load_unread, presence.user_id)
        if not pending:
            return HandlerResult.success()

        logger.info(f"Sending {len(pending)} unread messages to user {presence.user_id}")
        pushed: List[str] = []
        for payload in pending:
            if not await conn.emit("chat:receive", payload):
                break
            pushed.append(payload["id"])

        await asyncio.to_thread(self._mark_delivered, presence.user_id, pushed)
        if len(pushed) < len(pending):
            return HandlerResult.failure(
                f"socket closed after {len(pushed)} of {len(pending)} catch-up messages"
            )
        return HandlerResult.success()

    async def handle_notification_send(self, conn: Connection, data: Any) -> HandlerResult:
        logger.info(f"Received notification on {conn.id}")
        await self._fan_out(NOTIFICATION_CHANNEL, "notification:receive", data)
        return HandlerResult.success()

    # ------------------------------------------------------------------
    # Fan-out callbacks
    # ------------------------------------------------------------------

    async def _on_chat_broadcast(self, payload: Any) -> None:
        await self.broadcast_local("chat:receive", payload)

    async def _on_notification_broadcast(self, payload: Any) -> None:
        await self.broadcast_local("notification:receive", payload)

    # ------------------------------------------------------------------
    # Message Store access (run in worker threads)
    # ------------------------------------------------------------------

    def _update_status(self, message_id: str, status: MessageStatus) -> None:
        with self._session_factory() as db:
            storage.update_message_status(db, message_id, status)

    def _load_unread(self, user_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            messages = storage.get_unread_messages(db, user_id, limit=self._catchup_limit)
            return [
                {
                    "id": m.message_id,
                    "message": m.content,
                    "senderId": m.sender_id,
                    "roomId": m.room_id,
                    "timestamp": m.created_at,
                    "status": MessageStatus.DELIVERED.value,
                }
                for m in messages
            ]

    def _mark_delivered(self, user_id: str, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        with self._session_factory() as db:
            return storage.mark_messages_as_delivered(db, user_id, ids)
