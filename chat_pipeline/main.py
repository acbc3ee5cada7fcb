import logging
from contextlib import asynccontextmanager
from typing import Annotated, Callable, Optional

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    status,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_pipeline.config import settings
from chat_pipeline.errors import InvalidStatusTransitionError, MessageNotFoundError
from chat_pipeline.logging_utils import RequestLoggingMiddleware, setup_logging
from chat_pipeline.metrics import get_metrics, get_metrics_content_type
from chat_pipeline.schemas import (
    ActionResponse,
    ChatMessageResponse,
    HealthResponse,
    MarkDeliveredRequest,
    Pagination,
    RoomMessagesResponse,
    RoomStats,
    RoomStatsResponse,
    StatusUpdateRequest,
    UnreadMessagesResponse,
)
from chat_pipeline.services import ChatServices, build_services
from chat_pipeline.storage import (
    check_db_health,
    get_db,
    get_messages_by_room,
    get_room_stats,
    get_unread_messages,
    init_db,
    mark_messages_as_delivered,
    update_message_status,
)


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(services_factory: Optional[Callable[[], ChatServices]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    services_factory builds the chat pipeline on startup; it defaults to
    wiring everything from settings.
    """
    factory = services_factory or (lambda: build_services(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create tables, start the pipeline (chat degrades, never fails startup)
        - Shutdown: drain the consumer and release broker connections
        """
        init_db()
        services = factory()
        app.state.services = services
        await services.start()
        yield
        await services.stop()

    app = FastAPI(
        title="Community Chat API",
        description="Chat message ingestion and delivery pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_routes(app)
    return app


def get_services(request: Request) -> ChatServices:
    return request.app.state.services


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(
        response: Response,
        services: ChatServices = Depends(get_services),
    ) -> HealthResponse:
        """
        Readiness probe - 200 when the Message Store is reachable.

        Chat ingestion and fan-out availability are reported in
        `components`; losing them degrades chat but keeps the app ready.
        """
        components = services.status()
        if not check_db_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied",
                components=components,
            )
        if not services.chat_available:
            return HealthResponse(
                status="degraded",
                reason="Event log unavailable, chat ingestion disabled",
                components=components,
            )
        return HealthResponse(status="ready", components=components)

    # =========================================================================
    # Message Routes
    # =========================================================================

    @app.get("/api/messages/room/{room_id}", response_model=RoomMessagesResponse)
    async def room_messages(
        room_id: str,
        limit: Annotated[int, Query(ge=1, le=200, description="Page size")] = 50,
        offset: Annotated[int, Query(ge=0, description="Newer messages to skip")] = 0,
        db: Session = Depends(get_db),
    ) -> RoomMessagesResponse:
        """Paginated room history in chronological order."""
        try:
            messages = get_messages_by_room(db, room_id, limit=limit, offset=offset)
        except SQLAlchemyError as e:
            logger.error(f"Error getting room messages: {e}")
            raise HTTPException(status_code=500, detail="Failed to get messages")

        return RoomMessagesResponse(
            data=[ChatMessageResponse.from_message(m) for m in messages],
            pagination=Pagination(limit=limit, offset=offset, count=len(messages)),
        )

    @app.get("/api/messages/unread/{user_id}", response_model=UnreadMessagesResponse)
    async def unread_messages(
        user_id: str,
        limit: Annotated[int, Query(ge=1, le=500)] = 100,
        db: Session = Depends(get_db),
    ) -> UnreadMessagesResponse:
        """Offline catch-up query outside the socket path."""
        try:
            messages = get_unread_messages(db, user_id, limit=limit)
        except SQLAlchemyError as e:
            logger.error(f"Error getting unread messages: {e}")
            raise HTTPException(status_code=500, detail="Failed to get unread messages")

        return UnreadMessagesResponse(
            data=[ChatMessageResponse.from_message(m) for m in messages],
            count=len(messages),
        )

    @app.post("/api/messages/delivered", response_model=ActionResponse)
    async def mark_delivered(
        body: MarkDeliveredRequest,
        db: Session = Depends(get_db),
    ) -> ActionResponse:
        """Bulk mark-delivered for one recipient."""
        try:
            updated = mark_messages_as_delivered(db, body.user_id, body.message_ids)
        except SQLAlchemyError as e:
            logger.error(f"Error marking messages as delivered: {e}")
            raise HTTPException(status_code=500, detail="Failed to mark messages as delivered")

        return ActionResponse(message=f"Marked {updated} messages as delivered")

    @app.put("/api/messages/{message_id}/status", response_model=ActionResponse)
    async def put_message_status(
        message_id: str,
        body: StatusUpdateRequest,
        db: Session = Depends(get_db),
    ) -> ActionResponse:
        try:
            update_message_status(db, message_id, body.status)
        except MessageNotFoundError:
            raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
        except InvalidStatusTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SQLAlchemyError as e:
            logger.error(f"Error updating message status: {e}")
            raise HTTPException(status_code=500, detail="Failed to update message status")

        return ActionResponse(message="Message status updated successfully")

    @app.get("/api/messages/stats/{room_id}", response_model=RoomStatsResponse)
    async def room_stats(room_id: str, db: Session = Depends(get_db)) -> RoomStatsResponse:
        """Total, delivered and read counts for a room."""
        try:
            stats = get_room_stats(db, room_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting message stats: {e}")
            raise HTTPException(status_code=500, detail="Failed to get message statistics")

        return RoomStatsResponse(data=RoomStats(**stats))

    # =========================================================================
    # Socket Route
    # =========================================================================

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket) -> None:
        services: ChatServices = websocket.app.state.services
        await services.gateway.serve(websocket)

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
