import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Generator, Iterable, Optional

from sqlalchemy import case, create_engine, delete, func, inspect, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chat_pipeline.config import settings
from chat_pipeline.errors import (
    InvalidStatusTransitionError,
    MessageNotFoundError,
    PersistenceError,
)
from chat_pipeline.schemas import STATUS_RANK, UNDELIVERED_STATUSES, MessageStatus, utc_timestamp

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # check_same_thread=False lets the batch consumer flush from a worker thread
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chat_pipeline import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the messages table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            if not inspect(db.get_bind()).has_table("messages"):
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Batch Writes
# =============================================================================

@dataclass
class BulkWriteResult:
    """Outcome of an unordered bulk insert."""
    inserted: int = 0
    duplicates: int = 0
    failed: list[tuple[Optional[str], str]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.inserted + self.duplicates + len(self.failed)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def _build_message(document: dict[str, Any]):
    from chat_pipeline.models import Message, MessageRecipient

    return Message(
        message_id=document["message_id"],
        room_id=document["room_id"],
        sender_id=document["sender_id"],
        content=document["content"],
        message_type=document.get("message_type", "text"),
        status=document.get("status", "pending"),
        requires_delivery=document.get("requires_delivery", True),
        priority=document.get("priority", "normal"),
        created_at=document["created_at"],
        updated_at=document.get("updated_at") or document["created_at"],
        recipient_rows=[
            MessageRecipient(user_id=user_id)
            for user_id in dict.fromkeys(document.get("recipients") or [])
        ],
    )


def _message_exists(db: Session, message_id: Optional[str]) -> bool:
    from chat_pipeline.models import Message

    if not message_id:
        return False
    return db.scalar(select(Message.seq).where(Message.message_id == message_id)) is not None


def bulk_insert_messages(db: Session, documents: list[dict[str, Any]]) -> BulkWriteResult:
    """
    Insert a batch of message documents, unordered and keyed by message_id.

    Every document is written in its own transaction, so one bad document
    never rejects the rest of the batch. Documents whose message_id is
    already stored (or appears earlier in the batch) are counted as
    duplicates and skipped.

    Args:
        db: Database session
        documents: Flattened message documents (see ChatEvent.to_document)

    Returns:
        BulkWriteResult with inserted/duplicate counts and per-document failures
    """
    from chat_pipeline.models import Message

    result = BulkWriteResult()
    if not documents:
        return result

    candidate_ids = [doc.get("message_id") for doc in documents if doc.get("message_id")]
    seen = set(
        db.scalars(select(Message.message_id).where(Message.message_id.in_(candidate_ids)))
    ) if candidate_ids else set()
    logger.debug(f"Bulk insert: {len(documents)} documents, {len(seen)} already stored")

    for document in documents:
        message_id = document.get("message_id")
        if message_id in seen:
            result.duplicates += 1
            continue
        try:
            db.add(_build_message(document))
            db.commit()
        except IntegrityError as e:
            db.rollback()
            # A concurrent writer may have stored it between the lookup and the insert
            if _message_exists(db, message_id):
                result.duplicates += 1
                seen.add(message_id)
            else:
                result.failed.append((message_id, str(e.orig)))
        except (KeyError, TypeError, ValueError, SQLAlchemyError) as e:
            db.rollback()
            result.failed.append((message_id, f"{type(e).__name__}: {e}"))
        else:
            result.inserted += 1
            seen.add(message_id)

    logger.info(
        f"Bulk insert finished: inserted={result.inserted}, "
        f"duplicates={result.duplicates}, failed={result.failed_count}"
    )
    for message_id, error in result.failed:
        logger.error(f"Failed to persist message {message_id}: {error}")
    return result


def insert_message(db: Session, document: dict[str, Any]):
    """
    Insert a single message document.

    Raises:
        PersistenceError: carrying the underlying validation or connectivity error
    """
    try:
        message = _build_message(document)
        db.add(message)
        db.commit()
        return message
    except (KeyError, TypeError, ValueError, SQLAlchemyError) as e:
        db.rollback()
        raise PersistenceError(f"{type(e).__name__}: {e}") from e


# =============================================================================
# Message Queries
# =============================================================================

def get_message_by_id(db: Session, message_id: str):
    from chat_pipeline.models import Message

    return db.scalar(select(Message).where(Message.message_id == message_id))


def get_messages_by_room(db: Session, room_id: str, limit: int = 50, offset: int = 0) -> list:
    """
    Retrieve a page of room history.

    The page holds the newest `limit` messages after skipping `offset`
    newer ones, returned in chronological order.
    """
    from chat_pipeline.models import Message

    logger.info(f"Querying room history: room={room_id}, limit={limit}, offset={offset}")
    rows = db.scalars(
        select(Message)
        .where(Message.room_id == room_id)
        .order_by(Message.created_at.desc(), Message.seq.desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(reversed(rows))


def get_unread_messages(db: Session, user_id: str, limit: int = 100) -> list:
    """
    Offline catch-up query: messages addressed to user_id that still
    require delivery, oldest first.
    """
    from chat_pipeline.models import Message, MessageRecipient

    rows = db.scalars(
        select(Message)
        .join(MessageRecipient, MessageRecipient.message_seq == Message.seq)
        .where(
            MessageRecipient.user_id == user_id,
            Message.status.in_(UNDELIVERED_STATUSES),
            Message.requires_delivery.is_(True),
        )
        .order_by(Message.created_at.asc(), Message.seq.asc())
        .limit(limit)
    ).all()
    logger.info(f"Unread messages for {user_id}: {len(rows)}")
    return list(rows)


def _check_transition(message_id: str, current: str, requested: MessageStatus) -> None:
    current_status = MessageStatus(current)
    if current_status == requested:
        return
    if current_status == MessageStatus.FAILED:
        raise InvalidStatusTransitionError(message_id, current, requested.value)
    if requested == MessageStatus.FAILED:
        if current_status not in (MessageStatus.PENDING, MessageStatus.SENT):
            raise InvalidStatusTransitionError(message_id, current, requested.value)
        return
    if STATUS_RANK[requested] < STATUS_RANK[current_status]:
        raise InvalidStatusTransitionError(message_id, current, requested.value)


def update_message_status(db: Session, message_id: str, status: MessageStatus | str):
    """
    Set the status of one message.

    Raises:
        MessageNotFoundError: no message with this id
        InvalidStatusTransitionError: the move would regress the lifecycle
    """
    requested = MessageStatus(status)
    message = get_message_by_id(db, message_id)
    if message is None:
        raise MessageNotFoundError(message_id)

    _check_transition(message_id, message.status, requested)
    if message.status != requested.value:
        message.status = requested.value
        message.updated_at = utc_timestamp()
        db.commit()
        logger.info(f"Updated message status: {message_id} -> {requested.value}")
    return message


def mark_messages_as_delivered(db: Session, user_id: str, message_ids: Iterable[str]) -> int:
    """
    Bulk-mark messages delivered for a recipient.

    Only messages that list user_id as a recipient and are still pending
    or sent are touched; read/failed messages keep their status.

    Returns:
        Number of messages updated
    """
    from chat_pipeline.models import Message, MessageRecipient

    ids = list(dict.fromkeys(message_ids))
    if not ids:
        return 0

    statement = (
        update(Message)
        .where(
            Message.message_id.in_(ids),
            Message.status.in_(UNDELIVERED_STATUSES),
            Message.seq.in_(
                select(MessageRecipient.message_seq).where(MessageRecipient.user_id == user_id)
            ),
        )
        .values(status=MessageStatus.DELIVERED.value, updated_at=utc_timestamp())
        .execution_options(synchronize_session=False)
    )
    updated = db.execute(statement).rowcount or 0
    db.commit()
    logger.info(f"Marked {updated} of {len(ids)} messages as delivered for user: {user_id}")
    return updated


def get_room_stats(db: Session, room_id: str) -> dict:
    """Aggregate message counts for a room: total, delivered and read."""
    from chat_pipeline.models import Message

    row = db.execute(
        select(
            func.count(Message.seq),
            func.sum(case((Message.status == MessageStatus.DELIVERED.value, 1), else_=0)),
            func.sum(case((Message.status == MessageStatus.READ.value, 1), else_=0)),
        ).where(Message.room_id == room_id)
    ).one()
    return {
        "total_messages": row[0] or 0,
        "total_delivered": row[1] or 0,
        "total_read": row[2] or 0,
    }


def purge_expired_messages(
    db: Session,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete messages whose created_at is older than the retention window.

    Returns:
        Number of messages deleted
    """
    from chat_pipeline.models import Message, MessageRecipient

    cutoff = utc_timestamp((now or datetime.now(timezone.utc)) - timedelta(days=retention_days))
    expired = select(Message.seq).where(Message.created_at < cutoff)

    db.execute(
        delete(MessageRecipient)
        .where(MessageRecipient.message_seq.in_(expired))
        .execution_options(synchronize_session=False)
    )
    deleted = db.execute(
        delete(Message)
        .where(Message.created_at < cutoff)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()
    if deleted:
        logger.info(f"Retention sweep removed {deleted} messages older than {cutoff}")
    return deleted
