import logging
from datetime import datetime
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from menubot.config import settings
from menubot.conversation import (
    ConversationState,
    Direction,
    StorageError,
    effective_state,
    format_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("conversations", "message_log")

# check_same_thread=False is required for SQLite sessions used from FastAPI's threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
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
        from menubot.models import Conversation, MessageLogEntry  # noqa: F401

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
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversation Store
# =============================================================================

def get_conversation(db: Session, sender_id: str):
    """
    Fetch the stored conversation row for a sender.

    Returns:
        Conversation object if found, None if the sender has never been seen.

    Raises:
        StorageError: the store could not be queried.
    """
    from menubot.models import Conversation

    try:
        return db.query(Conversation).filter(Conversation.sender_id == sender_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to read conversation for {sender_id}: {e}")
        raise StorageError(f"could not read conversation for {sender_id}") from e


def get_effective_state(
    db: Session,
    sender_id: str,
    now: Optional[datetime] = None,
) -> ConversationState:
    """Read a sender's conversation and apply the expiry policy."""
    record = get_conversation(db, sender_id)
    if record is None:
        return ConversationState.MAIN_MENU
    return effective_state(record.state, record.last_updated, now=now)


def set_conversation_state(
    db: Session,
    sender_id: str,
    state: ConversationState,
    now: Optional[datetime] = None,
) -> str:
    """
    Upsert the conversation row for a sender.

    A single INSERT ... ON CONFLICT DO UPDATE statement, so concurrent writers
    for the same sender resolve as last-writer-wins.

    Returns:
        The last_updated timestamp that was written.

    Raises:
        StorageError: the write failed.
    """
    from menubot.models import Conversation

    state = ConversationState(state)
    last_updated = format_timestamp(now or utcnow())
    stmt = sqlite_insert(Conversation).values(
        sender_id=sender_id,
        state=state.value,
        last_updated=last_updated,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Conversation.sender_id],
        set_={"state": stmt.excluded.state, "last_updated": stmt.excluded.last_updated},
    )

    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write conversation state for {sender_id}: {e}")
        raise StorageError(f"could not write conversation for {sender_id}") from e

    logger.debug(f"Conversation state set: sender={sender_id}, state={state.value}")
    return last_updated


# =============================================================================
# Message Log
# =============================================================================

def append_message(
    db: Session,
    sender_id: str,
    direction: Direction,
    body: str,
    now: Optional[datetime] = None,
):
    """
    Append one entry to the message log.

    Raises:
        StorageError: the insert failed.
    """
    from menubot.models import MessageLogEntry

    direction = Direction(direction)
    entry = MessageLogEntry(
        sender_id=sender_id,
        direction=direction.value,
        body=body or "",
        timestamp=format_timestamp(now or utcnow()),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to log {direction.value} message for {sender_id}: {e}")
        raise StorageError(f"could not log message for {sender_id}") from e
    return entry


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    sender_id: Optional[str] = None,
    direction: Optional[Direction] = None,
) -> Tuple[list, int]:
    """
    Retrieve message log entries with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of entries to return (1-100)
        offset: Number of entries to skip
        sender_id: Filter by sender (exact match)
        direction: Filter by INBOUND / OUTBOUND

    Returns:
        Tuple of (entries list, total count matching filters)
    """
    from menubot.models import MessageLogEntry

    query = db.query(MessageLogEntry)

    if sender_id:
        query = query.filter(MessageLogEntry.sender_id == sender_id)

    if direction:
        query = query.filter(MessageLogEntry.direction == Direction(direction).value)

    total = query.count()

    # Conversation history order: timestamp, then insertion order
    query = query.order_by(MessageLogEntry.timestamp.asc(), MessageLogEntry.id.asc())

    entries = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(entries)} of {total} message log entries")

    return entries, total
