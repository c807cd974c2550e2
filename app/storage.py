import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, List, Optional

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import settings
from app.errors import StoreError

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from app.models import Conversation, Message  # noqa: F401

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
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("conversations", "messages"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def utc_now() -> str:
    """Server time as ISO-8601 UTC with microseconds (sorts lexically)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def normalize_timestamp(value: str) -> str:
    """
    Rewrite an ISO-8601 timestamp in the stored created_at format.

    Stored timestamps are compared as strings, so a bound without
    microseconds or with a UTC offset must be reformatted first.
    Naive values are taken as UTC. Raises ValueError if unparsable.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def store_operation(db: Session, action: str):
    """Roll back and raise StoreError on any database failure."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}")
        raise StoreError(f"Failed to {action}") from e


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def create_conversation(
    db: Session,
    phone_number: str,
    detected_language: str = "en",
    status: str = "new",
    contact_name: Optional[str] = None,
):
    """
    Create a conversation for a contact address.

    If another request created the conversation first (unique phone_number),
    the existing row is returned instead.
    """
    from app.models import Conversation

    logger.info(f"Creating conversation for {phone_number}, language={detected_language}")
    now = utc_now()
    conversation = Conversation(
        id=new_id(),
        phone_number=phone_number,
        contact_name=contact_name,
        detected_language=detected_language,
        status=status,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(conversation)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for {phone_number} already exists")
        existing = get_conversation_by_phone(db, phone_number)
        if existing is None:
            raise StoreError(f"Failed to create conversation for {phone_number}")
        return existing
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create conversation for {phone_number}: {e}")
        raise StoreError(f"Failed to create conversation for {phone_number}") from e

    db.refresh(conversation)
    return conversation


def get_conversation(db: Session, conversation_id: str):
    """Point lookup by id. Returns None if not found."""
    from app.models import Conversation

    with store_operation(db, f"load conversation {conversation_id}"):
        return db.get(Conversation, conversation_id)


def get_conversation_by_phone(db: Session, phone_number: str):
    """Lookup by the unique contact address. Returns None if not found."""
    from app.models import Conversation

    with store_operation(db, f"look up conversation for {phone_number}"):
        return (
            db.query(Conversation)
            .filter(Conversation.phone_number == phone_number)
            .first()
        )


def update_conversation(db: Session, conversation_id: str, **fields):
    """
    Partial update of a conversation. Always bumps updated_at.

    Returns:
        The updated Conversation, or None if it does not exist.
    """
    from app.models import Conversation

    logger.debug(f"Updating conversation {conversation_id}: {sorted(fields)}")
    with store_operation(db, f"update conversation {conversation_id}"):
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            return None
        for name, value in fields.items():
            setattr(conversation, name, value)
        conversation.updated_at = utc_now()
        db.commit()
        db.refresh(conversation)
        return conversation


def list_conversations(db: Session, status: Optional[str] = None) -> List:
    """List conversations, most recently active first."""
    from app.models import Conversation

    with store_operation(db, "list conversations"):
        query = db.query(Conversation)
        if status:
            query = query.filter(Conversation.status == status)
        return query.order_by(Conversation.updated_at.desc(), Conversation.id.asc()).all()


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: str,
    direction: str,
    original_text: str,
    status: str,
    translated_text: Optional[str] = None,
    detected_language: Optional[str] = None,
    translation_error: Optional[str] = None,
    twilio_sid: Optional[str] = None,
    volunteer_id: Optional[str] = None,
    volunteer_name: Optional[str] = None,
):
    """
    Append a message to a conversation.

    Raises:
        StoreError: if the insert fails (including a duplicate carrier id).
    """
    from app.models import Message

    logger.info(f"Creating {direction} message in conversation {conversation_id}, status={status}")
    message = Message(
        id=new_id(),
        conversation_id=conversation_id,
        direction=direction,
        original_text=original_text,
        translated_text=translated_text,
        detected_language=detected_language,
        translation_error=translation_error,
        status=status,
        retry_count=0,
        twilio_sid=twilio_sid,
        volunteer_id=volunteer_id,
        volunteer_name=volunteer_name,
        created_at=utc_now(),
    )
    with store_operation(db, f"create message in conversation {conversation_id}"):
        db.add(message)
        db.commit()
        db.refresh(message)
    logger.debug(f"Message created: {message.id}")
    return message


def get_message(db: Session, message_id: str):
    """Point lookup by id. Returns None if not found."""
    from app.models import Message

    with store_operation(db, f"load message {message_id}"):
        return db.get(Message, message_id)


def get_message_by_sid(db: Session, twilio_sid: str):
    """Lookup by carrier message id. Returns None if not found."""
    from app.models import Message

    with store_operation(db, f"look up message {twilio_sid}"):
        return db.query(Message).filter(Message.twilio_sid == twilio_sid).first()


def update_message(db: Session, message_id: str, **fields):
    """
    Partial update of a message.

    Returns:
        The updated Message, or None if it does not exist.
    """
    from app.models import Message

    logger.debug(f"Updating message {message_id}: {fields}")
    with store_operation(db, f"update message {message_id}"):
        message = db.get(Message, message_id)
        if message is None:
            return None
        for name, value in fields.items():
            setattr(message, name, value)
        db.commit()
        db.refresh(message)
        return message


def delete_message(db: Session, message_id: str) -> bool:
    """Delete a message. Returns False if it did not exist."""
    from app.models import Message

    logger.info(f"Deleting message {message_id}")
    with store_operation(db, f"delete message {message_id}"):
        message = db.get(Message, message_id)
        if message is None:
            return False
        db.delete(message)
        db.commit()
        return True


def list_messages(db: Session, conversation_id: str, since: Optional[str] = None) -> List:
    """
    Messages of one conversation in creation order.

    Args:
        since: only messages with created_at >= since (ISO-8601 UTC)
    """
    from app.models import Message

    with store_operation(db, f"list messages of conversation {conversation_id}"):
        query = db.query(Message).filter(Message.conversation_id == conversation_id)
        if since:
            query = query.filter(Message.created_at >= since)
        return query.order_by(Message.created_at.asc(), Message.id.asc()).all()


def get_stats(db: Session) -> dict:
    """
    Counts for the /stats endpoint.

    Returns:
        Dictionary with conversation totals by status and message totals
        by direction and delivery status.
    """
    from app.models import Conversation, Message

    logger.info("Computing relay statistics")
    with store_operation(db, "compute statistics"):
        total_conversations = db.query(func.count(Conversation.id)).scalar() or 0
        conversations_by_status = dict(
            db.query(Conversation.status, func.count(Conversation.id))
            .group_by(Conversation.status)
            .all()
        )
        total_messages = db.query(func.count(Message.id)).scalar() or 0
        messages_by_direction = dict(
            db.query(Message.direction, func.count(Message.id))
            .group_by(Message.direction)
            .all()
        )
        messages_by_status = dict(
            db.query(Message.status, func.count(Message.id))
            .group_by(Message.status)
            .all()
        )

    return {
        "total_conversations": total_conversations,
        "conversations_by_status": conversations_by_status,
        "total_messages": total_messages,
        "messages_by_direction": messages_by_direction,
        "messages_by_status": messages_by_status,
    }
