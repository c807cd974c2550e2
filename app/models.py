"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text

from app.storage import Base


# Conversation.status values
CONVERSATION_NEW = "new"
CONVERSATION_ACTIVE = "active"
CONVERSATION_RESOLVED = "resolved"
CONVERSATION_STATUSES = (CONVERSATION_NEW, CONVERSATION_ACTIVE, CONVERSATION_RESOLVED)

# Message.direction values
INBOUND = "inbound"
OUTBOUND = "outbound"

# Message.status values
MESSAGE_PENDING = "pending"
MESSAGE_SENT = "sent"
MESSAGE_FAILED = "failed"


class Conversation(Base):
    """
    A thread with exactly one contact.

    Table: conversations
    Unique: phone_number (one conversation per contact address)
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    contact_name = Column(String, nullable=True)
    detected_language = Column(String, nullable=False, default="en")
    status = Column(String, nullable=False, default=CONVERSATION_NEW, index=True)
    last_reply_by = Column(String, nullable=True)
    last_reply_at = Column(String, nullable=True)  # ISO-8601 UTC
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False, index=True)


class Message(Base):
    """
    A single inbound or outbound SMS.

    Table: messages
    Read back per conversation ordered by created_at.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(
        String, ForeignKey("conversations.id"), nullable=False, index=True
    )
    direction = Column(String, nullable=False)
    original_text = Column(Text, nullable=False)
    translated_text = Column(Text, nullable=True)
    detected_language = Column(String, nullable=True)
    translation_error = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=MESSAGE_PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    twilio_sid = Column(String, nullable=True, unique=True, index=True)
    error_message = Column(Text, nullable=True)
    volunteer_id = Column(String, nullable=True)
    volunteer_name = Column(String, nullable=True)
    created_at = Column(String, nullable=False, index=True)
