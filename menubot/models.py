"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from menubot.storage import Base


class Conversation(Base):
    """
    Per-sender conversation position.

    Table: conversations
    Primary Key: sender_id (one row per sender, written by upsert only)
    """
    __tablename__ = "conversations"

    sender_id = Column(String, primary_key=True, index=True)
    state = Column(String, nullable=True)
    last_updated = Column(String, nullable=False)  # ISO-8601 UTC string


class MessageLogEntry(Base):
    """
    Append-only audit record of every inbound and outbound message body.

    Table: message_log
    """
    __tablename__ = "message_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String, nullable=False, index=True)
    direction = Column(String, nullable=False)  # INBOUND | OUTBOUND
    body = Column(Text, nullable=False, default="")
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
