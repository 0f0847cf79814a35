"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For the domain types these rows map to, see domain.py; for Pydantic
request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class MessageRow(Base):
    """
    One message of a contact thread.

    Table: messages
    Primary Key: seq (insertion order, breaks timestamp ties)
    Unique: message_id (ensures idempotent ingestion)
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True, index=True)
    contact_id = Column(String, nullable=False, index=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    kind = Column(String, nullable=False)
    content = Column(JSON, nullable=False)  # tagged payload form
    body = Column(Text, nullable=False)
    ts = Column(DateTime, nullable=False, index=True)  # naive UTC
    status = Column(String, nullable=False)
    correlation_id = Column(String, nullable=True, index=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    __table_args__ = (
        Index("ix_messages_contact_ts", "contact_id", "ts"),
        Index("ix_messages_contact_unread", "contact_id", "direction", "status"),
    )


class ContactRow(Base):
    """
    Counterparty of a 1:1 thread.

    Table: contacts
    Primary Key: contact_id
    """
    __tablename__ = "contacts"

    contact_id = Column(String, primary_key=True, index=True)
    display_name = Column(String, nullable=False)
    avatar_ref = Column(String, nullable=True)
    last_seen = Column(DateTime, nullable=True)  # naive UTC
    presence = Column(String, nullable=False, default="offline")
    created_at = Column(String, nullable=False)
