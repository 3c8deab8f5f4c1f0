"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from messenger.storage import Base


class User(Base):
    """
    SQLAlchemy model for directory identities.

    Table: users
    Primary Key: id (insertion order)
    username_key holds the lower-cased username so the database also
    enforces case-insensitive uniqueness.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    username = Column(String, nullable=True)
    username_key = Column(String, nullable=True, unique=True)
    registered_at = Column(String, nullable=False)  # ISO-8601 UTC string


class Message(Base):
    """
    SQLAlchemy model for the append-only message log.

    Table: messages
    Primary Key: seq (assigned by the log, strictly increasing)
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=False)
    id = Column(String, nullable=False, unique=True)
    from_number = Column(String, nullable=False, index=True)
    to_number = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False)  # ISO-8601 UTC string
