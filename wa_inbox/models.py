"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, String, Text

from wa_inbox.storage import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class Account(Base):
    """
    An end-user account and its embedded connection instance state.

    Table: accounts
    instance_name is unique across all accounts; NULL means no instance.
    """
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=_new_id)
    username = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    instance_name = Column(String, nullable=True, unique=True, index=True)
    instance_status = Column(String, nullable=True)
    instance_qr = Column(Text, nullable=True)  # base64 image
    pairing_code = Column(String, nullable=True)


class Message(Base):
    """
    SQLAlchemy model for canonical messages received from the gateway.

    Table: messages
    external_id carries a UNIQUE constraint; it is the authoritative
    guard against duplicate inserts from concurrent redeliveries.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    content = Column(Text, nullable=True)
    sender_display_name = Column(String, nullable=True)
    sender_address = Column(String, nullable=False, index=True)
    instance_name = Column(String, nullable=False)
    message_type = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False, index=True)  # Epoch milliseconds
    received_at = Column(String, nullable=False)  # Server time ISO-8601
    owner_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
