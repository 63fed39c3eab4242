"""
SQLAlchemy ORM models for the OAuth side-channel.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class AuthHandoff(Base):
    """One captured callback payload, waiting for the opener to take it."""

    __tablename__ = "auth_handoffs"

    entry_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(32), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # Fernet-encrypted JSON
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
