"""SQLAlchemy ORM models for ThreatQuery.

Persistent entities the query engine touches: users (principals),
incidents (the queryable entity), and the per-principal query history.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from .engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ── Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="analyst")  # analyst | admin | viewer
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ── Incidents ──────────────────────────────────────────────────────────


class Incident(Base):
    """A classified security incident. Written by the incident pipeline,
    read here only through tenant-scoped queries."""
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # critical | high | medium | low | informational
    status: Mapped[str] = mapped_column(String(16), default="open")  # open | in-progress | closed
    system_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    log_data: Mapped[str] = mapped_column(Text, nullable=False, default="")
    classification: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # true-positive | false-positive
    confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 0-100
    mitre_attack: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    iocs: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    ai_analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_incidents_owner", "owner"),
        Index("ix_incidents_owner_created", "owner", "created_at"),
    )


# ── Query history ──────────────────────────────────────────────────────


class QueryHistory(Base):
    """One executed or saved advanced query. Insert-only apart from explicit deletes."""
    __tablename__ = "query_history"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    query_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # kql | sql | custom
    translated_query: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_saved: Mapped[bool] = mapped_column(Boolean, default=False)
    saved_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_query_history_user_created", "user_id", "created_at"),
        Index("ix_query_history_user_saved", "user_id", "is_saved"),
    )
