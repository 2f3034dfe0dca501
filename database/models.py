"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - Payload containment is evaluated in Python, so no GIN indexes are needed;
    the queue denormalises lead_id into its own indexed column instead.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC. SQLite drops offsets, so naive values are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Event Queue
# ──────────────────────────────────────────────────────────────

class EventQueueRow(Base):
    __tablename__ = "event_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    priority: Mapped[int] = mapped_column(Integer, default=5)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_event_queue_claim", "status", "priority", "scheduled_at"),
        Index("ix_event_queue_lead_status", "lead_id", "status"),
        Index("ix_event_queue_tenant", "tenant_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Follow-up Configuration
# ──────────────────────────────────────────────────────────────

class FollowupConfigRow(Base):
    __tablename__ = "followup_configs"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    intervals: Mapped[Any] = mapped_column(JSON, default=lambda: [30, 1440, 4320])
    sending_schedule: Mapped[Any] = mapped_column(JSON, default=dict)
    daily_send_limit: Mapped[int] = mapped_column(Integer, default=30)
    timezone: Mapped[str] = mapped_column(String(64), default="America/Sao_Paulo")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Follow-up Tracking
# ──────────────────────────────────────────────────────────────

class FollowupTrackingRow(Base):
    __tablename__ = "followup_tracking"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="waiting")
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    next_send_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_ai_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_lead_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cycle_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_followup_tracking_tenant_status", "tenant_id", "status"),
    )


class FollowupLogRow(Base):
    __tablename__ = "followup_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tracking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_followup_logs_lead", "lead_id", "created_at"),
        Index("ix_followup_logs_tenant", "tenant_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Daily Send Control
# ──────────────────────────────────────────────────────────────

class DailySendControlRow(Base):
    __tablename__ = "daily_send_control"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "day", name="uq_daily_send_control_tenant_day"),
    )


# ──────────────────────────────────────────────────────────────
#  Lead Messages (chat history)
# ──────────────────────────────────────────────────────────────

class LeadMessageRow(Base):
    __tablename__ = "lead_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_lead_messages_lead_ts", "lead_id", "created_at"),
    )
