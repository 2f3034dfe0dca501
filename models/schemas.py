"""
Core data models for the follow-up engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EventType(str, Enum):
    AI_MESSAGE_SENT = "ai_message_sent"
    LEAD_MESSAGE_RECEIVED = "lead_message_received"
    FOLLOW_UP_SEND = "follow_up_send"
    FOLLOW_UP_EXHAUSTED = "follow_up_exhausted"
    LEAD_OPTED_OUT = "lead_opted_out"
    DAILY_LIMIT_REACHED = "daily_limit_reached"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventPriority(IntEnum):
    """Lower value is claimed first."""
    URGENT = 1
    HIGH = 2
    NORMAL = 5
    LOW = 8


class TrackingStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    RESPONDED = "responded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class FollowupLogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# ──────────────────────────────────────────────────────────────
#  Queue Event — a unit of deferred work
# ──────────────────────────────────────────────────────────────

class QueueEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    event_type: str                       # EventType value; kept as str so unknown rows still load
    payload: dict[str, Any] = {}
    priority: int = EventPriority.NORMAL.value
    status: EventStatus = EventStatus.PENDING
    scheduled_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def lead_id(self) -> Optional[str]:
        return self.payload.get("lead_id")

    def payload_matches(self, payload_filter: dict[str, Any]) -> bool:
        """JSON containment: every filter key is present with an equal value."""
        return all(self.payload.get(k) == v for k, v in payload_filter.items())


# ──────────────────────────────────────────────────────────────
#  Follow-up Configuration — per-tenant policy
# ──────────────────────────────────────────────────────────────

CLOSED_MARKERS = {"closed", "fechado"}
_WINDOW_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


class FollowupConfig(BaseModel):
    """
    Per-tenant follow-up policy. Created and updated by the admin surface;
    read-only to the engine.
    """
    tenant_id: str
    is_active: bool = True
    max_attempts: int = 3
    intervals: list[int] = Field(default_factory=lambda: [30, 1440, 4320])   # minutes, one per step
    sending_schedule: dict[str, str] = {}     # weekday key → "HH:MM-HH:MM" | "closed"
    daily_send_limit: int = 30
    timezone: str = "America/Sao_Paulo"

    @field_validator("intervals")
    @classmethod
    def _intervals_positive(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("intervals must contain at least one delay")
        if any(m <= 0 for m in v):
            raise ValueError("intervals must be positive minute delays")
        return v

    @field_validator("max_attempts")
    @classmethod
    def _max_attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v

    @field_validator("sending_schedule")
    @classmethod
    def _schedule_format(cls, v: dict[str, str]) -> dict[str, str]:
        for day, window in v.items():
            text = (window or "").strip().lower()
            if text in CLOSED_MARKERS:
                continue
            m = _WINDOW_RE.match(text)
            if not m:
                raise ValueError(f"sending_schedule[{day}]: expected 'HH:MM-HH:MM' or 'closed', got {window!r}")
            sh, sm, eh, em = (int(g) for g in m.groups())
            if sh > 23 or sm > 59 or em > 59 or (eh, em) > (24, 0):
                raise ValueError(f"sending_schedule[{day}]: invalid time in {window!r}")
            if (sh, sm) >= (eh, em):
                raise ValueError(f"sending_schedule[{day}]: start must be before end in {window!r}")
        return v

    def interval_for_step(self, index: int) -> int:
        """Delay in minutes at ``index``; the last interval repeats past the end."""
        if index < len(self.intervals):
            return self.intervals[index]
        return self.intervals[-1]


# ──────────────────────────────────────────────────────────────
#  Follow-up Tracking — per-lead cycle state
# ──────────────────────────────────────────────────────────────

class FollowupTracking(BaseModel):
    id: str = Field(default_factory=_new_id)
    lead_id: str
    tenant_id: str
    status: TrackingStatus = TrackingStatus.WAITING
    current_step: int = 0
    next_send_at: Optional[datetime] = None
    last_ai_message_at: Optional[datetime] = None
    last_lead_message_at: Optional[datetime] = None
    cycle_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            TrackingStatus.RESPONDED, TrackingStatus.EXHAUSTED, TrackingStatus.CANCELLED,
        )


class FollowupLog(BaseModel):
    """Append-only record of one send attempt."""
    id: str = Field(default_factory=_new_id)
    tracking_id: str
    lead_id: str
    tenant_id: str
    step: int
    status: FollowupLogStatus
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Collaborator contracts
# ──────────────────────────────────────────────────────────────

class AgentRequest(BaseModel):
    lead_id: str
    tenant_id: str
    context: str = "follow_up"
    metadata: dict[str, Any] = {}


class SendResult(BaseModel):
    success: bool
    error: Optional[str] = None
    messages_sent: int = 0


class QuotaStatus(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    sent_so_far: int
