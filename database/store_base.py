"""
Abstract Follow-up Store — Interface for all storage backends.

Implementations:
  - SqlFollowupStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryFollowupStore (dict-based, single-process, no persistence)

The store holds everything the orchestrator reads or owns except the event
queue itself: tenant configuration (read-only to the engine), per-lead
tracking, the append-only send log, daily send counters and the chat-history
lookup used by the reply race check.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional

from models.schemas import (
    FollowupConfig, FollowupLog, FollowupTracking, MessageDirection,
)


class BaseFollowupStore(ABC):
    """Interface that all follow-up store backends must implement."""

    # ── Configuration ─────────────────────────────────────────

    @abstractmethod
    async def get_followup_config(self, tenant_id: str) -> Optional[FollowupConfig]:
        ...

    @abstractmethod
    async def save_followup_config(self, config: FollowupConfig) -> FollowupConfig:
        """Admin-side writer; the engine never calls this."""
        ...

    # ── Tracking ──────────────────────────────────────────────

    @abstractmethod
    async def get_tracking(self, lead_id: str) -> Optional[FollowupTracking]:
        ...

    @abstractmethod
    async def save_tracking(self, tracking: FollowupTracking) -> FollowupTracking:
        """Insert or update the lead's single tracking row."""
        ...

    # ── Send log ──────────────────────────────────────────────

    @abstractmethod
    async def add_log(self, log: FollowupLog) -> FollowupLog:
        ...

    @abstractmethod
    async def get_logs(self, lead_id: str) -> list[FollowupLog]:
        """All log rows for a lead, oldest first."""
        ...

    # ── Daily send counters ───────────────────────────────────

    @abstractmethod
    async def get_sent_count(self, tenant_id: str, day: date) -> int:
        ...

    @abstractmethod
    async def increment_sent_count(self, tenant_id: str, day: date) -> int:
        """Add one send for the day; returns the new count."""
        ...

    # ── Chat history ──────────────────────────────────────────

    @abstractmethod
    async def record_message(
        self, lead_id: str, tenant_id: str, direction: MessageDirection,
        content: str = "", created_at: Optional[datetime] = None,
    ) -> None:
        ...

    @abstractmethod
    async def has_inbound_message_since(self, lead_id: str, since: datetime) -> bool:
        ...
