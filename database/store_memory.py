"""
InMemoryFollowupStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlFollowupStore
  - Safe within a single asyncio event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Optional

from database.store_base import BaseFollowupStore
from models.schemas import (
    FollowupConfig, FollowupLog, FollowupTracking, MessageDirection,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryFollowupStore(BaseFollowupStore):
    """
    In-memory store with the same interface as SqlFollowupStore.
    Returns copies so callers cannot mutate stored state without saving.
    """

    def __init__(self):
        self._configs: dict[str, FollowupConfig] = {}          # tenant_id → config
        self._tracking: dict[str, FollowupTracking] = {}       # lead_id → tracking
        self._logs: dict[str, list[FollowupLog]] = defaultdict(list)   # lead_id → [logs]
        self._sent: dict[tuple[str, date], int] = defaultdict(int)    # (tenant, day) → count
        self._messages: dict[str, list[tuple[datetime, MessageDirection]]] = defaultdict(list)
        logger.info("inmemory_store_initialized")

    # ── Configuration ─────────────────────────────────────

    async def get_followup_config(self, tenant_id: str) -> Optional[FollowupConfig]:
        config = self._configs.get(tenant_id)
        return config.model_copy(deep=True) if config else None

    async def save_followup_config(self, config: FollowupConfig) -> FollowupConfig:
        self._configs[config.tenant_id] = config.model_copy(deep=True)
        return config

    # ── Tracking ──────────────────────────────────────────

    async def get_tracking(self, lead_id: str) -> Optional[FollowupTracking]:
        tracking = self._tracking.get(lead_id)
        return tracking.model_copy() if tracking else None

    async def save_tracking(self, tracking: FollowupTracking) -> FollowupTracking:
        existing = self._tracking.get(tracking.lead_id)
        stored = tracking.model_copy()
        if existing:
            # One row per lead: keep the original identity
            stored.id = existing.id
            stored.created_at = existing.created_at
        stored.updated_at = _utcnow()
        self._tracking[tracking.lead_id] = stored
        return stored.model_copy()

    # ── Send log ──────────────────────────────────────────

    async def add_log(self, log: FollowupLog) -> FollowupLog:
        self._logs[log.lead_id].append(log.model_copy())
        return log

    async def get_logs(self, lead_id: str) -> list[FollowupLog]:
        return [log.model_copy() for log in self._logs.get(lead_id, [])]

    # ── Daily send counters ───────────────────────────────

    async def get_sent_count(self, tenant_id: str, day: date) -> int:
        return self._sent.get((tenant_id, day), 0)

    async def increment_sent_count(self, tenant_id: str, day: date) -> int:
        self._sent[(tenant_id, day)] += 1
        return self._sent[(tenant_id, day)]

    # ── Chat history ──────────────────────────────────────

    async def record_message(
        self, lead_id: str, tenant_id: str, direction: MessageDirection,
        content: str = "", created_at: Optional[datetime] = None,
    ) -> None:
        self._messages[lead_id].append((created_at or _utcnow(), MessageDirection(direction)))

    async def has_inbound_message_since(self, lead_id: str, since: datetime) -> bool:
        return any(
            direction == MessageDirection.INBOUND and ts > since
            for ts, direction in self._messages.get(lead_id, [])
        )
