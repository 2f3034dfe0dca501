"""
Daily send quota — per-tenant cap on follow-up sends per local day.

The counter is two calls (check, then increment after a successful send), so
concurrent workers can overshoot the limit by the number of sends in flight.
"""
from __future__ import annotations

import structlog
from datetime import date

from database.store_base import BaseFollowupStore
from models.schemas import QuotaStatus

logger = structlog.get_logger()


class DailyQuotaCounter:

    def __init__(self, store: BaseFollowupStore, default_limit: int = 30):
        self.store = store
        self.default_limit = default_limit

    async def limit_for(self, tenant_id: str) -> int:
        config = await self.store.get_followup_config(tenant_id)
        if config is None:
            return self.default_limit
        return config.daily_send_limit

    async def can_send(self, day: date, tenant_id: str) -> QuotaStatus:
        limit = await self.limit_for(tenant_id)
        sent = await self.store.get_sent_count(tenant_id, day)
        status = QuotaStatus(
            allowed=sent < limit,
            remaining=max(limit - sent, 0),
            limit=limit,
            sent_so_far=sent,
        )
        if not status.allowed:
            logger.info("daily_quota_exhausted",
                        tenant_id=tenant_id,
                        day=day.isoformat(),
                        limit=limit,
                        sent=sent)
        return status

    async def increment_sent(self, day: date, tenant_id: str) -> int:
        count = await self.store.increment_sent_count(tenant_id, day)
        logger.debug("daily_quota_incremented",
                     tenant_id=tenant_id,
                     day=day.isoformat(),
                     sent=count)
        return count
