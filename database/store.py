"""
SqlFollowupStore — Portable SQL queries for PostgreSQL and SQLite.

Each method runs in its own short transaction via get_session(); nothing is
cached between calls, so handlers always see the latest committed state.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select, update, and_, exists

from database.models import (
    FollowupConfigRow, FollowupTrackingRow, FollowupLogRow,
    DailySendControlRow, LeadMessageRow, as_utc,
)
from database.session import get_session
from database.store_base import BaseFollowupStore
from models.schemas import (
    FollowupConfig, FollowupLog, FollowupLogStatus, FollowupTracking,
    MessageDirection, TrackingStatus,
)

logger = structlog.get_logger()


class SqlFollowupStore(BaseFollowupStore):
    """
    Persistent follow-up store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    # ── Configuration ──────────────────────────────────────

    async def get_followup_config(self, tenant_id: str) -> Optional[FollowupConfig]:
        async with get_session() as db:
            row = await db.get(FollowupConfigRow, tenant_id)
            return self._row_to_config(row) if row else None

    async def save_followup_config(self, config: FollowupConfig) -> FollowupConfig:
        async with get_session() as db:
            row = await db.get(FollowupConfigRow, config.tenant_id)
            values = config.model_dump(exclude={"tenant_id"})
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(FollowupConfigRow(tenant_id=config.tenant_id, **values))
            return config

    # ── Tracking ───────────────────────────────────────────

    async def get_tracking(self, lead_id: str) -> Optional[FollowupTracking]:
        async with get_session() as db:
            stmt = select(FollowupTrackingRow).where(FollowupTrackingRow.lead_id == lead_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_tracking(row) if row else None

    async def save_tracking(self, tracking: FollowupTracking) -> FollowupTracking:
        async with get_session() as db:
            stmt = select(FollowupTrackingRow).where(FollowupTrackingRow.lead_id == tracking.lead_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()

            values = {
                "tenant_id": tracking.tenant_id,
                "status": tracking.status.value,
                "current_step": tracking.current_step,
                "next_send_at": as_utc(tracking.next_send_at),
                "last_ai_message_at": as_utc(tracking.last_ai_message_at),
                "last_lead_message_at": as_utc(tracking.last_lead_message_at),
                "cycle_count": tracking.cycle_count,
                "updated_at": datetime.now(timezone.utc),
            }
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                row = FollowupTrackingRow(id=tracking.id, lead_id=tracking.lead_id, **values)
                db.add(row)
            await db.flush()
            return self._row_to_tracking(row)

    # ── Send log ───────────────────────────────────────────

    async def add_log(self, log: FollowupLog) -> FollowupLog:
        async with get_session() as db:
            db.add(FollowupLogRow(
                id=log.id,
                tracking_id=log.tracking_id,
                lead_id=log.lead_id,
                tenant_id=log.tenant_id,
                step=log.step,
                status=log.status.value,
                error_message=log.error_message,
                created_at=as_utc(log.created_at),
            ))
            return log

    async def get_logs(self, lead_id: str) -> list[FollowupLog]:
        async with get_session() as db:
            stmt = (
                select(FollowupLogRow)
                .where(FollowupLogRow.lead_id == lead_id)
                .order_by(FollowupLogRow.created_at)
            )
            result = await db.execute(stmt)
            return [
                FollowupLog(
                    id=r.id, tracking_id=r.tracking_id, lead_id=r.lead_id,
                    tenant_id=r.tenant_id, step=r.step,
                    status=FollowupLogStatus(r.status),
                    error_message=r.error_message,
                    created_at=as_utc(r.created_at),
                )
                for r in result.scalars().all()
            ]

    # ── Daily send counters ────────────────────────────────

    async def get_sent_count(self, tenant_id: str, day: date) -> int:
        async with get_session() as db:
            stmt = select(DailySendControlRow.sent_count).where(and_(
                DailySendControlRow.tenant_id == tenant_id,
                DailySendControlRow.day == day,
            ))
            result = await db.execute(stmt)
            return result.scalar_one_or_none() or 0

    async def increment_sent_count(self, tenant_id: str, day: date) -> int:
        async with get_session() as db:
            stmt = (
                update(DailySendControlRow)
                .where(and_(
                    DailySendControlRow.tenant_id == tenant_id,
                    DailySendControlRow.day == day,
                ))
                .values(sent_count=DailySendControlRow.sent_count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                db.add(DailySendControlRow(tenant_id=tenant_id, day=day, sent_count=1))
                return 1

            count = await db.execute(select(DailySendControlRow.sent_count).where(and_(
                DailySendControlRow.tenant_id == tenant_id,
                DailySendControlRow.day == day,
            )))
            return count.scalar_one()

    # ── Chat history ───────────────────────────────────────

    async def record_message(
        self, lead_id: str, tenant_id: str, direction: MessageDirection,
        content: str = "", created_at: Optional[datetime] = None,
    ) -> None:
        async with get_session() as db:
            db.add(LeadMessageRow(
                lead_id=lead_id,
                tenant_id=tenant_id,
                direction=MessageDirection(direction).value,
                content=content,
                created_at=as_utc(created_at) or datetime.now(timezone.utc),
            ))

    async def has_inbound_message_since(self, lead_id: str, since: datetime) -> bool:
        async with get_session() as db:
            stmt = select(exists().where(and_(
                LeadMessageRow.lead_id == lead_id,
                LeadMessageRow.direction == MessageDirection.INBOUND.value,
                LeadMessageRow.created_at > as_utc(since),
            )))
            result = await db.execute(stmt)
            return bool(result.scalar())

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_config(row: FollowupConfigRow) -> FollowupConfig:
        return FollowupConfig(
            tenant_id=row.tenant_id,
            is_active=row.is_active,
            max_attempts=row.max_attempts,
            intervals=list(row.intervals or []),
            sending_schedule=dict(row.sending_schedule or {}),
            daily_send_limit=row.daily_send_limit,
            timezone=row.timezone,
        )

    @staticmethod
    def _row_to_tracking(row: FollowupTrackingRow) -> FollowupTracking:
        return FollowupTracking(
            id=row.id,
            lead_id=row.lead_id,
            tenant_id=row.tenant_id,
            status=TrackingStatus(row.status),
            current_step=row.current_step,
            next_send_at=as_utc(row.next_send_at),
            last_ai_message_at=as_utc(row.last_ai_message_at),
            last_lead_message_at=as_utc(row.last_lead_message_at),
            cycle_count=row.cycle_count,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
