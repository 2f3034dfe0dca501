"""
Event Queue — Durable scheduled events with atomic claim and retry backoff.

Event lifecycle:
  pending ──claim──▶ processing ──complete──▶ completed
     ▲                   │
     └──── fail (retry) ─┤
                         └── fail (retries used up) ──▶ failed
  pending ──cancel──▶ cancelled

Backends:
  SqlEventQueue       — event_queue table (PostgreSQL in production, SQLite for dev/tests)
  InMemoryEventQueue  — dict of events, single process only

Ordering: a claim takes the pending event with the lowest priority value,
then the earliest scheduled_at, among those whose scheduled_at has arrived.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import select, update, func, and_

from core.exceptions import EventNotFoundError
from database.models import EventQueueRow, as_utc
from database.session import get_session
from models.schemas import EventPriority, EventStatus, QueueEvent

logger = structlog.get_logger()

Clock = Callable[[], datetime]

DEFAULT_BACKOFF_MINUTES = [1, 5, 30]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _type_name(event_type: Any) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


def backoff_minutes(attempt: int, table: list[int] = None) -> int:
    """Retry delay for a 1-based attempt number, clamped to the last entry."""
    table = table or DEFAULT_BACKOFF_MINUTES
    return table[min(max(attempt, 1) - 1, len(table) - 1)]


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class EventQueue(ABC):
    """Abstract event queue interface."""

    def __init__(
        self,
        clock: Clock = None,
        retry_backoff_minutes: list[int] = None,
        default_priority: int = EventPriority.NORMAL.value,
        default_max_retries: int = 3,
    ):
        self.clock = clock or _utcnow
        self.retry_backoff_minutes = list(retry_backoff_minutes or DEFAULT_BACKOFF_MINUTES)
        self.default_priority = default_priority
        self.default_max_retries = default_max_retries

    def now(self) -> datetime:
        return as_utc(self.clock())

    def retry_delay(self, attempt: int) -> timedelta:
        return timedelta(minutes=backoff_minutes(attempt, self.retry_backoff_minutes))

    def _new_event(
        self,
        tenant_id: str,
        event_type: Any,
        payload: Optional[dict[str, Any]],
        scheduled_at: Optional[datetime],
        priority: Optional[int],
        max_retries: Optional[int],
    ) -> QueueEvent:
        now = self.now()
        return QueueEvent(
            tenant_id=tenant_id,
            event_type=_type_name(event_type),
            payload=dict(payload or {}),
            priority=int(priority) if priority is not None else self.default_priority,
            scheduled_at=as_utc(scheduled_at) if scheduled_at else now,
            max_retries=max_retries if max_retries is not None else self.default_max_retries,
            created_at=now,
        )

    @abstractmethod
    async def enqueue(
        self,
        tenant_id: str,
        event_type: Any,
        payload: dict[str, Any] = None,
        scheduled_at: datetime = None,
        priority: int = None,
        max_retries: int = None,
    ) -> QueueEvent:
        """Insert a pending event; scheduled_at defaults to now."""
        ...

    @abstractmethod
    async def dequeue(self) -> Optional[QueueEvent]:
        """Atomically claim the next due event, or None when nothing is due."""
        ...

    @abstractmethod
    async def complete(self, event_id: str) -> bool:
        """processing → completed. Returns False when the event was not processing."""
        ...

    @abstractmethod
    async def fail(self, event_id: str, error_message: str) -> QueueEvent:
        """Record a failed attempt: back to pending with backoff, or terminal failed."""
        ...

    @abstractmethod
    async def defer(self, event_id: str) -> bool:
        """processing → pending without consuming a retry."""
        ...

    @abstractmethod
    async def cancel_by_lead_id(self, lead_id: str) -> int:
        """Cancel every pending event for a lead. Returns the number cancelled."""
        ...

    @abstractmethod
    async def cancel_by_filter(self, event_type: Any, payload_filter: dict[str, Any]) -> int:
        """Cancel pending events of a type whose payload contains the filter."""
        ...

    @abstractmethod
    async def get_pending_count(self, tenant_id: str = None) -> dict[str, int]:
        """Pending events per event_type, optionally for one tenant."""
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[QueueEvent]:
        ...

    @abstractmethod
    async def pending_events(self, event_type: Any = None, lead_id: str = None) -> list[QueueEvent]:
        """Pending events in claim order."""
        ...

    def _log_failure(self, event: QueueEvent):
        if event.status == EventStatus.FAILED:
            logger.warning("event_failed",
                           event_id=event.id,
                           event_type=event.event_type,
                           retries=event.retry_count,
                           error=event.error_message)
        else:
            logger.info("event_retry_scheduled",
                        event_id=event.id,
                        event_type=event.event_type,
                        attempt=event.retry_count,
                        scheduled_at=event.scheduled_at.isoformat(),
                        error=event.error_message)


# ──────────────────────────────────────────────────────────────
#  SQL Implementation
# ──────────────────────────────────────────────────────────────

class SqlEventQueue(EventQueue):
    """
    Queue backed by the event_queue table.

    The claim selects with FOR UPDATE SKIP LOCKED (PostgreSQL) and then flips
    the row with an UPDATE guarded by status='pending'. SQLite ignores the
    lock clause; the guard alone keeps two claimers off the same row.
    """

    CLAIM_ATTEMPTS = 3

    async def enqueue(
        self,
        tenant_id: str,
        event_type: Any,
        payload: dict[str, Any] = None,
        scheduled_at: datetime = None,
        priority: int = None,
        max_retries: int = None,
    ) -> QueueEvent:
        event = self._new_event(tenant_id, event_type, payload, scheduled_at, priority, max_retries)
        async with get_session() as db:
            db.add(EventQueueRow(
                id=event.id,
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                payload=event.payload,
                lead_id=event.lead_id,
                priority=event.priority,
                status=event.status.value,
                scheduled_at=event.scheduled_at,
                retry_count=event.retry_count,
                max_retries=event.max_retries,
                created_at=event.created_at,
            ))
        logger.info("event_enqueued",
                    event_id=event.id,
                    event_type=event.event_type,
                    tenant_id=tenant_id,
                    priority=event.priority,
                    scheduled_at=event.scheduled_at.isoformat())
        return event

    async def dequeue(self) -> Optional[QueueEvent]:
        now = self.now()
        for _ in range(self.CLAIM_ATTEMPTS):
            async with get_session() as db:
                stmt = (
                    select(EventQueueRow)
                    .where(and_(
                        EventQueueRow.status == EventStatus.PENDING.value,
                        EventQueueRow.scheduled_at <= now,
                    ))
                    .order_by(EventQueueRow.priority, EventQueueRow.scheduled_at)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                row = (await db.execute(stmt)).scalar_one_or_none()
                if row is None:
                    return None

                claim = (
                    update(EventQueueRow)
                    .where(and_(
                        EventQueueRow.id == row.id,
                        EventQueueRow.status == EventStatus.PENDING.value,
                    ))
                    .values(status=EventStatus.PROCESSING.value, started_at=now)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(claim)
                if result.rowcount == 0:
                    # Another worker got there first
                    continue

                event = self._row_to_event(row)
                event.status = EventStatus.PROCESSING
                event.started_at = now
                logger.debug("event_claimed",
                             event_id=event.id,
                             event_type=event.event_type,
                             attempt=event.retry_count)
                return event
        return None

    async def complete(self, event_id: str) -> bool:
        async with get_session() as db:
            stmt = (
                update(EventQueueRow)
                .where(and_(
                    EventQueueRow.id == event_id,
                    EventQueueRow.status == EventStatus.PROCESSING.value,
                ))
                .values(status=EventStatus.COMPLETED.value, completed_at=self.now())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
        if result.rowcount == 0:
            logger.warning("event_complete_ignored", event_id=event_id)
            return False
        logger.debug("event_completed", event_id=event_id)
        return True

    async def fail(self, event_id: str, error_message: str) -> QueueEvent:
        now = self.now()
        async with get_session() as db:
            row = await db.get(EventQueueRow, event_id)
            if row is None:
                raise EventNotFoundError(event_id)

            new_retry = row.retry_count + 1
            row.retry_count = new_retry
            row.error_message = error_message
            if new_retry < row.max_retries:
                row.status = EventStatus.PENDING.value
                row.scheduled_at = now + self.retry_delay(new_retry)
                row.started_at = None
            else:
                row.status = EventStatus.FAILED.value
                row.completed_at = now
            await db.flush()
            event = self._row_to_event(row)

        self._log_failure(event)
        return event

    async def defer(self, event_id: str) -> bool:
        async with get_session() as db:
            stmt = (
                update(EventQueueRow)
                .where(and_(
                    EventQueueRow.id == event_id,
                    EventQueueRow.status == EventStatus.PROCESSING.value,
                ))
                .values(status=EventStatus.PENDING.value, started_at=None)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
        deferred = result.rowcount > 0
        logger.debug("event_deferred", event_id=event_id, deferred=deferred)
        return deferred

    async def cancel_by_lead_id(self, lead_id: str) -> int:
        async with get_session() as db:
            stmt = (
                update(EventQueueRow)
                .where(and_(
                    EventQueueRow.lead_id == lead_id,
                    EventQueueRow.status == EventStatus.PENDING.value,
                ))
                .values(status=EventStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
        cancelled = result.rowcount or 0
        if cancelled:
            logger.info("events_cancelled", lead_id=lead_id, count=cancelled)
        return cancelled

    async def cancel_by_filter(self, event_type: Any, payload_filter: dict[str, Any]) -> int:
        type_name = _type_name(event_type)
        async with get_session() as db:
            conditions = [
                EventQueueRow.event_type == type_name,
                EventQueueRow.status == EventStatus.PENDING.value,
            ]
            if "lead_id" in payload_filter:
                conditions.append(EventQueueRow.lead_id == payload_filter["lead_id"])
            rows = (await db.execute(select(EventQueueRow).where(and_(*conditions)))).scalars().all()

            # JSON containment is checked here so PG and SQLite behave the same
            ids = [
                r.id for r in rows
                if all((r.payload or {}).get(k) == v for k, v in payload_filter.items())
            ]
            if not ids:
                return 0

            stmt = (
                update(EventQueueRow)
                .where(and_(
                    EventQueueRow.id.in_(ids),
                    EventQueueRow.status == EventStatus.PENDING.value,
                ))
                .values(status=EventStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)

        cancelled = result.rowcount or 0
        logger.info("events_cancelled",
                    event_type=type_name,
                    filter=payload_filter,
                    count=cancelled)
        return cancelled

    async def get_pending_count(self, tenant_id: str = None) -> dict[str, int]:
        async with get_session() as db:
            stmt = (
                select(EventQueueRow.event_type, func.count(EventQueueRow.id))
                .where(EventQueueRow.status == EventStatus.PENDING.value)
                .group_by(EventQueueRow.event_type)
            )
            if tenant_id:
                stmt = stmt.where(EventQueueRow.tenant_id == tenant_id)
            result = await db.execute(stmt)
            return {event_type: count for event_type, count in result.all()}

    async def get_event(self, event_id: str) -> Optional[QueueEvent]:
        async with get_session() as db:
            row = await db.get(EventQueueRow, event_id)
            return self._row_to_event(row) if row else None

    async def pending_events(self, event_type: Any = None, lead_id: str = None) -> list[QueueEvent]:
        async with get_session() as db:
            stmt = select(EventQueueRow).where(EventQueueRow.status == EventStatus.PENDING.value)
            if event_type is not None:
                stmt = stmt.where(EventQueueRow.event_type == _type_name(event_type))
            if lead_id is not None:
                stmt = stmt.where(EventQueueRow.lead_id == lead_id)
            stmt = stmt.order_by(EventQueueRow.priority, EventQueueRow.scheduled_at)
            result = await db.execute(stmt)
            return [self._row_to_event(r) for r in result.scalars().all()]

    @staticmethod
    def _row_to_event(row: EventQueueRow) -> QueueEvent:
        return QueueEvent(
            id=row.id,
            tenant_id=row.tenant_id,
            event_type=row.event_type,
            payload=dict(row.payload or {}),
            priority=row.priority,
            status=EventStatus(row.status),
            scheduled_at=as_utc(row.scheduled_at),
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            error_message=row.error_message,
            created_at=as_utc(row.created_at),
        )


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryEventQueue(EventQueue):
    """
    Development/test queue backed by a dict.
    Single-process only; every call completes without yielding, so a claim
    cannot interleave with another coroutine.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._events: dict[str, QueueEvent] = {}
        logger.info("inmemory_event_queue_initialized")

    def _pending(self) -> list[QueueEvent]:
        pending = [e for e in self._events.values() if e.status == EventStatus.PENDING]
        return sorted(pending, key=lambda e: (e.priority, e.scheduled_at, e.created_at))

    async def enqueue(
        self,
        tenant_id: str,
        event_type: Any,
        payload: dict[str, Any] = None,
        scheduled_at: datetime = None,
        priority: int = None,
        max_retries: int = None,
    ) -> QueueEvent:
        event = self._new_event(tenant_id, event_type, payload, scheduled_at, priority, max_retries)
        self._events[event.id] = event
        logger.info("event_enqueued",
                    event_id=event.id,
                    event_type=event.event_type,
                    tenant_id=tenant_id,
                    priority=event.priority,
                    scheduled_at=event.scheduled_at.isoformat())
        return event.model_copy(deep=True)

    async def dequeue(self) -> Optional[QueueEvent]:
        now = self.now()
        for event in self._pending():
            if event.scheduled_at <= now:
                event.status = EventStatus.PROCESSING
                event.started_at = now
                logger.debug("event_claimed",
                             event_id=event.id,
                             event_type=event.event_type,
                             attempt=event.retry_count)
                return event.model_copy(deep=True)
        return None

    async def complete(self, event_id: str) -> bool:
        event = self._events.get(event_id)
        if event is None or event.status != EventStatus.PROCESSING:
            logger.warning("event_complete_ignored", event_id=event_id)
            return False
        event.status = EventStatus.COMPLETED
        event.completed_at = self.now()
        logger.debug("event_completed", event_id=event_id)
        return True

    async def fail(self, event_id: str, error_message: str) -> QueueEvent:
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        now = self.now()
        new_retry = event.retry_count + 1
        event.retry_count = new_retry
        event.error_message = error_message
        if new_retry < event.max_retries:
            event.status = EventStatus.PENDING
            event.scheduled_at = now + self.retry_delay(new_retry)
            event.started_at = None
        else:
            event.status = EventStatus.FAILED
            event.completed_at = now

        self._log_failure(event)
        return event.model_copy(deep=True)

    async def defer(self, event_id: str) -> bool:
        event = self._events.get(event_id)
        deferred = event is not None and event.status == EventStatus.PROCESSING
        if deferred:
            event.status = EventStatus.PENDING
            event.started_at = None
        logger.debug("event_deferred", event_id=event_id, deferred=deferred)
        return deferred

    async def cancel_by_lead_id(self, lead_id: str) -> int:
        cancelled = 0
        for event in self._pending():
            if event.lead_id == lead_id:
                event.status = EventStatus.CANCELLED
                cancelled += 1
        if cancelled:
            logger.info("events_cancelled", lead_id=lead_id, count=cancelled)
        return cancelled

    async def cancel_by_filter(self, event_type: Any, payload_filter: dict[str, Any]) -> int:
        type_name = _type_name(event_type)
        cancelled = 0
        for event in self._pending():
            if event.event_type == type_name and event.payload_matches(payload_filter):
                event.status = EventStatus.CANCELLED
                cancelled += 1
        logger.info("events_cancelled",
                    event_type=type_name,
                    filter=payload_filter,
                    count=cancelled)
        return cancelled

    async def get_pending_count(self, tenant_id: str = None) -> dict[str, int]:
        counts = Counter(
            e.event_type for e in self._pending()
            if tenant_id is None or e.tenant_id == tenant_id
        )
        return dict(counts)

    async def get_event(self, event_id: str) -> Optional[QueueEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def pending_events(self, event_type: Any = None, lead_id: str = None) -> list[QueueEvent]:
        type_name = _type_name(event_type) if event_type is not None else None
        return [
            e.model_copy(deep=True) for e in self._pending()
            if (type_name is None or e.event_type == type_name)
            and (lead_id is None or e.lead_id == lead_id)
        ]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[EventQueue] = None


def create_event_queue(queue_config: dict[str, Any] = None, clock: Clock = None) -> EventQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    kwargs = {
        "clock": clock,
        "retry_backoff_minutes": config.get("retry_backoff_minutes"),
        "default_priority": config.get("default_priority", EventPriority.NORMAL.value),
        "default_max_retries": config.get("default_max_retries", 3),
    }

    if backend == "sql":
        _instance = SqlEventQueue(**kwargs)
    elif backend == "memory":
        _instance = InMemoryEventQueue(**kwargs)
    else:
        raise ValueError(f"Unknown queue backend: {backend!r}")

    logger.info("event_queue_created", backend=backend)
    return _instance


def get_event_queue() -> EventQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_event_queue()
    return _instance


def reset_event_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
