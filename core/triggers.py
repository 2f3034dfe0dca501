"""
Follow-up triggers — entry points the messaging side calls.

    triggers = FollowupTriggers(queue, processor)
    await triggers.trigger(lead_id, tenant_id)     # AI just messaged the lead
    await triggers.cancel(lead_id)                 # lead replied
    await triggers.opt_out(lead_id, tenant_id)     # lead asked to stop

Each call enqueues an urgent event and drains the queue right away, so the
cycle reacts without waiting for the next poll.
"""
from __future__ import annotations

import structlog
from typing import Optional

from job_queue.event_queue import EventQueue
from job_queue.processor import QueueProcessor
from models.schemas import EventPriority, EventType, QueueEvent

logger = structlog.get_logger()

SYSTEM_TENANT = "system"


class FollowupTriggers:

    def __init__(self, queue: EventQueue, processor: Optional[QueueProcessor] = None):
        self.queue = queue
        self.processor = processor

    async def trigger(self, lead_id: str, tenant_id: str) -> QueueEvent:
        """Start (or restart) the follow-up cycle after an outbound AI message."""
        cancelled = await self.queue.cancel_by_lead_id(lead_id)
        event = await self.queue.enqueue(
            tenant_id,
            EventType.AI_MESSAGE_SENT,
            {"lead_id": lead_id, "tenant_id": tenant_id},
            priority=EventPriority.HIGH.value,
        )
        logger.info("followup_triggered",
                    lead_id=lead_id,
                    tenant_id=tenant_id,
                    event_id=event.id,
                    cancelled=cancelled)
        await self._drain()
        return event

    async def cancel(self, lead_id: str, tenant_id: str = None) -> QueueEvent:
        """Stop the cycle because the lead answered."""
        tenant_id = tenant_id or SYSTEM_TENANT
        event = await self.queue.enqueue(
            tenant_id,
            EventType.LEAD_MESSAGE_RECEIVED,
            {"lead_id": lead_id, "tenant_id": tenant_id},
            priority=EventPriority.URGENT.value,
        )
        logger.info("followup_cancel_requested", lead_id=lead_id, event_id=event.id)
        await self._drain()
        return event

    async def opt_out(self, lead_id: str, tenant_id: str) -> QueueEvent:
        event = await self.queue.enqueue(
            tenant_id,
            EventType.LEAD_OPTED_OUT,
            {"lead_id": lead_id, "tenant_id": tenant_id},
            priority=EventPriority.URGENT.value,
        )
        logger.info("followup_opt_out_requested", lead_id=lead_id, event_id=event.id)
        await self._drain()
        return event

    async def _drain(self) -> None:
        if self.processor is not None:
            await self.processor.trigger_immediate()
