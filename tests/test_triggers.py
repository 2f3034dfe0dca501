"""Tests for the messaging-side entry points."""
import pytest
from datetime import timedelta

from core.triggers import FollowupTriggers, SYSTEM_TENANT
from models.schemas import EventPriority, EventStatus, EventType, TrackingStatus
from conftest import TENANT, sp


class TestTriggersWithoutProcessor:
    @pytest.mark.asyncio
    async def test_trigger_enqueues_high_priority(self, queue):
        triggers = FollowupTriggers(queue)
        event = await triggers.trigger("lead_1", TENANT)

        assert event.event_type == EventType.AI_MESSAGE_SENT.value
        assert event.priority == EventPriority.HIGH.value
        assert event.payload == {"lead_id": "lead_1", "tenant_id": TENANT}
        assert (await queue.get_event(event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_trigger_cancels_pending_work_for_lead(self, queue):
        old = await queue.enqueue(TENANT, EventType.FOLLOW_UP_SEND, {"lead_id": "lead_1", "step": 2})
        other = await queue.enqueue(TENANT, EventType.FOLLOW_UP_SEND, {"lead_id": "lead_2", "step": 1})

        await FollowupTriggers(queue).trigger("lead_1", TENANT)

        assert (await queue.get_event(old.id)).status == EventStatus.CANCELLED
        assert (await queue.get_event(other.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_defaults_to_system_tenant(self, queue):
        event = await FollowupTriggers(queue).cancel("lead_1")
        assert event.event_type == EventType.LEAD_MESSAGE_RECEIVED.value
        assert event.tenant_id == SYSTEM_TENANT
        assert event.priority == EventPriority.URGENT.value

    @pytest.mark.asyncio
    async def test_cancel_keeps_known_tenant(self, queue):
        event = await FollowupTriggers(queue).cancel("lead_1", TENANT)
        assert event.tenant_id == TENANT
        assert event.payload["tenant_id"] == TENANT

    @pytest.mark.asyncio
    async def test_opt_out(self, queue):
        event = await FollowupTriggers(queue).opt_out("lead_1", TENANT)
        assert event.event_type == EventType.LEAD_OPTED_OUT.value
        assert event.priority == EventPriority.URGENT.value


class TestTriggersDrainImmediately:
    @pytest.mark.asyncio
    async def test_trigger_starts_cycle(self, configured_store, queue, processor):
        triggers = FollowupTriggers(queue, processor)
        event = await triggers.trigger("lead_1", TENANT)

        assert (await queue.get_event(event.id)).status == EventStatus.COMPLETED
        tracking = await configured_store.get_tracking("lead_1")
        assert tracking.status == TrackingStatus.WAITING
        assert tracking.next_send_at == sp(2024, 6, 3, 10, 30)

        sends = await queue.pending_events(EventType.FOLLOW_UP_SEND, "lead_1")
        assert len(sends) == 1
        assert sends[0].payload["step"] == 1

    @pytest.mark.asyncio
    async def test_reply_stops_cycle(self, configured_store, queue, processor, clock):
        triggers = FollowupTriggers(queue, processor)
        await triggers.trigger("lead_1", TENANT)

        clock.advance(minutes=5)
        await triggers.cancel("lead_1", TENANT)

        tracking = await configured_store.get_tracking("lead_1")
        assert tracking.status == TrackingStatus.RESPONDED
        assert tracking.next_send_at is None
        assert await queue.pending_events(lead_id="lead_1") == []

    @pytest.mark.asyncio
    async def test_opt_out_cancels_cycle(self, configured_store, queue, processor, sender, clock):
        triggers = FollowupTriggers(queue, processor)
        await triggers.trigger("lead_1", TENANT)
        await triggers.opt_out("lead_1", TENANT)

        clock.advance(hours=1)
        await processor.process_batch()

        tracking = await configured_store.get_tracking("lead_1")
        assert tracking.status == TrackingStatus.CANCELLED
        assert sender.requests == []

    @pytest.mark.asyncio
    async def test_retrigger_restarts_cycle(self, configured_store, queue, processor, clock):
        triggers = FollowupTriggers(queue, processor)
        await triggers.trigger("lead_1", TENANT)
        clock.advance(minutes=10)
        await triggers.trigger("lead_1", TENANT)

        tracking = await configured_store.get_tracking("lead_1")
        assert tracking.cycle_count == 2
        sends = await queue.pending_events(EventType.FOLLOW_UP_SEND, "lead_1")
        assert len(sends) == 1
        assert sends[0].scheduled_at == sp(2024, 6, 3, 10, 10) + timedelta(minutes=30)
