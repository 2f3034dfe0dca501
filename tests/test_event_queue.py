"""
Tests for the event queue backends.

Covers:
  - InMemoryEventQueue
  - SqlEventQueue (via SQLite for test portability)
  - backoff table and queue factory
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import timedelta

from core.exceptions import EventNotFoundError
from job_queue.event_queue import (
    InMemoryEventQueue, SqlEventQueue, backoff_minutes,
    create_event_queue, reset_event_queue,
)
from models.schemas import EventStatus, EventType


@pytest_asyncio.fixture(params=["memory", "sql"])
async def event_queue(request, clock, tmp_path):
    if request.param == "memory":
        yield InMemoryEventQueue(clock=clock)
        return

    from config.settings import load_settings, reset_settings
    from database.session import init_db, close_db

    await close_db()
    reset_settings()
    settings = load_settings(str(tmp_path / "settings.yaml"))
    settings.database.url = f"sqlite:///{tmp_path / 'queue.db'}"
    await init_db()
    yield SqlEventQueue(clock=clock)
    await close_db()
    reset_settings()


async def _send(queue, lead_id="lead_1", step=1, **kwargs):
    return await queue.enqueue(
        "t1", EventType.FOLLOW_UP_SEND,
        {"lead_id": lead_id, "tenant_id": "t1", "step": step},
        **kwargs,
    )


class TestBackoff:
    @pytest.mark.parametrize("attempt,expected", [(1, 1), (2, 5), (3, 30), (4, 30), (10, 30)])
    def test_default_table(self, attempt, expected):
        assert backoff_minutes(attempt) == expected

    def test_custom_table(self):
        assert backoff_minutes(2, [2, 4]) == 4
        assert backoff_minutes(5, [2, 4]) == 4


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_defaults(self, event_queue, clock):
        event = await _send(event_queue)
        assert event.status == EventStatus.PENDING
        assert event.priority == 5
        assert event.max_retries == 3
        assert event.retry_count == 0
        assert event.scheduled_at == clock()
        assert event.event_type == "follow_up_send"

        stored = await event_queue.get_event(event.id)
        assert stored.payload == {"lead_id": "lead_1", "tenant_id": "t1", "step": 1}
        assert stored.scheduled_at == clock()

    @pytest.mark.asyncio
    async def test_explicit_schedule_and_priority(self, event_queue, clock):
        later = clock() + timedelta(hours=2)
        event = await _send(event_queue, scheduled_at=later, priority=1, max_retries=5)
        stored = await event_queue.get_event(event.id)
        assert stored.scheduled_at == later
        assert stored.priority == 1
        assert stored.max_retries == 5

    @pytest.mark.asyncio
    async def test_get_unknown_event(self, event_queue):
        assert await event_queue.get_event("nope") is None


class TestDequeue:
    @pytest.mark.asyncio
    async def test_empty_queue(self, event_queue):
        assert await event_queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_claim_marks_processing(self, event_queue, clock):
        event = await _send(event_queue)
        claimed = await event_queue.dequeue()
        assert claimed.id == event.id
        assert claimed.status == EventStatus.PROCESSING
        assert claimed.started_at == clock()

        stored = await event_queue.get_event(event.id)
        assert stored.status == EventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_future_events_not_claimed(self, event_queue, clock):
        await _send(event_queue, scheduled_at=clock() + timedelta(minutes=10))
        assert await event_queue.dequeue() is None

        clock.advance(minutes=10)
        assert await event_queue.dequeue() is not None

    @pytest.mark.asyncio
    async def test_priority_before_schedule(self, event_queue, clock):
        early_normal = await _send(event_queue, lead_id="a", scheduled_at=clock() - timedelta(minutes=5))
        urgent = await _send(event_queue, lead_id="b", priority=1)

        first = await event_queue.dequeue()
        second = await event_queue.dequeue()
        assert first.id == urgent.id
        assert second.id == early_normal.id

    @pytest.mark.asyncio
    async def test_earliest_schedule_wins_within_priority(self, event_queue, clock):
        later = await _send(event_queue, lead_id="a", scheduled_at=clock() - timedelta(minutes=1))
        earlier = await _send(event_queue, lead_id="b", scheduled_at=clock() - timedelta(minutes=9))

        assert (await event_queue.dequeue()).id == earlier.id
        assert (await event_queue.dequeue()).id == later.id

    @pytest.mark.asyncio
    async def test_processing_completed_cancelled_never_claimed(self, event_queue):
        processing = await _send(event_queue, lead_id="a")
        await event_queue.dequeue()

        completed = await _send(event_queue, lead_id="b")
        await event_queue.dequeue()
        await event_queue.complete(completed.id)

        await _send(event_queue, lead_id="c")
        await event_queue.cancel_by_lead_id("c")

        assert await event_queue.dequeue() is None
        assert (await event_queue.get_event(processing.id)).status == EventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_each_event_claimed_once(self, event_queue):
        for i in range(3):
            await _send(event_queue, lead_id=f"lead_{i}")
        claimed = [await event_queue.dequeue() for _ in range(4)]
        ids = [e.id for e in claimed if e]
        assert len(ids) == 3
        assert len(set(ids)) == 3
        assert claimed[-1] is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_an_event(self, event_queue):
        for i in range(5):
            await _send(event_queue, lead_id=f"lead_{i}")

        results = await asyncio.gather(
            *(event_queue.dequeue() for _ in range(8)),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        ids = [r.id for r in results if r is not None and not isinstance(r, BaseException)]
        assert errors == []
        assert len(ids) == 5
        assert len(set(ids)) == 5
        for event_id in ids:
            assert (await event_queue.get_event(event_id)).status == EventStatus.PROCESSING


class TestCompleteAndDefer:
    @pytest.mark.asyncio
    async def test_complete(self, event_queue, clock):
        event = await _send(event_queue)
        await event_queue.dequeue()
        assert await event_queue.complete(event.id) is True

        stored = await event_queue.get_event(event.id)
        assert stored.status == EventStatus.COMPLETED
        assert stored.completed_at == clock()

    @pytest.mark.asyncio
    async def test_complete_ignored_unless_processing(self, event_queue):
        event = await _send(event_queue)
        assert await event_queue.complete(event.id) is False
        assert (await event_queue.get_event(event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_defer_returns_to_pending(self, event_queue):
        event = await _send(event_queue)
        await event_queue.dequeue()
        assert await event_queue.defer(event.id) is True

        stored = await event_queue.get_event(event.id)
        assert stored.status == EventStatus.PENDING
        assert stored.started_at is None
        assert stored.retry_count == 0
        assert (await event_queue.dequeue()).id == event.id


class TestFail:
    @pytest.mark.asyncio
    async def test_first_failure_backs_off_one_minute(self, event_queue, clock):
        event = await _send(event_queue)
        await event_queue.dequeue()
        failed = await event_queue.fail(event.id, "boom")

        assert failed.status == EventStatus.PENDING
        assert failed.retry_count == 1
        assert failed.error_message == "boom"
        assert failed.scheduled_at == clock() + timedelta(minutes=1)
        assert failed.started_at is None

    @pytest.mark.asyncio
    async def test_terminal_after_max_retries(self, event_queue, clock):
        event = await _send(event_queue)
        delays = []
        for _ in range(3):
            claimed = await event_queue.dequeue()
            assert claimed is not None and claimed.id == event.id
            result = await event_queue.fail(event.id, "still broken")
            if result.status == EventStatus.PENDING:
                delays.append(result.scheduled_at - clock())
                clock.set(result.scheduled_at)

        assert delays == [timedelta(minutes=1), timedelta(minutes=5)]
        stored = await event_queue.get_event(event.id)
        assert stored.status == EventStatus.FAILED
        assert stored.retry_count == 3
        assert stored.completed_at == clock()
        assert await event_queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_single_retry_budget(self, event_queue):
        event = await _send(event_queue, max_retries=1)
        await event_queue.dequeue()
        result = await event_queue.fail(event.id, "boom")
        assert result.status == EventStatus.FAILED
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_event_raises(self, event_queue):
        with pytest.raises(EventNotFoundError):
            await event_queue.fail("missing", "boom")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_by_lead_id_only_pending(self, event_queue):
        in_flight = await _send(event_queue, lead_id="lead_1")
        await event_queue.dequeue()
        pending_a = await _send(event_queue, lead_id="lead_1", step=2)
        pending_b = await event_queue.enqueue("t1", EventType.FOLLOW_UP_EXHAUSTED, {"lead_id": "lead_1"})
        other = await _send(event_queue, lead_id="lead_2")

        assert await event_queue.cancel_by_lead_id("lead_1") == 2

        assert (await event_queue.get_event(in_flight.id)).status == EventStatus.PROCESSING
        assert (await event_queue.get_event(pending_a.id)).status == EventStatus.CANCELLED
        assert (await event_queue.get_event(pending_b.id)).status == EventStatus.CANCELLED
        assert (await event_queue.get_event(other.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_by_filter_matches_type_and_payload(self, event_queue):
        send = await _send(event_queue, lead_id="lead_1")
        exhausted = await event_queue.enqueue("t1", EventType.FOLLOW_UP_EXHAUSTED, {"lead_id": "lead_1"})
        other_lead = await _send(event_queue, lead_id="lead_2")

        cancelled = await event_queue.cancel_by_filter(EventType.FOLLOW_UP_SEND, {"lead_id": "lead_1"})

        assert cancelled == 1
        assert (await event_queue.get_event(send.id)).status == EventStatus.CANCELLED
        assert (await event_queue.get_event(exhausted.id)).status == EventStatus.PENDING
        assert (await event_queue.get_event(other_lead.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_by_filter_on_extra_keys(self, event_queue):
        step1 = await _send(event_queue, step=1)
        step2 = await _send(event_queue, step=2)

        cancelled = await event_queue.cancel_by_filter("follow_up_send", {"lead_id": "lead_1", "step": 2})

        assert cancelled == 1
        assert (await event_queue.get_event(step1.id)).status == EventStatus.PENDING
        assert (await event_queue.get_event(step2.id)).status == EventStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_nothing(self, event_queue):
        assert await event_queue.cancel_by_lead_id("ghost") == 0
        assert await event_queue.cancel_by_filter(EventType.FOLLOW_UP_SEND, {"lead_id": "ghost"}) == 0


class TestInspection:
    @pytest.mark.asyncio
    async def test_pending_count_by_type_and_tenant(self, event_queue):
        await _send(event_queue, lead_id="a")
        await _send(event_queue, lead_id="b")
        await event_queue.enqueue("t2", EventType.DAILY_LIMIT_REACHED, {"tenant_id": "t2"})

        assert await event_queue.get_pending_count() == {
            "follow_up_send": 2, "daily_limit_reached": 1,
        }
        assert await event_queue.get_pending_count("t2") == {"daily_limit_reached": 1}

    @pytest.mark.asyncio
    async def test_pending_events_filters(self, event_queue, clock):
        await _send(event_queue, lead_id="a", scheduled_at=clock() + timedelta(hours=1))
        await _send(event_queue, lead_id="b")
        await event_queue.enqueue("t1", EventType.FOLLOW_UP_EXHAUSTED, {"lead_id": "a"})

        sends = await event_queue.pending_events(EventType.FOLLOW_UP_SEND)
        assert [e.lead_id for e in sends] == ["b", "a"]
        assert len(await event_queue.pending_events(lead_id="a")) == 2


class TestQueueFactory:
    def setup_method(self):
        reset_event_queue()

    def teardown_method(self):
        reset_event_queue()

    def test_memory_backend(self):
        assert isinstance(create_event_queue({"backend": "memory"}), InMemoryEventQueue)

    def test_sql_backend(self):
        queue = create_event_queue({"backend": "sql", "retry_backoff_minutes": [2, 10]})
        assert isinstance(queue, SqlEventQueue)
        assert queue.retry_backoff_minutes == [2, 10]

    def test_singleton(self):
        assert create_event_queue() is create_event_queue({"backend": "sql"})

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_event_queue({"backend": "redis"})
