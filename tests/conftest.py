"""Shared test fixtures for the follow-up engine."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from backend.agent_client import AgentSender
from context.state_machine import TrackingStateMachine
from core.orchestrator import FollowupOrchestrator
from core.quota import DailyQuotaCounter
from database.store_memory import InMemoryFollowupStore
from job_queue.event_queue import InMemoryEventQueue
from job_queue.processor import QueueProcessor
from models.schemas import AgentRequest, FollowupConfig, SendResult

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
TENANT = "tenant_acme"

WEEK_SCHEDULE = {
    "segunda": "09:00-18:00",
    "terca": "09:00-18:00",
    "quarta": "09:00-18:00",
    "quinta": "09:00-18:00",
    "sexta": "09:00-18:00",
    "sabado": "09:00-12:00",
    "domingo": "fechado",
}


def sp(year, month, day, hour=0, minute=0) -> datetime:
    """Wall-clock time in São Paulo."""
    return datetime(year, month, day, hour, minute, tzinfo=SAO_PAULO)


class FakeClock:
    """Settable clock injected wherever the code asks for 'now'."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)

    def set(self, value: datetime):
        self.current = value


class RecordingSender(AgentSender):
    """Records every request; fails while ``failures`` is above zero."""

    def __init__(self):
        self.requests: list[AgentRequest] = []
        self.failures = 0
        self.error = "instance disconnected"

    async def execute(self, request: AgentRequest) -> SendResult:
        self.requests.append(request)
        if self.failures > 0:
            self.failures -= 1
            return SendResult(success=False, error=self.error)
        return SendResult(success=True, messages_sent=1)

    @property
    def steps(self) -> list[int]:
        return [r.metadata["step_number"] for r in self.requests]


@pytest.fixture
def clock() -> FakeClock:
    # Monday 10:00 in São Paulo
    return FakeClock(sp(2024, 6, 3, 10, 0))


@pytest.fixture
def followup_config() -> FollowupConfig:
    return FollowupConfig(
        tenant_id=TENANT,
        is_active=True,
        max_attempts=3,
        intervals=[30, 1440, 4320],
        sending_schedule=dict(WEEK_SCHEDULE),
        daily_send_limit=30,
        timezone="America/Sao_Paulo",
    )


@pytest.fixture
def store() -> InMemoryFollowupStore:
    return InMemoryFollowupStore()


@pytest.fixture
def queue(clock) -> InMemoryEventQueue:
    return InMemoryEventQueue(clock=clock)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def orchestrator(store, queue, sender, clock) -> FollowupOrchestrator:
    return FollowupOrchestrator(
        store=store,
        queue=queue,
        sender=sender,
        quota=DailyQuotaCounter(store, default_limit=30),
        state_machine=TrackingStateMachine(),
        clock=clock,
        default_timezone="America/Sao_Paulo",
    )


@pytest.fixture
def processor(queue, orchestrator) -> QueueProcessor:
    proc = QueueProcessor(queue, poll_interval_s=0.01, batch_size=50)
    orchestrator.register(proc)
    return proc


@pytest_asyncio.fixture
async def configured_store(store, followup_config) -> InMemoryFollowupStore:
    await store.save_followup_config(followup_config)
    return store


@pytest_asyncio.fixture
async def sql_database(tmp_path):
    """Fresh SQLite database in a temp dir, tables created."""
    from config.settings import load_settings, reset_settings
    from database.session import init_db, close_db

    await close_db()
    reset_settings()
    settings = load_settings(str(tmp_path / "settings.yaml"))
    settings.database.url = f"sqlite:///{tmp_path / 'followup.db'}"
    await init_db()
    yield settings
    await close_db()
    reset_settings()
