"""Shared test fixtures for jobspread."""
import asyncio
import pytest
from typing import Any, Union

from backend.connector import DownstreamClient
from backend.record_source import InMemoryRecordSource
from core.errors import DispatchError
from database.store_memory import InMemoryResultStore
from job_queue.consumer import JobConsumer
from job_queue.message_queue import InMemoryDispatchQueue
from models.schemas import DownstreamOutcome, JobMessage, MessageEnvelope, OutcomeKind

TODAY = "2024-05-01"


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeClock:
    """Manually advanced monotonic clock for queue visibility and delays."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Behaviour = Union[DownstreamOutcome, Exception, dict]


class FakeDownstream(DownstreamClient):
    """
    Scripted downstream. Each path maps to a DownstreamOutcome to return,
    an exception to raise, or {"delay": seconds, "then": behaviour}.
    Unscripted paths succeed with {"path": path}.
    """

    def __init__(self, script: dict[str, Behaviour] = None):
        self.script = dict(script or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, path: str, payload: dict[str, Any]) -> DownstreamOutcome:
        self.calls.append((path, payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            behaviour = self.script.get(path)
            if isinstance(behaviour, dict):
                await asyncio.sleep(behaviour["delay"])
                behaviour = behaviour.get("then")
            else:
                await asyncio.sleep(0)
            if isinstance(behaviour, Exception):
                raise behaviour
            if behaviour is None:
                return ok_outcome({"path": path})
            return behaviour
        finally:
            self.in_flight -= 1


class FailingResultStore(InMemoryResultStore):
    """Result store whose writes always fail."""

    async def put(self, result) -> None:
        raise ConnectionError("store unavailable")


def ok_outcome(data: Any = None, status: int = 200) -> DownstreamOutcome:
    return DownstreamOutcome(kind=OutcomeKind.SUCCESS, http_status=status, data=data)


def failure(status: int, code: str = None, message: str = "boom") -> DispatchError:
    return DispatchError(message, http_status=status, code=code)


def envelope(job_id: str = "r1", provider: str = "p1", body: str = None,
             message_id: str = None, receive_count: int = 1) -> MessageEnvelope:
    if body is None:
        body = JobMessage(id=job_id, provider=provider, endpoint="/x", body={"n": 1}).to_body()
    mid = message_id or f"m-{job_id}"
    return MessageEnvelope(
        message_id=mid,
        receipt_handle=f"{mid}:rh",
        body=body,
        partition_key=provider,
        dedup_id=f"{job_id}@{TODAY}",
        receive_count=receive_count,
    )


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock) -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue(clock=clock)


@pytest.fixture
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def downstream() -> FakeDownstream:
    return FakeDownstream()


@pytest.fixture
def consumer(store, downstream) -> JobConsumer:
    return JobConsumer(store, downstream, timeout_ms=200, today_fn=lambda: TODAY)


@pytest.fixture
def sample_rows() -> list[dict[str, Any]]:
    return [
        {"id": "r1", "provider": "p1", "endpoint": "/orders", "body": '{"qty": 1}'},
        {"id": "r2", "provider": "p2", "endpoint": "/orders", "body": '{"qty": 2}'},
        {"id": "r3", "provider": "p1", "endpoint": "/refunds", "body": None},
    ]


@pytest.fixture
def source(sample_rows) -> InMemoryRecordSource:
    return InMemoryRecordSource(sample_rows)
