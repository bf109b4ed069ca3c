from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cadence.contracts import Subject
from cadence.executors import InMemoryDelayedExecutor
from cadence.persistence import InMemoryRepository
from cadence.subjects import InMemorySubjectDirectory


class FakeClock:
    """Manually advanced clock shared by the executor and the orchestrator."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def executor(clock):
    return InMemoryDelayedExecutor(clock=clock)


@pytest.fixture
def subject():
    return Subject(
        id="client-1",
        owner_email="owner@example.com",
        source_reference="resp-123",
        app_url="https://app.example.com",
    )


@pytest.fixture
def subjects(subject):
    return InMemorySubjectDirectory([subject])


@pytest.fixture
def make_http_client():
    """Build an AsyncClient answering with ``statuses`` in order.

    Returns the client and the list the handler records requests into.
    """

    def _make(statuses):
        requests = []
        remaining = list(statuses)

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            status = remaining.pop(0) if remaining else 200
            return httpx.Response(status, text="ok" if status < 400 else "boom")

        return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests

    return _make
