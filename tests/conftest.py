from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from refsync.errors import FetchError
from refsync.models import DataDomain
from refsync.store import InMemoryDocumentStore

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_records(count: int, prefix: str = "rec", pad: int = 0) -> List[dict]:
    return [{"id": f"{prefix}-{i}", "name": f"{prefix} {i}" + "x" * pad} for i in range(count)]


class FakeClock:
    """Returns a fixed time that advances by ``step`` on every call."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(0)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeSource:
    """In-memory catalog; a domain mapped to an exception raises it on fetch."""

    def __init__(self, data: Dict[DataDomain, object] | None = None):
        self.data: Dict[DataDomain, object] = dict(data or {})
        self.calls: List[DataDomain] = []
        self.closed = False

    async def fetch(self, domain: DataDomain) -> List[dict]:
        self.calls.append(domain)
        value = self.data.get(domain)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise FetchError(domain.value, "no data configured", kind="network", retryable=False)
        return list(value)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(
        {
            DataDomain.TASKS: make_records(3, "task"),
            DataDomain.HIDEOUT: make_records(2, "station"),
            DataDomain.ITEMS: make_records(1200, "item"),
        }
    )
