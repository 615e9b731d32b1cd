"""Shared fixtures for the scheduling tests."""

import fnmatch
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.core.scheduling.business_rules import default_business_rules
from app.core.scheduling.messages import MessageBuilder
from app.infra.metrics import MetricsSink

# Monday 14:00 UTC, inside business hours
NOW = datetime(2030, 3, 4, 14, 0, tzinfo=timezone.utc)


def _slice(items: list, start: int, end: int) -> list:
    size = len(items)
    if start < 0:
        start = max(size + start, 0)
    if end < 0:
        end = size + end
    if end < start:
        return []
    return items[start:end + 1]


def _bound(value) -> float:
    return float(value)


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` (decoded responses).

    Covers the commands the scheduling services issue. TTLs are recorded
    but never enforced.
    """

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.lists: dict[str, list] = {}
        self.ttls: dict[str, int] = {}

    def _stores(self):
        return (self.strings, self.sets, self.zsets, self.lists)

    def _exists(self, name: str) -> bool:
        return any(name in store for store in self._stores())

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # Strings

    async def get(self, name):
        return self.strings.get(name)

    async def set(self, name, value, ex=None, nx=False, **kwargs):
        if nx and name in self.strings:
            return None
        self.strings[name] = value
        if ex:
            self.ttls[name] = int(ex)
        else:
            self.ttls.pop(name, None)
        return True

    async def setex(self, name, time, value):
        self.strings[name] = value
        self.ttls[name] = int(time)
        return True

    async def delete(self, *names) -> int:
        removed = 0
        for name in names:
            found = False
            for store in self._stores():
                if name in store:
                    del store[name]
                    found = True
            self.ttls.pop(name, None)
            removed += int(found)
        return removed

    async def exists(self, *names) -> int:
        return sum(1 for name in names if self._exists(name))

    async def expire(self, name, time) -> bool:
        if not self._exists(name):
            return False
        self.ttls[name] = int(time)
        return True

    async def ttl(self, name) -> int:
        if not self._exists(name):
            return -2
        return self.ttls.get(name, -1)

    async def scan_iter(self, match=None):
        names = [name for store in self._stores() for name in store]
        for name in names:
            if match is None or fnmatch.fnmatchcase(name, match):
                yield name

    # Sets

    async def sadd(self, name, *values) -> int:
        members = self.sets.setdefault(name, set())
        before = len(members)
        members.update(values)
        return len(members) - before

    async def smembers(self, name) -> set:
        return set(self.sets.get(name, set()))

    async def srem(self, name, *values) -> int:
        members = self.sets.get(name, set())
        removed = sum(1 for v in values if v in members)
        members.difference_update(values)
        if name in self.sets and not members:
            del self.sets[name]
        return removed

    # Sorted sets

    def _ordered(self, name) -> list[str]:
        members = self.zsets.get(name, {})
        return [m for m, _ in sorted(members.items(), key=lambda item: (item[1], item[0]))]

    async def zadd(self, name, mapping) -> int:
        members = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in members)
        for member, score in mapping.items():
            members[member] = float(score)
        return added

    async def zrem(self, name, *values) -> int:
        members = self.zsets.get(name, {})
        removed = 0
        for value in values:
            if value in members:
                del members[value]
                removed += 1
        if name in self.zsets and not members:
            del self.zsets[name]
        return removed

    async def zscore(self, name, value):
        return self.zsets.get(name, {}).get(value)

    async def zrange(self, name, start, end) -> list[str]:
        return _slice(self._ordered(name), start, end)

    async def zrangebyscore(self, name, min, max) -> list[str]:
        low, high = _bound(min), _bound(max)
        members = self.zsets.get(name, {})
        return [m for m in self._ordered(name) if low <= members[m] <= high]

    # Lists

    async def lpush(self, name, *values) -> int:
        items = self.lists.setdefault(name, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpush(self, name, *values) -> int:
        items = self.lists.setdefault(name, [])
        items.extend(values)
        return len(items)

    async def lrange(self, name, start, end) -> list:
        return _slice(self.lists.get(name, []), start, end)

    async def ltrim(self, name, start, end) -> bool:
        if name in self.lists:
            self.lists[name] = _slice(self.lists[name], start, end)
            if not self.lists[name]:
                del self.lists[name]
        return True

    async def lrem(self, name, count, value) -> int:
        items = self.lists.get(name, [])
        kept = [item for item in items if item != value]
        removed = len(items) - len(kept)
        if name in self.lists:
            self.lists[name] = kept
        return removed


class FakeClock:
    """Callable wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_redis():
    """Fresh in-memory Redis per test."""
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rules():
    """Default practice hours, evaluated in UTC."""
    return default_business_rules("UTC")


@pytest.fixture
def messages():
    return MessageBuilder(timezone="UTC", location="Main Office")


@pytest.fixture
def metrics():
    return MetricsSink()


@pytest.fixture
def mock_emr():
    """EMR client whose every call is an AsyncMock."""
    return AsyncMock()


@pytest.fixture
def mock_notifier():
    notifier = AsyncMock()
    notifier.send.return_value = True
    notifier.send_sms.return_value = True
    return notifier
