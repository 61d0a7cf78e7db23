"""Shared fixtures for the postqueue test suite."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest

from postqueue.database import SupabaseDB
from postqueue.scheduling.models import JobStatus, ScheduledJob
from postqueue.tools.publisher import PublishResult
from postqueue.utils import ManualClock


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all API keys and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "X_API_BEARER_TOKEN",
        "POSTQUEUE_LOG_LEVEL",
        "POSTQUEUE_BATCH_SIZE",
        "POSTQUEUE_MAX_RETRIES",
        "POSTQUEUE_SWEEP_INTERVAL",
        "POSTQUEUE_CONFLICT_WINDOW",
        "POSTQUEUE_DEFAULT_TIMEZONE",
        "POSTQUEUE_BREAKER_THRESHOLD",
        "POSTQUEUE_BREAKER_RESET_SECONDS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_utc_now):
    """A manual clock starting at ``sample_utc_now``."""
    return ManualClock(sample_utc_now)


# ---------------------------------------------------------------------------
# In-memory Supabase fake
# ---------------------------------------------------------------------------
def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class FakeQuery:
    """Mimics the PostgREST query builder used by ``SupabaseDB``.

    Filters are evaluated atomically inside ``execute()``; execute yields to
    the event loop first so concurrent workers interleave like real I/O.
    """

    def __init__(self, client: "FakeSupabaseClient", table: str) -> None:
        self.client = client
        self.table = table
        self._op = "select"
        self._columns = "*"
        self._payload: Any = None
        self._filters: List[Any] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    # -- operations ----------------------------------------------------
    def select(self, columns: str = "*") -> "FakeQuery":
        self._op, self._columns = "select", columns
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self._op, self._payload = "insert", payload
        return self

    def update(self, payload: Dict[str, Any]) -> "FakeQuery":
        self._op, self._payload = "update", payload
        return self

    # -- filters -------------------------------------------------------
    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column: str, values: List[Any]) -> "FakeQuery":
        allowed = list(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        bound = _comparable(value)
        self._filters.append(
            lambda row: row.get(column) is not None and _comparable(row[column]) >= bound
        )
        return self

    def lte(self, column: str, value: Any) -> "FakeQuery":
        bound = _comparable(value)
        self._filters.append(
            lambda row: row.get(column) is not None and _comparable(row[column]) <= bound
        )
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    # -- execution -----------------------------------------------------
    def _project(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self._columns.strip() == "*":
            return copy.deepcopy(row)
        columns = [c.strip() for c in self._columns.split(",")]
        return {c: copy.deepcopy(row.get(c)) for c in columns}

    async def execute(self) -> SimpleNamespace:
        await asyncio.sleep(0)
        self.client.calls.append((self.table, self._op))
        if self.client.fail_next:
            error, self.client.fail_next = self.client.fail_next, None
            raise error

        rows = self.client.tables.setdefault(self.table, [])

        if self._op == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = [copy.deepcopy(p) for p in payload]
            rows.extend(inserted)
            return SimpleNamespace(data=copy.deepcopy(inserted))

        matched = [row for row in rows if all(f(row) for f in self._filters)]

        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self._order is not None:
            column, desc = self._order
            matched.sort(
                key=lambda row: (row.get(column) is None, _comparable(row.get(column) or "")),
                reverse=desc,
            )
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=[self._project(row) for row in matched])


class FakeSupabaseClient:
    """In-memory stand-in for ``supabase.AsyncClient``.

    Attributes:
        tables: Table name -> list of row dicts.
        calls: ``(table, operation)`` for every executed query.
        fail_next: Exception raised by the next ``execute()``.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.fail_next: Optional[Exception] = None

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, table: str = "scheduled_posts") -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def row(self, job_id: str, table: str = "scheduled_posts") -> Dict[str, Any]:
        return next(r for r in self.rows(table) if r["id"] == job_id)


@pytest.fixture
def fake_client():
    return FakeSupabaseClient()


@pytest.fixture
def db(fake_client):
    """A real ``SupabaseDB`` over the in-memory fake."""
    return SupabaseDB(fake_client)


@pytest.fixture
def add_job(fake_client, sample_utc_now):
    """Insert a job row directly and return its id.

    Defaults to an ``approved`` job due one minute before ``sample_utc_now``.
    """
    counter = {"n": 0}

    def _add(**overrides: Any) -> str:
        counter["n"] += 1
        job = ScheduledJob(
            id=overrides.pop("id", f"job-{counter['n']}"),
            user_id=overrides.pop("user_id", "user-1"),
            content=overrides.pop("content", f"Post number {counter['n']}"),
            scheduled_at=overrides.pop("scheduled_at", sample_utc_now - timedelta(minutes=1)),
            status=overrides.pop("status", JobStatus.APPROVED),
            created_at=sample_utc_now - timedelta(days=1),
            **overrides,
        )
        fake_client.rows().append(job.to_row())
        return job.id

    return _add


# ---------------------------------------------------------------------------
# Fake publisher
# ---------------------------------------------------------------------------
class FakePublisher:
    """Scriptable publisher.

    ``script`` entries are consumed in order: a ``PublishResult`` is
    returned, an exception is raised.  When the script runs out, every call
    succeeds with ``default_id``.
    """

    def __init__(self, script: Optional[List[Any]] = None, default_id: str = "post-1") -> None:
        self.script = list(script or [])
        self.default_id = default_id
        self.calls: List[tuple] = []

    async def post(self, content: str, media_refs: Optional[List[str]], user_id: str) -> PublishResult:
        self.calls.append((content, media_refs, user_id))
        await asyncio.sleep(0)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step
        return PublishResult.ok(self.default_id)


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def make_publisher():
    """Factory for scripted publishers: ``make_publisher([result_or_exc, ...])``."""
    return FakePublisher


@pytest.fixture
def no_sleep():
    """Patch the retry backoff sleep; yields the AsyncMock."""
    with patch("postqueue.resilience.retry.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
        yield sleep_mock
