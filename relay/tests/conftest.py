"""Shared fixtures for relay tests.

Provides an in-memory row store and a recording transport so the task
engine and memory adapter can be tested without Supabase or Telegram.
"""

import copy
import re
from datetime import datetime, timezone
from typing import Any

import pytest

from relay.errors import StoreError
from relay.models import Button
from relay.store import split_filter
from relay.task_store import TaskRepository
from relay.tasks import TaskEngine


def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    for column, value in (filters or {}).items():
        operator, operand = split_filter(value)
        actual = row.get(column)
        if operator == "eq" and actual != operand:
            return False
        if operator == "neq" and actual == operand:
            return False
        if operator == "in" and actual not in operand:
            return False
        if operator == "is" and actual is not operand:
            return False
        if operator in ("lt", "lte", "gt", "gte"):
            if actual is None:
                return False
            if operator == "lt" and not actual < operand:
                return False
            if operator == "lte" and not actual <= operand:
                return False
            if operator == "gt" and not actual > operand:
                return False
            if operator == "gte" and not actual >= operand:
                return False
        if operator == "ilike":
            pattern = re.escape(operand).replace("%", ".*")
            if actual is None or not re.fullmatch(pattern, str(actual), re.IGNORECASE | re.DOTALL):
                return False
    return True


class FakeStore:
    """In-memory Store with switchable failures."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail_inserts = False
        self.fail_updates = False
        self.fail_selects = False
        self.function_calls: list[tuple[str, dict[str, Any]]] = []
        self.function_results: dict[str, Any] = {}
        self._counter = 0

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any] | None:
        if self.fail_inserts:
            raise StoreError(f"insert into {table} failed")
        self._counter += 1
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(self._counter))
        stored.setdefault("created_at", datetime(2026, 1, 1, tzinfo=timezone.utc).isoformat())
        self.rows(table).append(stored)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        if self.fail_updates:
            raise StoreError(f"update of {table} failed")
        updated = []
        for row in self.rows(table):
            if _matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if self.fail_selects:
            raise StoreError(f"select from {table} failed")
        rows = [copy.deepcopy(row) for row in self.rows(table) if _matches(row, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda row: row.get(column) or "", reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        self.function_calls.append((name, payload))
        if name not in self.function_results:
            raise StoreError(f"function {name} unavailable")
        return self.function_results[name]


class FakeTransport:
    """Transport that records every message."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.typing: list[tuple[str, int | None]] = []
        self.deliver = True

    async def send_message(
        self,
        chat_id: str,
        text: str,
        thread_id: int | None = None,
        buttons: list[list[Button]] | None = None,
    ) -> bool:
        self.sent.append(
            {"chat_id": chat_id, "text": text, "thread_id": thread_id, "buttons": buttons}
        )
        return self.deliver

    async def send_typing(self, chat_id: str, thread_id: int | None = None) -> None:
        self.typing.append((chat_id, thread_id))


class FakeClock:
    """Settable clock, starting at 2026-01-01 12:00 UTC."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository(store: FakeStore, clock: FakeClock) -> TaskRepository:
    return TaskRepository(store, clock=clock)


@pytest.fixture
def engine(repository: TaskRepository, transport: FakeTransport, clock: FakeClock) -> TaskEngine:
    return TaskEngine(repository, transport, clock=clock)
