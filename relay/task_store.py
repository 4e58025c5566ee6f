"""Task persistence over the row store.

Converts between Task objects and async_tasks rows. Every update stamps
updated_at, so the (status, updated_at) index can drive staleness scans.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from relay.errors import StoreError, TaskRowError
from relay.models import ChoiceOption, Task, TaskStatus
from relay.store import Store

logger = structlog.get_logger(__name__)

TASKS_TABLE = "async_tasks"

ACTIVE_STATUSES = (TaskStatus.RUNNING, TaskStatus.NEEDS_INPUT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [v.to_dict() if isinstance(v, ChoiceOption) else v for v in value]
    return value


def _decode_rows(rows: list[dict[str, Any]]) -> list[Task]:
    """Decode listed rows, skipping any that are malformed."""
    tasks = []
    for row in rows:
        try:
            tasks.append(Task.from_row(row))
        except TaskRowError as e:
            logger.warning("Skipping malformed task row", task_id=e.task_id, error=str(e))
    return tasks


class TaskRepository:
    """Reads and writes Task records.

    All methods raise StoreError when the store fails; callers decide how
    to degrade.
    """

    def __init__(
        self,
        store: Store,
        processed_by: str = "local",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.processed_by = processed_by
        self.clock = clock

    async def create(
        self, chat_id: str, original_prompt: str, thread_id: int | None = None
    ) -> Task:
        now = self.clock()
        row = await self.store.insert(
            TASKS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "chat_id": str(chat_id),
                "original_prompt": original_prompt,
                "status": TaskStatus.PENDING.value,
                "thread_id": thread_id,
                "processed_by": self.processed_by,
                "reminder_sent": False,
                "metadata": {},
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )
        if not row:
            raise StoreError("task insert returned no row")
        return Task.from_row(row)

    async def get(self, task_id: str) -> Task | None:
        rows = await self.store.select(TASKS_TABLE, {"id": task_id}, limit=1)
        return Task.from_row(rows[0]) if rows else None

    async def update(self, task_id: str, **values: Any) -> Task:
        """Write the given columns and refresh updated_at.

        Raises:
            StoreError: If the write fails or no task matched
        """
        row = {column: _to_column(value) for column, value in values.items()}
        row["updated_at"] = self.clock().isoformat()
        rows = await self.store.update(TASKS_TABLE, row, {"id": task_id})
        if not rows:
            raise StoreError(f"task {task_id} not found for update")
        return Task.from_row(rows[0])

    async def list_active(self, chat_id: str) -> list[Task]:
        """Running and waiting tasks for a chat, newest first."""
        rows = await self.store.select(
            TASKS_TABLE,
            {
                "chat_id": str(chat_id),
                "status": ("in", [status.value for status in ACTIVE_STATUSES]),
            },
            order="created_at.desc",
        )
        return _decode_rows(rows)

    async def list_stale(self, chat_id: str | None, cutoff: datetime) -> list[Task]:
        """Waiting tasks not touched since cutoff and not yet reminded.

        Args:
            chat_id: Restrict to one chat, or None for every chat
            cutoff: Tasks updated before this instant are stale
        """
        filters: dict[str, Any] = {
            "status": TaskStatus.NEEDS_INPUT.value,
            "reminder_sent": False,
            "updated_at": ("lt", cutoff.isoformat()),
        }
        if chat_id is not None:
            filters["chat_id"] = str(chat_id)
        rows = await self.store.select(TASKS_TABLE, filters, order="updated_at.asc")
        return _decode_rows(rows)
