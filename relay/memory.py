"""Conversation store adapter.

Narrow async functions over the row store for conversation turns and
long-lived memory (facts and goals). The engine's replies can carry
[REMEMBER: ...], [GOAL: ... | DEADLINE: ...] and [DONE: ...] tags; they are
applied here and stripped before the reply reaches the user.

Every method degrades on store failure (False, empty list or empty string)
so a memory hiccup never blocks a reply.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import structlog

from relay.errors import StoreError
from relay.store import Store
from relay.task_store import utcnow

logger = structlog.get_logger(__name__)

MESSAGES_TABLE = "messages"
MEMORY_TABLE = "memory"
LOGS_TABLE = "logs"

STORE_MESSAGE_FUNCTION = "store-telegram-message"
SEARCH_FUNCTION = "search-memory"

_REMEMBER_TAG = re.compile(r"\[REMEMBER:\s*(.+?)\]", re.IGNORECASE)
_GOAL_TAG = re.compile(r"\[GOAL:\s*(.+?)(?:\s*\|\s*DEADLINE:\s*(.+?))?\]", re.IGNORECASE)
_DONE_TAG = re.compile(r"\[DONE:\s*(.+?)\]", re.IGNORECASE)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

Role = Literal["user", "assistant"]


class FunctionInvoker(Protocol):
    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any: ...


def format_time_ago(when: datetime, now: datetime) -> str:
    """Human-readable relative time, e.g. "5 minutes ago"."""
    seconds = int((now - when).total_seconds())
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if seconds < 60:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    if hours < 24:
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    if days < 30:
        return f"{days} day{'' if days == 1 else 's'} ago"
    return when.date().isoformat()


def _end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=0)


def parse_relative_date(text: str, now: datetime) -> str | None:
    """Parse a natural-language deadline into an ISO timestamp.

    Supports "today", "tomorrow", "next week", weekday names,
    "in N hours/days/weeks", bare times ("5pm", "17:30") and ISO dates.

    Returns:
        ISO 8601 string, or None when the text is not understood
    """
    if not text:
        return None
    lower = text.strip().lower()

    if lower == "today":
        return _end_of_day(now).isoformat()
    if lower == "tomorrow":
        return _end_of_day(now + timedelta(days=1)).isoformat()
    if lower == "next week":
        return _end_of_day(now + timedelta(weeks=1)).isoformat()
    if lower in _WEEKDAYS:
        ahead = (_WEEKDAYS.index(lower) - now.weekday()) % 7 or 7
        return _end_of_day(now + timedelta(days=ahead)).isoformat()

    match = re.fullmatch(r"in\s+(\d+)\s+(hour|day|week)s?", lower)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "hour":
            return (now + timedelta(hours=amount)).isoformat()
        days = amount * 7 if unit == "week" else amount
        return _end_of_day(now + timedelta(days=days)).isoformat()

    match = re.fullmatch(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", lower)
    if match:
        hours = int(match.group(1))
        minutes = int(match.group(2) or 0)
        if match.group(3) == "pm" and hours < 12:
            hours += 12
        if match.group(3) == "am" and hours == 12:
            hours = 0
        if hours > 23 or minutes > 59:
            return None
        moment = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if moment < now:
            moment += timedelta(days=1)
        return moment.isoformat()

    try:
        parsed = datetime.fromisoformat(text.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed.isoformat()


class ConversationMemory:
    """Conversation turns, facts and goals for one relay user."""

    def __init__(
        self,
        store: Store,
        functions: FunctionInvoker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the adapter.

        Args:
            store: Row store
            functions: Edge-function invoker (embeddings, semantic search);
                plain table access is used when None or when a call fails
            clock: Source of the current time
        """
        self.store = store
        self.functions = functions
        self.clock = clock

    # -- messages -----------------------------------------------------------

    async def save_message(
        self,
        chat_id: str,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Append a conversation turn."""
        row = {
            "chat_id": str(chat_id),
            "role": role,
            "content": content,
            "metadata": metadata or {},
        }
        if self.functions is not None:
            try:
                await self.functions.invoke_function(STORE_MESSAGE_FUNCTION, row)
                return True
            except StoreError as e:
                logger.debug("Edge function unavailable, inserting directly", error=str(e))
        try:
            await self.store.insert(MESSAGES_TABLE, row)
            return True
        except StoreError as e:
            logger.warning("Failed to save message", chat_id=chat_id, error=str(e))
            return False

    async def get_recent_messages(self, chat_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent turns for a chat, oldest first."""
        try:
            rows = await self.store.select(
                MESSAGES_TABLE, {"chat_id": str(chat_id)}, order="created_at.desc", limit=limit
            )
        except StoreError as e:
            logger.warning("Failed to load recent messages", chat_id=chat_id, error=str(e))
            return []
        return list(reversed(rows))

    def format_context(self, messages: list[dict[str, Any]]) -> str:
        """Render stored turns as "[5 minutes ago] User: ..." lines."""
        now = self.clock()
        lines = []
        for message in messages:
            created = message.get("created_at")
            when = format_time_ago(datetime.fromisoformat(created), now) if created else ""
            speaker = "User" if message.get("role") == "user" else "Bot"
            lines.append(f"[{when}] {speaker}: {message.get('content', '')}")
        return "\n".join(lines)

    async def get_conversation_context(self, chat_id: str, limit: int = 10) -> str:
        """Recent turns as "[5 minutes ago] User: ..." lines."""
        return self.format_context(await self.get_recent_messages(chat_id, limit))

    async def get_relevant_context(
        self,
        chat_id: str,
        query: str,
        limit: int = 5,
        exclude_ids: set[Any] | frozenset[Any] = frozenset(),
    ) -> str:
        """Older messages related to query, one "- [when] Speaker: ..." line each.

        Messages whose id is in exclude_ids (typically the recent window
        already in the prompt) are left out.
        """
        if not query.strip():
            return ""
        hits = await self.search_messages(chat_id, query, limit)
        hits = [hit for hit in hits if hit.get("id") is None or hit.get("id") not in exclude_ids]
        return "\n".join(f"- {self.format_context([hit])}" for hit in hits)

    async def search_messages(self, chat_id: str, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Semantic search when available, substring search otherwise."""
        if self.functions is not None:
            try:
                results = await self.functions.invoke_function(
                    SEARCH_FUNCTION, {"chat_id": str(chat_id), "query": query, "limit": limit}
                )
                if isinstance(results, list):
                    return results
            except StoreError as e:
                logger.debug("Semantic search unavailable", error=str(e))
        try:
            return await self.store.select(
                MESSAGES_TABLE,
                {"chat_id": str(chat_id), "content": ("ilike", f"%{query}%")},
                order="created_at.desc",
                limit=limit,
            )
        except StoreError as e:
            logger.warning("Message search failed", error=str(e))
            return []

    # -- facts and goals ----------------------------------------------------

    async def _insert_memory(self, row: dict[str, Any]) -> bool:
        try:
            await self.store.insert(MEMORY_TABLE, row)
            return True
        except StoreError as e:
            logger.warning("Failed to store memory", type=row.get("type"), error=str(e))
            return False

    async def _select_memory(self, filters: dict[str, Any], order: str) -> list[dict[str, Any]]:
        try:
            return await self.store.select(MEMORY_TABLE, filters, order=order)
        except StoreError as e:
            logger.warning("Failed to load memory", error=str(e))
            return []

    async def add_fact(self, content: str) -> bool:
        return await self._insert_memory({"type": "fact", "content": content})

    async def get_facts(self) -> list[dict[str, Any]]:
        return await self._select_memory({"type": "fact"}, order="created_at.desc")

    async def add_goal(self, content: str, deadline: str | None = None) -> bool:
        parsed = parse_relative_date(deadline, self.clock()) if deadline else None
        return await self._insert_memory({"type": "goal", "content": content, "deadline": parsed})

    async def complete_goal(self, search_text: str) -> bool:
        """Mark the first active goal matching search_text as completed."""
        goals = await self._select_memory(
            {"type": "goal", "content": ("ilike", f"%{search_text}%")}, order="created_at.asc"
        )
        if not goals:
            return False
        try:
            await self.store.update(
                MEMORY_TABLE,
                {"type": "completed_goal", "completed_at": self.clock().isoformat()},
                {"id": goals[0]["id"]},
            )
            return True
        except StoreError as e:
            logger.warning("Failed to complete goal", error=str(e))
            return False

    async def get_active_goals(self) -> list[dict[str, Any]]:
        return await self._select_memory({"type": "goal"}, order="created_at.asc")

    async def get_memory_context(self) -> str:
        """Known facts and active goals formatted for a prompt."""
        facts = await self.get_facts()
        goals = await self.get_active_goals()

        sections = []
        if facts:
            sections.append(
                "**Known Facts:**\n" + "\n".join(f"- {fact['content']}" for fact in facts)
            )
        if goals:
            lines = []
            for number, goal in enumerate(goals, start=1):
                due = f" (due: {goal['deadline'][:10]})" if goal.get("deadline") else ""
                lines.append(f"{number}. {goal['content']}{due}")
            sections.append("**Active Goals:**\n" + "\n".join(lines))
        return "\n\n".join(sections)

    async def process_intents(self, response: str) -> str:
        """Apply memory tags found in a reply and return the reply without them."""
        for match in _REMEMBER_TAG.finditer(response):
            await self.add_fact(match.group(1).strip())
        for match in _GOAL_TAG.finditer(response):
            deadline = match.group(2).strip() if match.group(2) else None
            await self.add_goal(match.group(1).strip(), deadline)
        for match in _DONE_TAG.finditer(response):
            await self.complete_goal(match.group(1).strip())

        cleaned = _REMEMBER_TAG.sub("", response)
        cleaned = _GOAL_TAG.sub("", cleaned)
        cleaned = _DONE_TAG.sub("", cleaned)
        return cleaned.strip()

    async def log(
        self,
        level: str,
        service: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write an operational event to the logs table; never raises."""
        try:
            await self.store.insert(
                LOGS_TABLE,
                {"level": level, "service": service, "message": message, "metadata": metadata or {}},
            )
        except StoreError as e:
            logger.debug("Failed to write log row", error=str(e))
