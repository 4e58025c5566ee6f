"""Prompt assembly for a new inbound message."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger(__name__)

SYSTEM_LINE = (
    "You are a personal AI assistant replying over Telegram. "
    "Keep answers short and conversational."
)

MEMORY_INSTRUCTIONS = "\n".join(
    [
        "\nMEMORY MANAGEMENT:",
        "When the user tells you something worth keeping, sets a goal or finishes one, "
        "add the matching tag to your reply. Tags are applied automatically and removed "
        "before the user sees the reply:",
        "[REMEMBER: fact to store]",
        "[GOAL: goal text | DEADLINE: optional date]",
        "[DONE: search text for completed goal]",
    ]
)


def format_local_time(now: datetime, timezone_name: str) -> str:
    """Render now in the user's timezone, e.g. "Monday, January 1, 2024, 10:00 AM"."""
    try:
        local = now.astimezone(ZoneInfo(timezone_name))
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone, using UTC", timezone=timezone_name)
        local = now.astimezone(ZoneInfo("UTC"))
    return f"{local:%A, %B} {local.day}, {local:%Y, %I:%M %p}"


def build_prompt(
    user_message: str,
    time_str: str,
    user_name: str | None = None,
    profile_context: str | None = None,
    memory_context: str | None = None,
    relevant_context: str | None = None,
    recent_context: str | None = None,
) -> str:
    """Assemble the full prompt handed to the engine.

    Sections appear in a fixed order: instructions, who the user is, the
    current time, profile, memory, related past messages, recent
    conversation, memory tag instructions and finally the user's message.
    Empty sections are skipped.
    """
    parts = [SYSTEM_LINE]
    if user_name:
        parts.append(f"You are speaking with {user_name}.")
    parts.append(f"Current time: {time_str}")
    if profile_context:
        parts.append(f"\nProfile:\n{profile_context}")
    if memory_context:
        parts.append(f"\n{memory_context}")
    if relevant_context:
        parts.append(f"\nRelated past messages:\n{relevant_context}")
    if recent_context:
        parts.append(f"\nRecent conversation:\n{recent_context}")
    parts.append(MEMORY_INSTRUCTIONS)
    parts.append(f"\nUser: {user_message}")
    return "\n".join(parts)
