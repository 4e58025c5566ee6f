"""Messaging transport.

The task engine talks to the user through the small Transport protocol:
send text to a chat (optionally in a forum thread, optionally with inline
buttons) and learn whether it was delivered. TelegramTransport implements
it with python-telegram-bot.
"""

import re
from typing import Protocol

import structlog
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest, TelegramError

from relay.models import Button

logger = structlog.get_logger(__name__)

MAX_MESSAGE_LENGTH = 4000


class Transport(Protocol):
    """Outbound side of the messaging client."""

    async def send_message(
        self,
        chat_id: str,
        text: str,
        thread_id: int | None = None,
        buttons: list[list[Button]] | None = None,
    ) -> bool: ...

    async def send_typing(self, chat_id: str, thread_id: int | None = None) -> None: ...


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into chunks Telegram accepts.

    Prefers paragraph breaks, then line breaks, then spaces, and only cuts
    mid-word when a chunk has none of them.
    """
    chunks = []
    remaining = text
    while len(remaining) > max_length:
        split_at = remaining.rfind("\n\n", 0, max_length)
        if split_at <= 0:
            split_at = remaining.rfind("\n", 0, max_length)
        if split_at <= 0:
            split_at = remaining.rfind(" ", 0, max_length)
        if split_at <= 0:
            split_at = max_length
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].strip()
    if remaining or not chunks:
        chunks.append(remaining)
    return chunks


def sanitize_for_telegram(text: str) -> str:
    """Reduce markdown to what Telegram's legacy Markdown parser accepts."""
    result = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    result = re.sub(r"`{3,}[^\n]*\n?", "", result)
    result = result.replace("`", "'")
    result = re.sub(r"<[^>]+>", "", result)
    result = re.sub(r"_([^_\n]+)_", r"\1", result)
    result = re.sub(r"(?<![a-zA-Z0-9])_(?![a-zA-Z0-9])", "", result)
    result = re.sub(r"\*{3,}", "**", result)
    if result.count("**") % 2:
        result = result.replace("**", "")
    # Telegram's legacy Markdown uses single asterisks for bold
    result = result.replace("**", "*")
    result = re.sub(r" {2,}", " ", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result


def strip_markup(text: str) -> str:
    return text.replace("*", "").replace("_", "")


def to_reply_markup(buttons: list[list[Button]] | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton(button.label, callback_data=button.callback_data) for button in row]
            for row in buttons
        ]
    )


class TelegramTransport:
    """Transport backed by a python-telegram-bot Bot.

    Messages go out as Markdown; when Telegram rejects the markup the same
    text is resent without formatting. Delivery failures are logged and
    reported as False, never raised.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(
        self,
        chat_id: str,
        text: str,
        thread_id: int | None = None,
        buttons: list[list[Button]] | None = None,
    ) -> bool:
        chunks = split_message(text)
        delivered = True
        for index, chunk in enumerate(chunks):
            is_last = index == len(chunks) - 1
            markup = to_reply_markup(buttons) if is_last else None
            delivered = await self._send_chunk(chat_id, chunk, thread_id, markup) and delivered
        return delivered

    async def _send_chunk(
        self,
        chat_id: str,
        text: str,
        thread_id: int | None,
        markup: InlineKeyboardMarkup | None,
    ) -> bool:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=sanitize_for_telegram(text),
                parse_mode=ParseMode.MARKDOWN,
                message_thread_id=thread_id,
                reply_markup=markup,
            )
            return True
        except BadRequest as e:
            logger.warning("Markdown rejected, resending as plain text", error=str(e))
        except TelegramError as e:
            logger.error("Failed to send message", chat_id=chat_id, error=str(e))
            return False

        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=strip_markup(text),
                message_thread_id=thread_id,
                reply_markup=markup,
            )
            return True
        except TelegramError as e:
            logger.error("Failed to send plain message", chat_id=chat_id, error=str(e))
            return False

    async def send_typing(self, chat_id: str, thread_id: int | None = None) -> None:
        try:
            await self.bot.send_chat_action(
                chat_id=chat_id, action=ChatAction.TYPING, message_thread_id=thread_id
            )
        except TelegramError as e:
            logger.debug("Typing indicator failed", error=str(e))
