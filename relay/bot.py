"""Relay front-end.

Receives Telegram messages and button taps, runs them through the engine
one conversation at a time and replies. A reply that ends in a choice
question pauses its task; the matching button tap resumes it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from opentelemetry import trace
from telegram import Bot, Update
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from relay.api_runner import AgentOutcome, AnthropicRunner
from relay.chat_queue import ChatQueue
from relay.config import RelaySettings
from relay.errors import ConfigError
from relay.fallback import FallbackChain
from relay.lock import ProcessLock, install_shutdown_handlers
from relay.memory import ConversationMemory
from relay.models import EngineResult, RunOptions, Task
from relay.prompts import build_prompt, format_local_time
from relay.runner import ClaudeCliRunner
from relay.store import SupabaseStore
from relay.task_store import TaskRepository, utcnow
from relay.tasks import CALLBACK_PREFIX, CANCEL_TOKEN, TaskEngine, parse_callback, render_resume_prompt
from relay.telegram import TelegramTransport, Transport
from relay.telemetry import setup_telemetry

logger = structlog.get_logger(__name__)

EngineRunner = ClaudeCliRunner | AnthropicRunner

UNAUTHORIZED_TEXT = "This bot is private."

# In-flight conversations get this long to finish once shutdown starts
SHUTDOWN_GRACE_SECONDS = 30

# Turns of recent conversation included in a new prompt
RECENT_CONTEXT_MESSAGES = 10


class Relay:
    """Message handling loop between Telegram and the reasoning engine.

    Every inbound unit of work is queued per (chat_id, thread_id), so a
    conversation never has two engine invocations in flight.
    """

    def __init__(
        self,
        settings: RelaySettings,
        runner: EngineRunner,
        tasks: TaskEngine,
        memory: ConversationMemory,
        transport: Transport,
        fallback: FallbackChain,
        queue: ChatQueue | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.runner = runner
        self.tasks = tasks
        self.memory = memory
        self.transport = transport
        self.fallback = fallback
        self.queue = queue or ChatQueue()
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        bot: Bot,
        store: SupabaseStore,
        tracer: trace.Tracer | None = None,
    ) -> Relay:
        runner: EngineRunner
        if settings.engine == "api":
            runner = AnthropicRunner.from_settings(settings, tracer=tracer)
        else:
            runner = ClaudeCliRunner(claude_path=settings.claude_path, tracer=tracer)
        transport = TelegramTransport(bot)
        return cls(
            settings=settings,
            runner=runner,
            tasks=TaskEngine(TaskRepository(store), transport),
            memory=ConversationMemory(store, functions=store),
            transport=transport,
            fallback=FallbackChain(settings),
        )

    @property
    def uses_api(self) -> bool:
        return isinstance(self.runner, AnthropicRunner)

    def is_authorized(self, user_id: Any) -> bool:
        return bool(self.settings.telegram_user_id) and str(user_id) == self.settings.telegram_user_id

    def _run_options(self, chat_id: str, thread_id: int | None, session_id: str | None = None) -> RunOptions:
        async def notify_tool(notice: str) -> None:
            await self.transport.send_message(chat_id, f"_{notice}_", thread_id=thread_id)

        async def keep_typing(_: str) -> None:
            await self.transport.send_typing(chat_id, thread_id)

        return RunOptions(
            timeout_seconds=self.settings.task_timeout_seconds,
            resume_session_id=session_id,
            allowed_tools=self.settings.allowed_tools or None,
            output_format="stream-json",
            max_turns=self.settings.claude_max_turns,
            on_tool_use=notify_tool,
            on_text=keep_typing,
        )

    # -- message flow -------------------------------------------------------

    async def handle_message(self, chat_id: str, text: str, thread_id: int | None = None) -> None:
        """Run one inbound message through the engine and reply."""
        await self.transport.send_typing(chat_id, thread_id)
        recent = await self.memory.get_recent_messages(chat_id, RECENT_CONTEXT_MESSAGES)
        relevant = await self.memory.get_relevant_context(
            chat_id, text, exclude_ids={row.get("id") for row in recent}
        )
        await self.memory.save_message(chat_id, "user", text)
        prompt = build_prompt(
            text,
            time_str=format_local_time(self.clock(), self.settings.user_timezone),
            user_name=self.settings.user_name or None,
            memory_context=await self.memory.get_memory_context() or None,
            relevant_context=relevant or None,
            recent_context=self.memory.format_context(recent) or None,
        )

        task = await self.tasks.create_task(chat_id, text, thread_id)
        history = [{"role": "user", "content": prompt}]
        options = self._run_options(chat_id, thread_id)

        if self.uses_api:
            outcome = await self.runner.run_agent(history, options)
            reply = await self._settle_agent(chat_id, task, outcome, history, prompt)
        else:
            result = await self.runner.run(prompt, options)
            reply = await self._settle(chat_id, task, result, history, prompt)

        if reply:
            await self._deliver(chat_id, thread_id, reply)

    async def handle_choice(
        self, chat_id: str, task_id: str, token: str, thread_id: int | None = None
    ) -> None:
        """Apply a button tap and, when the task resumes, continue it."""
        choice = await self.tasks.handle_choice(task_id, token)
        if choice.message:
            await self.transport.send_message(chat_id, choice.message, thread_id=thread_id)
        if choice.kind != "resumed" or choice.resume is None:
            return

        request = choice.resume
        task = choice.task
        prompt = render_resume_prompt(request)
        await self.transport.send_typing(chat_id, thread_id)
        options = self._run_options(chat_id, thread_id, request.session_id)

        if self.uses_api:
            outcome = await self.runner.run_agent(request.messages, options)
            reply = await self._settle_agent(chat_id, task, outcome, request.messages, prompt)
        else:
            result = await self.runner.run(prompt, options)
            reply = await self._settle(chat_id, task, result, request.messages, prompt)

        if reply:
            await self._deliver(chat_id, thread_id, reply)

    async def _settle(
        self,
        chat_id: str,
        task: Task | None,
        result: EngineResult,
        history: list[dict[str, Any]],
        prompt: str,
    ) -> str | None:
        """Turn an engine result into reply text, pausing the task if asked.

        Returns:
            Text to deliver, or None when a choice prompt was already sent
        """
        if result.is_error:
            reason = "Engine timed out" if result.timed_out else f"Engine error: {result.text[:200]}"
            logger.warning("Engine failed, using fallback", task_id=task.id if task else None, reason=reason)
            await self.memory.log(
                "warning", "engine", reason, {"task_id": task.id if task else None, "chat_id": chat_id}
            )
            if task is not None:
                await self.tasks.fail(task.id, reason)
            return await self.fallback.complete(prompt)

        if task is None:
            return result.text

        outcome = await self.tasks.complete_or_pause(task.id, result.text, result.session_id, history)
        if outcome.paused:
            await self.memory.save_message(
                chat_id, "assistant", outcome.text, {"task_id": task.id, "needs_input": True}
            )
            return None
        return outcome.text

    async def _settle_agent(
        self,
        chat_id: str,
        task: Task | None,
        outcome: AgentOutcome,
        history: list[dict[str, Any]],
        prompt: str,
    ) -> str | None:
        if outcome.kind == "reply":
            # Tool turns from the run belong in the pause history
            history = outcome.messages or history
            return await self._settle(chat_id, task, outcome.result, history, prompt)

        if task is None:
            return outcome.question
        pause = await self.tasks.pause_for_input(
            task.id, outcome.question, outcome.options, outcome.resume_state
        )
        if not pause.paused:
            return pause.text
        await self.memory.save_message(
            chat_id, "assistant", pause.text, {"task_id": task.id, "needs_input": True}
        )
        return None

    async def _deliver(self, chat_id: str, thread_id: int | None, text: str) -> None:
        cleaned = await self.memory.process_intents(text)
        await self.memory.save_message(chat_id, "assistant", cleaned)
        if not await self.transport.send_message(chat_id, cleaned, thread_id=thread_id):
            logger.error("Reply not delivered", chat_id=chat_id)

    async def send_task_status(self, chat_id: str, thread_id: int | None = None) -> None:
        status = await self.tasks.format_task_status(chat_id)
        await self.transport.send_message(chat_id, status, thread_id=thread_id)

    async def reminder_loop(self, stop_event: asyncio.Event) -> None:
        """Remind about stale paused tasks until stop_event is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.settings.reminder_check_interval_seconds
                )
            except asyncio.TimeoutError:
                await self.tasks.remind_stale(
                    None, threshold_seconds=self.settings.stale_task_threshold_seconds
                )

    # -- Telegram handlers --------------------------------------------------

    def _thread_of(self, update: Update) -> int | None:
        message = update.effective_message
        if message is not None and message.is_topic_message:
            return message.message_thread_id
        return None

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or not message.text:
            return
        user = update.effective_user
        if not self.is_authorized(user.id if user else None):
            logger.warning("Unauthorized message", user_id=user.id if user else None)
            await message.reply_text(UNAUTHORIZED_TEXT)
            return

        chat_id = str(message.chat_id)
        thread_id = self._thread_of(update)
        text = message.text
        self.queue.enqueue(
            (chat_id, thread_id), lambda: self.handle_message(chat_id, text, thread_id)
        )

    async def on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return
        await query.answer()
        if not self.is_authorized(query.from_user.id if query.from_user else None):
            return

        parsed = parse_callback(query.data or "")
        if parsed is None:
            logger.warning("Unrecognized callback data", data=query.data)
            return
        task_id, token = parsed

        try:
            await query.edit_message_reply_markup(reply_markup=None)
        except TelegramError as e:
            logger.debug("Could not remove keyboard", error=str(e))

        chat_id = str(query.message.chat.id) if query.message else ""
        thread_id = self._thread_of(update)
        self.queue.enqueue(
            (chat_id, thread_id), lambda: self.handle_choice(chat_id, task_id, token, thread_id)
        )

    async def on_tasks(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        user = update.effective_user
        if message is None or not self.is_authorized(user.id if user else None):
            return
        await self.send_task_status(str(message.chat_id), self._thread_of(update))

    async def on_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        user = update.effective_user
        if message is None or not self.is_authorized(user.id if user else None):
            return
        if not context.args:
            await message.reply_text("Usage: /cancel TASK_ID")
            return

        chat_id = str(message.chat_id)
        thread_id = self._thread_of(update)
        task_id = context.args[0]
        self.queue.enqueue(
            (chat_id, thread_id), lambda: self.handle_choice(chat_id, task_id, CANCEL_TOKEN, thread_id)
        )

    def register(self, application: Application) -> None:
        application.add_handler(CommandHandler("tasks", self.on_tasks))
        application.add_handler(CommandHandler("cancel", self.on_cancel))
        application.add_handler(CallbackQueryHandler(self.on_callback, pattern=f"^{CALLBACK_PREFIX}:"))
        application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.on_text))


async def serve(settings: RelaySettings) -> int:
    """Run the relay until SIGINT or SIGTERM.

    Returns:
        Process exit code; 1 when another instance holds the lock or
        takes it over while we run

    Raises:
        ConfigError: If the bot token, user id or store is not configured
    """
    if not settings.telegram_bot_token or not settings.telegram_user_id:
        raise ConfigError("TELEGRAM_BOT_TOKEN and TELEGRAM_USER_ID must be set")

    lock = ProcessLock(
        settings.lock_path,
        stale_after_seconds=settings.lock_stale_seconds,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
    )
    if not lock.acquire():
        return 1

    try:
        tracer, _ = setup_telemetry(settings)
        store = SupabaseStore.from_settings(settings)
        application = Application.builder().token(settings.telegram_bot_token).build()
        relay = Relay.from_settings(settings, application.bot, store, tracer)
        relay.register(application)

        stop_event = asyncio.Event()
        install_shutdown_handlers(asyncio.get_running_loop(), stop_event)
        lock.start_heartbeat(on_lost=stop_event.set)

        async with store, application:
            await application.start()
            await application.updater.start_polling(drop_pending_updates=True)
            reminders = asyncio.create_task(relay.reminder_loop(stop_event))
            logger.info("Relay running", engine=settings.engine, user_id=settings.telegram_user_id)

            await stop_event.wait()

            logger.info("Relay stopping", queued_conversations=len(relay.queue), lock_lost=lock.lost)
            await application.updater.stop()
            try:
                await asyncio.wait_for(relay.queue.drain(), timeout=SHUTDOWN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Abandoning unfinished conversations", keys=relay.queue.pending_keys())
            await application.stop()
            await reminders
    finally:
        await lock.stop_heartbeat()
        lock.release()

    return 1 if lock.lost else 0
