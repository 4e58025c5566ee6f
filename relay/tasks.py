"""Async task engine (human-in-the-loop).

Owns the lifecycle of an agent invocation that may pause to ask the user a
question via inline buttons:

    pending -> running -> (needs_input <-> running) -> completed | failed

A pause persists the question, the offered options and a compressed resume
snapshot of the conversation. A button tap resolves the choice and hands
the caller a ResumeRequest: the stored history plus exactly one synthetic
turn carrying the answer, so the resumed engine continues from the pause
point instead of starting over.

Store failures never escape this module. They become task transitions or
degraded outcomes (the question shown as plain text).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from relay import telemetry
from relay.classifier import MAX_OPTIONS, classify
from relay.errors import ResumeStateError, StoreError, TaskRowError, TaskStateError
from relay.models import (
    Button,
    ChoiceOption,
    ChoiceOutcome,
    PauseOutcome,
    ResumeRequest,
    ResumeState,
    Task,
    TaskStatus,
)
from relay.task_store import TaskRepository, utcnow
from relay.telegram import Transport

logger = structlog.get_logger(__name__)

CALLBACK_PREFIX = "atask"
CALLBACK_DATA_LIMIT = 64
CANCEL_TOKEN = "cancel"
CANCEL_LABEL = "Cancel task"
CANCELLED_RESULT = "Cancelled by user"
CANCELLABLE_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.NEEDS_INPUT})

MAX_STEP_CHARS = 500
MAX_RESULT_CHARS = 10000
MAX_MESSAGE_CHARS = 2000
MAX_TOOL_RESULT_CHARS = 500

DEFAULT_STALE_THRESHOLD_SECONDS = 2 * 60 * 60

NO_ACTIVE_TASKS_TEXT = "No active tasks. Send me something to work on!"
REMINDER_TEMPLATE = "**Reminder:** I'm still waiting for your input on this task:\n\n{question}"

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.NEEDS_INPUT, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.NEEDS_INPUT: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# Resume snapshot helpers
# ---------------------------------------------------------------------------


def _compress_block(block: Any) -> Any:
    if not isinstance(block, dict):
        return block
    if block.get("type") == "tool_result" and isinstance(block.get("content"), str):
        return {**block, "content": block["content"][:MAX_TOOL_RESULT_CHARS]}
    if block.get("type") == "text" and isinstance(block.get("text"), str):
        return {**block, "text": block["text"][:MAX_MESSAGE_CHARS]}
    return block


def compress_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Bound the size of a message history before it is stored.

    String contents keep 2000 characters, text blocks 2000 and tool
    results 500. Other blocks (tool_use) are kept as they are.
    """
    compressed = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            compressed.append({**message, "content": content[:MAX_MESSAGE_CHARS]})
        elif isinstance(content, list):
            compressed.append({**message, "content": [_compress_block(b) for b in content]})
        else:
            compressed.append(dict(message))
    return compressed


def build_choice_turn(
    label: str,
    tool_use_id: str | None = None,
    tool_results: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build the single synthetic user turn that answers a pause.

    For a tool-triggered pause the answer is a tool_result for that tool
    call, preceded by results already produced in the same assistant turn.
    """
    answer = f"User chose: {label}"
    if tool_use_id is None:
        return {"role": "user", "content": answer}
    return {
        "role": "user",
        "content": [
            *(tool_results or []),
            {"type": "tool_result", "tool_use_id": tool_use_id, "content": answer},
        ],
    }


def _content_as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif block.get("type") == "tool_result":
            parts.append(str(block.get("content", "")))
    return "\n".join(part for part in parts if part)


def render_resume_prompt(request: ResumeRequest) -> str:
    """Render a resume request as a prompt for the CLI engine.

    With an engine session to resume, the engine already holds the history
    and only the answer turn is sent. Without one, the stored history is
    replayed as a transcript followed by the answer.
    """
    answer = _content_as_text(request.turn["content"])
    if request.session_id:
        return answer

    lines = []
    for message in request.history:
        speaker = "User" if message["role"] == "user" else "Assistant"
        lines.append(f"{speaker}: {_content_as_text(message['content'])}")
    lines.append(f"User: {answer}")
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Inline choice rendering
# ---------------------------------------------------------------------------


def encode_callback(task_id: str, value: str, position: int | None = None) -> str:
    """Encode a button payload as atask:{task_id}:{value}.

    Values that would exceed Telegram's 64-byte callback limit are replaced
    by their 1-based position, written as #N.
    """
    data = f"{CALLBACK_PREFIX}:{task_id}:{value}"
    if len(data.encode("utf-8")) > CALLBACK_DATA_LIMIT and position is not None:
        data = f"{CALLBACK_PREFIX}:{task_id}:#{position}"
    return data


def parse_callback(data: str) -> tuple[str, str] | None:
    """Decode a button payload into (task_id, value), or None if foreign."""
    parts = data.split(":")
    if len(parts) < 3 or parts[0] != CALLBACK_PREFIX or not parts[1]:
        return None
    return parts[1], ":".join(parts[2:])


def build_choice_keyboard(task_id: str, options: list[ChoiceOption]) -> list[list[Button]]:
    """One full-width row per option, in order, then the cancel row."""
    rows = [
        [Button(label=option.label, callback_data=encode_callback(task_id, option.value, i))]
        for i, option in enumerate(options, start=1)
    ]
    rows.append([Button(label=CANCEL_LABEL, callback_data=encode_callback(task_id, CANCEL_TOKEN))])
    return rows


def resolve_choice(options: list[ChoiceOption], token: str) -> str:
    """Map a tapped value back to its label, falling back to the raw token."""
    if token.startswith("#") and token[1:].isdigit():
        position = int(token[1:])
        if 1 <= position <= len(options):
            return options[position - 1].label
    for option in options:
        if option.value == token:
            return option.label
    return token


def _age_minutes(since: datetime | None, now: datetime) -> int:
    if since is None:
        return 0
    return max(0, round((now - since).total_seconds() / 60))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TaskEngine:
    """State machine for paused-for-input agent tasks.

    Usage:
        engine = TaskEngine(TaskRepository(store), transport)
        task = await engine.create_task(chat_id, text)
        outcome = await engine.complete_or_pause(task.id, result.text, result.session_id)
        ...
        choice = await engine.handle_choice(task_id, value)
        if choice.kind == "resumed":
            prompt = render_resume_prompt(choice.resume)
    """

    def __init__(
        self,
        repository: TaskRepository,
        transport: Transport,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.transport = transport
        self.clock = clock

    async def _transition(self, task: Task, status: TaskStatus, **values: Any) -> Task:
        """Persist a status change after checking it is legal.

        A session id, once set, is never cleared.

        Raises:
            TaskStateError: If the transition is not allowed
            StoreError: If the write fails
        """
        if status not in ALLOWED_TRANSITIONS[task.status]:
            raise TaskStateError(
                f"task {task.id} cannot move from {task.status.value} to {status.value}"
            )
        if not values.get("session_id"):
            values.pop("session_id", None)

        updated = await self.repository.update(task.id, status=status, **values)
        telemetry.tasks_counter.add(1, {"status": status.value})
        logger.info(
            "Task transition",
            task_id=task.id,
            from_status=task.status.value,
            to_status=status.value,
        )
        return updated

    async def _require(self, task_id: str) -> Task:
        task = await self.repository.get(task_id)
        if task is None:
            raise TaskStateError(f"task {task_id} not found")
        return task

    async def create_task(
        self, chat_id: str, original_prompt: str, thread_id: int | None = None
    ) -> Task | None:
        """Create a task and advance it to running.

        Returns:
            The running task, or None if it could not be persisted
        """
        try:
            task = await self.repository.create(chat_id, original_prompt, thread_id)
            telemetry.tasks_counter.add(1, {"status": TaskStatus.PENDING.value})
            return await self._transition(task, TaskStatus.RUNNING)
        except (StoreError, TaskStateError) as e:
            logger.error("Failed to create task", chat_id=chat_id, error=str(e))
            return None

    async def complete_or_pause(
        self,
        task_id: str,
        engine_output: str,
        session_id: str | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> PauseOutcome:
        """Classify engine output and either pause for input or complete.

        Args:
            task_id: Running task
            engine_output: Raw engine text
            session_id: Engine session that produced the output
            history: Messages sent to the engine for this output; defaults
                to the task's original prompt as a single user turn

        Returns:
            PauseOutcome; degraded when a pause could not be persisted
        """
        verdict = classify(engine_output)

        if not (verdict.needs_input and verdict.options):
            return await self.complete(task_id, verdict.text, session_id)

        if history is None:
            try:
                task = await self._require(task_id)
            except (StoreError, TaskStateError) as e:
                logger.error("Failed to load task for pause", task_id=task_id, error=str(e))
                return PauseOutcome(paused=False, task=None, text=verdict.text, degraded=True)
            history = [{"role": "user", "content": task.original_prompt}]

        resume_state = ResumeState(
            messages=[*history, {"role": "assistant", "content": verdict.text}]
        )
        return await self.pause_for_input(
            task_id,
            question=verdict.question or verdict.text,
            options=verdict.options,
            resume_state=resume_state,
            session_id=session_id,
            prompt_text=verdict.text,
            source="classifier",
        )

    async def pause_for_input(
        self,
        task_id: str,
        question: str,
        options: list[ChoiceOption],
        resume_state: ResumeState,
        session_id: str | None = None,
        prompt_text: str | None = None,
        source: str = "tool",
    ) -> PauseOutcome:
        """Move a running task to needs_input and render its choices.

        The resume snapshot is compressed here, before it is written.

        Args:
            task_id: Running task
            question: Question shown in listings and reminders
            options: Choices to offer (at most MAX_OPTIONS are kept)
            resume_state: History up to the pause point
            session_id: Engine session, if any
            prompt_text: Message shown above the buttons; defaults to question
            source: "classifier" or "tool", for metrics

        Returns:
            PauseOutcome; degraded when the pause could not be persisted
        """
        shown = prompt_text or question
        if not options:
            logger.warning("Pause requested without options", task_id=task_id)
            return PauseOutcome(paused=False, task=None, text=shown, degraded=True)

        options = options[:MAX_OPTIONS]
        snapshot = ResumeState(
            messages=compress_messages(resume_state.messages),
            tool_use_id=resume_state.tool_use_id,
            tool_results=[_compress_block(r) for r in resume_state.tool_results],
        )

        try:
            task = await self._require(task_id)
            task = await self._transition(
                task,
                TaskStatus.NEEDS_INPUT,
                session_id=session_id,
                current_step=shown[:MAX_STEP_CHARS],
                pending_question=question,
                pending_options=options,
                reminder_sent=False,
                metadata={**task.metadata, "resume_state": snapshot.to_dict()},
            )
        except (StoreError, TaskStateError) as e:
            logger.error(
                "Failed to persist pause, returning question as text",
                task_id=task_id,
                error=str(e),
            )
            return PauseOutcome(paused=False, task=None, text=shown, degraded=True)

        telemetry.pauses_counter.add(1, {"source": source})
        delivered = await self.transport.send_message(
            task.chat_id,
            shown,
            thread_id=task.thread_id,
            buttons=build_choice_keyboard(task.id, options),
        )
        if not delivered:
            logger.warning("Choice prompt not delivered", task_id=task.id)

        return PauseOutcome(paused=True, task=task, text=shown)

    async def complete(
        self, task_id: str, text: str, session_id: str | None = None
    ) -> PauseOutcome:
        """Close a running task with its final text."""
        try:
            task = await self._require(task_id)
            metadata = {k: v for k, v in task.metadata.items() if k != "resume_state"}
            task = await self._transition(
                task,
                TaskStatus.COMPLETED,
                session_id=session_id,
                result=text[:MAX_RESULT_CHARS],
                pending_question=None,
                pending_options=None,
                metadata=metadata,
            )
        except (StoreError, TaskStateError) as e:
            logger.error("Failed to complete task", task_id=task_id, error=str(e))
            return PauseOutcome(paused=False, task=None, text=text)
        return PauseOutcome(paused=False, task=task, text=text)

    async def fail(self, task_id: str, reason: str) -> Task | None:
        """Mark a task failed with a descriptive result."""
        try:
            task = await self._require(task_id)
            return await self._transition(
                task,
                TaskStatus.FAILED,
                result=reason[:MAX_RESULT_CHARS],
                pending_question=None,
                pending_options=None,
            )
        except (StoreError, TaskStateError) as e:
            logger.error("Failed to mark task failed", task_id=task_id, error=str(e))
            return None

    async def _fail_unreadable(self, task_id: str, error: TaskRowError) -> ChoiceOutcome:
        """Fail a task whose row cannot be decoded.

        The status is unknown, so the legal-transition check is bypassed.
        """
        reason = f"Task state corrupted: {error}"
        logger.error("Cannot decode task", task_id=task_id, error=str(error))
        try:
            failed = await self.repository.update(
                task_id,
                status=TaskStatus.FAILED,
                result=reason[:MAX_RESULT_CHARS],
                pending_question=None,
                pending_options=None,
            )
        except StoreError as e:
            logger.error("Failed to mark task failed", task_id=task_id, error=str(e))
            failed = None
        return ChoiceOutcome(kind="failed", task=failed, message=reason)

    async def handle_choice(self, task_id: str, raw_token: str) -> ChoiceOutcome:
        """Apply a tapped choice to a waiting task, or cancel an active one.

        Args:
            task_id: Task the button belongs to
            raw_token: Value from the button payload, or "cancel"

        Returns:
            ChoiceOutcome: resumed with a ResumeRequest, cancelled, ignored
            when the task is gone or no longer waiting (or already finished,
            for a cancel), or failed when its stored state is unusable
        """
        try:
            task = await self.repository.get(task_id)
        except TaskRowError as e:
            return await self._fail_unreadable(task_id, e)
        except StoreError as e:
            logger.error("Failed to load task for choice", task_id=task_id, error=str(e))
            return ChoiceOutcome(kind="ignored", message="Could not load that task right now.")

        if task is None:
            return ChoiceOutcome(kind="ignored", message="That task no longer exists.")
        # Running tasks can be cancelled too; finished ones cannot
        if raw_token == CANCEL_TOKEN and task.status in CANCELLABLE_STATUSES:
            try:
                task = await self._transition(
                    task,
                    TaskStatus.FAILED,
                    result=CANCELLED_RESULT,
                    pending_question=None,
                    pending_options=None,
                )
            except (StoreError, TaskStateError) as e:
                logger.error("Failed to cancel task", task_id=task_id, error=str(e))
                return ChoiceOutcome(
                    kind="ignored", task=task, message="Could not cancel the task, try again."
                )
            return ChoiceOutcome(kind="cancelled", task=task, message="Task cancelled.")

        if task.status != TaskStatus.NEEDS_INPUT:
            logger.info(
                "Choice ignored, task not waiting",
                task_id=task_id,
                status=task.status.value,
            )
            return ChoiceOutcome(
                kind="ignored", task=task, message="That task is no longer waiting for input."
            )

        try:
            resume_state = task.resume_state()
            if resume_state is None:
                raise ResumeStateError("no resume state stored")
        except ResumeStateError as e:
            reason = f"Resume state corrupted: {e}"
            logger.error("Cannot resume task", task_id=task_id, error=str(e))
            failed = await self.fail(task_id, reason)
            return ChoiceOutcome(kind="failed", task=failed or task, message=reason)

        label = resolve_choice(task.pending_options or [], raw_token)
        turn = build_choice_turn(label, resume_state.tool_use_id, resume_state.tool_results)

        try:
            task = await self._transition(
                task,
                TaskStatus.RUNNING,
                user_response=label,
                pending_question=None,
                pending_options=None,
                current_step=f"User chose: {label}"[:MAX_STEP_CHARS],
            )
        except (StoreError, TaskStateError) as e:
            logger.error("Failed to resume task", task_id=task_id, error=str(e))
            return ChoiceOutcome(
                kind="ignored", task=task, message="Could not resume the task, try again."
            )

        return ChoiceOutcome(
            kind="resumed",
            task=task,
            resume=ResumeRequest(
                history=resume_state.messages,
                turn=turn,
                choice_label=label,
                session_id=task.session_id,
                tool_use_id=resume_state.tool_use_id,
            ),
            message=f"Got it: {label}",
        )

    async def remind_stale(
        self,
        chat_id: str | None = None,
        threshold_seconds: float = DEFAULT_STALE_THRESHOLD_SECONDS,
    ) -> int:
        """Re-send the choice prompt of tasks waiting longer than the threshold.

        Each pause is reminded at most once: reminder_sent is set after a
        successful send and only reset by the next pause.

        Returns:
            Number of reminders sent
        """
        cutoff = self.clock() - timedelta(seconds=threshold_seconds)
        try:
            stale = await self.repository.list_stale(chat_id, cutoff)
        except StoreError as e:
            logger.error("Failed to scan stale tasks", error=str(e))
            return 0

        sent = 0
        for task in stale:
            if task.reminder_sent or task.status != TaskStatus.NEEDS_INPUT:
                continue

            question = task.pending_question or task.original_prompt[:200]
            delivered = await self.transport.send_message(
                task.chat_id,
                REMINDER_TEMPLATE.format(question=question),
                thread_id=task.thread_id,
                buttons=build_choice_keyboard(task.id, task.pending_options or []),
            )
            if not delivered:
                logger.warning("Reminder not delivered", task_id=task.id)
                continue

            try:
                await self.repository.update(task.id, reminder_sent=True)
            except StoreError as e:
                logger.error("Failed to mark reminder sent", task_id=task.id, error=str(e))
                continue

            sent += 1
            telemetry.reminders_counter.add(1)

        if sent:
            logger.info("Stale task reminders sent", count=sent)
        return sent

    async def format_task_status(self, chat_id: str) -> str:
        """Render running and waiting tasks for a chat."""
        try:
            tasks = await self.repository.list_active(chat_id)
        except StoreError as e:
            logger.error("Failed to list tasks", chat_id=chat_id, error=str(e))
            return "Could not load tasks right now. Please try again later."

        running = [t for t in tasks if t.status == TaskStatus.RUNNING]
        waiting = [t for t in tasks if t.status == TaskStatus.NEEDS_INPUT]
        if not running and not waiting:
            return NO_ACTIVE_TASKS_TEXT

        now = self.clock()
        sections = []
        if running:
            lines = ["**Running:**"]
            for task in running:
                age = _age_minutes(task.created_at, now)
                lines.append(f"- {task.original_prompt[:60]}... ({age}min)")
            sections.append("\n".join(lines))
        if waiting:
            lines = ["**Waiting for your input:**"]
            for task in waiting:
                question = task.pending_question or task.original_prompt[:60]
                lines.append(f"- {question} (`{task.id}`)")
            sections.append("\n".join(lines))
        return "\n\n".join(sections)
