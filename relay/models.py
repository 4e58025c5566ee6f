"""Data models for the relay.

Defines the persisted Task record and the value types passed between the
runner, the classifier, and the async task engine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from relay.errors import ResumeStateError, TaskRowError

OutputFormat = Literal["json", "stream-json", "text"]

# Progress callbacks may be plain functions or coroutine functions
ProgressCallback = Callable[[str], Any]


class TaskStatus(str, Enum):
    """Lifecycle states of an async task."""

    PENDING = "pending"
    RUNNING = "running"
    NEEDS_INPUT = "needs_input"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ChoiceOption:
    """One selectable answer to a paused task's question.

    The label is shown on the button; the value comes back on tap.
    """

    label: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChoiceOption:
        """Decode a stored option.

        Raises:
            ResumeStateError: If label or value is missing
        """
        try:
            return cls(label=str(data["label"]), value=str(data["value"]))
        except (KeyError, TypeError) as e:
            raise ResumeStateError(f"malformed choice option: {data!r}") from e


@dataclass
class ResumeState:
    """Snapshot needed to continue an engine conversation after a choice.

    Attributes:
        messages: Compressed message history up to and including the
            assistant turn that asked the question
        tool_use_id: Id of the tool invocation that asked, when the pause
            came from a tool call rather than from plain text
        tool_results: Results already produced for other tool calls in the
            pausing assistant turn; replayed alongside the user's answer
    """

    messages: list[dict[str, Any]]
    tool_use_id: str | None = None
    tool_results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": self.messages,
            "tool_use_id": self.tool_use_id,
            "tool_results": self.tool_results,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ResumeState:
        """Decode a stored snapshot.

        Raises:
            ResumeStateError: If the snapshot is not a well-formed history
        """
        if not isinstance(data, dict):
            raise ResumeStateError(f"expected an object, got {type(data).__name__}")

        messages = data.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ResumeStateError("message history is missing or empty")
        for message in messages:
            if (
                not isinstance(message, dict)
                or message.get("role") not in ("user", "assistant")
                or "content" not in message
            ):
                raise ResumeStateError("message history contains a malformed turn")

        tool_use_id = data.get("tool_use_id")
        if tool_use_id is not None and not isinstance(tool_use_id, str):
            raise ResumeStateError("tool_use_id must be a string")

        tool_results = data.get("tool_results") or []
        if not isinstance(tool_results, list):
            raise ResumeStateError("tool_results must be a list")

        return cls(messages=messages, tool_use_id=tool_use_id, tool_results=tool_results)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Task:
    """A persisted human-in-the-loop agent invocation.

    Mirrors one row of the async_tasks table. The resume snapshot lives
    under metadata["resume_state"] and is only meaningful while the task
    is waiting for input.
    """

    id: str
    chat_id: str
    original_prompt: str
    status: TaskStatus
    session_id: str | None = None
    current_step: str | None = None
    pending_question: str | None = None
    pending_options: list[ChoiceOption] | None = None
    user_response: str | None = None
    result: str | None = None
    thread_id: int | None = None
    processed_by: str | None = None
    reminder_sent: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Set when stored pending_options could not be decoded; never persisted
    options_error: str | None = field(default=None, compare=False, repr=False)

    def resume_state(self) -> ResumeState | None:
        """Decode the stored resume snapshot, if any.

        Raises:
            ResumeStateError: If a snapshot is present but unreadable, or
                the stored options could not be decoded
        """
        if self.options_error:
            raise ResumeStateError(self.options_error)
        raw = self.metadata.get("resume_state")
        if raw is None:
            return None
        return ResumeState.from_dict(raw)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Task:
        """Build a Task from a store row.

        Malformed pending_options do not prevent loading; they surface
        through resume_state() so the task can be failed.

        Raises:
            TaskRowError: If the id, chat_id or status is missing or invalid
        """
        try:
            task_id = str(row["id"])
            chat_id = str(row["chat_id"])
            status = TaskStatus(row["status"])
        except (KeyError, ValueError) as e:
            raise TaskRowError(f"malformed task row: {e}", task_id=row.get("id")) from e

        options = row.get("pending_options")
        pending_options = None
        options_error = None
        if options:
            try:
                pending_options = [ChoiceOption.from_dict(o) for o in options]
            except (ResumeStateError, TypeError) as e:
                options_error = str(e)

        return cls(
            id=task_id,
            chat_id=chat_id,
            original_prompt=row.get("original_prompt") or "",
            status=status,
            session_id=row.get("session_id"),
            current_step=row.get("current_step"),
            pending_question=row.get("pending_question"),
            pending_options=pending_options,
            user_response=row.get("user_response"),
            result=row.get("result"),
            thread_id=row.get("thread_id"),
            processed_by=row.get("processed_by"),
            reminder_sent=bool(row.get("reminder_sent", False)),
            metadata=row.get("metadata") or {},
            created_at=_parse_timestamp(row.get("created_at")),
            updated_at=_parse_timestamp(row.get("updated_at")),
            options_error=options_error,
        )


@dataclass
class RunOptions:
    """Options for a single engine invocation.

    Attributes:
        timeout_seconds: Hard limit after which the invocation is killed
        resume_session_id: Engine session to continue
        allowed_tools: Allow-list of engine tools for this invocation
        output_format: Wire format requested from the CLI
        max_turns: Cap on agent turns within the invocation
        on_tool_use: Called with a friendly tool notice (throttled)
        on_text: Called with a preview of streamed text (throttled)
    """

    timeout_seconds: float = 300
    resume_session_id: str | None = None
    allowed_tools: list[str] | None = None
    output_format: OutputFormat = "json"
    max_turns: int | None = None
    on_tool_use: ProgressCallback | None = None
    on_text: ProgressCallback | None = None


@dataclass
class EngineResult:
    """Normalized output of one engine invocation."""

    text: str
    session_id: str | None = None
    is_error: bool = False
    timed_out: bool = False
    raw: str = ""


@dataclass(frozen=True)
class ClassifiedResponse:
    """Classifier verdict on raw engine output."""

    text: str
    needs_input: bool
    question: str | None
    options: list[ChoiceOption]


@dataclass(frozen=True)
class Button:
    """Transport-neutral inline button."""

    label: str
    callback_data: str


@dataclass
class PauseOutcome:
    """Result of closing out or pausing a task after an engine reply.

    Attributes:
        paused: True when the task now waits for input and buttons were rendered
        task: Task as last persisted, if known
        text: Text the caller should show the user (final answer, or the
            question as plain text when degraded)
        degraded: True when the pause could not be persisted and the
            question is returned as non-interactive text
    """

    paused: bool
    task: Task | None
    text: str
    degraded: bool = False


@dataclass(frozen=True)
class ResumeRequest:
    """Everything needed to re-invoke the engine after a choice.

    Attributes:
        history: Message history stored at the moment of pause
        turn: The single synthetic turn carrying the user's choice
        choice_label: Human-readable label of the chosen option
        session_id: Engine session to resume, if any
        tool_use_id: Tool invocation answered by the turn, if any
    """

    history: list[dict[str, Any]]
    turn: dict[str, Any]
    choice_label: str
    session_id: str | None = None
    tool_use_id: str | None = None

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [*self.history, self.turn]


@dataclass
class ChoiceOutcome:
    """Result of routing a button tap into a task.

    Kind values:
        resumed: Task is running again; resume holds the next invocation
        cancelled: Task was cancelled by the user
        ignored: Task missing or not waiting for input; nothing changed
        failed: Task could not be resumed and is now failed
    """

    kind: Literal["resumed", "cancelled", "ignored", "failed"]
    task: Task | None = None
    resume: ResumeRequest | None = None
    message: str = ""
