"""Anthropic API runner.

Implements the same run() contract as the CLI runner over the Anthropic
Messages API, plus an agentic tool loop. Inside the loop each tool call is
executed as one step whose result is an explicit sum type: either a tool
result to send back to the model, or a request for the user's input (the
ask_user tool). A needs-input step ends the loop with an AgentPause that
carries the full message history needed to resume later.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import anthropic
import structlog
from opentelemetry import trace

from relay import telemetry
from relay.classifier import MAX_LABEL_LENGTH, MAX_OPTIONS, YES_NO_OPTIONS
from relay.config import RelaySettings
from relay.models import ChoiceOption, EngineResult, ResumeState, RunOptions

logger = structlog.get_logger(__name__)

ASK_USER_TOOL_NAME = "ask_user"
NO_RESPONSE_TEXT = "Processed but no response generated."
MAX_ITERATIONS_TEXT = "Reached maximum iterations. Try a simpler request."
SKIPPED_TOOL_TEXT = "Skipped: waiting for user input"

ASK_USER_TOOL: dict[str, Any] = {
    "name": ASK_USER_TOOL_NAME,
    "description": (
        "Ask the user a question and wait for their response before continuing. "
        "Use this when you need confirmation before a significant action or when "
        "the user should choose between options. The conversation pauses until "
        "the user taps one of the offered buttons."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "question": {"type": "string", "description": "The question to ask"},
            "options": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "label": {
                            "type": "string",
                            "description": "Button label (max 64 chars)",
                        },
                        "value": {
                            "type": "string",
                            "description": "Value returned when tapped",
                        },
                    },
                    "required": ["label", "value"],
                },
                "description": "Choices to offer. Defaults to Yes/No.",
            },
        },
        "required": ["question"],
    },
}

ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolResultStep:
    """A tool ran and produced content for the model."""

    tool_use_id: str
    content: str
    kind: Literal["result"] = "result"


@dataclass(frozen=True)
class NeedsInputStep:
    """A tool asked for the user's input; the loop must pause."""

    tool_use_id: str
    question: str
    options: list[ChoiceOption]
    kind: Literal["needs_input"] = "needs_input"


ToolStep = ToolResultStep | NeedsInputStep


@dataclass
class AgentReply:
    """The agent loop finished with a final answer (or an error).

    messages holds the conversation the final answer replied to, including
    every tool_use and tool_result turn of the run.
    """

    result: EngineResult
    messages: list[dict[str, Any]] = field(default_factory=list)
    kind: Literal["reply"] = "reply"


@dataclass
class AgentPause:
    """The agent loop paused on ask_user.

    resume_state.messages ends with the assistant turn that asked; the
    answer must be sent back as a tool_result for resume_state.tool_use_id.
    """

    question: str
    options: list[ChoiceOption]
    resume_state: ResumeState
    kind: Literal["needs_input"] = "needs_input"


AgentOutcome = AgentReply | AgentPause


def parse_ask_user_options(raw: Any) -> list[ChoiceOption]:
    """Turn ask_user tool input options into choices.

    Falls back to a Yes/No pair when the model supplied none. Labels are
    truncated and the list is capped like classifier options.
    """
    options: list[ChoiceOption] = []
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict) or "label" not in item:
                continue
            label = str(item["label"])[:MAX_LABEL_LENGTH]
            options.append(ChoiceOption(label=label, value=str(item.get("value", label))))
            if len(options) == MAX_OPTIONS:
                break
    return options or list(YES_NO_OPTIONS)


def _content_to_dicts(content: list[Any]) -> list[dict[str, Any]]:
    return [
        block if isinstance(block, dict) else block.model_dump(exclude_none=True)
        for block in content
    ]


def _extract_text(content: list[dict[str, Any]]) -> str:
    return "\n".join(
        block["text"] for block in content if block.get("type") == "text" and block.get("text")
    )


class AnthropicRunner:
    """Runs prompts against the Anthropic Messages API.

    Usage:
        runner = AnthropicRunner.from_settings(settings, tool_executor=execute)
        outcome = await runner.run_agent([{"role": "user", "content": prompt}])
        if outcome.kind == "needs_input":
            ...  # persist outcome.resume_state and render outcome.options
    """

    backend = "api"

    def __init__(
        self,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4096,
        max_iterations: int = 15,
        system_prompt: str = "",
        tools: list[dict[str, Any]] | None = None,
        tool_executor: ToolExecutor | None = None,
        client: anthropic.Anthropic | None = None,
        tracer: trace.Tracer | None = None,
    ):
        """Initialize the runner.

        Args:
            model: Claude model name
            max_tokens: Maximum tokens per response
            max_iterations: Cap on model calls within one agent loop
            system_prompt: System prompt sent with every call
            tools: Extra tool definitions; ask_user is always offered
            tool_executor: Async callable executing non-ask_user tools
            client: Preconfigured client, created from the environment if None
            tracer: Tracer for invocation spans
        """
        self.model = model
        self.max_tokens = max_tokens
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self.tools = [*(tools or []), ASK_USER_TOOL]
        self.tool_executor = tool_executor
        self.client = client or anthropic.Anthropic()
        self.tracer = tracer or trace.get_tracer(__name__)

    @classmethod
    def from_settings(cls, settings: RelaySettings, **kwargs: Any) -> AnthropicRunner:
        return cls(
            model=settings.anthropic_model,
            max_tokens=settings.anthropic_max_tokens,
            max_iterations=settings.anthropic_max_iterations,
            **kwargs,
        )

    async def run(self, prompt: str, options: RunOptions | None = None) -> EngineResult:
        """Single-shot invocation without tools.

        Same contract as ClaudeCliRunner.run(): never raises for engine
        failures and is bounded by options.timeout_seconds.
        """
        options = options or RunOptions()
        outcome = await self._timed(
            self._single_shot([{"role": "user", "content": prompt}], options), options
        )
        if outcome.kind == "reply":
            return outcome.result
        return EngineResult(text=outcome.question, raw=outcome.question)

    async def run_agent(
        self, messages: list[dict[str, Any]], options: RunOptions | None = None
    ) -> AgentOutcome:
        """Run the tool loop until a final answer or an ask_user pause.

        Args:
            messages: Conversation so far; a resumed conversation passes the
                stored history followed by the synthetic answer turn
            options: Invocation options (timeout, allowed tools)

        Returns:
            AgentReply or AgentPause
        """
        options = options or RunOptions()
        return await self._timed(self._loop(list(messages), options), options)

    async def _timed(self, work: Awaitable[AgentOutcome], options: RunOptions) -> AgentOutcome:
        started = time.monotonic()
        with self.tracer.start_as_current_span("engine.run") as span:
            span.set_attribute("engine.backend", self.backend)
            span.set_attribute("engine.timeout_seconds", options.timeout_seconds)
            try:
                outcome = await asyncio.wait_for(work, timeout=options.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Engine timed out", backend=self.backend, timeout_seconds=options.timeout_seconds
                )
                outcome = AgentReply(EngineResult(text="", is_error=True, timed_out=True))
            except anthropic.APIError as e:
                logger.error("Anthropic API error", error=str(e))
                outcome = AgentReply(EngineResult(text=str(e), is_error=True, raw=str(e)))

            is_error = outcome.kind == "reply" and outcome.result.is_error
            span.set_attribute("engine.is_error", is_error)
            span.set_attribute("engine.paused", outcome.kind == "needs_input")

        elapsed = time.monotonic() - started
        telemetry.engine_invocations_counter.add(1, {"backend": self.backend})
        telemetry.engine_duration.record(elapsed, {"backend": self.backend})
        if is_error:
            reason = "timeout" if outcome.result.timed_out else "error"
            telemetry.engine_errors_counter.add(1, {"backend": self.backend, "reason": reason})
        logger.info(
            "Engine invocation finished",
            backend=self.backend,
            elapsed_seconds=round(elapsed, 2),
            outcome=outcome.kind,
            is_error=is_error,
        )
        return outcome

    def _create_message(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]], timeout: float
    ) -> Any:
        """Create a message; called in a thread via asyncio.to_thread."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
            "timeout": timeout,
        }
        if self.system_prompt:
            kwargs["system"] = self.system_prompt
        if tools:
            kwargs["tools"] = tools
        return self.client.messages.create(**kwargs)

    async def _single_shot(
        self, messages: list[dict[str, Any]], options: RunOptions
    ) -> AgentOutcome:
        response = await asyncio.to_thread(
            self._create_message, messages, [], options.timeout_seconds
        )
        text = _extract_text(_content_to_dicts(response.content))
        return AgentReply(EngineResult(text=text, raw=text))

    def _available_tools(self, options: RunOptions) -> list[dict[str, Any]]:
        if not options.allowed_tools:
            return self.tools
        allowed = set(options.allowed_tools) | {ASK_USER_TOOL_NAME}
        return [tool for tool in self.tools if tool["name"] in allowed]

    async def _loop(self, messages: list[dict[str, Any]], options: RunOptions) -> AgentOutcome:
        tools = self._available_tools(options)
        tool_calls_made = 0

        for iteration in range(1, self.max_iterations + 1):
            response = await asyncio.to_thread(
                self._create_message, messages, tools, options.timeout_seconds
            )
            content = _content_to_dicts(response.content)
            tool_uses = [block for block in content if block.get("type") == "tool_use"]

            logger.debug(
                "Received API response",
                iteration=iteration,
                stop_reason=response.stop_reason,
                tool_calls=len(tool_uses),
            )

            if not tool_uses:
                text = _extract_text(content) or NO_RESPONSE_TEXT
                logger.info(
                    "Agent completed", iterations=iteration, tool_calls=tool_calls_made
                )
                return AgentReply(EngineResult(text=text, raw=text), messages=messages)

            assistant_turn = {"role": "assistant", "content": content}
            results: list[dict[str, Any]] = []

            for index, block in enumerate(tool_uses):
                tool_calls_made += 1
                step = await self.execute_tool_step(block)

                if step.kind == "needs_input":
                    # Later calls in the same turn are answered but never run
                    skipped = [
                        {
                            "type": "tool_result",
                            "tool_use_id": later["id"],
                            "content": SKIPPED_TOOL_TEXT,
                        }
                        for later in tool_uses[index + 1 :]
                    ]
                    logger.info(
                        "Agent paused for user input",
                        iterations=iteration,
                        tool_use_id=step.tool_use_id,
                        options=len(step.options),
                    )
                    return AgentPause(
                        question=step.question,
                        options=step.options,
                        resume_state=ResumeState(
                            messages=[*messages, assistant_turn],
                            tool_use_id=step.tool_use_id,
                            tool_results=[*results, *skipped],
                        ),
                    )

                results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": step.tool_use_id,
                        "content": step.content,
                    }
                )

            messages.append(assistant_turn)
            messages.append({"role": "user", "content": results})

        logger.warning("Agent reached maximum iterations", max_iterations=self.max_iterations)
        return AgentReply(
            EngineResult(text=MAX_ITERATIONS_TEXT, raw=MAX_ITERATIONS_TEXT), messages=messages
        )

    async def execute_tool_step(self, block: dict[str, Any]) -> ToolStep:
        """Execute one tool_use block.

        Args:
            block: tool_use content block (id, name, input)

        Returns:
            NeedsInputStep for ask_user, otherwise a ToolResultStep; tool
            failures are reported to the model as an error result
        """
        name = block.get("name", "")
        tool_input = block.get("input") or {}
        tool_use_id = block["id"]

        if name == ASK_USER_TOOL_NAME:
            return NeedsInputStep(
                tool_use_id=tool_use_id,
                question=str(tool_input.get("question") or "How should I proceed?"),
                options=parse_ask_user_options(tool_input.get("options")),
            )

        logger.info("Executing tool", tool_name=name, tool_use_id=tool_use_id)
        if self.tool_executor is None:
            payload: Any = {"error": f"Unknown tool: {name}"}
        else:
            try:
                payload = await self.tool_executor(name, tool_input)
            except Exception as e:
                logger.error("Tool execution failed", tool_name=name, error=str(e))
                payload = {"error": f"Tool execution failed: {e}"}

        content = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        return ToolResultStep(tool_use_id=tool_use_id, content=content)
