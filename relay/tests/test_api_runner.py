"""Tests for the Anthropic API runner and its tool loop."""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from relay.api_runner import (
    MAX_ITERATIONS_TEXT,
    SKIPPED_TOOL_TEXT,
    AnthropicRunner,
    NeedsInputStep,
    ToolResultStep,
    parse_ask_user_options,
)
from relay.models import RunOptions
from relay.tasks import build_choice_turn


def response(*blocks, stop_reason: str = "end_turn") -> SimpleNamespace:
    return SimpleNamespace(content=list(blocks), stop_reason=stop_reason)


def text(value: str) -> dict:
    return {"type": "text", "text": value}


def tool_use(tool_id: str, name: str, tool_input: dict | None = None) -> dict:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input or {}}


def make_runner(*responses, executor=None, max_iterations: int = 15) -> AnthropicRunner:
    client = MagicMock()
    client.messages.create.side_effect = list(responses)
    return AnthropicRunner(client=client, tool_executor=executor, max_iterations=max_iterations)


class TestAgentLoop:
    """Tests for AnthropicRunner.run_agent()."""

    @pytest.mark.asyncio
    async def test_plain_reply(self) -> None:
        runner = make_runner(response(text("Hello!")))

        outcome = await runner.run_agent([{"role": "user", "content": "hi"}])

        assert outcome.kind == "reply"
        assert outcome.result.text == "Hello!"
        assert outcome.result.is_error is False

    @pytest.mark.asyncio
    async def test_tool_results_are_fed_back(self) -> None:
        """A regular tool runs and its result goes back to the model."""
        executor = AsyncMock(return_value={"hits": 1})
        runner = make_runner(
            response(tool_use("tu_1", "search", {"q": "x"}), stop_reason="tool_use"),
            response(text("Found one.")),
            executor=executor,
        )

        outcome = await runner.run_agent([{"role": "user", "content": "find x"}])

        assert outcome.result.text == "Found one."
        executor.assert_awaited_once_with("search", {"q": "x"})
        assert [m["role"] for m in outcome.messages] == ["user", "assistant", "user"]
        assert outcome.messages[1]["content"][0]["name"] == "search"
        sent = runner.client.messages.create.call_args.kwargs["messages"]
        assert sent[-1] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": '{"hits": 1}'}],
        }

    @pytest.mark.asyncio
    async def test_ask_user_pauses_with_history(self) -> None:
        """ask_user ends the loop with the history needed to resume."""
        executor = AsyncMock()
        ask = tool_use(
            "tu_ask",
            "ask_user",
            {"question": "Delete it?", "options": [{"label": "Delete", "value": "d"}, {"label": "Keep", "value": "k"}]},
        )
        runner = make_runner(
            response(text("Checking."), ask, tool_use("tu_later", "search"), stop_reason="tool_use"),
            executor=executor,
        )
        messages = [{"role": "user", "content": "clean up"}]

        outcome = await runner.run_agent(messages)

        assert outcome.kind == "needs_input"
        assert outcome.question == "Delete it?"
        assert [o.value for o in outcome.options] == ["d", "k"]
        state = outcome.resume_state
        assert state.tool_use_id == "tu_ask"
        assert state.messages[0] == messages[0]
        assert state.messages[-1]["role"] == "assistant"
        assert state.tool_results == [
            {"type": "tool_result", "tool_use_id": "tu_later", "content": SKIPPED_TOOL_TEXT}
        ]
        executor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_sends_answer_as_tool_result(self) -> None:
        """Resuming replays the history with the answer for the asking call."""
        first = make_runner(response(tool_use("tu_ask", "ask_user", {"question": "Go?"})))
        paused = await first.run_agent([{"role": "user", "content": "deploy"}])
        state = paused.resume_state
        turn = build_choice_turn("Yes, go ahead", state.tool_use_id, state.tool_results)

        second = make_runner(response(text("Deployed.")))
        outcome = await second.run_agent([*state.messages, turn])

        assert outcome.result.text == "Deployed."
        sent = second.client.messages.create.call_args.kwargs["messages"]
        assert sent[:-1] == state.messages
        assert sent[-1]["content"][-1] == {
            "type": "tool_result",
            "tool_use_id": "tu_ask",
            "content": "User chose: Yes, go ahead",
        }

    @pytest.mark.asyncio
    async def test_max_iterations(self) -> None:
        runner = make_runner(
            response(tool_use("tu_1", "search")),
            response(tool_use("tu_2", "search")),
            executor=AsyncMock(return_value="ok"),
            max_iterations=2,
        )

        outcome = await runner.run_agent([{"role": "user", "content": "loop"}])

        assert outcome.result.text == MAX_ITERATIONS_TEXT

    @pytest.mark.asyncio
    async def test_api_error_is_reported_not_raised(self) -> None:
        runner = make_runner()
        runner.client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )

        outcome = await runner.run_agent([{"role": "user", "content": "hi"}])

        assert outcome.kind == "reply"
        assert outcome.result.is_error is True

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """A slow API call is abandoned at the timeout."""
        runner = make_runner()
        runner.client.messages.create.side_effect = lambda **kwargs: time.sleep(0.5)

        outcome = await runner.run_agent(
            [{"role": "user", "content": "hi"}], RunOptions(timeout_seconds=0.05)
        )

        assert outcome.result.is_error is True
        assert outcome.result.timed_out is True


class TestToolStep:
    """Tests for AnthropicRunner.execute_tool_step()."""

    @pytest.mark.asyncio
    async def test_ask_user_is_needs_input(self) -> None:
        step = await make_runner().execute_tool_step(tool_use("tu_1", "ask_user", {"question": "Sure?"}))

        assert isinstance(step, NeedsInputStep)
        assert step.kind == "needs_input"
        assert [o.value for o in step.options] == ["yes", "no"]

    @pytest.mark.asyncio
    async def test_failing_tool_returns_error_result(self) -> None:
        runner = make_runner(executor=AsyncMock(side_effect=RuntimeError("boom")))

        step = await runner.execute_tool_step(tool_use("tu_1", "search"))

        assert isinstance(step, ToolResultStep)
        assert "Tool execution failed: boom" in step.content

    @pytest.mark.asyncio
    async def test_unknown_tool_without_executor(self) -> None:
        step = await make_runner().execute_tool_step(tool_use("tu_1", "mystery"))

        assert "Unknown tool: mystery" in step.content


class TestSingleShot:
    """Tests for AnthropicRunner.run()."""

    @pytest.mark.asyncio
    async def test_run_returns_text_without_tools(self) -> None:
        runner = make_runner(response(text("Plain answer")))

        result = await runner.run("hi")

        assert result.text == "Plain answer"
        assert "tools" not in runner.client.messages.create.call_args.kwargs


class TestParseOptions:
    """Tests for parse_ask_user_options()."""

    def test_defaults_to_yes_no(self) -> None:
        assert [o.label for o in parse_ask_user_options(None)] == ["Yes, go ahead", "No, skip"]

    def test_value_defaults_to_label_and_list_is_capped(self) -> None:
        raw = [{"label": f"Option {n}"} for n in range(10)]

        options = parse_ask_user_options(raw)

        assert len(options) == 6
        assert options[0].value == "Option 0"
