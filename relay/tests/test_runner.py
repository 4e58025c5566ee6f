"""Tests for the Claude CLI runner."""

import json
import os
import stat
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from relay.models import RunOptions
from relay.runner import (
    ClaudeCliRunner,
    JsonOutput,
    ProgressEmitter,
    StreamAccumulator,
    TextOutput,
    decode_json_output,
    friendly_tool_name,
    is_error_response,
    normalize_output,
)


def write_script(directory: Path, body: str) -> Path:
    """Create an executable stand-in for the claude CLI."""
    script = directory / "fake-claude"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


class TestTimeoutKill:
    """The kill timer terminates long-running invocations."""

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path: Path) -> None:
        """run() returns near the timeout and the child is gone."""
        pid_file = tmp_path / "pid"
        script = write_script(tmp_path, f"echo $$ > {pid_file}\nexec sleep 5\n")
        runner = ClaudeCliRunner(claude_path=str(script))

        started = time.monotonic()
        result = await runner.run("hello", RunOptions(timeout_seconds=0.5))
        elapsed = time.monotonic() - started

        assert result.is_error is True
        assert result.timed_out is True
        assert result.text == ""
        assert elapsed < 3
        pid = int(pid_file.read_text().strip())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)


class TestRun:
    """End-to-end runs against a scripted CLI."""

    @pytest.mark.asyncio
    async def test_json_output(self, tmp_path: Path) -> None:
        payload = json.dumps({"type": "result", "result": "Hi there", "session_id": "sess-1"})
        script = write_script(tmp_path, f"cat <<'EOF'\n{payload}\nEOF\n")

        result = await ClaudeCliRunner(claude_path=str(script)).run("hello")

        assert result.text == "Hi there"
        assert result.session_id == "sess-1"
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_stream_output(self, tmp_path: Path) -> None:
        """Stream events yield the final result and session id."""
        events = [
            {"type": "system", "session_id": "sess-2"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"}]}},
            {"type": "result", "result": "All done.", "session_id": "sess-2"},
        ]
        lines = "\n".join(json.dumps(e) for e in events)
        script = write_script(tmp_path, f"cat <<'EOF'\n{lines}\nEOF\n")

        result = await ClaudeCliRunner(claude_path=str(script)).run(
            "hello", RunOptions(output_format="stream-json")
        )

        assert result.text == "All done."
        assert result.session_id == "sess-2"

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_output_is_error(self, tmp_path: Path) -> None:
        script = write_script(tmp_path, "echo boom >&2\nexit 3\n")

        result = await ClaudeCliRunner(claude_path=str(script)).run(
            "hello", RunOptions(output_format="text")
        )

        assert result.is_error is True
        assert result.timed_out is False

    @pytest.mark.asyncio
    async def test_missing_executable_is_error(self, tmp_path: Path) -> None:
        result = await ClaudeCliRunner(claude_path=str(tmp_path / "nope")).run("hello")

        assert result.is_error is True


class TestBuildCommand:
    """Tests for ClaudeCliRunner.build_command()."""

    def test_full_command(self) -> None:
        runner = ClaudeCliRunner(claude_path="claude")
        options = RunOptions(
            resume_session_id="sess-1",
            allowed_tools=["Read", "Grep"],
            output_format="stream-json",
            max_turns=5,
        )

        cmd = runner.build_command("do it", options)

        assert cmd[:5] == ["claude", "-p", "do it", "--output-format", "stream-json"]
        assert "--verbose" in cmd
        assert cmd[cmd.index("--allowedTools") + 1] == "Read,Grep"
        assert cmd[cmd.index("--resume") + 1] == "sess-1"
        assert cmd[cmd.index("--max-turns") + 1] == "5"

    def test_minimal_command(self) -> None:
        cmd = ClaudeCliRunner().build_command("hi", RunOptions())

        assert cmd == ["claude", "-p", "hi", "--output-format", "json"]


class TestNormalize:
    """Tests for output normalization and error signatures."""

    def test_json_error_flag(self) -> None:
        output = decode_json_output(json.dumps({"result": "x", "is_error": True}))

        assert normalize_output(output).is_error is True

    def test_json_max_turns_is_error(self) -> None:
        output = decode_json_output(json.dumps({"result": "", "subtype": "error_max_turns"}))

        assert normalize_output(output).is_error is True

    def test_invalid_json_falls_back_to_text(self) -> None:
        output = decode_json_output("not json at all")

        assert isinstance(output, JsonOutput)
        assert normalize_output(output).text == "not json at all"

    @pytest.mark.parametrize(
        "text",
        [
            "API Error: 401 authentication_error",
            "Your credit balance is too low",
            "prompt is too long: 210000 tokens > 200000 maximum",
            "Error: rate_limit_error",
        ],
    )
    def test_error_signatures_anywhere(self, text: str) -> None:
        """Signatures are detected anywhere in the output."""
        assert is_error_response(f"Some preamble.\n{text}\nMore text.")
        assert normalize_output(TextOutput(text=text)).is_error is True

    def test_plain_answer_is_not_error(self) -> None:
        assert normalize_output(TextOutput(text="  Sure, done.  ")).text == "Sure, done."
        assert is_error_response("Sure, done.") is False


class TestFriendlyToolName:
    """Tests for friendly_tool_name()."""

    def test_file_tools(self) -> None:
        assert friendly_tool_name("Read", {"file_path": "/tmp/notes.md"}) == "Reading /tmp/notes.md"
        assert friendly_tool_name("Edit") == "Editing file"

    def test_bash_prefers_description(self) -> None:
        assert friendly_tool_name("Bash", {"description": "List files"}) == "List files"
        assert friendly_tool_name("Bash", {"command": "/usr/bin/git status"}) == "Running git"

    def test_mcp_tool(self) -> None:
        assert friendly_tool_name("mcp__google-calendar__list_events") == "google calendar: list events"

    def test_unknown_tool(self) -> None:
        assert friendly_tool_name("Frobnicate") == "Using Frobnicate"


class TestProgress:
    """Tests for stream progress callbacks."""

    def test_tool_notices_are_throttled(self) -> None:
        """At most one tool notice per two seconds."""
        now = [100.0]
        seen: list[str] = []
        emitter = ProgressEmitter(on_tool_use=seen.append, clock=lambda: now[0])

        emitter.tool_used("Reading a")
        now[0] += 1.0
        emitter.tool_used("Reading b")
        now[0] += 1.5
        emitter.tool_used("Reading c")

        assert seen == ["Reading a", "Reading c"]

    def test_first_text_sent_once(self) -> None:
        """The first sentence of streamed text is previewed once."""
        previews: list[str] = []
        accumulator = StreamAccumulator(ProgressEmitter(on_text=previews.append))
        block = {"type": "text", "text": "Let me look into the repository layout first. Then more."}

        accumulator.feed_line(json.dumps({"type": "assistant", "message": {"content": [block]}}))
        accumulator.feed_line(json.dumps({"type": "assistant", "message": {"content": [block]}}))

        assert previews == ["Let me look into the repository layout first."]

    def test_failing_callback_does_not_break_stream(self) -> None:
        callback = MagicMock(side_effect=RuntimeError("boom"))
        accumulator = StreamAccumulator(ProgressEmitter(on_tool_use=callback))
        event = {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Grep", "input": {}}]}}

        accumulator.feed_line(json.dumps(event))
        accumulator.feed_line("garbage line")

        assert callback.call_count == 1
        assert accumulator.output().result is None
