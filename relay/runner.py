"""Claude CLI subprocess runner.

Invokes the claude CLI as a child process with an assembled prompt and
normalizes its output. Every invocation is bounded by an explicit kill
timer: when the timeout fires the whole child process group is killed and
reaped before run() returns, whatever the child was doing.

The CLI can answer in three wire shapes (plain text, a single JSON object,
or a stream of JSON events). Each shape decodes into its own output type
and a single normalizer turns any of them into an EngineResult.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog
from opentelemetry import trace

from relay import telemetry
from relay.config import RelaySettings
from relay.models import EngineResult, ProgressCallback, RunOptions

logger = structlog.get_logger(__name__)

# Substrings that mark engine output as an auth, quota, rate-limit or
# context-length failure rather than an answer.
ERROR_SIGNATURES: tuple[str, ...] = (
    "authentication_error",
    "API Error: 400",
    "API Error: 401",
    "API Error: 403",
    "API Error: 429",
    "OAuth token has expired",
    "Failed to authenticate",
    "invalid_api_key",
    "invalidRequestError",
    "Could not process image",
    "overloaded_error",
    "rate_limit_error",
    "credit balance",
    "add funds",
    "billing",
    "insufficient_quota",
    "payment_required",
    "prompt is too long",
    "context_length_exceeded",
    "tokens > ",
)

TOOL_PROGRESS_INTERVAL_SECONDS = 2.0
FIRST_TEXT_MIN_CHARS = 30

# stream-json lines carry whole tool results
STREAM_LINE_LIMIT = 16 * 1024 * 1024

_FIRST_SENTENCE = re.compile(r"^.{30,150}?[.!?\n]")


def is_error_response(text: str) -> bool:
    """Check output for a known engine error signature."""
    return any(signature in text for signature in ERROR_SIGNATURES)


def _shorten_path(path: str, max_length: int = 40) -> str:
    home = str(Path.home())
    if home and path.startswith(home):
        path = "~" + path[len(home) :]
    return path if len(path) <= max_length else "..." + path[-max_length:]


def friendly_tool_name(name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Describe a tool invocation for a progress notice.

    Args:
        name: Engine tool name (e.g. "Read", "mcp__calendar__list_events")
        tool_input: Tool input arguments, if known

    Returns:
        Short human-readable description such as "Reading ~/notes.md"
    """
    tool_input = tool_input or {}

    if name in ("Read", "Write", "Edit"):
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[name]
        path = tool_input.get("file_path")
        return f"{verb} {_shorten_path(path)}" if path else f"{verb} file"
    if name == "Glob":
        pattern = tool_input.get("pattern")
        return f"Finding {pattern}" if pattern else "Searching files"
    if name == "Grep":
        pattern = tool_input.get("pattern")
        return f'Searching for "{pattern}"' if pattern else "Searching code"
    if name == "Bash":
        description = tool_input.get("description")
        if description:
            return description if len(description) <= 50 else description[:50] + "..."
        command = (tool_input.get("command") or "").split()
        program = command[0].rsplit("/", 1)[-1] if command else "command"
        return f"Running {program}"
    if name == "WebSearch":
        query = tool_input.get("query")
        return f"Searching: {query[:40]}" if query else "Searching the web"
    if name == "WebFetch":
        return "Fetching web page"
    if name == "Task":
        return tool_input.get("description") or "Delegating task"
    if name == "AskUserQuestion":
        return "Asking a question"

    if name.startswith("mcp__"):
        parts = name.split("__")
        server = (parts[1] if len(parts) > 1 and parts[1] else "tool").replace("-", " ")
        action = (parts[2] if len(parts) > 2 else "").replace("_", " ")
        return f"{server}: {action}" if action else f"Using {server}"

    return f"Using {name}"


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextOutput:
    """Plain text printed by --output-format text."""

    text: str
    kind: Literal["text"] = "text"


@dataclass(frozen=True)
class JsonOutput:
    """Single JSON object printed by --output-format json.

    payload is None when stdout was not valid JSON.
    """

    raw: str
    payload: dict[str, Any] | None
    kind: Literal["json"] = "json"


@dataclass(frozen=True)
class StreamOutput:
    """Accumulated stream-json events."""

    result: str | None
    accumulated_text: str
    session_id: str | None
    kind: Literal["stream-json"] = "stream-json"


EngineOutput = TextOutput | JsonOutput | StreamOutput


def decode_json_output(raw: str) -> JsonOutput:
    """Decode the single-object JSON shape."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return JsonOutput(raw=raw, payload=None)
    return JsonOutput(raw=raw, payload=payload if isinstance(payload, dict) else None)


def normalize_output(output: EngineOutput) -> EngineResult:
    """Convert any wire shape into an EngineResult.

    Args:
        output: Decoded engine output

    Returns:
        EngineResult with is_error set on error signatures
    """
    if output.kind == "json":
        if output.payload is None:
            return EngineResult(
                text=output.raw.strip(),
                is_error=is_error_response(output.raw),
                raw=output.raw,
            )
        text = output.payload.get("result") or ""
        is_error = (
            bool(output.payload.get("is_error"))
            or output.payload.get("subtype") == "error_max_turns"
            or is_error_response(output.raw)
        )
        return EngineResult(
            text=text,
            session_id=output.payload.get("session_id"),
            is_error=is_error,
            raw=output.raw,
        )

    if output.kind == "stream-json":
        text = output.result if output.result else output.accumulated_text
        return EngineResult(
            text=text,
            session_id=output.session_id,
            is_error=is_error_response(text),
            raw=text,
        )

    return EngineResult(
        text=output.text.strip(),
        is_error=is_error_response(output.text),
        raw=output.text,
    )


@dataclass
class ProgressEmitter:
    """Delivers progress callbacks without letting them block or break a run.

    Tool notices are throttled to one per interval. Coroutine callbacks are
    scheduled as background tasks and never awaited by the runner.
    """

    on_tool_use: ProgressCallback | None = None
    on_text: ProgressCallback | None = None
    interval: float = TOOL_PROGRESS_INTERVAL_SECONDS
    clock: Any = time.monotonic
    _last_tool_at: float | None = None
    _pending: set[asyncio.Future] = field(default_factory=set)

    def tool_used(self, notice: str) -> None:
        if self.on_tool_use is None:
            return
        now = self.clock()
        if self._last_tool_at is not None and now - self._last_tool_at < self.interval:
            return
        self._last_tool_at = now
        self._call(self.on_tool_use, notice)

    def first_text(self, snippet: str) -> None:
        if self.on_text is not None:
            self._call(self.on_text, snippet)

    def _call(self, callback: ProgressCallback, value: str) -> None:
        try:
            result = callback(value)
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._settle)

    def _settle(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Progress callback failed", error=str(future.exception()))


class StreamAccumulator:
    """Incrementally decodes stream-json event lines.

    Captures the session id from the first event carrying one, the final
    result event, tool-use notices and assistant text.
    """

    def __init__(self, progress: ProgressEmitter | None = None):
        self.progress = progress or ProgressEmitter()
        self.session_id: str | None = None
        self.result: str | None = None
        self.text = ""
        self._first_text_sent = False

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        if event.get("session_id") and not self.session_id:
            self.session_id = event["session_id"]

        event_type = event.get("type")
        if event_type == "result":
            self.result = event.get("result") or ""
            self.session_id = event.get("session_id") or self.session_id
            return

        if event_type == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                self._handle_block(block)

    def _handle_block(self, block: dict[str, Any]) -> None:
        if block.get("type") == "tool_use":
            notice = friendly_tool_name(block.get("name") or "tool", block.get("input"))
            logger.debug("Engine tool use", tool=notice)
            self.progress.tool_used(notice)
        elif block.get("type") == "text" and block.get("text"):
            self.text += block["text"]
            if not self._first_text_sent and len(self.text) > FIRST_TEXT_MIN_CHARS:
                self._first_text_sent = True
                match = _FIRST_SENTENCE.match(self.text)
                snippet = match.group(0) if match else self.text[:150]
                self.progress.first_text(snippet.strip())

    def output(self) -> StreamOutput:
        return StreamOutput(
            result=self.result, accumulated_text=self.text, session_id=self.session_id
        )


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill the child and everything it spawned."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


class ClaudeCliRunner:
    """Runs the claude CLI with a hard timeout.

    Usage:
        runner = ClaudeCliRunner.from_settings(get_settings())
        result = await runner.run(prompt, RunOptions(timeout_seconds=120))
        if result.is_error:
            ...  # fall back to another backend
    """

    backend = "cli"

    def __init__(
        self,
        claude_path: str = "claude",
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        tracer: trace.Tracer | None = None,
    ):
        """Initialize the runner.

        Args:
            claude_path: Executable to spawn
            cwd: Working directory for the child, defaults to the current one
            env: Extra environment variables for the child
            tracer: Tracer for invocation spans
        """
        self.claude_path = claude_path
        self.cwd = cwd
        self.env = env
        self.tracer = tracer or trace.get_tracer(__name__)

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> ClaudeCliRunner:
        return cls(claude_path=settings.claude_path)

    def build_command(self, prompt: str, options: RunOptions) -> list[str]:
        """Build the claude argv for one invocation."""
        cmd = [self.claude_path, "-p", prompt, "--output-format", options.output_format]
        if options.output_format == "stream-json":
            cmd.append("--verbose")
        if options.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.resume_session_id:
            cmd.extend(["--resume", options.resume_session_id])
        if options.max_turns:
            cmd.extend(["--max-turns", str(options.max_turns)])
        return cmd

    async def run(self, prompt: str, options: RunOptions | None = None) -> EngineResult:
        """Invoke the engine and return its normalized output.

        Never raises for engine failures: spawn errors, timeouts and error
        signatures all come back as EngineResult(is_error=True).

        Args:
            prompt: Fully assembled prompt
            options: Invocation options; defaults to RunOptions()

        Returns:
            EngineResult; on timeout text is empty and timed_out is True
        """
        options = options or RunOptions()
        started = time.monotonic()

        with self.tracer.start_as_current_span("engine.run") as span:
            span.set_attribute("engine.backend", self.backend)
            span.set_attribute("engine.output_format", options.output_format)
            span.set_attribute("engine.timeout_seconds", options.timeout_seconds)
            span.set_attribute("engine.resumed", bool(options.resume_session_id))

            result = await self._invoke(prompt, options)

            span.set_attribute("engine.is_error", result.is_error)
            span.set_attribute("engine.timed_out", result.timed_out)

        elapsed = time.monotonic() - started
        telemetry.engine_invocations_counter.add(1, {"backend": self.backend})
        telemetry.engine_duration.record(elapsed, {"backend": self.backend})
        if result.is_error:
            reason = "timeout" if result.timed_out else "error"
            telemetry.engine_errors_counter.add(
                1, {"backend": self.backend, "reason": reason}
            )

        logger.info(
            "Engine invocation finished",
            backend=self.backend,
            elapsed_seconds=round(elapsed, 2),
            is_error=result.is_error,
            timed_out=result.timed_out,
            session_id=result.session_id,
            chars=len(result.text),
        )
        return result

    async def _invoke(self, prompt: str, options: RunOptions) -> EngineResult:
        cmd = self.build_command(prompt, options)
        env = {**os.environ, **self.env} if self.env else None

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to start engine", command=cmd[0], error=str(e))
            return EngineResult(text="", is_error=True)

        timed_out = False

        def _on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            logger.warning(
                "Engine timed out, killing process",
                pid=process.pid,
                timeout_seconds=options.timeout_seconds,
            )
            _kill_process_group(process)

        loop = asyncio.get_running_loop()
        timer = loop.call_later(options.timeout_seconds, _on_timeout)
        stderr_task = asyncio.ensure_future(process.stderr.read())

        try:
            if options.output_format == "stream-json":
                accumulator = StreamAccumulator(
                    ProgressEmitter(on_tool_use=options.on_tool_use, on_text=options.on_text)
                )
                async for raw_line in process.stdout:
                    accumulator.feed_line(raw_line.decode("utf-8", errors="replace"))
                output: EngineOutput = accumulator.output()
            else:
                stdout = (await process.stdout.read()).decode("utf-8", errors="replace")
                output = (
                    decode_json_output(stdout)
                    if options.output_format == "json"
                    else TextOutput(text=stdout)
                )
            await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        finally:
            timer.cancel()
            if process.returncode is None:
                _kill_process_group(process)
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if timed_out:
            return EngineResult(text="", is_error=True, timed_out=True)

        result = normalize_output(output)
        if process.returncode != 0 and not result.text:
            logger.warning(
                "Engine exited without output",
                returncode=process.returncode,
                stderr=stderr[-500:],
            )
            result.is_error = True
        return result
