from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import IO, Any

from ralph.backends.base import (
    AgentConfig,
    AgentResponse,
    AgentStream,
    CodingAgent,
    Done,
    Message,
    StreamEvent,
)
from ralph.errors import AgentExecutionError, AgentNotFoundError

logger = logging.getLogger(__name__)


def _number(value: Any, kind: type[int] | type[float]) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return kind(0)
    return kind(value)


def _first_text(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                return text
    return None


def parse_stream_line(line: str) -> StreamEvent | None:
    """Project one NDJSON frame onto a stream event, or ``None`` to skip it."""
    line = line.strip()
    if not line:
        return None
    try:
        frame = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("skipping non-JSON agent output: %.80s", line)
        return None
    if not isinstance(frame, dict):
        return None

    kind = frame.get("type")
    if kind == "assistant":
        text = _first_text(frame.get("message"))
        return Message(text) if text is not None else None
    if kind == "result":
        usage = frame.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        result = frame.get("result")
        session_id = frame.get("session_id")
        return Done(
            AgentResponse(
                content=result if isinstance(result, str) else "",
                turns=_number(frame.get("num_turns"), int),
                input_tokens=_number(usage.get("input_tokens"), int),
                output_tokens=_number(usage.get("output_tokens"), int),
                cost_usd=_number(frame.get("total_cost_usd"), float),
                session_id=session_id if isinstance(session_id, str) else "",
            )
        )
    return None


def _kill_process_group(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


def _deliver(
    loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None], line: str | None
) -> bool:
    try:
        loop.call_soon_threadsafe(queue.put_nowait, line)
    except RuntimeError:
        # event loop already closed
        return False
    return True


def _pump_lines(
    stdout: IO[str] | None,
    loop: asyncio.AbstractEventLoop,
    queue: asyncio.Queue[str | None],
) -> None:
    # Holds no reference to the stream so dropping the stream can reap the child.
    if stdout is None:
        _deliver(loop, queue, None)
        return
    try:
        with stdout:
            for line in stdout:
                if not _deliver(loop, queue, line):
                    return
    except (OSError, ValueError) as exc:
        logger.debug("agent stdout closed: %s", exc)
    _deliver(loop, queue, None)


class ProcessAgentStream(AgentStream):
    """Stream over a child process's stdout.

    A daemon thread reads the pipe line by line and hands lines to the event
    loop through an unbounded queue, so a slow consumer never blocks the child.
    """

    def __init__(self, process: subprocess.Popen[str], loop: asyncio.AbstractEventLoop) -> None:
        self._process = process
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._finished = False
        self._closed = False
        self._reader = threading.Thread(
            target=_pump_lines,
            args=(process.stdout, loop, self._queue),
            name=f"agent-reader-{process.pid}",
            daemon=True,
        )
        self._reader.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        while True:
            line = await self._queue.get()
            if line is None:
                self._finished = True
                returncode = await asyncio.to_thread(self._process.wait)
                logger.debug("agent %d exited with %d", self._process.pid, returncode)
                raise StopAsyncIteration
            event = parse_stream_line(line)
            if event is None:
                continue
            if isinstance(event, Done):
                self._finished = True
            return event

    def _terminate(self) -> None:
        _kill_process_group(self._process)
        self._process.wait()

    async def aclose(self) -> None:
        self._finished = True
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._terminate)
        logger.debug("agent %d closed", self._process.pid)

    def __del__(self) -> None:
        process = getattr(self, "_process", None)
        if process is None or process.poll() is not None:
            return
        try:
            _kill_process_group(process)
            process.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired):
            pass


class ClaudeAgent(CodingAgent):
    """Runs the ``claude`` CLI in print mode with NDJSON streaming output."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str, config: AgentConfig) -> list[str]:
        command = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(config.max_turns),
        ]
        if config.model:
            command.extend(["--model", config.model])
        if config.skip_permissions:
            command.append("--dangerously-skip-permissions")
        command.extend(config.extra_args)
        return command

    async def run(self, prompt: str, config: AgentConfig) -> ProcessAgentStream:
        command = self.build_command(prompt, config)
        env = os.environ.copy()
        env.update(config.env)
        loop = asyncio.get_running_loop()
        try:
            process = await asyncio.to_thread(
                subprocess.Popen,
                command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise AgentNotFoundError(self.binary) from exc
        except (OSError, ValueError) as exc:
            raise AgentExecutionError(f"Failed to start {self.binary}: {exc}") from exc
        logger.info("started agent %s (pid %d)", self.binary, process.pid)
        return ProcessAgentStream(process, loop)
