from __future__ import annotations

import asyncio
import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from ralph.backends.base import AgentConfig, AgentStream, CodingAgent, Done, StreamEvent
from ralph.config import RalphConfig
from ralph.errors import (
    AgentExecutionError,
    AgentNotFoundError,
    AgentOutputError,
    CommandError,
    RalphError,
)
from ralph.events import (
    AwaitingUserChoice,
    ChannelClosedError,
    ChoiceReply,
    Complete,
    CompletionChoice,
    ErrorEvent,
    EventSender,
    MaxRetriesExceeded,
    StoryEvent,
    StoryProgress,
)
from ralph.spec.openspec import OpenSpecAdapter
from ralph.spec.prompt import COMPLETE_MARKER, FAILED_MARKER_PREFIX, FAILED_MARKER_SUFFIX
from ralph.spec.types import Story
from ralph.state.checkpoint import ORIGINAL, CheckpointManager
from ralph.state.learnings import LearningsStore
from ralph.state.lock import ChangeLock

logger = logging.getLogger(__name__)

NO_RESULT_REASON = "agent exited without a result"
NO_MARKER_REASON = "agent finished without a completion marker"


class StopReason(enum.Enum):
    FINISHED = "finished"
    USER_STOP = "user_stop"
    MAX_RETRIES = "max_retries"
    ERROR = "error"


@dataclass(slots=True)
class LoopState:
    change_name: str
    running: bool = False
    current_story: str | None = None
    total_stories: int = 0
    completed_stories: int = 0
    started_stories: list[str] = field(default_factory=list)
    stop_reason: StopReason | None = None
    error: str | None = None
    retries: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class AttemptOutcome:
    success: bool = False
    stopped: bool = False
    reason: str = ""


def classify_response(content: str, *, ambiguous_is_success: bool = True) -> AttemptOutcome:
    """Map the agent's final text onto success, failure (with reason) or the ambiguous default."""
    if COMPLETE_MARKER in content:
        return AttemptOutcome(success=True)
    start = content.find(FAILED_MARKER_PREFIX)
    if start != -1:
        reason_start = start + len(FAILED_MARKER_PREFIX)
        end = content.find(FAILED_MARKER_SUFFIX, reason_start)
        if end != -1:
            return AttemptOutcome(reason=content[reason_start:end].strip())
    if ambiguous_is_success:
        return AttemptOutcome(success=True)
    return AttemptOutcome(reason=NO_MARKER_REASON)


async def _next_event(stream: AgentStream) -> StreamEvent | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class Orchestrator:
    """Drives one change story by story, with checkpoints, retries and a final user choice.

    The change lock is taken on construction and released when ``run``
    returns or ``close`` is called.
    """

    def __init__(
        self,
        change_name: str,
        agent: CodingAgent,
        config: RalphConfig,
        sink: EventSender,
        *,
        learnings: LearningsStore | None = None,
    ) -> None:
        self.change_name = change_name
        self.agent = agent
        self.config = config
        self.sink = sink
        self.learnings = learnings or LearningsStore(Path(config.learnings.directory))
        self.checkpoints = CheckpointManager(
            config.repo_root,
            change_name,
            timeout=config.checkpoint.timeout_seconds,
        )
        self.session_id = uuid4().hex
        self.state = LoopState(change_name=change_name)
        self._stop = threading.Event()
        self._lock = ChangeLock(config.repo_root, change_name)
        self._lock.acquire()

    def stop_handle(self) -> threading.Event:
        return self._stop

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        self._lock.release()

    async def run(self) -> LoopState:
        self.state.running = True
        logger.info("starting loop for %s (session %s)", self.change_name, self.session_id)
        try:
            await self._run()
        except ChannelClosedError:
            logger.info("event channel closed, abandoning run of %s", self.change_name)
            if self.state.stop_reason is None:
                self.state.stop_reason = StopReason.USER_STOP
        finally:
            self.state.running = False
            await self._shutdown()
        logger.info("loop for %s finished: %s", self.change_name, self.state.stop_reason)
        return self.state

    async def _run(self) -> None:
        adapter = await asyncio.to_thread(
            OpenSpecAdapter.open,
            self.change_name,
            repo_root=self.config.repo_root,
            change_root=self.config.project.change_root,
            learnings=self.learnings,
        )
        await asyncio.to_thread(self.learnings.ensure, self.change_name)
        self.state.total_stories = len(adapter.stories())

        if await self._checkpoint(self.checkpoints.save, ORIGINAL, "save the original snapshot"):
            self.state.stop_reason = await self._story_loop(adapter)
        else:
            self.state.stop_reason = StopReason.ERROR
        await self._completion_phase()

    async def _shutdown(self) -> None:
        try:
            await asyncio.to_thread(self.checkpoints.cleanup)
        except CommandError as exc:
            logger.warning("checkpoint cleanup failed for %s: %s", self.change_name, exc)
        finally:
            self.close()

    async def _checkpoint(self, operation: Callable[..., Any], story_id: str, action: str) -> bool:
        try:
            await asyncio.to_thread(operation, story_id)
        except CommandError as exc:
            await self._report_error(f"Failed to {action} ({story_id}): {exc}")
            return False
        return True

    async def _report_error(self, message: str) -> None:
        logger.error("%s", message)
        self.state.error = message
        await self.sink.send(ErrorEvent(message))

    async def _story_loop(self, adapter: OpenSpecAdapter) -> StopReason:
        stories = adapter.stories()
        total = len(stories)
        for position, story in enumerate(stories, start=1):
            if self.stopped:
                return StopReason.USER_STOP
            try:
                await asyncio.to_thread(adapter.reload)
            except RalphError as exc:
                await self._report_error(f"Failed to re-read tasks: {exc}")
                return StopReason.ERROR
            current = adapter.story(story.id) or story
            if current.is_complete:
                logger.info("story %s already complete, skipping", story.id)
                self.state.completed_stories += 1
                continue

            self.state.current_story = story.id
            self.state.started_stories.append(story.id)
            await self.sink.send(
                StoryProgress(
                    story_id=story.id,
                    story_title=story.title,
                    current=position,
                    total=total,
                    completed=self.state.completed_stories,
                )
            )
            outcome = await self._run_story(adapter, current)
            if outcome is not None:
                return outcome
            self.state.completed_stories += 1
        self.state.current_story = None
        return StopReason.FINISHED

    async def _run_story(self, adapter: OpenSpecAdapter, story: Story) -> StopReason | None:
        if not await self._checkpoint(self.checkpoints.save, story.id, "save checkpoint"):
            return StopReason.ERROR

        retry_reason: str | None = None
        while True:
            if self.stopped:
                return await self._stop_story(story.id)
            learnings = await asyncio.to_thread(self.learnings.read, self.change_name)
            prompt = adapter.generate_prompt(learnings=learnings, retry_reason=retry_reason)
            try:
                outcome = await self._attempt(story.id, prompt)
            except AgentOutputError as exc:
                outcome = AttemptOutcome(reason=str(exc))
            except (AgentNotFoundError, AgentExecutionError) as exc:
                await self._report_error(str(exc))
                return StopReason.ERROR

            if outcome.stopped:
                return await self._stop_story(story.id)
            if outcome.success:
                logger.info("story %s complete", story.id)
                if not await self._checkpoint(self.checkpoints.drop, story.id, "drop checkpoint"):
                    return StopReason.ERROR
                return None

            retry_reason = outcome.reason
            attempts = self.state.retries.get(story.id, 0) + 1
            self.state.retries[story.id] = attempts
            logger.warning("story %s attempt %d failed: %s", story.id, attempts, retry_reason)
            if not await self._checkpoint(self.checkpoints.revert, story.id, "revert checkpoint"):
                return StopReason.ERROR
            if attempts >= self.config.loop.max_retries:
                await self.sink.send(MaxRetriesExceeded(story_id=story.id))
                return StopReason.MAX_RETRIES

    async def _stop_story(self, story_id: str) -> StopReason:
        logger.info("stop requested during story %s", story_id)
        if not await self._checkpoint(self.checkpoints.revert, story_id, "revert checkpoint"):
            return StopReason.ERROR
        return StopReason.USER_STOP

    def _agent_config(self, story_id: str) -> AgentConfig:
        env: dict[str, str] = {}
        if self.config.loop.propagate_session_env:
            env = {"RALPH_SESSION": self.session_id, "RALPH_STORY": story_id}
        return AgentConfig(
            max_turns=self.config.agent.max_turns,
            model=self.config.agent.model or None,
            env=env,
            skip_permissions=self.config.agent.skip_permissions,
        )

    async def _attempt(self, story_id: str, prompt: str) -> AttemptOutcome:
        if self.stopped:
            return AttemptOutcome(stopped=True)
        stream = await self.agent.run(prompt, self._agent_config(story_id))
        async with stream:
            while True:
                pending = asyncio.ensure_future(_next_event(stream))
                try:
                    while not pending.done():
                        await asyncio.wait({pending}, timeout=self.config.loop.poll_interval)
                        if not pending.done() and self.stopped:
                            return AttemptOutcome(stopped=True)
                    event = pending.result()
                finally:
                    if not pending.done():
                        pending.cancel()

                if event is None:
                    raise AgentOutputError(NO_RESULT_REASON)
                self.sink.offer(StoryEvent(story_id=story_id, event=event))
                if isinstance(event, Done):
                    return classify_response(
                        event.response.content,
                        ambiguous_is_success=self.config.loop.ambiguous_is_success,
                    )
                if self.stopped:
                    return AttemptOutcome(stopped=True)

    async def _await_choice(self, reply: ChoiceReply) -> CompletionChoice:
        waiter = asyncio.ensure_future(reply.wait())
        try:
            while not waiter.done():
                await asyncio.wait({waiter}, timeout=self.config.loop.poll_interval)
                if waiter.done():
                    break
                if self.sink.closed:
                    logger.info("no completion choice before channel closed, keeping changes")
                    return CompletionChoice.KEEP
                if self.stopped:
                    logger.info("stop requested before a completion choice, keeping changes")
                    return CompletionChoice.KEEP
            return waiter.result()
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _completion_phase(self) -> None:
        # Re-arm the stop flag so a stop set while the choice is pending abandons it.
        self._stop.clear()
        reply = ChoiceReply()
        await self.sink.send(AwaitingUserChoice(reply=reply))
        choice = await self._await_choice(reply)
        logger.info("completion choice for %s: %s", self.change_name, choice.value)
        if choice is CompletionChoice.CLEANUP:
            await self._checkpoint(self.checkpoints.revert, ORIGINAL, "restore the original tree")
        try:
            await asyncio.to_thread(self.checkpoints.cleanup)
        except CommandError as exc:
            await self._report_error(f"Failed to clean up checkpoints: {exc}")
        await self.sink.send(Complete())
