from __future__ import annotations

import asyncio
import json
import logging
import signal
import threading
from pathlib import Path

import click

from ralph import __version__
from ralph.backends import ClaudeAgent, Done, Message
from ralph.config import CONFIG_FILENAME, RalphConfig, load_config, save_config
from ralph.errors import RalphError
from ralph.events import (
    CHANNEL_POLL_SECONDS,
    AwaitingUserChoice,
    Complete,
    CompletionChoice,
    ErrorEvent,
    EventChannel,
    LoopEvent,
    MaxRetriesExceeded,
    StoryEvent,
    StoryProgress,
)
from ralph.orchestrator import LoopState, Orchestrator, StopReason
from ralph.spec import OpenSpecAdapter, list_changes
from ralph.state import CheckpointManager, LearningsStore
from ralph.state.lock import state_dir

logger = logging.getLogger(__name__)

FAILING_STOP_REASONS = {StopReason.ERROR, StopReason.MAX_RETRIES}


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> RalphConfig:
    repo_root = Path.cwd().resolve()
    try:
        return load_config(_resolve_config_path(repo_root, config_value))
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc


def _open_change(config: RalphConfig, change: str) -> OpenSpecAdapter:
    try:
        return OpenSpecAdapter.open(
            change,
            repo_root=config.repo_root,
            change_root=config.project.change_root,
            learnings=LearningsStore(Path(config.learnings.directory)),
        )
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc


def _render_event(event: LoopEvent) -> None:
    if isinstance(event, StoryProgress):
        click.echo(
            f"[{event.current}/{event.total}] Story {event.story_id}: {event.story_title} "
            f"({event.completed} completed)"
        )
    elif isinstance(event, StoryEvent):
        inner = event.event
        if isinstance(inner, Message):
            click.echo(f"  {inner.text}")
        elif isinstance(inner, Done):
            response = inner.response
            click.echo(
                f"  done: {response.turns} turns, {response.total_tokens} tokens, "
                f"${response.cost_usd:.4f}"
            )
    elif isinstance(event, ErrorEvent):
        click.echo(f"Error: {event.message}", err=True)
    elif isinstance(event, MaxRetriesExceeded):
        click.echo(f"Story {event.story_id} exceeded the retry limit.", err=True)
    elif isinstance(event, Complete):
        click.echo("Run complete.")


def _settle(answer: asyncio.Future[str], value: str | None, exc: BaseException | None) -> None:
    if answer.done():
        return
    if exc is not None:
        answer.set_exception(exc)
    else:
        answer.set_result(value)


def _prompt_choice(loop: asyncio.AbstractEventLoop, answer: asyncio.Future[str]) -> None:
    # Runs on a daemon thread that the loop may abandon.
    value: str | None = None
    error: BaseException | None = None
    try:
        value = click.prompt(
            "Keep the changes or clean up (restore the original tree)?",
            type=click.Choice([choice.value for choice in CompletionChoice]),
            default=CompletionChoice.KEEP.value,
        )
    except (click.Abort, EOFError) as exc:
        error = exc
    try:
        loop.call_soon_threadsafe(_settle, answer, value, error)
    except RuntimeError:
        logger.debug("completion prompt answered after the loop closed")


async def _choose(
    on_complete: str, stop: threading.Event, poll_interval: float = CHANNEL_POLL_SECONDS
) -> CompletionChoice | None:
    """Resolve the completion choice, or ``None`` once the stop flag is set mid-prompt."""
    if on_complete != "ask":
        return CompletionChoice(on_complete)
    loop = asyncio.get_running_loop()
    answer: asyncio.Future[str] = loop.create_future()
    threading.Thread(
        target=_prompt_choice, args=(loop, answer), name="ralph-choice", daemon=True
    ).start()
    while not answer.done():
        await asyncio.wait({answer}, timeout=poll_interval)
        if not answer.done() and stop.is_set():
            answer.cancel()
            click.echo("")
            return None
    return CompletionChoice(answer.result())


async def _drive(orchestrator: Orchestrator, channel: EventChannel, on_complete: str) -> LoopState:
    loop = asyncio.get_running_loop()
    stop = orchestrator.stop_handle()
    loop.add_signal_handler(signal.SIGINT, stop.set)
    task = asyncio.create_task(orchestrator.run())
    task.add_done_callback(lambda _: channel.sender.close())
    try:
        async for event in channel.receiver:
            _render_event(event)
            if isinstance(event, AwaitingUserChoice):
                choice = await _choose(on_complete, stop, orchestrator.config.loop.poll_interval)
                if choice is not None:
                    event.reply.send(choice)
        return await task
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if not task.done():
            task.cancel()


@click.group()
@click.version_option(__version__, prog_name="ralph")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Ralph loop: drive a coding agent through a change, story by story."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load(config_value)
    save_config(config_path, config)
    state_dir(repo_root)
    click.echo(f"Initialized ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Changes: {config.change_root}")


@cli.command("list")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def list_command(config_value: str) -> None:
    config = _load(config_value)
    try:
        changes = list_changes(config.repo_root, config.project.change_root)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    if not changes:
        click.echo("No changes found.")
        return
    for change in changes:
        marker = "done" if change.is_complete else "open"
        click.echo(f"{change.name:<30} {change.completed_tasks}/{change.total_tasks} {marker}")


@cli.command("status")
@click.argument("change")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(change: str, config_value: str) -> None:
    adapter = _open_change(_load(config_value), change)
    payload = {
        "change": change,
        "stories": [
            {
                "id": story.id,
                "title": story.title,
                "complete": story.is_complete,
                "tasks": [
                    {"id": task.id, "description": task.description, "done": task.done}
                    for task in story.tasks
                ],
            }
            for story in adapter.stories()
        ],
        "scenarios": len(adapter.scenarios()),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("prompt")
@click.argument("change")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def prompt_command(change: str, config_value: str) -> None:
    adapter = _open_change(_load(config_value), change)
    try:
        learnings = adapter.learnings.read(change)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(adapter.generate_prompt(learnings=learnings))


@cli.command("run")
@click.argument("change")
@click.option(
    "--on-complete",
    type=click.Choice(["ask", "keep", "cleanup"]),
    default="ask",
    show_default=True,
    help="What to do with the working tree once the loop ends.",
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(change: str, on_complete: str, config_value: str) -> None:
    config = _load(config_value)
    channel = EventChannel(config.loop.event_buffer)
    agent = ClaudeAgent(binary=config.agent.binary, working_directory=config.repo_root)
    try:
        orchestrator = Orchestrator(change, agent, config, channel.sender)
        state = asyncio.run(_drive(orchestrator, channel, on_complete))
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Stories: {state.completed_stories}/{state.total_stories}")
    if state.stop_reason is StopReason.USER_STOP:
        click.echo("Stopped by user.")
    if state.stop_reason in FAILING_STOP_REASONS:
        raise click.ClickException(state.error or f"Run ended: {state.stop_reason.value}")


@cli.command("checkpoints")
@click.argument("change")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def checkpoints_command(change: str, config_value: str) -> None:
    config = _load(config_value)
    manager = CheckpointManager(
        config.repo_root, change, timeout=config.checkpoint.timeout_seconds
    )
    try:
        labels = manager.list_checkpoints()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    if not labels:
        click.echo("No checkpoints.")
        return
    for label in labels:
        click.echo(label)


@cli.command("cleanup")
@click.argument("change")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def cleanup_command(change: str, config_value: str) -> None:
    config = _load(config_value)
    manager = CheckpointManager(
        config.repo_root, change, timeout=config.checkpoint.timeout_seconds
    )
    try:
        dropped = manager.cleanup()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Dropped {dropped} checkpoint(s) for {change}.")
