import asyncio
import json
import subprocess
import threading
from pathlib import Path

import click
from click.testing import CliRunner

from ralph.backends import AgentConfig, AgentResponse, AgentStream, CodingAgent, Done, Message
from ralph.cli import _choose, cli
from ralph.config import load_config
from ralph.events import CompletionChoice

TASKS_MD = """# Tasks

## 1. Project Setup

- [x] 1.1 Create package
- [ ] 1.2 Add CI
"""


class FakeStream(AgentStream):
    def __init__(self, content: str) -> None:
        self.events = [Message("working"), Done(AgentResponse(content=content, turns=2))]

    async def __anext__(self):
        if not self.events:
            raise StopAsyncIteration
        return self.events.pop(0)

    async def aclose(self) -> None:
        self.events = []


class FakeAgent(CodingAgent):
    def __init__(self, content: str) -> None:
        self.content = content

    async def run(self, prompt: str, config: AgentConfig) -> AgentStream:
        _ = prompt, config
        return FakeStream(self.content)


def _init_git_repo(repo: Path) -> None:
    for cmd in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(cmd, cwd=repo, check=True, text=True, capture_output=True)
    change_dir = repo / "openspec" / "changes" / "demo"
    change_dir.mkdir(parents=True)
    (change_dir / "tasks.md").write_text(TASKS_MD, encoding="utf-8")
    (repo / "ralph.toml").write_text(
        f'[loop]\npoll_interval = 0.01\nmax_retries = 2\n\n'
        f'[learnings]\ndirectory = "{repo.parent / "learnings"}"\n',
        encoding="utf-8",
    )
    subprocess.run(["git", "add", "-A"], cwd=repo, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"], cwd=repo, check=True, text=True, capture_output=True
    )


def _use_agent(monkeypatch, content: str) -> None:
    monkeypatch.setattr(
        "ralph.cli.ClaudeAgent",
        lambda binary, working_directory: FakeAgent(content),
    )


def test_init_writes_config_and_state_dir(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert "Initialized ralph" in result.output
    config = load_config(tmp_path / "ralph.toml")
    assert config.agent.binary == "claude"
    assert (tmp_path / ".ralph" / ".gitignore").exists()


def test_list_status_and_prompt(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    runner = CliRunner()

    listed = runner.invoke(cli, ["list"])
    assert listed.exit_code == 0, listed.output
    assert "demo" in listed.output
    assert "1/2 open" in listed.output

    status = runner.invoke(cli, ["status", "demo"])
    assert status.exit_code == 0, status.output
    payload = json.loads(status.output)
    assert payload["change"] == "demo"
    assert payload["stories"][0]["tasks"][0] == {
        "id": "1.1",
        "description": "Create package",
        "done": True,
    }

    prompt = runner.invoke(cli, ["prompt", "demo"])
    assert prompt.exit_code == 0, prompt.output
    assert "# Working on Change: demo" in prompt.output
    assert "<promise>COMPLETE</promise>" in prompt.output


def test_unknown_change_exits_with_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["status", "missing"])

    assert result.exit_code == 1
    assert "Change not found: missing" in result.output


def test_invalid_invocation_exits_2(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(cli, ["run"]).exit_code == 2
    assert runner.invoke(cli, ["run", "demo", "--on-complete", "maybe"]).exit_code == 2


def test_run_success_keeps_work_and_leaves_no_checkpoints(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_agent(monkeypatch, "<promise>COMPLETE</promise>")
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "demo", "--on-complete", "keep"])

    assert result.exit_code == 0, result.output
    assert "[1/1] Story 1: Project Setup" in result.output
    assert "  working" in result.output
    assert "done: 2 turns" in result.output
    assert "Run complete." in result.output
    assert "Stories: 1/1" in result.output

    checkpoints = runner.invoke(cli, ["checkpoints", "demo"])
    assert checkpoints.exit_code == 0
    assert "No checkpoints." in checkpoints.output


def test_run_asks_for_completion_choice(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_agent(monkeypatch, "<promise>COMPLETE</promise>")
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "demo"], input="cleanup\n")

    assert result.exit_code == 0, result.output
    assert "Keep the changes or clean up" in result.output


def test_run_exhausting_retries_exits_1(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_agent(monkeypatch, "<promise>FAILED: boom</promise>")
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "demo", "--on-complete", "cleanup"])

    assert result.exit_code == 1
    assert "Story 1 exceeded the retry limit." in result.output
    assert "max_retries" in result.output


def test_cleanup_command_drops_change_checkpoints(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    (repo / "wip.txt").write_text("wip\n", encoding="utf-8")
    subprocess.run(
        ["git", "stash", "push", "--include-untracked", "-m", "ralph:demo:1"],
        cwd=repo,
        check=True,
        text=True,
        capture_output=True,
    )
    runner = CliRunner()

    listed = runner.invoke(cli, ["checkpoints", "demo"])
    assert "ralph:demo:1" in listed.output

    result = runner.invoke(cli, ["cleanup", "demo"])

    assert result.exit_code == 0, result.output
    assert "Dropped 1 checkpoint(s) for demo." in result.output


def test_stop_abandons_pending_completion_prompt(monkeypatch) -> None:
    release = threading.Event()

    def blocking_prompt(*args, **kwargs):
        _ = args, kwargs
        release.wait(5.0)
        raise click.Abort()

    monkeypatch.setattr("ralph.cli.click.prompt", blocking_prompt)
    stop = threading.Event()

    async def scenario() -> CompletionChoice | None:
        asyncio.get_running_loop().call_later(0.05, stop.set)
        try:
            return await asyncio.wait_for(_choose("ask", stop, 0.01), timeout=5.0)
        finally:
            release.set()
            await asyncio.sleep(0.05)

    assert asyncio.run(scenario()) is None


def test_fixed_completion_choice_skips_the_prompt() -> None:
    stop = threading.Event()
    stop.set()

    assert asyncio.run(_choose("cleanup", stop)) is CompletionChoice.CLEANUP
