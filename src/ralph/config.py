from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from ralph.errors import SerializationError

CONFIG_FILENAME = "ralph.toml"


@dataclass(slots=True)
class ProjectConfig:
    change_root: str = "openspec/changes"


@dataclass(slots=True)
class AgentSettings:
    binary: str = "claude"
    model: str = ""
    max_turns: int = 50
    skip_permissions: bool = True


@dataclass(slots=True)
class LoopConfig:
    max_retries: int = 3
    event_buffer: int = 256
    poll_interval: float = 0.1
    ambiguous_is_success: bool = True
    propagate_session_env: bool = True


@dataclass(slots=True)
class CheckpointConfig:
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class LearningsConfig:
    directory: str = "/tmp/ralphtool"


@dataclass(slots=True)
class RalphConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopConfig = field(default_factory=LoopConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    learnings: LearningsConfig = field(default_factory=LearningsConfig)
    repo_root: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls, repo_root: Path | None = None) -> RalphConfig:
        config = cls()
        if repo_root is not None:
            config.repo_root = repo_root.resolve()
        return config

    @classmethod
    def from_dict(cls, data: dict, repo_root: Path | None = None) -> RalphConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                agent=AgentSettings(**data.get("agent", {})),
                loop=LoopConfig(**data.get("loop", {})),
                checkpoint=CheckpointConfig(**data.get("checkpoint", {})),
                learnings=LearningsConfig(**data.get("learnings", {})),
            )
        except TypeError as exc:
            raise SerializationError(f"Invalid configuration: {exc}") from exc
        if repo_root is not None:
            config.repo_root = repo_root.resolve()
        return config

    @property
    def change_root(self) -> Path:
        return self.repo_root / self.project.change_root

    def to_dict(self) -> dict:
        return {
            "project": {
                "change_root": self.project.change_root,
            },
            "agent": {
                "binary": self.agent.binary,
                "model": self.agent.model,
                "max_turns": self.agent.max_turns,
                "skip_permissions": self.agent.skip_permissions,
            },
            "loop": {
                "max_retries": self.loop.max_retries,
                "event_buffer": self.loop.event_buffer,
                "poll_interval": self.loop.poll_interval,
                "ambiguous_is_success": self.loop.ambiguous_is_success,
                "propagate_session_env": self.loop.propagate_session_env,
            },
            "checkpoint": {
                "timeout_seconds": self.checkpoint.timeout_seconds,
            },
            "learnings": {
                "directory": self.learnings.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "agent", "loop", "checkpoint", "learnings"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    repo_root = path.resolve().parent
    if not path.exists():
        return RalphConfig.default(repo_root)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise SerializationError(f"Invalid TOML in {path}: {exc}") from exc
    return RalphConfig.from_dict(data, repo_root)


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
