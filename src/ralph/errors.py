from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for every error the loop reports to its host."""

    code: str = "RALPH_ERROR"


class ChangeNotFoundError(RalphError):
    code = "CHANGE_NOT_FOUND"

    def __init__(self, change_name: str, *, path: str | None = None) -> None:
        detail = f" ({path})" if path else ""
        super().__init__(f"Change not found: {change_name}{detail}")
        self.change_name = change_name
        self.path = path


class ChangeLockedError(RalphError):
    code = "CHANGE_LOCKED"

    def __init__(self, change_name: str) -> None:
        super().__init__(
            f"Change '{change_name}' is locked by another session. "
            "Another orchestrator may be running."
        )
        self.change_name = change_name


class ParseError(RalphError):
    code = "PARSE_ERROR"

    def __init__(self, message: str, *, path: str | None = None, line: int | None = None) -> None:
        location = ""
        if path:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"Parse error: {location}{message}")
        self.path = path
        self.line = line


class RalphIOError(RalphError):
    code = "IO_ERROR"


class SerializationError(RalphError):
    code = "SERIALIZATION_ERROR"


class CommandError(RalphError):
    """Raised when an auxiliary command (git, openspec, ...) fails or times out."""

    code = "COMMAND_ERROR"

    def __init__(self, cmd: str, stderr: str, *, exit_code: int | None = None) -> None:
        super().__init__(f"Command '{cmd}' failed: {stderr}")
        self.cmd = cmd
        self.stderr = stderr
        self.exit_code = exit_code


class CheckpointNotFoundError(CommandError):
    def __init__(self, label: str) -> None:
        super().__init__("git stash list", f"No checkpoint labelled '{label}'")
        self.label = label


class AgentNotFoundError(RalphError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, binary: str) -> None:
        super().__init__(
            f"Agent CLI not found: {binary}. "
            "Please ensure it is installed and in your PATH."
        )
        self.binary = binary


class AgentExecutionError(RalphError):
    code = "AGENT_EXECUTION_ERROR"


class AgentOutputError(RalphError):
    code = "AGENT_OUTPUT_ERROR"
