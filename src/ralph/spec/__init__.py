from ralph.spec.openspec import (
    OpenSpecAdapter,
    infer_verify_commands,
    list_changes,
    parse_spec_md,
    parse_tasks_md,
    render_tasks_md,
)
from ralph.spec.prompt import COMPLETE_MARKER, generate_prompt
from ralph.spec.types import ChangeInfo, Requirement, Scenario, Story, Task, VerifyCommands

__all__ = [
    "COMPLETE_MARKER",
    "ChangeInfo",
    "OpenSpecAdapter",
    "Requirement",
    "Scenario",
    "Story",
    "Task",
    "VerifyCommands",
    "generate_prompt",
    "infer_verify_commands",
    "list_changes",
    "parse_spec_md",
    "parse_tasks_md",
    "render_tasks_md",
]
