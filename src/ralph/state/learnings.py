from __future__ import annotations

import logging
from pathlib import Path

from ralph.errors import RalphIOError

logger = logging.getLogger(__name__)

DEFAULT_DIRECTORY = Path("/tmp/ralphtool")

INITIAL_TEMPLATE = """<!-- Shared Learnings File -->
<!-- Record discoveries, decisions, and gotchas here for future stories -->

"""


class LearningsStore:
    """Append-only per-change markdown notes shared across stories."""

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or DEFAULT_DIRECTORY

    def path(self, change_name: str) -> Path:
        return self.directory / f"{change_name}-learnings.md"

    def ensure(self, change_name: str) -> Path:
        path = self.path(change_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_text(INITIAL_TEMPLATE, encoding="utf-8")
                logger.debug("created learnings file %s", path)
        except OSError as exc:
            raise RalphIOError(f"IO error: {path}: {exc}") from exc
        return path

    def read(self, change_name: str) -> str | None:
        """Return the file content if it holds anything beyond the template."""
        path = self.path(change_name)
        if not path.exists():
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RalphIOError(f"IO error: {path}: {exc}") from exc
        remainder = content.removeprefix(INITIAL_TEMPLATE)
        if not remainder.strip():
            return None
        return content

    def append(self, change_name: str, lines: list[str]) -> None:
        path = self.ensure(change_name)
        if not lines:
            return
        block = "\n".join(line.rstrip("\n") for line in lines) + "\n"
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(block)
        except OSError as exc:
            raise RalphIOError(f"IO error: {path}: {exc}") from exc
