from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path

from ralph.errors import ChangeLockedError, RalphIOError

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".ralph"


def state_dir(repo_root: Path) -> Path:
    """Create ``<repo>/.ralph`` and keep it invisible to stashes and ``git clean``."""
    directory = repo_root / STATE_DIRNAME
    directory.mkdir(parents=True, exist_ok=True)
    gitignore = directory / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n", encoding="utf-8")
    return directory


class ChangeLock:
    """Exclusive, non-blocking per-change lock held for the orchestrator's lifetime."""

    def __init__(self, repo_root: Path, change_name: str) -> None:
        self.change_name = change_name
        self.repo_root = repo_root
        self.path = repo_root / STATE_DIRNAME / "locks" / f"{change_name}.lock"
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        try:
            state_dir(self.repo_root)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as exc:
            raise RalphIOError(f"IO error: {self.path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            raise ChangeLockedError(self.change_name) from exc
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("utf-8"))
        self._fd = fd
        logger.debug("acquired lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        logger.debug("released lock %s", self.path)

    def __enter__(self) -> ChangeLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
