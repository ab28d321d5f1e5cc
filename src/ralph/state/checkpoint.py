from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph.commands import DEFAULT_TIMEOUT, run_command
from ralph.errors import CheckpointNotFoundError, CommandError

logger = logging.getLogger(__name__)

LABEL_PREFIX = "ralph"
ORIGINAL = "original"
NO_CHANGES_MESSAGE = "No local changes to save"


@dataclass(slots=True)
class StashEntry:
    index: int
    message: str

    @property
    def ref(self) -> str:
        return f"stash@{{{self.index}}}"


def _stash_message(subject: str) -> str:
    # "On main: ralph:x:1" for pushed entries, the bare label for stored ones.
    if subject.startswith(("On ", "WIP on ")) and ": " in subject:
        return subject.split(": ", maxsplit=1)[1]
    return subject


class CheckpointManager:
    """Labelled ``git stash`` snapshots of the working tree, keyed by (change, story).

    Stash indices shift whenever entries are added or dropped, so every
    operation looks its entry up by label instead of caching positions.
    """

    def __init__(
        self,
        repo_root: Path,
        change_name: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.change_name = change_name
        self.timeout = timeout

    @property
    def prefix(self) -> str:
        return f"{LABEL_PREFIX}:{self.change_name}:"

    def label(self, story_id: str) -> str:
        return f"{self.prefix}{story_id}"

    def _run_git(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            timeout=timeout if timeout is not None else self.timeout,
            check=check,
        )

    def _entries(self, timeout: float | None = None) -> list[StashEntry]:
        proc = self._run_git(["stash", "list", "--format=%gd%x09%gs"], timeout=timeout)
        entries: list[StashEntry] = []
        for line in proc.stdout.splitlines():
            ref, _, subject = line.partition("\t")
            ref = ref.strip()
            if not (ref.startswith("stash@{") and ref.endswith("}")):
                continue
            try:
                index = int(ref[len("stash@{"):-1])
            except ValueError:
                continue
            entries.append(StashEntry(index=index, message=_stash_message(subject.strip())))
        return entries

    def find(self, story_id: str, *, timeout: float | None = None) -> int | None:
        label = self.label(story_id)
        for entry in self._entries(timeout):
            if entry.message == label:
                return entry.index
        return None

    def list_checkpoints(self, *, timeout: float | None = None) -> list[str]:
        return [
            entry.message
            for entry in self._entries(timeout)
            if entry.message.startswith(self.prefix)
        ]

    def _require(self, story_id: str, timeout: float | None) -> int:
        index = self.find(story_id, timeout=timeout)
        if index is None:
            raise CheckpointNotFoundError(self.label(story_id))
        return index

    def _store_empty_snapshot(self, label: str, timeout: float | None) -> None:
        head = self._run_git(["rev-parse", "HEAD"], timeout=timeout).stdout.strip()
        tree = self._run_git(["rev-parse", "HEAD^{tree}"], timeout=timeout).stdout.strip()
        index_commit = self._run_git(
            ["commit-tree", tree, "-p", head, "-m", f"index on {label}"], timeout=timeout
        ).stdout.strip()
        stash_commit = self._run_git(
            ["commit-tree", tree, "-p", head, "-p", index_commit, "-m", label], timeout=timeout
        ).stdout.strip()
        self._run_git(["stash", "store", "-m", label, stash_commit], timeout=timeout)

    def _apply(self, index: int, timeout: float | None) -> None:
        ref = f"stash@{{{index}}}"
        proc = self._run_git(["stash", "apply", "--index", ref], check=False, timeout=timeout)
        if proc.returncode != 0:
            self._run_git(["stash", "apply", ref], timeout=timeout)

    def save(self, story_id: str, *, timeout: float | None = None) -> None:
        """Snapshot tracked and untracked changes, leaving the working tree untouched."""
        label = self.label(story_id)
        while (existing := self.find(story_id, timeout=timeout)) is not None:
            self._run_git(["stash", "drop", f"stash@{{{existing}}}"], timeout=timeout)

        proc = self._run_git(
            ["stash", "push", "--include-untracked", "-m", label], timeout=timeout
        )
        if NO_CHANGES_MESSAGE in proc.stdout or NO_CHANGES_MESSAGE in proc.stderr:
            self._store_empty_snapshot(label, timeout)
        else:
            self._apply(self._require(story_id, timeout), timeout)
        logger.info("saved checkpoint %s", label)

    def revert(self, story_id: str, *, timeout: float | None = None) -> None:
        """Discard the working tree and reapply the snapshot, which stays in place."""
        self._require(story_id, timeout)
        self._run_git(["reset", "--hard", "HEAD"], timeout=timeout)
        self._run_git(["clean", "-fd"], timeout=timeout)
        self._apply(self._require(story_id, timeout), timeout)
        logger.info("reverted to checkpoint %s", self.label(story_id))

    def drop(self, story_id: str, *, timeout: float | None = None) -> None:
        index = self._require(story_id, timeout)
        self._run_git(["stash", "drop", f"stash@{{{index}}}"], timeout=timeout)
        logger.info("dropped checkpoint %s", self.label(story_id))

    def cleanup(self, *, timeout: float | None = None) -> int:
        """Drop every snapshot of this change; snapshots of other changes are untouched."""
        owned = [
            entry for entry in self._entries(timeout) if entry.message.startswith(self.prefix)
        ]
        for entry in sorted(owned, key=lambda item: item.index, reverse=True):
            try:
                self._run_git(["stash", "drop", entry.ref], timeout=timeout)
            except CommandError:
                logger.warning("could not drop %s (%s)", entry.ref, entry.message)
                raise
        if owned:
            logger.info("cleaned up %d checkpoints for %s", len(owned), self.change_name)
        return len(owned)
