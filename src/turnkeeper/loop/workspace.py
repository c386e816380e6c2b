"""Read-only view of uncommitted work, for the summary shown after an interruption."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_FILES_PER_CATEGORY = 5


@dataclass(slots=True)
class WorkingTreeState:
    """Changed paths grouped the way ``git status`` reports them."""

    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def dirty(self) -> bool:
        return bool(self.staged or self.modified or self.untracked)


def parse_porcelain(text: str) -> WorkingTreeState:
    """Parse ``git status --porcelain`` (v1) output."""

    state = WorkingTreeState()
    for raw_line in text.splitlines():
        if len(raw_line) < 4:
            continue
        index_status, worktree_status = raw_line[0], raw_line[1]
        path = raw_line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        if index_status == "?" and worktree_status == "?":
            state.untracked.append(path)
            continue
        if index_status not in (" ", "?", "!"):
            state.staged.append(path)
        if worktree_status not in (" ", "?", "!"):
            state.modified.append(path)
    return state


def read_working_tree(path: Path) -> WorkingTreeState | None:
    """Working-tree state of the repository at ``path``; None outside a git repo."""

    git = shutil.which("git")
    if git is None:
        logger.debug("git is not installed; skipping working tree inspection")
        return None
    completed = subprocess.run(  # noqa: S603
        [git, "status", "--porcelain"],
        cwd=str(path),
        capture_output=True,
        text=True,
        check=False,
    )
    if completed.returncode != 0:
        logger.debug("git status failed in %s: %s", path, completed.stderr.strip())
        return None
    return parse_porcelain(completed.stdout)


def interruption_summary(
    state: WorkingTreeState | None,
    *,
    limit: int = MAX_FILES_PER_CATEGORY,
) -> list[str]:
    """Human-facing lines describing uncommitted work left behind."""

    if state is None:
        return []
    if not state.dirty:
        return ["Working tree is clean."]
    lines = ["Uncommitted work from the interrupted iteration:"]
    for label, paths in (
        ("Staged", state.staged),
        ("Modified", state.modified),
        ("Untracked", state.untracked),
    ):
        if not paths:
            continue
        lines.append(f"  {label} ({len(paths)}):")
        lines.extend(f"    {path}" for path in paths[:limit])
        if len(paths) > limit:
            lines.append(f"    ... and {len(paths) - limit} more")
    return lines
