"""Builders shared by test modules."""

from __future__ import annotations

from pathlib import Path
from typing import Any


def story(task_id: str, *, passes: bool = False, **fields: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": task_id,
        "title": fields.pop("title", f"Task {task_id}"),
        "passes": passes,
    }
    payload.update(fields)
    return payload


def write_script(path: Path, body: str, *, executable: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/usr/bin/env bash\n{body}\n", "utf-8")
    path.chmod(0o755 if executable else 0o644)
    return path


def passing_hook(invocation: object) -> bool:
    return True


class FakeClock:
    """Wall clock that only moves when something sleeps on it."""

    def __init__(self, now: float) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
