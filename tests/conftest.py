"""Shared test fixtures."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path) -> Path:
    """Keep lock records and TURNKEEPER_* overrides local to each test."""

    for name in list(os.environ):
        if name.startswith("TURNKEEPER_"):
            monkeypatch.delenv(name, raising=False)
    lock_dir = tmp_path / "locks"
    monkeypatch.setenv("TURNKEEPER_LOCK_DIR", str(lock_dir))
    return lock_dir


@pytest.fixture()
def write_prd(tmp_path: Path) -> Callable[..., Path]:
    """Write a task list document and return its path."""

    def _write(
        stories: list[dict[str, Any]],
        *,
        path: Path | None = None,
        **extra: Any,
    ) -> Path:
        target = path or tmp_path / "feature" / "prd.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        document = {"feature": "demo", **extra, "userStories": stories}
        target.write_text(json.dumps(document, indent=2), "utf-8")
        return target

    return _write
