"""File-based contracts shared by the loop components."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

CONTEXT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class HookPoint(str, Enum):
    """Named lifecycle moments of a run."""

    PRE_RUN = "pre_run"
    POST_RUN = "post_run"
    PRE_ITERATION = "pre_iteration"
    POST_ITERATION = "post_iteration"
    ON_COMPLETION = "on_completion"
    ON_ERROR = "on_error"


class InvalidHookPointError(ValueError):
    """Hook point name is not one of the lifecycle points."""

    def __init__(self, value: object) -> None:
        valid = ", ".join(point.value for point in HookPoint)
        super().__init__(f"Invalid hook point {value!r}; valid hook points: {valid}")
        self.value = value


def parse_hook_point(value: str | HookPoint) -> HookPoint:
    if isinstance(value, HookPoint):
        return value
    try:
        return HookPoint(value)
    except ValueError as error:
        raise InvalidHookPointError(value) from error


@dataclass(slots=True)
class CallbackContext:
    """Per-invocation context handed to a callback script."""

    hook_point: str
    story_id: str
    iteration: int
    feature_dir: str
    output_file: str
    timestamp: str

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        *,
        hook_point: str,
        story_id: str = "",
        iteration: int = 0,
        feature_dir: Path | str = "",
        output_file: Path | str = "",
        now: datetime | None = None,
    ) -> CallbackContext:
        moment = now or datetime.now(UTC)
        return cls(
            hook_point=hook_point,
            story_id=story_id,
            iteration=iteration,
            feature_dir=str(feature_dir),
            output_file=str(output_file),
            timestamp=moment.astimezone(UTC).strftime(CONTEXT_TIMESTAMP_FORMAT),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "hookPoint": self.hook_point,
            "storyId": self.story_id,
            "iteration": self.iteration,
            "featureDir": self.feature_dir,
            "outputFile": self.output_file,
            "timestamp": self.timestamp,
        }

    def to_env(self) -> dict[str, str]:
        return {
            "TURNKEEPER_CALLBACK_POINT": self.hook_point,
            "TURNKEEPER_STORY_ID": self.story_id,
            "TURNKEEPER_ITERATION": str(self.iteration),
            "TURNKEEPER_FEATURE_DIR": self.feature_dir,
            "TURNKEEPER_OUTPUT_FILE": self.output_file,
        }


def read_callback_context(path: Path) -> CallbackContext:
    """Deserialize and validate a callback context file."""

    raw = load_json(path)
    required = ("hookPoint", "storyId", "iteration", "featureDir", "outputFile", "timestamp")
    missing = [key for key in required if key not in raw]
    if missing:
        raise ValueError(f"Callback context missing required fields: {', '.join(missing)}")
    iteration = raw["iteration"]
    if not isinstance(iteration, int) or isinstance(iteration, bool):
        raise TypeError("callback_context.iteration must be an integer")
    return CallbackContext(
        hook_point=str(raw["hookPoint"]),
        story_id=str(raw["storyId"]),
        iteration=iteration,
        feature_dir=str(raw["featureDir"]),
        output_file=str(raw["outputFile"]),
        timestamp=str(raw["timestamp"]),
    )


def write_context_file(context: CallbackContext) -> Path:
    """Write the context to a fresh private temp file and return its path."""

    fd, raw_path = tempfile.mkstemp(prefix="turnkeeper-context.", suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(context.to_payload(), ensure_ascii=False, indent=2))
    return Path(raw_path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_json_atomic(path: Path, payload: dict[str, Any], *, sort_keys: bool = False) -> None:
    """Replace ``path`` wholesale so readers never observe a partial document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=sort_keys))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
