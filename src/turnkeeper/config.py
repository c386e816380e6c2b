"""Runtime configuration for the iteration loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMPLETION_PROMISE = "<promise>COMPLETE</promise>"
DEFAULT_STORY_COMPLETE_SIGNAL = "<promise>STORY_COMPLETE</promise>"


@dataclass(slots=True)
class CompletionSettings:
    """Literal tags the agent prints to signal completion."""

    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    story_complete_signal: str = DEFAULT_STORY_COMPLETE_SIGNAL
    custom_patterns: tuple[str, ...] = ()
    custom_story_patterns: tuple[str, ...] = ()


@dataclass(slots=True)
class LockSettings:
    """Workspace lock record location."""

    lock_dir: Path = field(default_factory=lambda: Path.home() / ".turnkeeper" / "locks")


@dataclass(slots=True)
class CallbackSettings:
    """File-based callback resolution and invocation."""

    dir_name: str = "callbacks"
    shell: str = "bash"
    timeout_seconds: int | None = None


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Thresholds for stopping a loop that no longer makes progress."""

    no_progress_threshold: int = 3
    same_error_threshold: int = 5


@dataclass(slots=True)
class SuccessCriteriaSettings:
    """Command that must pass before a run is accepted as complete."""

    command: str = ""
    timeout_seconds: int = 300


@dataclass(slots=True)
class RateLimitSettings:
    """Ceiling on agent turns started per clock hour."""

    calls_per_hour: int = 100


@dataclass(slots=True)
class BackgroundSettings:
    """Concurrency ceiling for background research jobs."""

    max_jobs: int = 3
    job_timeout_seconds: int = 600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir_name: str = ".turnkeeper"
    max_iterations: int = 20
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    callbacks: CallbackSettings = field(default_factory=CallbackSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    success_criteria: SuccessCriteriaSettings = field(default_factory=SuccessCriteriaSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    background: BackgroundSettings = field(default_factory=BackgroundSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        lock_dir_raw = os.getenv("TURNKEEPER_LOCK_DIR", "").strip()
        callback_timeout_raw = os.getenv("TURNKEEPER_CALLBACK_TIMEOUT", "").strip()
        return cls(
            state_dir_name=os.getenv("TURNKEEPER_STATE_DIR_NAME", ".turnkeeper"),
            max_iterations=int(os.getenv("TURNKEEPER_MAX_ITERATIONS", "20")),
            completion=CompletionSettings(
                completion_promise=os.getenv(
                    "TURNKEEPER_COMPLETION_PROMISE",
                    DEFAULT_COMPLETION_PROMISE,
                ),
                story_complete_signal=os.getenv(
                    "TURNKEEPER_STORY_COMPLETE_SIGNAL",
                    DEFAULT_STORY_COMPLETE_SIGNAL,
                ),
                custom_patterns=_env_csv("TURNKEEPER_COMPLETION_PATTERNS"),
                custom_story_patterns=_env_csv("TURNKEEPER_STORY_COMPLETE_PATTERNS"),
            ),
            locks=LockSettings(
                lock_dir=(
                    Path(lock_dir_raw).expanduser()
                    if lock_dir_raw
                    else Path.home() / ".turnkeeper" / "locks"
                ),
            ),
            callbacks=CallbackSettings(
                dir_name=os.getenv("TURNKEEPER_CALLBACKS_DIR_NAME", "callbacks"),
                shell=os.getenv("TURNKEEPER_CALLBACK_SHELL", "bash"),
                timeout_seconds=int(callback_timeout_raw) if callback_timeout_raw else None,
            ),
            circuit_breaker=CircuitBreakerSettings(
                no_progress_threshold=int(os.getenv("TURNKEEPER_NO_PROGRESS_THRESHOLD", "3")),
                same_error_threshold=int(os.getenv("TURNKEEPER_SAME_ERROR_THRESHOLD", "5")),
            ),
            success_criteria=SuccessCriteriaSettings(
                command=os.getenv("TURNKEEPER_SUCCESS_CRITERIA_CMD", "").strip(),
                timeout_seconds=int(os.getenv("TURNKEEPER_SUCCESS_CRITERIA_TIMEOUT", "300")),
            ),
            rate_limit=RateLimitSettings(
                calls_per_hour=int(os.getenv("TURNKEEPER_RATE_LIMIT_PER_HOUR", "100")),
            ),
            background=BackgroundSettings(
                max_jobs=int(os.getenv("TURNKEEPER_MAX_BACKGROUND_JOBS", "3")),
                job_timeout_seconds=int(os.getenv("TURNKEEPER_BACKGROUND_TIMEOUT", "600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot work with."""

        if self.max_iterations <= 0:
            raise ValueError("TURNKEEPER_MAX_ITERATIONS must be > 0.")
        if not self.completion.completion_promise.strip():
            raise ValueError("TURNKEEPER_COMPLETION_PROMISE must not be empty.")
        if not self.completion.story_complete_signal.strip():
            raise ValueError("TURNKEEPER_STORY_COMPLETE_SIGNAL must not be empty.")
        if self.completion.completion_promise == self.completion.story_complete_signal:
            raise ValueError(
                "TURNKEEPER_COMPLETION_PROMISE and TURNKEEPER_STORY_COMPLETE_SIGNAL must differ.",
            )
        if self.callbacks.timeout_seconds is not None and self.callbacks.timeout_seconds <= 0:
            raise ValueError("TURNKEEPER_CALLBACK_TIMEOUT must be > 0 when set.")
        if self.circuit_breaker.no_progress_threshold <= 0:
            raise ValueError("TURNKEEPER_NO_PROGRESS_THRESHOLD must be > 0.")
        if self.circuit_breaker.same_error_threshold <= 0:
            raise ValueError("TURNKEEPER_SAME_ERROR_THRESHOLD must be > 0.")
        if self.success_criteria.timeout_seconds <= 0:
            raise ValueError("TURNKEEPER_SUCCESS_CRITERIA_TIMEOUT must be > 0.")
        if self.rate_limit.calls_per_hour <= 0:
            raise ValueError("TURNKEEPER_RATE_LIMIT_PER_HOUR must be > 0.")
        if self.background.max_jobs <= 0:
            raise ValueError("TURNKEEPER_MAX_BACKGROUND_JOBS must be > 0.")
        if self.background.job_timeout_seconds <= 0:
            raise ValueError("TURNKEEPER_BACKGROUND_TIMEOUT must be > 0.")

    def state_dir(self, project_root: Path) -> Path:
        """Per-project directory holding callbacks and loop state."""

        return project_root / self.state_dir_name


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        value = part.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        values.append(value)
    return tuple(values)
