"""Per-hour ceiling on agent turns, persisted across runs."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from turnkeeper.config import Settings
from turnkeeper.loop.contracts import load_json, write_json_atomic

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "rate_limiter.json"
SECONDS_PER_HOUR = 3600
_COUNTDOWN_INTERVAL = 60


@dataclass(slots=True)
class RateLimitState:
    """Calls counted since ``hour_start`` (unix seconds on an hour boundary)."""

    call_count: int = 0
    hour_start: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {"call_count": self.call_count, "hour_start": self.hour_start}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RateLimitState:
        return cls(
            call_count=int(payload.get("call_count", 0)),
            hour_start=int(payload.get("hour_start", 0)),
        )


class RateLimiter:
    """Counts turns per clock hour and sleeps until the next hour at the ceiling."""

    def __init__(
        self,
        state_path: Path,
        *,
        calls_per_hour: int = 100,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if calls_per_hour <= 0:
            raise ValueError("calls_per_hour must be > 0")
        self.state_path = state_path
        self.calls_per_hour = calls_per_hour
        self._clock = clock
        self._sleep = sleep
        self._state: RateLimitState | None = None

    @classmethod
    def from_settings(cls, settings: Settings, project_root: Path) -> RateLimiter:
        return cls(
            settings.state_dir(project_root) / STATE_FILE_NAME,
            calls_per_hour=settings.rate_limit.calls_per_hour,
        )

    @property
    def state(self) -> RateLimitState:
        if self._state is None:
            self._state = self._load()
        return self._state

    def refresh(self) -> None:
        """Start a new count once the clock crosses an hour boundary."""

        current = self._current_hour_start()
        state = self.state
        if current > state.hour_start:
            if state.hour_start:
                logger.info("Hour boundary crossed, resetting rate limiter counter")
            state.call_count = 0
            state.hour_start = current
            self._save()

    def under_limit(self) -> bool:
        self.refresh()
        return self.state.call_count < self.calls_per_hour

    def remaining(self) -> int:
        self.refresh()
        return max(self.calls_per_hour - self.state.call_count, 0)

    def record_call(self) -> int:
        self.refresh()
        self.state.call_count += 1
        self._save()
        logger.debug("Rate limiter call recorded: call_count=%d", self.state.call_count)
        return self.state.call_count

    def wait_seconds(self) -> int:
        now = int(self._clock())
        return max(self._current_hour_start() + SECONDS_PER_HOUR - now, 0)

    def wait_for_reset(self) -> int:
        """Sleep until the hour rolls over, logging a countdown; returns seconds waited."""

        total = self.wait_seconds()
        if total > 0:
            logger.warning("Rate limit reached. Waiting %d seconds until hour resets", total)
        elapsed = 0
        while elapsed < total:
            remaining = total - elapsed
            logger.info("Rate limit reset in %dm %ds", remaining // 60, remaining % 60)
            step = min(_COUNTDOWN_INTERVAL, remaining)
            self._sleep(step)
            elapsed += step
        self.refresh()
        return total

    def acquire_turn(self) -> int:
        """Wait if the ceiling is reached, then count one turn; returns seconds waited."""

        waited = 0
        if not self.under_limit():
            waited = self.wait_for_reset()
        self.record_call()
        return waited

    def status_line(self) -> str:
        remaining = self.remaining()
        return (
            f"Rate limit: {self.state.call_count}/{self.calls_per_hour} calls used"
            f" ({remaining} remaining)"
        )

    def _current_hour_start(self) -> int:
        now = int(self._clock())
        return now - now % SECONDS_PER_HOUR

    def _load(self) -> RateLimitState:
        if not self.state_path.exists():
            return RateLimitState()
        try:
            return RateLimitState.from_payload(load_json(self.state_path))
        except (json.JSONDecodeError, TypeError, ValueError) as error:
            logger.warning("Ignoring unreadable rate limiter state %s: %s", self.state_path, error)
            return RateLimitState()

    def _save(self) -> None:
        write_json_atomic(self.state_path, self.state.to_payload())
