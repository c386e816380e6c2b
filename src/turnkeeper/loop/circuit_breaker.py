"""Stop a run that keeps failing the same way or stops making progress."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from turnkeeper.config import Settings
from turnkeeper.loop.classifier import normalize_error
from turnkeeper.loop.contracts import load_json, write_json_atomic

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "circuit_breaker.json"


class TripReason(str, Enum):
    """Which threshold opened the breaker."""

    NO_PROGRESS = "no_progress"
    SAME_ERROR = "same_error"


@dataclass(slots=True)
class BreakerState:
    """Persisted counters."""

    no_progress_count: int = 0
    same_error_count: int = 0
    last_error_hash: str = ""
    last_passes_state: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "no_progress_count": self.no_progress_count,
            "same_error_count": self.same_error_count,
            "last_error_hash": self.last_error_hash,
            "last_passes_state": self.last_passes_state,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BreakerState:
        return cls(
            no_progress_count=int(payload.get("no_progress_count", 0)),
            same_error_count=int(payload.get("same_error_count", 0)),
            last_error_hash=str(payload.get("last_error_hash", "")),
            last_passes_state=str(payload.get("last_passes_state", "")),
        )


class CircuitBreaker:
    """Counts turns without progress and repeats of one normalized error."""

    def __init__(
        self,
        state_path: Path,
        *,
        no_progress_threshold: int = 3,
        same_error_threshold: int = 5,
    ) -> None:
        self.state_path = state_path
        self.no_progress_threshold = no_progress_threshold
        self.same_error_threshold = same_error_threshold
        self._state: BreakerState | None = None

    @classmethod
    def from_settings(cls, settings: Settings, project_root: Path) -> CircuitBreaker:
        return cls(
            settings.state_dir(project_root) / STATE_FILE_NAME,
            no_progress_threshold=settings.circuit_breaker.no_progress_threshold,
            same_error_threshold=settings.circuit_breaker.same_error_threshold,
        )

    @property
    def state(self) -> BreakerState:
        if self._state is None:
            self._state = self._load()
        return self._state

    def record_progress(self, before: str, after: str) -> bool:
        """Compare serialized ``passes`` states; True when something changed."""

        state = self.state
        state.last_passes_state = after
        if before != after:
            state.no_progress_count = 0
            logger.debug("Progress detected: passes state changed")
            self._save()
            return True
        state.no_progress_count += 1
        logger.debug("No progress: count=%d", state.no_progress_count)
        self._save()
        return False

    def record_error(self, message: str) -> int:
        """Count consecutive repeats of the normalized error; returns the count."""

        state = self.state
        error_hash = error_fingerprint(message)
        if error_hash == state.last_error_hash:
            state.same_error_count += 1
            logger.debug("Same error repeated: count=%d", state.same_error_count)
        else:
            state.same_error_count = 1
            state.last_error_hash = error_hash
            logger.debug("New error recorded: hash=%s", error_hash[:12])
        self._save()
        return state.same_error_count

    def check(self) -> TripReason | None:
        state = self.state
        if state.no_progress_count >= self.no_progress_threshold:
            return TripReason.NO_PROGRESS
        if state.same_error_count >= self.same_error_threshold:
            return TripReason.SAME_ERROR
        return None

    def reset(self) -> None:
        self._state = BreakerState()
        self._save()
        logger.info("Circuit breaker reset")

    def status_lines(self) -> list[str]:
        state = self.state
        no_progress_status = (
            "TRIPPED" if state.no_progress_count >= self.no_progress_threshold else "OK"
        )
        same_error_status = (
            "TRIPPED" if state.same_error_count >= self.same_error_threshold else "OK"
        )
        overall = "TRIPPED" if "TRIPPED" in (no_progress_status, same_error_status) else "OK"
        return [
            f"Circuit breaker: {overall}",
            (
                f"  no_progress: {state.no_progress_count}/{self.no_progress_threshold}"
                f" ({no_progress_status})"
            ),
            (
                f"  same_error: {state.same_error_count}/{self.same_error_threshold}"
                f" ({same_error_status})"
            ),
        ]

    def _load(self) -> BreakerState:
        if not self.state_path.exists():
            return BreakerState()
        try:
            return BreakerState.from_payload(load_json(self.state_path))
        except (json.JSONDecodeError, TypeError, ValueError) as error:
            logger.warning("Ignoring unreadable circuit breaker state %s: %s", self.state_path, error)
            return BreakerState()

    def _save(self) -> None:
        write_json_atomic(self.state_path, self.state.to_payload())


def error_fingerprint(message: str) -> str:
    return hashlib.sha256(normalize_error(message).encode("utf-8")).hexdigest()
