from __future__ import annotations

import json
from pathlib import Path

import allure

from turnkeeper.config import CircuitBreakerSettings, Settings
from turnkeeper.loop.circuit_breaker import CircuitBreaker, TripReason, error_fingerprint

pytestmark = [
    allure.epic("Iteration Control"),
    allure.feature("Circuit Breaker"),
]


def test_no_progress_trips_at_threshold(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "state.json", no_progress_threshold=3)

    for _ in range(2):
        assert not breaker.record_progress("false,false", "false,false")
        assert breaker.check() is None
    breaker.record_progress("false,false", "false,false")

    assert breaker.check() is TripReason.NO_PROGRESS


def test_progress_resets_counter(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "state.json", no_progress_threshold=2)
    breaker.record_progress("false,false", "false,false")

    assert breaker.record_progress("false,false", "true,false")
    assert breaker.state.no_progress_count == 0
    assert breaker.state.last_passes_state == "true,false"


def test_same_normalized_error_counts_up(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "state.json", same_error_threshold=3)

    assert breaker.record_error("2024-01-01T00:00:00Z app.py:1: Error: db down") == 1
    assert breaker.record_error("2024-01-02T00:00:00Z app.py:9: Error: db   down") == 2
    assert breaker.check() is None
    assert breaker.record_error("app.py:12: Error: db down") == 3

    assert breaker.check() is TripReason.SAME_ERROR


def test_different_error_restarts_count(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "state.json")
    breaker.record_error("Error: one")
    breaker.record_error("Error: one")

    assert breaker.record_error("Error: two") == 1
    assert breaker.state.last_error_hash == error_fingerprint("Error: two")


def test_state_persists_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "state" / "circuit_breaker.json"
    first = CircuitBreaker(path)
    first.record_progress("a", "a")
    first.record_error("Error: x")

    second = CircuitBreaker(path)

    assert second.state.no_progress_count == 1
    assert second.state.same_error_count == 1
    assert json.loads(path.read_text("utf-8"))["last_passes_state"] == "a"


def test_reset_clears_counters(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "state.json", no_progress_threshold=1)
    breaker.record_progress("a", "a")
    assert breaker.check() is TripReason.NO_PROGRESS

    breaker.reset()

    assert breaker.check() is None
    assert CircuitBreaker(tmp_path / "state.json").state.no_progress_count == 0


def test_unreadable_state_starts_fresh(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{oops", "utf-8")

    assert CircuitBreaker(path).state.no_progress_count == 0


def test_status_lines(tmp_path: Path) -> None:
    breaker = CircuitBreaker.from_settings(
        Settings(circuit_breaker=CircuitBreakerSettings(no_progress_threshold=1)),
        tmp_path,
    )
    breaker.record_progress("a", "a")

    assert breaker.status_lines() == [
        "Circuit breaker: TRIPPED",
        "  no_progress: 1/1 (TRIPPED)",
        "  same_error: 0/5 (OK)",
    ]
    assert breaker.state_path == tmp_path / ".turnkeeper" / "circuit_breaker.json"
