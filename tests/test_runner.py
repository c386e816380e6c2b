from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import allure
import pytest
from _support import FakeClock, story, write_script

from turnkeeper.config import (
    CircuitBreakerSettings,
    LockSettings,
    Settings,
    SuccessCriteriaSettings,
)
from turnkeeper.loop.classifier import Verdict
from turnkeeper.loop.circuit_breaker import TripReason
from turnkeeper.loop.contracts import HookPoint
from turnkeeper.loop.hooks import HookRegistry
from turnkeeper.loop.locks import LockConflictError, LockManager
from turnkeeper.loop.rate_limiter import RateLimiter
from turnkeeper.loop.runner import IterationLoop, LoopStatus, TurnRequest
from turnkeeper.loop.success_criteria import FEEDBACK_FILE_NAME

pytestmark = [
    allure.epic("Iteration Control"),
    allure.feature("Iteration Loop"),
]


@dataclass
class ScriptedTurns:
    outputs: list[str]
    on_turn: Callable[[TurnRequest], None] | None = None
    requests: list[TurnRequest] = field(default_factory=list)

    def run_turn(self, request: TurnRequest) -> str:
        self.requests.append(request)
        output = self.outputs[min(len(self.requests), len(self.outputs)) - 1]
        request.output_file.write_text(output, "utf-8")
        if self.on_turn is not None:
            self.on_turn(request)
        return output


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(max_iterations=5, locks=LockSettings(lock_dir=tmp_path / "locks"))


def _recording_hooks(points: list[str]) -> HookRegistry:
    registry = HookRegistry()
    for point in HookPoint:
        registry.register(point, lambda call: points.append(call.point.value))
    return registry


def _loop(
    project: Path,
    settings: Settings,
    turns: ScriptedTurns,
    hooks: HookRegistry | None = None,
    rate_limiter: RateLimiter | None = None,
) -> IterationLoop:
    return IterationLoop(
        project_root=project,
        feature_dir=project / "feature",
        turn_runner=turns,
        settings=settings,
        hooks=hooks,
        rate_limiter=rate_limiter,
    )


def test_completes_when_turn_passes_last_task(project: Path, settings: Settings, write_prd) -> None:
    prd = write_prd([story("T-001", passes=True), story("T-002")], path=project / "feature" / "prd.json")
    points: list[str] = []

    def finish(request: TurnRequest) -> None:
        write_prd([story("T-001", passes=True), story("T-002", passes=True)], path=prd)

    turns = ScriptedTurns(outputs=["implemented T-002"], on_turn=finish)
    outcome = _loop(project, settings, turns, _recording_hooks(points)).run()

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.iterations == 1
    assert outcome.last_verdict is Verdict.COMPLETE
    assert points == ["pre_run", "pre_iteration", "post_iteration", "on_completion", "post_run"]
    assert turns.requests[0].story_id == "T-002"
    assert turns.requests[0].output_file.read_text("utf-8") == "implemented T-002"
    assert LockManager(settings.locks.lock_dir).list() == []


def test_api_limit_stops_loop(project: Path, settings: Settings, write_prd) -> None:
    write_prd([story("T-001")], path=project / "feature" / "prd.json")

    outcome = _loop(project, settings, ScriptedTurns(outputs=["usage limit reached"])).run()

    assert outcome.status is LoopStatus.API_LIMIT
    assert outcome.iterations == 1


def test_no_progress_opens_circuit(project: Path, settings: Settings, write_prd) -> None:
    write_prd([story("T-001")], path=project / "feature" / "prd.json")
    points: list[str] = []

    outcome = _loop(
        project,
        settings,
        ScriptedTurns(outputs=["Error: tests failing"]),
        _recording_hooks(points),
    ).run()

    assert outcome.status is LoopStatus.CIRCUIT_OPEN
    assert outcome.iterations == 3
    assert outcome.trip_reason is TripReason.NO_PROGRESS
    assert outcome.last_error == "Error: tests failing"
    assert points.count("on_error") == 1
    assert points[-1] == "post_run"


def test_story_complete_continues_until_max_iterations(
    project: Path,
    settings: Settings,
    write_prd,
) -> None:
    prd = write_prd([story("T-001"), story("T-002"), story("T-003")], path=project / "feature" / "prd.json")
    settings.max_iterations = 2
    points: list[str] = []

    def advance(request: TurnRequest) -> None:
        passed = request.iteration
        write_prd(
            [story(f"T-00{index}", passes=index <= passed) for index in (1, 2, 3)],
            path=prd,
        )

    turns = ScriptedTurns(outputs=["<promise>STORY_COMPLETE</promise>"], on_turn=advance)
    outcome = _loop(project, settings, turns, _recording_hooks(points)).run()

    assert outcome.status is LoopStatus.MAX_ITERATIONS
    assert outcome.last_verdict is Verdict.STORY_COMPLETE
    assert [request.story_id for request in turns.requests] == ["T-001", "T-002"]
    assert "on_error" in points


def test_soft_callback_failure_counts_as_repeated_error(
    project: Path,
    tmp_path: Path,
    write_prd,
) -> None:
    write_prd([story("T-002")], path=project / "feature" / "prd.json")
    write_script(project / ".turnkeeper" / "callbacks" / "post_iteration.sh", "exit 75")
    settings = Settings(
        max_iterations=5,
        locks=LockSettings(lock_dir=tmp_path / "locks"),
        circuit_breaker=CircuitBreakerSettings(same_error_threshold=2),
    )
    turns = ScriptedTurns(outputs=["done?"])

    outcome = _loop(project, settings, turns).run()

    assert outcome.status is LoopStatus.CIRCUIT_OPEN
    assert outcome.iterations == 2
    assert outcome.trip_reason is TripReason.SAME_ERROR
    assert outcome.last_error == "verification failed for T-002"
    assert outcome.last_verdict is None


def test_hard_callback_failure_stops_loop(project: Path, settings: Settings, write_prd) -> None:
    write_prd([story("T-001")], path=project / "feature" / "prd.json")
    write_script(project / ".turnkeeper" / "callbacks" / "post_iteration.sh", "exit 2")

    outcome = _loop(project, settings, ScriptedTurns(outputs=["work"])).run()

    assert outcome.status is LoopStatus.HOOK_FAILED
    assert outcome.last_error == "post_iteration exited with 2"


def test_conflicting_lock_prevents_run(project: Path, settings: Settings, write_prd) -> None:
    write_prd([story("T-001")], path=project / "feature" / "prd.json")
    other = LockManager(settings.locks.lock_dir, pid=os.getppid())
    other.acquire(project.parent)
    turns = ScriptedTurns(outputs=["work"])

    with pytest.raises(LockConflictError):
        _loop(project, settings, turns).run()

    assert turns.requests == []


def test_turn_error_still_runs_post_run_and_releases_lock(
    project: Path,
    settings: Settings,
    write_prd,
) -> None:
    write_prd([story("T-001")], path=project / "feature" / "prd.json")
    points: list[str] = []

    def explode(request: TurnRequest) -> None:
        raise RuntimeError("agent crashed")

    with pytest.raises(RuntimeError, match="agent crashed"):
        _loop(
            project,
            settings,
            ScriptedTurns(outputs=["work"], on_turn=explode),
            _recording_hooks(points),
        ).run()

    assert points[-1] == "post_run"
    assert LockManager(settings.locks.lock_dir).list() == []


def test_missing_task_list_keeps_looping(project: Path, settings: Settings) -> None:
    settings.max_iterations = 2
    settings.circuit_breaker.no_progress_threshold = 10
    turns = ScriptedTurns(outputs=["thinking"])

    outcome = _loop(project, settings, turns).run()

    assert outcome.status is LoopStatus.MAX_ITERATIONS
    assert outcome.last_verdict is Verdict.CONTINUE
    assert [request.story_id for request in turns.requests] == ["", ""]


def test_failing_success_criteria_keeps_loop_running(
    project: Path,
    tmp_path: Path,
    write_prd,
) -> None:
    prd = write_prd([story("T-001")], path=project / "feature" / "prd.json")
    settings = Settings(
        max_iterations=5,
        locks=LockSettings(lock_dir=tmp_path / "locks"),
        circuit_breaker=CircuitBreakerSettings(same_error_threshold=2),
        success_criteria=SuccessCriteriaSettings(command="echo lint broken; exit 1"),
    )
    points: list[str] = []

    def finish(request: TurnRequest) -> None:
        write_prd([story("T-001", passes=True)], path=prd)

    turns = ScriptedTurns(outputs=["<promise>COMPLETE</promise>"], on_turn=finish)
    outcome = _loop(project, settings, turns, _recording_hooks(points)).run()

    assert outcome.status is LoopStatus.CIRCUIT_OPEN
    assert outcome.iterations == 2
    assert outcome.trip_reason is TripReason.SAME_ERROR
    assert outcome.last_verdict is Verdict.COMPLETE
    assert outcome.last_error == "success criteria failed (exit 1)"
    assert "on_completion" not in points
    feedback = (project / "feature" / FEEDBACK_FILE_NAME).read_text("utf-8")
    assert "Exit Code: 1" in feedback
    assert "lint broken" in feedback


def test_passing_success_criteria_completes(project: Path, settings: Settings, write_prd) -> None:
    criteria = {"command": "test -f built.txt", "timeout": 30}
    prd = write_prd([story("T-001")], path=project / "feature" / "prd.json", successCriteria=criteria)

    def finish(request: TurnRequest) -> None:
        (project / "built.txt").write_text("ok", "utf-8")
        write_prd([story("T-001", passes=True)], path=prd, successCriteria=criteria)

    outcome = _loop(project, settings, ScriptedTurns(outputs=["done"], on_turn=finish)).run()

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.iterations == 1
    assert not (project / "feature" / FEEDBACK_FILE_NAME).exists()


def test_turns_wait_for_rate_limit_reset(project: Path, settings: Settings, tmp_path: Path) -> None:
    settings.max_iterations = 2
    settings.circuit_breaker.no_progress_threshold = 10
    clock = FakeClock(10 * 3600 + 3540)
    limiter = RateLimiter(
        tmp_path / "rate.json",
        calls_per_hour=1,
        clock=clock,
        sleep=clock.sleep,
    )
    turns = ScriptedTurns(outputs=["thinking"])

    outcome = _loop(project, settings, turns, rate_limiter=limiter).run()

    assert outcome.status is LoopStatus.MAX_ITERATIONS
    assert len(turns.requests) == 2
    assert clock.sleeps == [60]
    assert limiter.state.call_count == 1
    assert limiter.state.hour_start == 11 * 3600
