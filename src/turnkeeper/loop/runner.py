"""Iteration loop: lock, hooks, agent turn, verdict, repeat."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from turnkeeper.config import Settings
from turnkeeper.loop.callbacks import CallbackRunner
from turnkeeper.loop.circuit_breaker import CircuitBreaker, TripReason
from turnkeeper.loop.classifier import CompletionClassifier, Verdict, extract_error
from turnkeeper.loop.contracts import CallbackContext, HookPoint
from turnkeeper.loop.hooks import HookRegistry, HookRunResult
from turnkeeper.loop.locks import LockManager
from turnkeeper.loop.rate_limiter import RateLimiter
from turnkeeper.loop.success_criteria import verify_completion
from turnkeeper.loop.tasks import read_task_list

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnRequest:
    """Inputs for one agent turn."""

    iteration: int
    story_id: str
    feature_dir: Path
    output_file: Path


class TurnRunner(Protocol):
    """Runs one agent turn, writes its log to ``output_file`` and returns the output."""

    def run_turn(self, request: TurnRequest) -> str:
        """Run the agent once."""


class LoopStatus(str, Enum):
    """Why the loop stopped."""

    COMPLETE = "complete"
    API_LIMIT = "api_limit"
    CIRCUIT_OPEN = "circuit_open"
    MAX_ITERATIONS = "max_iterations"
    HOOK_FAILED = "hook_failed"


@dataclass(slots=True)
class LoopOutcome:
    """Final loop state reported to the caller."""

    status: LoopStatus
    iterations: int
    last_verdict: Verdict | None = None
    trip_reason: TripReason | None = None
    last_error: str | None = None


class IterationLoop:
    """Drive turns against one feature until a terminal verdict.

    The workspace lock is held for the whole run.  ``post_run`` hooks run and
    the lock is released on every exit path, including exceptions raised by
    the turn runner.  A turn counts against the hourly rate limit before it
    starts, and a ``Complete`` verdict is only accepted once the configured
    success criteria pass.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        project_root: Path,
        feature_dir: Path,
        turn_runner: TurnRunner,
        settings: Settings,
        lock_manager: LockManager | None = None,
        hooks: HookRegistry | None = None,
        classifier: CompletionClassifier | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: RateLimiter | None = None,
        task_list_name: str = "prd.json",
        resume: bool = False,
    ) -> None:
        self.project_root = project_root
        self.feature_dir = feature_dir
        self.turn_runner = turn_runner
        self.settings = settings
        self.lock_manager = lock_manager or LockManager(settings.locks.lock_dir)
        self.hooks = hooks or HookRegistry(
            callback_runner=CallbackRunner.from_settings(settings, project_root),
        )
        self.classifier = classifier or CompletionClassifier(settings.completion)
        self.circuit_breaker = circuit_breaker or CircuitBreaker.from_settings(
            settings,
            project_root,
        )
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(settings, project_root)
        self.task_list_path = feature_dir / task_list_name
        self.logs_dir = feature_dir / "logs"
        self.resume = resume

    def run(self) -> LoopOutcome:
        with self.lock_manager.hold(self.project_root):
            if not self.resume:
                self.circuit_breaker.reset()
            self._run_point(HookPoint.PRE_RUN, iteration=0)
            outcome: LoopOutcome | None = None
            try:
                outcome = self._iterate()
            finally:
                self._run_point(HookPoint.POST_RUN, iteration=outcome.iterations if outcome else 0)
        logger.info("Loop finished: %s after %d iteration(s)", outcome.status.value, outcome.iterations)
        return outcome

    def _iterate(self) -> LoopOutcome:
        last_verdict: Verdict | None = None
        last_error: str | None = None
        for iteration in range(1, self.settings.max_iterations + 1):
            story_id = self._next_story_id()
            output_file = self.logs_dir / f"iteration-{iteration}.log"
            logger.info("Iteration %d: %s", iteration, story_id or "(no pending task)")

            pre = self._run_point(HookPoint.PRE_ITERATION, iteration, story_id, output_file)
            if not pre.ok and not pre.soft_failure:
                return self._fail(HookPoint.PRE_ITERATION, iteration, last_verdict, pre)

            self.rate_limiter.acquire_turn()
            passes_before = self._passes_state()
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            output = self.turn_runner.run_turn(
                TurnRequest(
                    iteration=iteration,
                    story_id=story_id,
                    feature_dir=self.feature_dir,
                    output_file=output_file,
                ),
            )

            post = self._run_point(HookPoint.POST_ITERATION, iteration, story_id, output_file)
            if post.soft_failure:
                last_error = f"verification failed for {story_id or 'current task'}"
                self.circuit_breaker.record_error(last_error)
                if self._tripped(iteration, story_id, output_file):
                    return self._circuit_open(iteration, last_verdict, last_error)
                continue
            if not post.ok:
                return self._fail(HookPoint.POST_ITERATION, iteration, last_verdict, post)

            classification = self.classifier.classify(output, self.task_list_path)
            last_verdict = classification.verdict
            logger.info(
                "Iteration %d verdict: %s (%s)",
                iteration,
                classification.verdict.value,
                classification.matched_rule,
            )

            if classification.verdict is Verdict.COMPLETE:
                gate = verify_completion(
                    self.settings,
                    project_root=self.project_root,
                    feature_dir=self.feature_dir,
                    task_list_path=self.task_list_path,
                )
                if gate is not None and not gate.passed:
                    last_error = f"success criteria failed (exit {gate.exit_code})"
                    self.circuit_breaker.record_error(last_error)
                    self.circuit_breaker.record_progress(passes_before, self._passes_state())
                    if self._tripped(iteration, story_id, output_file):
                        return self._circuit_open(iteration, last_verdict, last_error)
                    continue
                self._run_point(HookPoint.ON_COMPLETION, iteration, story_id, output_file)
                return LoopOutcome(
                    status=LoopStatus.COMPLETE,
                    iterations=iteration,
                    last_verdict=last_verdict,
                )
            if classification.verdict is Verdict.API_LIMIT:
                return LoopOutcome(
                    status=LoopStatus.API_LIMIT,
                    iterations=iteration,
                    last_verdict=last_verdict,
                )
            if classification.verdict is Verdict.STORY_COMPLETE:
                self.circuit_breaker.record_progress(passes_before, self._passes_state())
                continue

            error_line = extract_error(output)
            if error_line is not None:
                last_error = error_line
                self.circuit_breaker.record_error(error_line)
            self.circuit_breaker.record_progress(passes_before, self._passes_state())
            if self._tripped(iteration, story_id, output_file):
                return self._circuit_open(iteration, last_verdict, last_error)

        logger.warning("Reached max iterations (%d)", self.settings.max_iterations)
        self._run_point(HookPoint.ON_ERROR, self.settings.max_iterations)
        return LoopOutcome(
            status=LoopStatus.MAX_ITERATIONS,
            iterations=self.settings.max_iterations,
            last_verdict=last_verdict,
            last_error=last_error,
        )

    def _tripped(self, iteration: int, story_id: str, output_file: Path) -> bool:
        reason = self.circuit_breaker.check()
        if reason is None:
            return False
        logger.error("Circuit breaker open (%s) at iteration %d", reason.value, iteration)
        self._run_point(HookPoint.ON_ERROR, iteration, story_id, output_file)
        return True

    def _circuit_open(
        self,
        iteration: int,
        last_verdict: Verdict | None,
        last_error: str | None,
    ) -> LoopOutcome:
        return LoopOutcome(
            status=LoopStatus.CIRCUIT_OPEN,
            iterations=iteration,
            last_verdict=last_verdict,
            trip_reason=self.circuit_breaker.check(),
            last_error=last_error,
        )

    def _fail(
        self,
        point: HookPoint,
        iteration: int,
        last_verdict: Verdict | None,
        result: HookRunResult,
    ) -> LoopOutcome:
        logger.error("%s hooks failed (exit %d); stopping", point.value, result.exit_code)
        self._run_point(HookPoint.ON_ERROR, iteration)
        return LoopOutcome(
            status=LoopStatus.HOOK_FAILED,
            iterations=iteration,
            last_verdict=last_verdict,
            last_error=f"{point.value} exited with {result.exit_code}",
        )

    def _run_point(
        self,
        point: HookPoint,
        iteration: int,
        story_id: str = "",
        output_file: Path | None = None,
    ) -> HookRunResult:
        context = CallbackContext.create(
            hook_point=point.value,
            story_id=story_id,
            iteration=iteration,
            feature_dir=self.feature_dir,
            output_file=output_file or "",
        )
        return self.hooks.execute(point, context=context)

    def _next_story_id(self) -> str:
        try:
            task = read_task_list(self.task_list_path).next_pending()
        except (OSError, ValueError, TypeError, KeyError) as error:
            logger.warning("Cannot read task list %s: %s", self.task_list_path, error)
            return ""
        return task.id if task is not None else ""

    def _passes_state(self) -> str:
        try:
            return read_task_list(self.task_list_path).passes_state()
        except (OSError, ValueError, TypeError, KeyError):
            return ""
