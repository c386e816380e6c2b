"""Process liveness and a bounded pool of background jobs."""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import psutil

from turnkeeper.config import Settings

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


def pid_alive(pid: int | None) -> bool:
    """Return True when ``pid`` belongs to a running, non-zombie process.

    A process we are not allowed to inspect is reported alive.
    """

    if pid is None or pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ConcurrencyLimitError(RuntimeError):
    """Spawn refused because the pool is at its concurrency ceiling."""

    def __init__(self, max_jobs: int) -> None:
        super().__init__(f"Background job limit reached ({max_jobs} running)")
        self.max_jobs = max_jobs


@dataclass(slots=True)
class BackgroundJob:
    """One tracked background process."""

    name: str
    process: subprocess.Popen[bytes]
    output_path: Path
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)
    exit_code: int | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> int | None:
        if self.exit_code is None:
            self.exit_code = self.process.poll()
        return self.exit_code


class BackgroundJobs:
    """Launch background processes under a concurrency ceiling.

    Jobs write combined stdout/stderr to ``output_path``.  Past the ceiling a
    spawn either blocks until a job finishes or is refused.
    """

    def __init__(
        self,
        *,
        max_jobs: int,
        timeout_seconds: int | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        if max_jobs <= 0:
            raise ValueError("max_jobs must be > 0")
        self.max_jobs = max_jobs
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self._jobs: list[BackgroundJob] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> BackgroundJobs:
        return cls(
            max_jobs=settings.background.max_jobs,
            timeout_seconds=settings.background.job_timeout_seconds,
        )

    @property
    def jobs(self) -> list[BackgroundJob]:
        return list(self._jobs)

    def active_count(self) -> int:
        return sum(1 for job in self._jobs if job.poll() is None)

    def can_spawn(self) -> bool:
        return self.active_count() < self.max_jobs

    def spawn(
        self,
        name: str,
        argv: Sequence[str],
        output_path: Path,
        *,
        block: bool = True,
    ) -> BackgroundJob:
        if not name.strip():
            raise ValueError("Background job name is required")
        if not argv:
            raise ValueError("Background job command is required")

        if not self.can_spawn():
            if not block:
                raise ConcurrencyLimitError(self.max_jobs)
            logger.warning("At background job limit (%d); waiting for one to finish", self.max_jobs)
            self.wait_any()

        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("wb") as output_handle:
            process = subprocess.Popen(  # noqa: S603
                list(argv),
                stdout=output_handle,
                stderr=subprocess.STDOUT,
            )
        job = BackgroundJob(name=name, process=process, output_path=output_path)
        self._jobs.append(job)
        logger.info("Spawned background job %s (pid %d)", name, job.pid)
        return job

    def wait_any(self) -> BackgroundJob | None:
        """Block until one running job exits; None when nothing is running."""

        while True:
            running = [job for job in self._jobs if job.exit_code is None]
            if not running:
                return None
            for job in running:
                if job.poll() is not None or self._expire_if_overdue(job):
                    logger.debug("Background job %s finished with %s", job.name, job.exit_code)
                    return job
            time.sleep(self.poll_interval)

    def wait_all(self) -> dict[str, int]:
        """Block until every job exits and return exit codes by job name."""

        if not self._jobs:
            logger.debug("No background jobs to wait for")
            return {}

        logger.info("Waiting for %d background job(s)", len(self._jobs))
        results: dict[str, int] = {}
        for job in self._jobs:
            results[job.name] = self._wait_one(job)
            if results[job.name] == 0:
                logger.info("Background job completed: %s", job.name)
            elif results[job.name] == TIMEOUT_EXIT_CODE:
                logger.warning("Background job timed out: %s", job.name)
            else:
                logger.error("Background job failed (exit %d): %s", results[job.name], job.name)

        succeeded = sum(1 for code in results.values() if code == 0)
        logger.info("Background jobs done: %d/%d succeeded", succeeded, len(results))
        return results

    def kill_all(self) -> None:
        """Terminate every tracked job and clear tracking state."""

        for job in self._jobs:
            if job.poll() is not None:
                continue
            _terminate_process(job.process)
            logger.debug("Killed background job %s (pid %d)", job.name, job.pid)
        self._jobs.clear()

    def reset(self) -> None:
        """Forget finished jobs without touching running ones."""

        self._jobs = [job for job in self._jobs if job.poll() is None]

    def _wait_one(self, job: BackgroundJob) -> int:
        if job.poll() is not None:
            return int(job.exit_code)  # type: ignore[arg-type]
        if self.timeout_seconds is None:
            job.exit_code = job.process.wait()
            return job.exit_code
        remaining = self.timeout_seconds - (time.monotonic() - job.started_monotonic)
        try:
            job.exit_code = job.process.wait(timeout=max(0.0, remaining))
        except subprocess.TimeoutExpired:
            _terminate_process(job.process)
            job.exit_code = TIMEOUT_EXIT_CODE
        return job.exit_code

    def _expire_if_overdue(self, job: BackgroundJob) -> bool:
        if self.timeout_seconds is None:
            return False
        if time.monotonic() - job.started_monotonic < self.timeout_seconds:
            return False
        _terminate_process(job.process)
        job.exit_code = TIMEOUT_EXIT_CODE
        return True


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
