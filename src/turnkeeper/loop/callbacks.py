"""File-based callback scripts run around each turn.

A script for point ``<point>`` lives at ``<dir>/<point>.sh``.  The
feature-scoped directory wins over the project-scoped one; a point with no
script is a successful no-op.  Scripts receive the path of a JSON context
file as their only argument, plus the same fields as environment variables
set for the child process only.

Exit codes: 0 passed, 75 verification failed (redo the unit of work), any
other non-zero value is a hard failure.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from turnkeeper.config import Settings
from turnkeeper.loop.contracts import (
    CallbackContext,
    HookPoint,
    parse_hook_point,
    write_context_file,
)
from turnkeeper.loop.processes import TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

SCRIPT_SUFFIX = ".sh"
VERIFICATION_FAILED_EXIT_CODE = 75
LAUNCH_FAILED_EXIT_CODE = 126

_README = """\
# Callbacks

Scripts in this directory run at fixed points of every run.

| Script | When it runs |
|--------|--------------|
| `pre_run.sh` | Before the first iteration |
| `post_run.sh` | After the run ends, whatever the outcome |
| `pre_iteration.sh` | Before each iteration |
| `post_iteration.sh` | After each iteration, before the verdict |
| `on_completion.sh` | When every task passes |
| `on_error.sh` | When the run stops on an error or runs out of iterations |

A feature directory may carry its own `callbacks/` directory; its scripts
take precedence over the ones here.

## Arguments and environment

The only argument is the path to a JSON file with `hookPoint`, `storyId`,
`iteration`, `featureDir`, `outputFile` and `timestamp`.  The same values
are exported as:

| Variable | Value |
|----------|-------|
| `TURNKEEPER_CALLBACK_POINT` | Point being run |
| `TURNKEEPER_STORY_ID` | Task id of the current unit of work |
| `TURNKEEPER_ITERATION` | Iteration number |
| `TURNKEEPER_FEATURE_DIR` | Feature directory |
| `TURNKEEPER_OUTPUT_FILE` | Log of the iteration's agent output |

## Exit codes

| Code | Meaning |
|------|---------|
| `0` | Passed |
| `75` | Verification failed, redo the current task |
| other | Hard failure |

## Example

```bash
#!/usr/bin/env bash
# post_iteration.sh
set -euo pipefail
context_file="$1"
echo "Iteration $TURNKEEPER_ITERATION finished for $TURNKEEPER_STORY_ID"
npm test || exit 75
```

Executable scripts run directly; others run through the configured shell.
"""


class CallbackOutcome(str, Enum):
    """Classified result of one callback run."""

    PASSED = "passed"
    SKIPPED = "skipped"
    VERIFICATION_FAILED = "verification_failed"
    FAILED = "failed"


@dataclass(slots=True)
class CallbackResult:
    """Exit status of a callback script, with the distinguishing code intact."""

    point: HookPoint
    outcome: CallbackOutcome
    exit_code: int
    script: Path | None = None
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (CallbackOutcome.PASSED, CallbackOutcome.SKIPPED)

    @property
    def soft_failure(self) -> bool:
        return self.outcome is CallbackOutcome.VERIFICATION_FAILED

    @property
    def hard_failure(self) -> bool:
        return self.outcome is CallbackOutcome.FAILED


@dataclass(slots=True)
class CallbackScript:
    """A callback script present on disk."""

    point: HookPoint
    path: Path
    executable: bool


def classify_exit_code(exit_code: int) -> CallbackOutcome:
    if exit_code == 0:
        return CallbackOutcome.PASSED
    if exit_code == VERIFICATION_FAILED_EXIT_CODE:
        return CallbackOutcome.VERIFICATION_FAILED
    return CallbackOutcome.FAILED


def find_callback_script(
    point: str | HookPoint,
    *,
    feature_dir: Path | None,
    project_callbacks_dir: Path | None,
    dir_name: str = "callbacks",
) -> Path | None:
    """Resolve the script for ``point``: feature-scoped first, then project-scoped."""

    hook_point = parse_hook_point(point)
    file_name = f"{hook_point.value}{SCRIPT_SUFFIX}"
    candidates: list[Path] = []
    if feature_dir is not None:
        candidates.append(feature_dir / dir_name / file_name)
    if project_callbacks_dir is not None:
        candidates.append(project_callbacks_dir / file_name)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


class CallbackRunner:
    """Resolve and run callback scripts without touching the caller's environment."""

    def __init__(
        self,
        project_callbacks_dir: Path | None,
        *,
        dir_name: str = "callbacks",
        shell: str = "bash",
        timeout_seconds: int | None = None,
    ) -> None:
        self.project_callbacks_dir = project_callbacks_dir
        self.dir_name = dir_name
        self.shell = shell
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, project_root: Path) -> CallbackRunner:
        return cls(
            settings.state_dir(project_root) / settings.callbacks.dir_name,
            dir_name=settings.callbacks.dir_name,
            shell=settings.callbacks.shell,
            timeout_seconds=settings.callbacks.timeout_seconds,
        )

    def find(self, point: str | HookPoint, feature_dir: Path | None) -> Path | None:
        return find_callback_script(
            point,
            feature_dir=feature_dir,
            project_callbacks_dir=self.project_callbacks_dir,
            dir_name=self.dir_name,
        )

    def exists(self, point: str | HookPoint, feature_dir: Path | None) -> bool:
        return self.find(point, feature_dir) is not None

    def run(self, context: CallbackContext) -> CallbackResult:
        point = parse_hook_point(context.hook_point)
        feature_dir = Path(context.feature_dir) if context.feature_dir else None
        script = self.find(point, feature_dir)
        if script is None:
            logger.debug("No callback script for %s", point.value)
            return CallbackResult(point=point, outcome=CallbackOutcome.SKIPPED, exit_code=0)

        context_path = write_context_file(context)
        try:
            exit_code, output = self._invoke(script, context_path, context)
        finally:
            context_path.unlink(missing_ok=True)

        outcome = classify_exit_code(exit_code)
        if outcome is CallbackOutcome.PASSED:
            logger.debug("Callback %s passed", script)
        elif outcome is CallbackOutcome.VERIFICATION_FAILED:
            logger.warning("Callback %s reported verification failure (exit %d)", script, exit_code)
        else:
            logger.error("Callback %s failed (exit %d)", script, exit_code)
        return CallbackResult(
            point=point,
            outcome=outcome,
            exit_code=exit_code,
            script=script,
            output=output,
        )

    def _invoke(
        self,
        script: Path,
        context_path: Path,
        context: CallbackContext,
    ) -> tuple[int, str]:
        if os.access(script, os.X_OK):
            argv = [str(script), str(context_path)]
        else:
            logger.debug("Callback %s is not executable, running through %s", script, self.shell)
            argv = [self.shell, str(script), str(context_path)]

        env = dict(os.environ)
        env.update(context.to_env())
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            logger.error("Callback %s timed out after %s seconds", script, self.timeout_seconds)
            return TIMEOUT_EXIT_CODE, decode_partial(error.stdout) + decode_partial(error.stderr)
        except OSError as error:
            logger.error("Callback %s could not be started: %s", script, error)
            return LAUNCH_FAILED_EXIT_CODE, str(error)

        output = (completed.stdout or "") + (completed.stderr or "")
        if output:
            logger.debug("Callback %s output:\n%s", script, output.rstrip())
        return completed.returncode, output


def init_callbacks_dir(callbacks_dir: Path) -> bool:
    """Create the callbacks directory with a README; False when it already exists."""

    if callbacks_dir.is_dir():
        logger.debug("Callbacks directory already exists: %s", callbacks_dir)
        return False
    callbacks_dir.mkdir(parents=True)
    (callbacks_dir / "README.md").write_text(_README, "utf-8")
    logger.info("Created callbacks directory: %s", callbacks_dir)
    return True


def list_callbacks(callbacks_dir: Path) -> list[CallbackScript]:
    """Scripts present for each point, in lifecycle order."""

    scripts: list[CallbackScript] = []
    if not callbacks_dir.is_dir():
        return scripts
    for point in HookPoint:
        path = callbacks_dir / f"{point.value}{SCRIPT_SUFFIX}"
        if path.is_file():
            scripts.append(
                CallbackScript(point=point, path=path, executable=os.access(path, os.X_OK)),
            )
    return scripts


def decode_partial(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
