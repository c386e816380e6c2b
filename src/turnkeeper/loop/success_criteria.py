"""Success-criteria gate: a command that must pass before a run is complete.

The command comes from ``TURNKEEPER_SUCCESS_CRITERIA_CMD`` or, failing that,
from ``successCriteria.command`` in the task list.  It runs through the shell
in the project root with a timeout; a timeout is reported as exit code 124.
A failure leaves ``last_error.txt`` in the feature directory so the next turn
sees what broke.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from turnkeeper.config import Settings
from turnkeeper.loop.callbacks import LAUNCH_FAILED_EXIT_CODE, decode_partial
from turnkeeper.loop.contracts import load_json
from turnkeeper.loop.processes import TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

FEEDBACK_FILE_NAME = "last_error.txt"
CRITERIA_KEY = "successCriteria"

_FEEDBACK_TEMPLATE = """\
Success Criteria Failed
=======================

Command: {command}
Exit Code: {exit_code}

Output:
-------
{output}

The implementation does not pass the project's success criteria. This gate
must pass before the run is accepted as complete. Run the command manually,
fix the failing tests, lint or type errors, and check every acceptance
criterion again.
"""


@dataclass(slots=True)
class SuccessCriteria:
    """Resolved gate command."""

    command: str
    timeout_seconds: int = 300


@dataclass(slots=True)
class CriteriaResult:
    """Outcome of one gate run."""

    command: str
    exit_code: int
    output: str = ""

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


def resolve_success_criteria(
    settings: Settings,
    task_list_path: Path | None,
) -> SuccessCriteria | None:
    """Environment first, then the task list; None when no gate is configured.

    A timeout in the task list only applies to the task list's own command.
    """

    configured = settings.success_criteria
    if configured.command:
        return SuccessCriteria(
            command=configured.command,
            timeout_seconds=configured.timeout_seconds,
        )

    section = _task_list_section(task_list_path)
    command = section.get("command")
    if not isinstance(command, str) or not command.strip():
        return None
    timeout = section.get("timeout")
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
        timeout = configured.timeout_seconds
    return SuccessCriteria(command=command.strip(), timeout_seconds=timeout)


def run_success_criteria(
    criteria: SuccessCriteria,
    *,
    cwd: Path,
    shell: str = "bash",
) -> CriteriaResult:
    logger.info("Running success criteria: %s", criteria.command)
    try:
        completed = subprocess.run(  # noqa: S603
            [shell, "-c", criteria.command],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=criteria.timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        logger.error("Success criteria timed out after %ds", criteria.timeout_seconds)
        return CriteriaResult(
            command=criteria.command,
            exit_code=TIMEOUT_EXIT_CODE,
            output=decode_partial(error.stdout) + decode_partial(error.stderr),
        )
    except OSError as error:
        logger.error("Success criteria could not be started: %s", error)
        return CriteriaResult(
            command=criteria.command,
            exit_code=LAUNCH_FAILED_EXIT_CODE,
            output=str(error),
        )

    result = CriteriaResult(
        command=criteria.command,
        exit_code=completed.returncode,
        output=(completed.stdout or "") + (completed.stderr or ""),
    )
    if result.passed:
        logger.info("Success criteria passed")
    else:
        logger.error("Success criteria failed (exit code: %d)", result.exit_code)
    return result


def write_failure_feedback(feature_dir: Path, result: CriteriaResult) -> Path:
    path = feature_dir / FEEDBACK_FILE_NAME
    feature_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(
        _FEEDBACK_TEMPLATE.format(
            command=result.command,
            exit_code=result.exit_code,
            output=result.output.rstrip(),
        ),
        "utf-8",
    )
    logger.warning("Error feedback saved to %s", path)
    return path


def verify_completion(
    settings: Settings,
    *,
    project_root: Path,
    feature_dir: Path,
    task_list_path: Path | None,
) -> CriteriaResult | None:
    """Run the gate if one is configured; write feedback when it fails."""

    criteria = resolve_success_criteria(settings, task_list_path)
    if criteria is None:
        logger.debug("No success criteria configured, skipping verification")
        return None
    result = run_success_criteria(criteria, cwd=project_root, shell=settings.callbacks.shell)
    if not result.passed:
        write_failure_feedback(feature_dir, result)
    return result


def _task_list_section(task_list_path: Path | None) -> dict[str, Any]:
    if task_list_path is None:
        return {}
    try:
        raw = load_json(task_list_path)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError, TypeError) as error:
        logger.debug("Cannot read success criteria from %s: %s", task_list_path, error)
        return {}
    section = raw.get(CRITERIA_KEY)
    return section if isinstance(section, dict) else {}
