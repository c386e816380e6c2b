"""CLI entrypoint for turnkeeper."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TextIO

import rich_click as click

from turnkeeper import __version__
from turnkeeper.loop.controllers import (
    CallbackLookupCommand,
    CallbackRunCommand,
    ClassifyCommand,
    CommandResult,
    LockCheckCommand,
    LockDirCommand,
    LockExecCommand,
    LoopCliController,
    ProjectCommand,
    StatusCommand,
    TasksInsertCommand,
    TasksListCommand,
    TasksNextIdCommand,
    TasksPassCommand,
)
from turnkeeper.loop.locks import LockConflictError

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_HOOK_POINT_CHOICE = click.Choice(
    ["pre_run", "post_run", "pre_iteration", "post_iteration", "on_completion", "on_error"],
)

lock_dir_option = click.option(
    "--lock-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Lock record directory. Defaults to TURNKEEPER_LOCK_DIR or ~/.turnkeeper/locks.",
)
prd_option = click.option(
    "--prd",
    "task_list_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("prd.json"),
    show_default=True,
    help="Task list file.",
)
project_root_option = click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project root holding the state directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="turnkeeper")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity for diagnostics on stderr.",
)
def turnkeeper(log_level: str) -> None:
    """Iteration control for long-running coding-agent loops."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@turnkeeper.group()
def lock() -> None:
    """Workspace lock commands."""


@lock.command("check")
@click.argument("path", type=click.Path(path_type=Path), default=Path("."))
@lock_dir_option
def lock_check(path: Path, lock_dir: Path | None) -> None:
    """Report whether PATH overlaps a live lock. Exits 1 on conflict."""

    with _domain_errors():
        _finish(LOOP_CONTROLLER.lock_check(LockCheckCommand(path=path, lock_dir=lock_dir)))


@lock.command("list")
@lock_dir_option
def lock_list(lock_dir: Path | None) -> None:
    """List live locks."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.lock_list(LockDirCommand(lock_dir=lock_dir)))


@lock.command("reap")
@lock_dir_option
def lock_reap(lock_dir: Path | None) -> None:
    """Delete lock records whose owner process is gone."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.lock_reap(LockDirCommand(lock_dir=lock_dir)))


@lock.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
@lock_dir_option
def lock_exec(path: Path, argv: tuple[str, ...], lock_dir: Path | None) -> None:
    """Run a command inside PATH while holding its lock.

    Use `--` before the command when it takes options of its own.
    """

    with _domain_errors():
        _finish(
            LOOP_CONTROLLER.lock_exec(LockExecCommand(path=path, argv=argv, lock_dir=lock_dir)),
        )


@turnkeeper.group()
def tasks() -> None:
    """Task list commands."""


@tasks.command("list")
@prd_option
@click.option("--pending", "pending_only", is_flag=True, help="Only show tasks that do not pass.")
def tasks_list(task_list_path: Path, pending_only: bool) -> None:
    """Show tasks in id order."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.tasks_list(
                TasksListCommand(task_list_path=task_list_path, pending_only=pending_only),
            ),
        )


@tasks.command("next-id")
@prd_option
@click.option("--after", default=None, help="Preview the next inserted id after this task.")
@click.option("--prefix", default="STORY", show_default=True, help="Prefix for a new major id.")
def tasks_next_id(task_list_path: Path, after: str | None, prefix: str) -> None:
    """Print the id the next insert would use."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.tasks_next_id(
                TasksNextIdCommand(task_list_path=task_list_path, after=after, prefix=prefix),
            ),
        )


@tasks.command("insert")
@prd_option
@click.option("--title", required=True, help="Task title.")
@click.option("--after", default=None, help="Insert after this task id instead of appending.")
@click.option("--prefix", default="STORY", show_default=True, help="Prefix when appending.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--criterion",
    "criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
@click.option("--priority", type=int, default=None, help="Priority; defaults to the anchor's.")
def tasks_insert(  # noqa: PLR0913
    task_list_path: Path,
    title: str,
    after: str | None,
    prefix: str,
    description: str,
    criteria: tuple[str, ...],
    priority: int | None,
) -> None:
    """Append a task, or splice one in after an existing id."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.tasks_insert(
                TasksInsertCommand(
                    task_list_path=task_list_path,
                    title=title,
                    after=after,
                    prefix=prefix,
                    description=description,
                    acceptance_criteria=criteria,
                    priority=priority,
                ),
            ),
        )


@tasks.command("between")
@click.argument("left")
@click.argument("right")
@prd_option
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion.")
@click.option("--priority", type=int, default=None, help="Priority; defaults to LEFT's.")
def tasks_between(  # noqa: PLR0913
    left: str,
    right: str,
    task_list_path: Path,
    title: str,
    description: str,
    criteria: tuple[str, ...],
    priority: int | None,
) -> None:
    """Splice a task at the midpoint slot between LEFT and RIGHT."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.tasks_insert(
                TasksInsertCommand(
                    task_list_path=task_list_path,
                    title=title,
                    after=left,
                    before=right,
                    description=description,
                    acceptance_criteria=criteria,
                    priority=priority,
                ),
            ),
        )


@tasks.command("pass")
@click.argument("task_id")
@prd_option
def tasks_pass(task_id: str, task_list_path: Path) -> None:
    """Mark TASK_ID as passing."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.tasks_pass(
                TasksPassCommand(task_list_path=task_list_path, task_id=task_id),
            ),
        )


@turnkeeper.command("classify")
@click.argument("output", type=click.File("r", encoding="utf-8"), default="-")
@click.option(
    "--prd",
    "task_list_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Task list file. Without it the verdict is never `complete`.",
)
def classify(output: TextIO, task_list_path: Path | None) -> None:
    """Classify agent OUTPUT (file or `-` for stdin) into a loop verdict."""

    with _domain_errors():
        _finish(
            LOOP_CONTROLLER.classify(
                ClassifyCommand(output_text=output.read(), task_list_path=task_list_path),
            ),
        )


@turnkeeper.group()
def callbacks() -> None:
    """File-based callback commands."""


@callbacks.command("run")
@click.argument("point", type=_HOOK_POINT_CHOICE)
@project_root_option
@click.option(
    "--feature-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Feature directory whose callbacks/ take precedence.",
)
@click.option("--story-id", default="", help="Task id passed to the callback.")
@click.option("--iteration", type=click.IntRange(min=0), default=0, help="Iteration number.")
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Iteration log passed to the callback.",
)
def callbacks_run(  # noqa: PLR0913
    point: str,
    project_root: Path,
    feature_dir: Path | None,
    story_id: str,
    iteration: int,
    output_file: Path | None,
) -> None:
    """Run the callback for POINT and exit with its code (75 means redo)."""

    with _domain_errors():
        _finish(
            LOOP_CONTROLLER.callback_run(
                CallbackRunCommand(
                    point=point,
                    project_root=project_root,
                    feature_dir=feature_dir,
                    story_id=story_id,
                    iteration=iteration,
                    output_file=output_file,
                ),
            ),
        )


@callbacks.command("exists")
@click.argument("point", type=_HOOK_POINT_CHOICE)
@project_root_option
@click.option(
    "--feature-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Feature directory whose callbacks/ take precedence.",
)
def callbacks_exists(point: str, project_root: Path, feature_dir: Path | None) -> None:
    """Print the script POINT resolves to. Exits 1 when there is none."""

    with _domain_errors():
        _finish(
            LOOP_CONTROLLER.callback_exists(
                CallbackLookupCommand(
                    point=point,
                    project_root=project_root,
                    feature_dir=feature_dir,
                ),
            ),
        )


@callbacks.command("list")
@project_root_option
def callbacks_list(project_root: Path) -> None:
    """List project callback scripts."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.callback_list(ProjectCommand(project_root=project_root)))


@callbacks.command("init")
@project_root_option
def callbacks_init(project_root: Path) -> None:
    """Create the project callbacks directory with a README."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.callback_init(ProjectCommand(project_root=project_root)))


@turnkeeper.group()
def breaker() -> None:
    """Circuit breaker commands."""


@breaker.command("status")
@project_root_option
def breaker_status(project_root: Path) -> None:
    """Show circuit breaker counters."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.breaker_status(ProjectCommand(project_root=project_root)))


@breaker.command("reset")
@project_root_option
def breaker_reset(project_root: Path) -> None:
    """Reset circuit breaker counters."""

    with _domain_errors():
        _emit_lines(LOOP_CONTROLLER.breaker_reset(ProjectCommand(project_root=project_root)))


@turnkeeper.command("status")
@project_root_option
@click.option(
    "--prd",
    "task_list_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Task list file to summarize.",
)
def status(project_root: Path, task_list_path: Path | None) -> None:
    """Summarize task progress, breaker, lock and uncommitted work."""

    with _domain_errors():
        _emit_lines(
            LOOP_CONTROLLER.status(
                StatusCommand(project_root=project_root, task_list_path=task_list_path),
            ),
        )


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except LockConflictError as error:
        raise click.ClickException(str(error)) from error
    except FileNotFoundError as error:
        raise click.ClickException(f"File not found: {error.filename}") from error
    except (ValueError, KeyError) as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    turnkeeper()
