"""Controllers for iteration-control CLI commands."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from turnkeeper.config import Settings
from turnkeeper.loop.callbacks import CallbackRunner, init_callbacks_dir, list_callbacks
from turnkeeper.loop.circuit_breaker import CircuitBreaker
from turnkeeper.loop.classifier import CompletionClassifier, extract_error, normalize_error
from turnkeeper.loop.contracts import CallbackContext, parse_hook_point
from turnkeeper.loop.locks import LockManager, canonicalize, render_lock_lines
from turnkeeper.loop.rate_limiter import RateLimiter
from turnkeeper.loop.task_ids import generate_next_available, next_major_id
from turnkeeper.loop.tasks import Task, TaskList, read_task_list, write_task_list
from turnkeeper.loop.workspace import interruption_summary, read_working_tree


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus the process exit code."""

    lines: list[str]
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class LockCheckCommand:
    """CLI inputs for lock conflict check."""

    path: Path
    lock_dir: Path | None


@dataclass(slots=True)
class LockDirCommand:
    """CLI inputs for commands that only need the lock directory."""

    lock_dir: Path | None


@dataclass(slots=True)
class LockExecCommand:
    """CLI inputs for running a command while holding a workspace lock."""

    path: Path
    argv: tuple[str, ...]
    lock_dir: Path | None


@dataclass(slots=True)
class TasksListCommand:
    """CLI inputs for task listing."""

    task_list_path: Path
    pending_only: bool


@dataclass(slots=True)
class TasksNextIdCommand:
    """CLI inputs for id preview."""

    task_list_path: Path
    after: str | None
    prefix: str


@dataclass(slots=True)
class TasksInsertCommand:
    """CLI inputs for splicing a task into the list."""

    task_list_path: Path
    title: str
    after: str | None = None
    before: str | None = None
    prefix: str = "STORY"
    description: str = ""
    acceptance_criteria: tuple[str, ...] = ()
    priority: int | None = None


@dataclass(slots=True)
class TasksPassCommand:
    """CLI inputs for marking a task as passed."""

    task_list_path: Path
    task_id: str


@dataclass(slots=True)
class ClassifyCommand:
    """CLI inputs for classifying one turn's output."""

    output_text: str
    task_list_path: Path | None


@dataclass(slots=True)
class CallbackRunCommand:
    """CLI inputs for running one callback point."""

    point: str
    project_root: Path
    feature_dir: Path | None
    story_id: str
    iteration: int
    output_file: Path | None


@dataclass(slots=True)
class CallbackLookupCommand:
    """CLI inputs for callback existence checks."""

    point: str
    project_root: Path
    feature_dir: Path | None


@dataclass(slots=True)
class ProjectCommand:
    """CLI inputs for commands scoped to a project root."""

    project_root: Path


@dataclass(slots=True)
class StatusCommand:
    """CLI inputs for the overall status report."""

    project_root: Path
    task_list_path: Path | None


class LoopCliController:
    """Coordinates lock, task, classifier, callback and breaker commands."""

    def lock_check(self, command: LockCheckCommand) -> CommandResult:
        manager = _lock_manager(command.lock_dir)
        conflict = manager.check_conflicts(command.path)
        if conflict is None:
            return CommandResult(lines=[f"No conflicting locks for {canonicalize(command.path)}"])
        return CommandResult(lines=[conflict.message], exit_code=1)

    def lock_list(self, command: LockDirCommand) -> list[str]:
        manager = _lock_manager(command.lock_dir)
        return render_lock_lines(manager.list(), manager.lock_dir)

    def lock_reap(self, command: LockDirCommand) -> list[str]:
        reaped = _lock_manager(command.lock_dir).reap_stale()
        lines = [f"Removed stale lock: {record.path} (PID: {record.pid})" for record in reaped]
        lines.append(f"Reaped {len(reaped)} stale lock(s)")
        return lines

    def lock_exec(self, command: LockExecCommand) -> CommandResult:
        if not command.argv:
            raise ValueError("A command to run is required")
        manager = _lock_manager(command.lock_dir)
        with manager.hold(command.path) as handle:
            completed = subprocess.run(  # noqa: S603
                list(command.argv),
                cwd=str(handle.path),
                check=False,
            )
        return CommandResult(lines=[], exit_code=completed.returncode)

    def tasks_list(self, command: TasksListCommand) -> list[str]:
        task_list = read_task_list(command.task_list_path)
        lines = [_progress_line(task_list)]
        for task in task_list.ordered():
            if command.pending_only and task.passes:
                continue
            lines.append(_task_line(task))
        return lines

    def tasks_next_id(self, command: TasksNextIdCommand) -> list[str]:
        task_list = read_task_list(command.task_list_path)
        if command.after is not None:
            task_list.get(command.after)
            return [generate_next_available(task_list.ids(), command.after)]
        return [next_major_id(task_list.ids(), command.prefix)]

    def tasks_insert(self, command: TasksInsertCommand) -> list[str]:
        task_list = read_task_list(command.task_list_path)
        if command.after is not None and command.before is not None:
            task = task_list.insert_between(
                command.after,
                command.before,
                title=command.title,
                description=command.description,
                acceptance_criteria=command.acceptance_criteria,
                priority=command.priority,
            )
        elif command.after is not None:
            task = task_list.insert_after(
                command.after,
                title=command.title,
                description=command.description,
                acceptance_criteria=command.acceptance_criteria,
                priority=command.priority,
            )
        else:
            task = task_list.append(
                prefix=command.prefix,
                title=command.title,
                description=command.description,
                acceptance_criteria=command.acceptance_criteria,
                priority=command.priority or 0,
            )
        write_task_list(command.task_list_path, task_list)
        return [f"Task added: {task.id} {task.title}"]

    def tasks_pass(self, command: TasksPassCommand) -> list[str]:
        task_list = read_task_list(command.task_list_path)
        task = task_list.mark_passed(command.task_id)
        write_task_list(command.task_list_path, task_list)
        return [f"Task passed: {task.id}", _progress_line(task_list)]

    def classify(self, command: ClassifyCommand) -> CommandResult:
        settings = _settings()
        classifier = CompletionClassifier(settings.completion)
        classification = classifier.classify(command.output_text, command.task_list_path)
        lines = [
            f"verdict={classification.verdict.value}",
            f"matched_rule={classification.matched_rule}",
            f"matched_pattern={classification.matched_pattern or '-'}",
        ]
        error_line = extract_error(command.output_text)
        if error_line is not None:
            lines.append(f"error={normalize_error(error_line)}")
        return CommandResult(lines=lines)

    def callback_run(self, command: CallbackRunCommand) -> CommandResult:
        point = parse_hook_point(command.point)
        runner = CallbackRunner.from_settings(_settings(), command.project_root)
        context = CallbackContext.create(
            hook_point=point.value,
            story_id=command.story_id,
            iteration=command.iteration,
            feature_dir=command.feature_dir or "",
            output_file=command.output_file or "",
        )
        result = runner.run(context)
        lines = [result.output.rstrip()] if result.output.strip() else []
        lines.append(f"{point.value}: {result.outcome.value} (exit {result.exit_code})")
        return CommandResult(lines=lines, exit_code=result.exit_code)

    def callback_exists(self, command: CallbackLookupCommand) -> CommandResult:
        runner = CallbackRunner.from_settings(_settings(), command.project_root)
        script = runner.find(command.point, command.feature_dir)
        if script is None:
            return CommandResult(lines=[f"No callback for {command.point}"], exit_code=1)
        return CommandResult(lines=[str(script)])

    def callback_list(self, command: ProjectCommand) -> list[str]:
        callbacks_dir = _callbacks_dir(command.project_root)
        if not callbacks_dir.is_dir():
            return [f"No callbacks directory found at: {callbacks_dir}"]
        lines = [f"Callback files in {callbacks_dir}:"]
        scripts = list_callbacks(callbacks_dir)
        for script in scripts:
            status = "executable" if script.executable else "found"
            lines.append(f"  {script.path.name} ({status})")
        if not scripts:
            lines.append("  (none)")
        return lines

    def callback_init(self, command: ProjectCommand) -> list[str]:
        callbacks_dir = _callbacks_dir(command.project_root)
        if init_callbacks_dir(callbacks_dir):
            return [f"Created callbacks directory: {callbacks_dir}"]
        return [f"Callbacks directory already exists: {callbacks_dir}"]

    def breaker_status(self, command: ProjectCommand) -> list[str]:
        return CircuitBreaker.from_settings(_settings(), command.project_root).status_lines()

    def breaker_reset(self, command: ProjectCommand) -> list[str]:
        breaker = CircuitBreaker.from_settings(_settings(), command.project_root)
        breaker.reset()
        return breaker.status_lines()

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings()
        lines: list[str] = []
        if command.task_list_path is not None:
            task_list = read_task_list(command.task_list_path)
            lines.append(_progress_line(task_list))
            pending = task_list.next_pending()
            lines.append(f"Next task: {_task_line(pending) if pending else '(none)'}")
        lines.extend(CircuitBreaker.from_settings(settings, command.project_root).status_lines())
        lines.append(RateLimiter.from_settings(settings, command.project_root).status_line())

        manager = LockManager(settings.locks.lock_dir)
        conflict = manager.check_conflicts(command.project_root)
        lines.append(f"Lock: {conflict.message if conflict else 'not held'}")
        lines.extend(interruption_summary(read_working_tree(command.project_root)))
        return lines


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _lock_manager(lock_dir: Path | None) -> LockManager:
    return LockManager(lock_dir or _settings().locks.lock_dir)


def _callbacks_dir(project_root: Path) -> Path:
    settings = _settings()
    return settings.state_dir(project_root) / settings.callbacks.dir_name


def _progress_line(task_list: TaskList) -> str:
    feature = task_list.feature or "tasks"
    return f"{feature}: {task_list.passed_count()}/{len(task_list.tasks)} passed"


def _task_line(task: Task) -> str:
    marker = "x" if task.passes else " "
    return f"[{marker}] {task.id} (p{task.priority}) {task.title}"
