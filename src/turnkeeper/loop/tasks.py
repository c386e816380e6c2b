"""Persisted task list (``prd.json``) contract and edits."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from turnkeeper.loop.contracts import load_json, write_json_atomic
from turnkeeper.loop.task_ids import (
    InvalidTaskIdError,
    generate_between,
    generate_next_available,
    next_major_id,
    parse_task_id,
)

logger = logging.getLogger(__name__)

TASKS_KEY = "userStories"

_FIELD_DEFAULTS: dict[str, Any] = {
    "description": "",
    "acceptanceCriteria": [],
    "priority": 0,
    "passes": False,
    "notes": "",
}


class TaskListFormatError(ValueError):
    """Task list file is not a valid task list document."""


class DuplicateTaskIdError(ValueError):
    """Two tasks share one id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Duplicate task id {task_id!r} in task list")
        self.task_id = task_id


class TaskNotFoundError(KeyError):
    """Requested task id is not in the task list."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task id {self.task_id!r} is missing from task list"


@dataclass(slots=True)
class Task:
    """One unit of work."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 0
    passes: bool = False
    notes: str | None = ""
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_payload(self) -> dict[str, Any]:
        """Serialize, keeping unknown keys, absent optional keys and key order."""

        fields: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }
        if not self.source:
            return fields

        payload = dict(self.source)
        for key, value in fields.items():
            if key in self.source or value != _FIELD_DEFAULTS.get(key):
                payload[key] = value
        return payload


@dataclass(slots=True)
class TaskList:
    """Ordered task collection plus the surrounding document."""

    tasks: list[Task] = field(default_factory=list)
    document: dict[str, Any] = field(default_factory=dict)

    @property
    def feature(self) -> str | None:
        value = self.document.get("feature")
        return value if isinstance(value, str) else None

    def ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def ordered(self) -> list[Task]:
        """Tasks in logical id order; storage order is not meaningful."""

        return sorted(self.tasks, key=lambda task: parse_task_id(task.id).sort_key)

    def get(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def all_complete(self) -> bool:
        """True when the list is non-empty and every task passes."""

        if not self.tasks:
            return False
        return all(task.passes for task in self.tasks)

    def passed_count(self) -> int:
        return sum(1 for task in self.tasks if task.passes)

    def passes_state(self) -> str:
        """Serialized ``passes`` flags in logical order, used for progress detection."""

        return ",".join("true" if task.passes else "false" for task in self.ordered())

    def next_pending(self) -> Task | None:
        for task in self.ordered():
            if not task.passes:
                return task
        return None

    def mark_passed(self, task_id: str) -> Task:
        task = self.get(task_id)
        task.passes = True
        return task

    def insert_after(  # noqa: PLR0913
        self,
        anchor_id: str,
        *,
        title: str,
        description: str = "",
        acceptance_criteria: Iterable[str] = (),
        priority: int | None = None,
        notes: str = "",
    ) -> Task:
        """Splice a task after ``anchor_id`` using the next free minor slot."""

        anchor = self.get(anchor_id)
        new_id = generate_next_available(self.ids(), anchor.id)
        return self._insert(
            Task(
                id=new_id,
                title=_require_title(title),
                description=description,
                acceptance_criteria=list(acceptance_criteria),
                priority=anchor.priority if priority is None else priority,
                notes=notes,
            ),
        )

    def insert_between(  # noqa: PLR0913
        self,
        left_id: str,
        right_id: str,
        *,
        title: str,
        description: str = "",
        acceptance_criteria: Iterable[str] = (),
        priority: int | None = None,
        notes: str = "",
    ) -> Task:
        """Splice a task at the midpoint slot between two same-major ids."""

        left = self.get(left_id)
        self.get(right_id)
        new_id = generate_between(left.id, right_id)
        return self._insert(
            Task(
                id=new_id,
                title=_require_title(title),
                description=description,
                acceptance_criteria=list(acceptance_criteria),
                priority=left.priority if priority is None else priority,
                notes=notes,
            ),
        )

    def append(  # noqa: PLR0913
        self,
        *,
        prefix: str,
        title: str,
        description: str = "",
        acceptance_criteria: Iterable[str] = (),
        priority: int = 0,
        notes: str = "",
    ) -> Task:
        """Add a task under the next unused major for ``prefix``."""

        task = Task(
            id=next_major_id(self.ids(), prefix),
            title=_require_title(title),
            description=description,
            acceptance_criteria=list(acceptance_criteria),
            priority=priority,
            notes=notes,
        )
        self.tasks.append(task)
        return task

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.document)
        payload[TASKS_KEY] = [task.to_payload() for task in self.tasks]
        return payload

    def _insert(self, task: Task) -> Task:
        if task.id in self.ids():
            raise DuplicateTaskIdError(task.id)
        new_key = parse_task_id(task.id)
        position = len(self.tasks)
        for index, existing in enumerate(self.tasks):
            existing_key = parse_task_id(existing.id)
            if (existing_key.prefix, existing_key.major) == (new_key.prefix, new_key.major):
                position = index + 1
        self.tasks.insert(position, task)
        logger.debug("Inserted task %s at storage position %d", task.id, position)
        return task


def read_task_list(path: Path) -> TaskList:
    """Load and validate a task list file.

    Raises ``FileNotFoundError`` for a missing file and ``TaskListFormatError``
    (or one of its siblings) for malformed content.
    """

    try:
        raw = load_json(path)
    except json.JSONDecodeError as error:
        raise TaskListFormatError(f"Invalid JSON in task list {path}: {error}") from error
    except TypeError as error:
        raise TaskListFormatError(str(error)) from error
    return parse_task_list(raw, source=str(path))


def parse_task_list(raw: dict[str, Any], *, source: str = "<memory>") -> TaskList:
    raw_tasks = raw.get(TASKS_KEY)
    if not isinstance(raw_tasks, list):
        raise TaskListFormatError(f"{source}: {TASKS_KEY} must be an array")

    tasks: list[Task] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_tasks):
        task = _parse_task(item, where=f"{source}: {TASKS_KEY}[{index}]")
        if task.id in seen:
            raise DuplicateTaskIdError(task.id)
        seen.add(task.id)
        tasks.append(task)

    document = {key: value for key, value in raw.items() if key != TASKS_KEY}
    return TaskList(tasks=tasks, document=document)


def write_task_list(path: Path, task_list: TaskList) -> None:
    """Rewrite the task list file wholesale."""

    write_json_atomic(path, task_list.to_payload())


def _parse_task(item: object, *, where: str) -> Task:  # noqa: C901
    if not isinstance(item, dict):
        raise TaskListFormatError(f"{where} must be an object")

    task_id = item.get("id")
    try:
        parse_task_id(task_id)  # type: ignore[arg-type]
    except InvalidTaskIdError as error:
        raise TaskListFormatError(f"{where}.id: {error}") from error

    title = item.get("title", "")
    description = item.get("description", "")
    criteria = item.get("acceptanceCriteria", [])
    priority = item.get("priority", 0)
    passes = item.get("passes", False)
    notes = item.get("notes", "")

    if not isinstance(title, str):
        raise TaskListFormatError(f"{where}.title must be a string")
    if not isinstance(description, str):
        raise TaskListFormatError(f"{where}.description must be a string")
    if not isinstance(criteria, list) or not all(isinstance(entry, str) for entry in criteria):
        raise TaskListFormatError(f"{where}.acceptanceCriteria must be an array of strings")
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise TaskListFormatError(f"{where}.priority must be an integer")
    if not isinstance(passes, bool):
        raise TaskListFormatError(f"{where}.passes must be a boolean")
    if notes is not None and not isinstance(notes, str):
        raise TaskListFormatError(f"{where}.notes must be a string")

    return Task(
        id=str(task_id),
        title=title,
        description=description,
        acceptance_criteria=list(criteria),
        priority=priority,
        passes=passes,
        notes=notes,
        source=dict(item),
    )


def _require_title(title: str) -> str:
    if not title or not title.strip():
        raise ValueError("Task title must be a non-empty string")
    return title
