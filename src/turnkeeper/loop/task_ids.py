"""Insertable task identifiers: ``<prefix>-<major>[.<minor>]``.

The minor part is an insertion counter, not a decimal fraction: ``T-002.9``
sorts before ``T-002.10``.  An id without a minor sorts before every id with a
minor for the same major, so ``T-002 < T-002.1 < T-002.2 < T-003``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

DEFAULT_MAJOR_WIDTH = 3

_TASK_ID_RE = re.compile(
    r"^(?P<prefix>[A-Za-z][A-Za-z0-9_]*)-(?P<major>\d+)(?:\.(?P<minor>\d+))?$",
)


class InvalidTaskIdError(ValueError):
    """Task id does not match ``<prefix>-<major>[.<minor>]``."""

    def __init__(self, value: object, reason: str = "expected <PREFIX>-<major>[.<minor>]") -> None:
        super().__init__(f"Invalid task id {value!r}: {reason}")
        self.value = value


@dataclass(frozen=True, slots=True)
class TaskId:
    """Parsed task id keeping the literal digits for lossless re-serialization."""

    prefix: str
    major_text: str
    minor_text: str | None = None

    @property
    def major(self) -> int:
        return int(self.major_text)

    @property
    def minor(self) -> int | None:
        if self.minor_text is None:
            return None
        return int(self.minor_text)

    @property
    def sort_key(self) -> tuple[int, int, str, str]:
        """Key ordering by major, then minor as a bare integer.

        Prefix and literal text only break ties between distinct spellings of
        the same position (``T-2`` vs ``T-002``), keeping the order strict.
        """

        minor = self.minor
        return (self.major, -1 if minor is None else minor, self.prefix, str(self))

    def with_minor(self, minor: int | str) -> TaskId:
        return TaskId(prefix=self.prefix, major_text=self.major_text, minor_text=str(minor))

    def __str__(self) -> str:
        if self.minor_text is None:
            return f"{self.prefix}-{self.major_text}"
        return f"{self.prefix}-{self.major_text}.{self.minor_text}"


def parse_task_id(value: str | TaskId) -> TaskId:
    """Parse a task id string, raising ``InvalidTaskIdError`` when malformed."""

    if isinstance(value, TaskId):
        return value
    if not isinstance(value, str):
        raise InvalidTaskIdError(value, "task id must be a string")
    if not value:
        raise InvalidTaskIdError(value, "task id must not be empty")
    match = _TASK_ID_RE.match(value)
    if match is None:
        raise InvalidTaskIdError(value)
    return TaskId(
        prefix=match.group("prefix"),
        major_text=match.group("major"),
        minor_text=match.group("minor"),
    )


def is_valid_task_id(value: object) -> bool:
    return isinstance(value, str) and _TASK_ID_RE.match(value) is not None


def compare_task_ids(left: str | TaskId, right: str | TaskId) -> int:
    """Return -1, 0 or 1 comparing two ids by major, then integer minor."""

    left_key = parse_task_id(left).sort_key
    right_key = parse_task_id(right).sort_key
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def sort_task_ids(values: Iterable[str]) -> list[str]:
    """Sort ids for display or iteration; never lexicographic."""

    return sorted(values, key=lambda value: parse_task_id(value).sort_key)


def generate_after(value: str | TaskId) -> str:
    """Next counter slot after ``value``: ``M`` -> ``M.1``, ``M.n`` -> ``M.(n+1)``."""

    task_id = parse_task_id(value)
    minor = task_id.minor
    if minor is None:
        return str(task_id.with_minor(1))
    return str(task_id.with_minor(minor + 1))


def generate_next_available(existing: Iterable[str], anchor: str | TaskId) -> str:
    """Append past the largest minor already used under the anchor's major.

    Gaps are never filled: with ``.1`` and ``.3`` present the result is ``.4``.
    """

    anchor_id = parse_task_id(anchor)
    highest = 0
    for value in existing:
        task_id = parse_task_id(value)
        if task_id.prefix != anchor_id.prefix or task_id.major != anchor_id.major:
            continue
        minor = task_id.minor
        if minor is not None and minor > highest:
            highest = minor
    return str(anchor_id.with_minor(highest + 1))


def generate_between(left: str | TaskId, right: str | TaskId) -> str:
    """Midpoint slot between two ids of the same major.

    Minors are read as digits after a decimal point and averaged, so ``.1``
    and ``.11`` give ``.105``.  The result is ordered by ``compare_task_ids``
    as an integer counter, which can place it after ``right``.
    """

    left_id = parse_task_id(left)
    right_id = parse_task_id(right)
    if left_id.prefix != right_id.prefix or left_id.major != right_id.major:
        raise InvalidTaskIdError(
            f"{left_id}/{right_id}",
            "ids must share prefix and major to generate a slot between them",
        )

    low = _minor_fraction(left_id)
    high = _minor_fraction(right_id)
    if low == high:
        raise InvalidTaskIdError(
            f"{left_id}/{right_id}",
            "ids occupy the same position; there is no slot between them",
        )
    low, high = min(low, high), max(low, high)
    mean = (low + high) / 2
    digits = format(mean, "f").split(".", 1)[1].rstrip("0")
    return str(left_id.with_minor(digits))


def next_major_id(
    existing: Iterable[str],
    prefix: str,
    width: int = DEFAULT_MAJOR_WIDTH,
) -> str:
    """Next top-level id for ``prefix``, keeping the zero padding in use."""

    highest = 0
    width_in_use: int | None = None
    for value in existing:
        task_id = parse_task_id(value)
        if task_id.prefix != prefix:
            continue
        if task_id.major >= highest:
            highest = task_id.major
            width_in_use = len(task_id.major_text)
    candidate = f"{prefix}-{highest + 1:0{width_in_use or width}d}"
    parse_task_id(candidate)
    return candidate


def _minor_fraction(task_id: TaskId) -> Decimal:
    return Decimal(f"0.{task_id.minor_text or '0'}")
