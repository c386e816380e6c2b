"""Advisory workspace locks that refuse overlapping (nested) workspaces.

Lock records live in one central directory, one file per canonical workspace
path.  A record holds three lines: owner pid, canonical path, acquisition
timestamp.  A record only counts while its owner process is alive; records of
dead owners are ignored and may be reaped at any time.

Scans, writes and stale takeovers run under an exclusive ``flock`` on a guard
file in the record directory, held only for that short critical section.
Beyond that the manager never waits or retries.  On conflict the caller
decides whether to wait, prompt, or give up.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from urllib.parse import quote

from turnkeeper.loop.processes import pid_alive

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
_MAX_RECORD_NAME = 240
_HASHED_NAME_PREFIX = "h-"
_GUARD_NAME = ".manager.guard"


class ConflictKind(str, Enum):
    """Relationship between a requested path and a live lock."""

    SAME_PATH = "same_path"
    PARENT_LOCKED = "parent_locked"
    CHILD_LOCKED = "child_locked"


@dataclass(slots=True)
class LockRecord:
    """Parsed lock record file."""

    pid: int
    path: Path
    acquired_at: str
    record_path: Path


@dataclass(slots=True)
class LockConflict:
    """A live lock overlapping the requested workspace."""

    kind: ConflictKind
    requested_path: Path
    locked_path: Path
    owner_pid: int
    record_path: Path

    @property
    def message(self) -> str:
        if self.kind is ConflictKind.SAME_PATH:
            head = f"Workspace {self.requested_path} is already locked (PID: {self.owner_pid})"
        elif self.kind is ConflictKind.PARENT_LOCKED:
            head = (
                f"Parent directory {self.locked_path} of {self.requested_path} is already "
                f"locked (PID: {self.owner_pid}); nested runs are not allowed"
            )
        else:
            head = (
                f"Subdirectory {self.locked_path} of {self.requested_path} is already "
                f"locked (PID: {self.owner_pid}); nested runs are not allowed"
            )
        return f"{head}. Lock record: {self.record_path}"


class LockConflictError(RuntimeError):
    """Acquire refused because an overlapping live lock exists."""

    def __init__(self, conflict: LockConflict) -> None:
        super().__init__(conflict.message)
        self.conflict = conflict


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Proof of acquisition used to release exactly the record we wrote."""

    path: Path
    record_path: Path
    pid: int


class LockManager:
    """Acquire, inspect and release workspace lock records."""

    def __init__(
        self,
        lock_dir: Path,
        *,
        pid: int | None = None,
        is_alive: Callable[[int], bool] = pid_alive,
    ) -> None:
        self.lock_dir = lock_dir
        self.pid = os.getpid() if pid is None else pid
        self._is_alive = is_alive

    def acquire(self, path: Path | str) -> LockHandle:
        """Claim ``path`` or raise ``LockConflictError`` describing the overlap."""

        canonical = canonicalize(path)
        with self._guard():
            handle = self._acquire_guarded(canonical)
        logger.debug("Acquired lock on %s (%s)", canonical, handle.record_path)
        return handle

    def _acquire_guarded(self, canonical: Path) -> LockHandle:
        conflict = self.check_conflicts(canonical)
        if conflict is not None:
            raise LockConflictError(conflict)

        record_path = self.lock_dir / record_name(canonical)
        if not self._create_record(record_path, canonical):
            existing = self._read_record(record_path)
            if existing is not None and self._is_alive(existing.pid):
                raise LockConflictError(
                    LockConflict(
                        kind=ConflictKind.SAME_PATH,
                        requested_path=canonical,
                        locked_path=existing.path,
                        owner_pid=existing.pid,
                        record_path=record_path,
                    ),
                )
            logger.info("Replacing stale lock record %s", record_path)
            _unlink_quietly(record_path)
            if not self._create_record(record_path, canonical):
                existing = self._read_record(record_path)
                raise LockConflictError(
                    LockConflict(
                        kind=ConflictKind.SAME_PATH,
                        requested_path=canonical,
                        locked_path=canonical,
                        owner_pid=existing.pid if existing is not None else -1,
                        record_path=record_path,
                    ),
                )

        return LockHandle(path=canonical, record_path=record_path, pid=self.pid)

    def check_conflicts(self, path: Path | str) -> LockConflict | None:
        """Return the first live lock equal to, above, or below ``path``."""

        canonical = canonicalize(path)
        for record in self._iter_records():
            if not self._is_alive(record.pid):
                continue
            kind = relationship(canonical, record.path)
            if kind is None:
                continue
            return LockConflict(
                kind=kind,
                requested_path=canonical,
                locked_path=record.path,
                owner_pid=record.pid,
                record_path=record.record_path,
            )
        return None

    def release(self, handle: LockHandle) -> bool:
        """Remove the record only if it still names the handle's owner pid."""

        with self._guard():
            record = self._read_record(handle.record_path)
            if record is None:
                logger.debug("Lock record already gone: %s", handle.record_path)
                return False
            if record.pid != handle.pid:
                logger.warning(
                    "Not releasing %s: owned by PID %d, not %d",
                    handle.record_path,
                    record.pid,
                    handle.pid,
                )
                return False
            _unlink_quietly(handle.record_path)
        logger.debug("Released lock on %s", handle.path)
        return True

    def reap_stale(self) -> list[LockRecord]:
        """Delete every record whose owner process is gone."""

        reaped: list[LockRecord] = []
        with self._guard():
            for record_path in self._record_paths():
                record = self._read_record(record_path)
                if record is None:
                    logger.warning("Removing unreadable lock record %s", record_path)
                    _unlink_quietly(record_path)
                    continue
                if self._is_alive(record.pid):
                    continue
                _unlink_quietly(record_path)
                logger.info("Reaped stale lock on %s (dead PID %d)", record.path, record.pid)
                reaped.append(record)
        return reaped

    def list(self) -> list[LockRecord]:
        """Live lock records, for diagnostics."""

        return [record for record in self._iter_records() if self._is_alive(record.pid)]

    @contextmanager
    def hold(self, path: Path | str) -> Iterator[LockHandle]:
        handle = self.acquire(path)
        try:
            yield handle
        finally:
            self.release(handle)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Exclusive lock over the record directory for one check-and-write."""

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_dir / _GUARD_NAME, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _record_paths(self) -> list[Path]:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        return sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}"))

    def _iter_records(self) -> Iterator[LockRecord]:
        for record_path in self._record_paths():
            record = self._read_record(record_path)
            if record is not None:
                yield record

    def _read_record(self, record_path: Path) -> LockRecord | None:
        try:
            lines = record_path.read_text("utf-8").splitlines()
        except FileNotFoundError:
            return None
        if len(lines) < 2:
            logger.debug("Malformed lock record %s", record_path)
            return None
        try:
            pid = int(lines[0].strip())
        except ValueError:
            logger.debug("Malformed pid in lock record %s", record_path)
            return None
        return LockRecord(
            pid=pid,
            path=Path(lines[1].strip()),
            acquired_at=lines[2].strip() if len(lines) > 2 else "",
            record_path=record_path,
        )

    def _create_record(self, record_path: Path, canonical: Path) -> bool:
        """Publish a complete record atomically; False if one already exists."""

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).isoformat(timespec="seconds")
        fd, temp_path = tempfile.mkstemp(prefix=".pending-", dir=str(self.lock_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{self.pid}\n{canonical}\n{timestamp}\n")
            try:
                os.link(temp_path, record_path)
            except FileExistsError:
                return False
            return True
        finally:
            _unlink_quietly(Path(temp_path))


def canonicalize(path: Path | str) -> Path:
    """Absolute, symlink-resolved path without a trailing separator."""

    raw = str(path)
    if not raw.strip():
        raise ValueError("Lock path must not be empty")
    return Path(raw).expanduser().resolve()


def record_name(canonical: Path) -> str:
    """Collision-free record file name for a canonical path.

    Percent-encoding is injective.  Over-long names fall back to a digest
    under a prefix no encoded absolute path can start with.
    """

    encoded = quote(str(canonical), safe="")
    if len(encoded) + len(LOCK_SUFFIX) <= _MAX_RECORD_NAME:
        return f"{encoded}{LOCK_SUFFIX}"
    digest = hashlib.sha256(str(canonical).encode("utf-8")).hexdigest()
    return f"{_HASHED_NAME_PREFIX}{digest}{LOCK_SUFFIX}"


def relationship(requested: Path, locked: Path) -> ConflictKind | None:
    """How a locked path relates to the requested one, by path components."""

    if requested == locked:
        return ConflictKind.SAME_PATH
    if locked in requested.parents:
        return ConflictKind.PARENT_LOCKED
    if requested in locked.parents:
        return ConflictKind.CHILD_LOCKED
    return None


def render_lock_lines(records: list[LockRecord], lock_dir: Path) -> list[str]:
    lines = [f"Active locks in {lock_dir}:"]
    if not records:
        lines.append("  (no active locks)")
        return lines
    for record in records:
        lines.append(f"  PID: {record.pid:<8} Path: {record.path}")
        lines.append(f"  {'':<13}Started: {record.acquired_at or 'unknown'}")
    lines.append(f"Total: {len(records)} active lock(s)")
    return lines


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
