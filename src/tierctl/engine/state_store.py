"""State Store - durable record of last-applied resource state.

Philosophy:
- File-based JSON state for persistence across CLI invocations
- Atomic writes (temp file + rename) so a crash never leaves a torn file
- Per-resource locks: "diff read -> apply -> state write" is atomic per
  resource, global consistency is not required
- Advisory file lock so concurrent tierctl processes do not lose writes

Public API (Studs):
    StateStore - Record storage with per-resource and named cross-process locks
    StateLockTimeoutError - State file lock could not be acquired

State file: ~/.tierctl/state.json (configurable)
"""

import copy
import json
import logging
import os
import platform
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, TextIO

from tierctl.engine.models import StateRecord
from tierctl.errors import StateStoreError

# Platform-specific imports
_system = platform.system()
if TYPE_CHECKING or _system == "Windows":
    import msvcrt  # type: ignore[import-not-found]
if TYPE_CHECKING or _system != "Windows":
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateLockTimeoutError(StateStoreError):
    """Raised when the state file lock cannot be acquired within timeout."""


@contextmanager
def _state_file_lock(lock_path: Path, timeout: float) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock on ``lock_path``.

    Backoff: 0.05s -> 0.1s -> 0.2s ... capped at 1s.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as handle:
        start = time.monotonic()
        delay = 0.05
        while True:
            try:
                _lock(handle)
                break
            except (BlockingIOError, PermissionError):
                elapsed = time.monotonic() - start
                if elapsed >= timeout:
                    raise StateLockTimeoutError(
                        f"Failed to lock state file {lock_path} after {timeout} seconds. "
                        "Another tierctl process may be applying."
                    ) from None
                time.sleep(min(delay, timeout - elapsed))
                delay = min(delay * 2, 1.0)
        try:
            yield
        finally:
            _unlock(handle)


def _lock(handle: TextIO | BinaryIO) -> None:
    if _system == "Windows":
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle: TextIO | BinaryIO) -> None:
    try:
        if _system == "Windows":
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        logger.debug(f"Error during state lock cleanup: {e}")


class StateStore:
    """Durable map of resource id -> StateRecord.

    With ``path=None`` the store lives only in memory (useful for tests and
    dry runs).

    Example:
        >>> store = StateStore(Path("/tmp/state.json"))
        >>> with store.resource_lock("web_sg"):
        ...     record = store.get("web_sg")
        ...     # apply, then
        ...     store.put(new_record)
    """

    def __init__(self, path: Path | None = None, lock_timeout: float = 10.0):
        """Initialize state store.

        Args:
            path: State file path (None for in-memory only)
            lock_timeout: Seconds to wait for the cross-process file lock

        Raises:
            StateStoreError: If an existing state file cannot be read
        """
        self.path = Path(path).expanduser() if path is not None else None
        self.lock_timeout = lock_timeout
        self._io_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._resource_locks: dict[str, threading.RLock] = {}
        self._records: dict[str, StateRecord] = self._load() if self.path else {}

    @property
    def _lock_path(self) -> Path:
        assert self.path is not None
        return self.path.with_name(self.path.name + ".lock")

    def _load(self) -> dict[str, StateRecord]:
        """Load records from the state file."""
        assert self.path is not None
        if not self.path.exists():
            logger.debug(f"State file {self.path} does not exist, starting empty")
            return {}

        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Failed to read state file {self.path}: {e}") from e

        if data.get("version") != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {data.get('version')!r} in {self.path}"
            )

        records: dict[str, StateRecord] = {}
        for key, raw in data.get("resources", {}).items():
            try:
                records[key] = StateRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise StateStoreError(f"Corrupt state record '{key}': {e}") from e
        logger.debug(f"Loaded {len(records)} state records from {self.path}")
        return records

    def _save(self, records: dict[str, StateRecord]) -> None:
        """Atomically write records to the state file."""
        assert self.path is not None
        temp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            data: dict[str, Any] = {
                "version": STATE_FORMAT_VERSION,
                "resources": {key: record.to_dict() for key, record in records.items()},
            }
            with open(temp_path, "w") as f:
                json.dump(data, f, indent=2, sort_keys=False)
            os.chmod(temp_path, 0o600)
            temp_path.replace(self.path)
        except OSError as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e

    def _mutate(self, resource_id: str, record: StateRecord | None) -> None:
        """Write or delete one record, merging with what is on disk."""
        with self._io_lock:
            if self.path is None:
                self._apply_change(self._records, resource_id, record)
                return
            with _state_file_lock(self._lock_path, self.lock_timeout):
                records = self._load()
                self._apply_change(records, resource_id, record)
                self._save(records)
                self._records = records

    @staticmethod
    def _apply_change(
        records: dict[str, StateRecord], resource_id: str, record: StateRecord | None
    ) -> None:
        if record is None:
            records.pop(resource_id, None)
        else:
            records[resource_id] = copy.deepcopy(record)

    @contextmanager
    def resource_lock(self, resource_id: str) -> Generator[None, None, None]:
        """Hold the per-resource lock for a read-apply-write sequence."""
        with self._locks_guard:
            lock = self._resource_locks.setdefault(resource_id, threading.RLock())
        with lock:
            yield

    @contextmanager
    def exclusive(self, name: str, timeout: float | None = None) -> Generator[None, None, None]:
        """Hold a named advisory lock shared by every process using this state file.

        No-op for an in-memory store.

        Raises:
            StateLockTimeoutError: If another process holds the lock past ``timeout``
        """
        if self.path is None:
            yield
            return
        lock_path = self.path.with_name(f"{self.path.name}.{name}.lock")
        with _state_file_lock(lock_path, self.lock_timeout if timeout is None else timeout):
            yield

    def get(self, resource_id: str) -> StateRecord | None:
        """Get a copy of a record, or None if the resource is not tracked."""
        with self._io_lock:
            record = self._records.get(resource_id)
            return copy.deepcopy(record) if record else None

    def put(self, record: StateRecord) -> None:
        """Persist a record after a successful apply."""
        self._mutate(record.resource_id, record)
        logger.debug(f"State updated for {record.resource_id}")

    def remove(self, resource_id: str) -> None:
        """Forget a resource after it has been destroyed."""
        self._mutate(resource_id, None)
        logger.debug(f"State removed for {resource_id}")

    def all(self) -> dict[str, StateRecord]:
        """Copy of every record, in insertion order."""
        with self._io_lock:
            return copy.deepcopy(self._records)

    def reload(self) -> None:
        """Re-read the state file (picks up writes from other processes)."""
        if self.path is None:
            return
        with self._io_lock:
            self._records = self._load()

    def members_of(self, group_id: str) -> list[StateRecord]:
        """Records of an autoscaling group's members, oldest first."""
        with self._io_lock:
            members = [
                copy.deepcopy(r) for r in self._records.values() if r.managed_by == group_id
            ]
        members.sort(key=lambda r: (r.created_at, r.resource_id))
        return members

    def __contains__(self, resource_id: object) -> bool:
        with self._io_lock:
            return resource_id in self._records

    def __len__(self) -> int:
        with self._io_lock:
            return len(self._records)


__all__ = ["StateLockTimeoutError", "StateStore"]
