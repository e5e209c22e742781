"""Client-side task handles: a small persisted key to re-locate a running task."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from product_shoot.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9_.-]*")


def is_safe_key(value: str) -> bool:
    """True when ``value`` can be used as a single file or directory name."""

    return _KEY_PATTERN.fullmatch(value) is not None


@dataclass(frozen=True, slots=True)
class TaskHandle:
    """Enough to find a task again after a restart."""

    key: str
    task_id: str
    kind: str
    user_id: str
    created_at: datetime

    @classmethod
    def issue(cls, *, key: str, task_id: str, kind: str, user_id: str) -> TaskHandle:
        return cls(key=key, task_id=task_id, kind=kind, user_id=user_id, created_at=utc_now())

    def to_payload(self) -> dict[str, str]:
        return {
            "key": self.key,
            "task_id": self.task_id,
            "kind": self.kind,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, str]) -> TaskHandle:
        return cls(
            key=str(payload["key"]),
            task_id=str(payload["task_id"]),
            kind=str(payload["kind"]),
            user_id=str(payload["user_id"]),
            created_at=to_utc_aware_datetime(datetime.fromisoformat(payload["created_at"])),
        )


class TaskHandleStore(Protocol):
    """Persisted handle slot per key (for example one per workflow page)."""

    def save(self, handle: TaskHandle) -> bool:
        """Write the handle once; returns False when the same task is already stored."""

    def load(self, key: str) -> TaskHandle | None:
        """Return the stored handle or None."""

    def clear(self, key: str, *, task_id: str | None = None) -> bool:
        """Remove the handle; with ``task_id`` only when it still points at that task."""


class MemoryHandleStore:
    """In-process handle store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, TaskHandle] = {}

    def save(self, handle: TaskHandle) -> bool:
        with self._lock:
            existing = self._handles.get(handle.key)
            if existing is not None and existing.task_id == handle.task_id:
                return False
            self._handles[handle.key] = handle
            return True

    def load(self, key: str) -> TaskHandle | None:
        with self._lock:
            return self._handles.get(key)

    def clear(self, key: str, *, task_id: str | None = None) -> bool:
        with self._lock:
            existing = self._handles.get(key)
            if existing is None:
                return False
            if task_id is not None and existing.task_id != task_id:
                return False
            del self._handles[key]
            return True


class JsonFileHandleStore:
    """One JSON file per key under a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._lock = threading.Lock()

    def save(self, handle: TaskHandle) -> bool:
        path = self._path(handle.key)
        with self._lock:
            existing = self._read(path)
            if existing is not None and existing.task_id == handle.task_id:
                return False
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(
                json.dumps(handle.to_payload(), ensure_ascii=True, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, path)
            return True

    def load(self, key: str) -> TaskHandle | None:
        with self._lock:
            return self._read(self._path(key))

    def clear(self, key: str, *, task_id: str | None = None) -> bool:
        path = self._path(key)
        with self._lock:
            existing = self._read(path)
            if existing is None:
                return False
            if task_id is not None and existing.task_id != task_id:
                return False
            path.unlink(missing_ok=True)
            return True

    def _path(self, key: str) -> Path:
        if not is_safe_key(key):
            raise ValueError(f"Invalid handle key: {key!r}")
        return self.directory / f"{key}.json"

    def _read(self, path: Path) -> TaskHandle | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return TaskHandle.from_payload(payload)
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.warning("Ignoring unreadable task handle %s: %s", path, error)
            return None
