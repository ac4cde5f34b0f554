"""
Key-Value State Store for Run Locks, Checkpoints and the Cell Cache

Run bookkeeping that must survive restarts but does not belong in the
listing store lives here:

- lock:<kind>        {holder, pid, ts, mode}
- checkpoint:<kind>  {last_id, ts}
- cells:<poll kind>  {cells, ts}

FileStateStore keeps one JSON file per key and writes atomically through a
temp file plus os.replace, so a crash never leaves a half-written lock.
"""

import json
import logging
import os
import socket
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import RunLockHeldError

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Minimal key-value contract used by the run bookkeeping"""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def put_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        """Store value only if the key does not exist. Returns True if stored."""


class MemoryStateStore(StateStore):
    """Process-local store (tests and dry runs)"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key):
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def put(self, key, value):
        self._data[key] = dict(value)

    def delete(self, key):
        self._data.pop(key, None)

    def put_if_absent(self, key, value):
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = dict(value)
            return True


class FileStateStore(StateStore):
    """One JSON file per key under a state directory"""

    def __init__(self, state_dir):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = key.replace(':', '__').replace('/', '_')
        return self.state_dir / f"{safe}.json"

    def get(self, key):
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable state entry {key} at {path}: {e}")
            return None

    def put(self, key, value):
        path = self._path(key)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(self.state_dir))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(value, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def delete(self, key):
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def put_if_absent(self, key, value):
        path = self._path(key)
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(value, f, ensure_ascii=False)
        return True


class RunLock:
    """
    Kind-scoped mutual exclusion.

    A lock younger than the staleness window makes acquire() fail fast with
    RunLockHeldError; an older one is assumed abandoned and overwritten.
    """

    def __init__(
        self,
        store: StateStore,
        kind: str,
        stale_seconds: int = 3600,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.kind = kind
        self.key = f"lock:{kind}"
        self.stale_seconds = stale_seconds
        self._clock = clock
        self.held = False

    def _payload(self, mode: str) -> Dict[str, Any]:
        pid = os.getpid()
        return {
            'holder': f"{pid}@{socket.gethostname()}",
            'pid': pid,
            'ts': self._clock(),
            'mode': mode,
        }

    def acquire(self, mode: str = '') -> None:
        payload = self._payload(mode)
        if self.store.put_if_absent(self.key, payload):
            self.held = True
            return

        existing = self.store.get(self.key) or {}
        age = self._clock() - float(existing.get('ts') or 0)
        if age < self.stale_seconds:
            raise RunLockHeldError(self.kind, existing)

        logger.warning(f"Overriding stale {self.kind} lock held by "
                       f"{existing.get('holder', '?')} ({age / 60:.0f} min old)")
        self.store.put(self.key, payload)
        self.held = True

    def release(self) -> None:
        if self.held:
            self.store.delete(self.key)
            self.held = False


class CheckpointStore:
    """Last fully processed external id per run kind"""

    def __init__(self, store: StateStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    @staticmethod
    def key(kind: str) -> str:
        return f"checkpoint:{kind}"

    def load(self, kind: str) -> Optional[str]:
        entry = self.store.get(self.key(kind))
        if not entry:
            return None
        return entry.get('last_id')

    def save(self, kind: str, last_id: str) -> None:
        self.store.put(self.key(kind), {'last_id': str(last_id), 'ts': self._clock()})

    def clear(self, kind: str) -> None:
        self.store.delete(self.key(kind))


class CellCache:
    """Ids of grid cells that returned listings on the last full pass"""

    def __init__(self, store: StateStore, key: str = 'cells:poll', clock: Callable[[], float] = time.time):
        self.store = store
        self.key = key
        self._clock = clock

    def load(self) -> Optional[List[str]]:
        entry = self.store.get(self.key)
        if not entry:
            return None
        return list(entry.get('cells') or [])

    def save(self, cells: List[str]) -> None:
        self.store.put(self.key, {'cells': sorted(set(cells)), 'ts': self._clock()})
