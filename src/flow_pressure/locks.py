from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


_registry_guard = threading.Lock()
# key -> [lock, number of callers holding or waiting on it]
_locks: dict[str, list] = {}


def _checkout(key: str) -> threading.RLock:
    with _registry_guard:
        entry = _locks.get(key)
        if entry is None:
            entry = [threading.RLock(), 0]
            _locks[key] = entry
        entry[1] += 1
        return entry[0]


def _release(key: str) -> None:
    with _registry_guard:
        entry = _locks[key]
        entry[1] -= 1
        if entry[1] == 0:
            del _locks[key]


@contextmanager
def keyed_lock(*parts: object) -> Iterator[None]:
    """Serialise work on one logical key, e.g. ``keyed_lock("ledger", account_id)``.

    The lock for a key is dropped from the registry once nobody holds or
    waits on it, so per-order keys do not accumulate.
    """
    key = ":".join(str(part) for part in parts)
    lock = _checkout(key)
    try:
        with lock:
            yield
    finally:
        _release(key)
