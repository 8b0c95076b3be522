# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Keyed state storage with per-key atomic updates.

Values are plain JSON-compatible dicts. ``update(key, mutator)`` runs the
mutator inside the store's per-key critical section, so two requests for
the same remote address can never interleave a read-modify-write.

Backends:
  MemoryStateStore - process-local dict, lock striping across keys
  SqlStateStore    - one row per key in a shared database, updated in a
                     row-locking transaction (see loginshield.storage.sql)

``revision()`` changes whenever any key is committed, including commits
made by other processes, so callers can keep derived caches coherent.
"""

from __future__ import annotations

import copy
import logging
import threading
import zlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger("loginshield.storage")

State = dict[str, Any]
Mutator = Callable[[Optional[State]], Optional[State]]

DEFAULT_STRIPES = 64


class StripedLock:
    """Fixed pool of locks; a key always maps to the same lock."""

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]


class KeyedStateStore(ABC):
    """Map-like store with atomic per-key read-modify-write."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Store name used in logs and degraded-mode events."""

    @abstractmethod
    def get(self, key: str) -> Optional[State]:
        """Return a copy of the value for ``key`` or None."""

    @abstractmethod
    def update(self, key: str, mutator: Mutator) -> Optional[State]:
        """Atomically replace the value for ``key``.

        The mutator receives a private copy of the current value (or None)
        and returns the new value; returning None deletes the key.

        Returns:
            The committed value (None if the key was deleted).

        Raises:
            StorageUnavailable: If the change could not be committed. The
                previous value is kept in that case.
        """

    @abstractmethod
    def snapshot(self) -> dict[str, State]:
        """Return a copy of all key/value pairs."""

    @abstractmethod
    def revision(self) -> int:
        """Token that changes after every committed update."""

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it existed."""
        existed = False

        def _drop(current: Optional[State]) -> None:
            nonlocal existed
            existed = current is not None
            return None

        self.update(key, _drop)
        return existed

    def close(self) -> None:
        """Release backend resources."""

    def __len__(self) -> int:
        return len(self.snapshot())


class MemoryStateStore(KeyedStateStore):
    """Process-local store."""

    def __init__(self, name: str = "memory", stripes: int = DEFAULT_STRIPES) -> None:
        self._name = name
        self._data: dict[str, State] = {}
        self._locks = StripedLock(stripes)
        self._revision = 0
        self._revision_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def get(self, key: str) -> Optional[State]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def update(self, key: str, mutator: Mutator) -> Optional[State]:
        with self._locks.for_key(key):
            previous = self._data.get(key)
            new_value = mutator(copy.deepcopy(previous) if previous is not None else None)
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new_value
            with self._revision_lock:
                self._revision += 1
            return copy.deepcopy(new_value) if new_value is not None else None

    def snapshot(self) -> dict[str, State]:
        return copy.deepcopy(self._data.copy())

    def revision(self) -> int:
        return self._revision

    def __len__(self) -> int:
        return len(self._data)
