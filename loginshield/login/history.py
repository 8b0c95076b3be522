# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Attempt history.

Append-only log of AttemptRecords used for windowed failure counts and
auditing. Appending and counting cost does not depend on how much history
an address has accumulated:

  MemoryAttemptLog - per-address lists kept in timestamp order, windows
                     located by bisection
  SqlAttemptLog    - one row per attempt, indexed by (address, timestamp)
                     (see loginshield.storage.sql)
"""

from __future__ import annotations

import bisect
import logging
from abc import ABC, abstractmethod
from typing import Optional

from loginshield.login.models import AttemptRecord, Outcome
from loginshield.storage.keyed import DEFAULT_STRIPES, StripedLock

logger = logging.getLogger("loginshield.history")


def fold_username(username: str) -> str:
    """Case- and whitespace-insensitive form used to match usernames."""
    return (username or "").strip().lower()


class AttemptLog(ABC):
    """Append-only attempt history keyed by remote address."""

    @abstractmethod
    def append(self, record: AttemptRecord) -> None:
        """Store one attempt.

        Raises:
            StorageUnavailable: If the record could not be written.
        """

    @abstractmethod
    def count_failures(
        self,
        address: str,
        since: float,
        until: float,
        username: Optional[str] = None,
    ) -> int:
        """FAILURE records for ``address`` with ``since <= timestamp <= until``.

        When ``username`` is given only attempts for that (folded) username
        are counted.
        """

    @abstractmethod
    def records(self, address: str) -> list[AttemptRecord]:
        """All retained records for ``address``, oldest first."""

    @abstractmethod
    def prune(self, older_than: float) -> int:
        """Delete records with a timestamp before ``older_than``.

        Returns:
            Number of records removed.
        """

    @abstractmethod
    def __len__(self) -> int:
        """Total number of retained records."""

    def close(self) -> None:
        """Release backend resources."""


class MemoryAttemptLog(AttemptLog):
    """Process-local attempt history."""

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        self._timestamps: dict[str, list[float]] = {}
        self._records: dict[str, list[AttemptRecord]] = {}
        self._locks = StripedLock(stripes)

    def append(self, record: AttemptRecord) -> None:
        address = record.remote_address
        with self._locks.for_key(address):
            timestamps = self._timestamps.setdefault(address, [])
            records = self._records.setdefault(address, [])
            # Records almost always arrive in order, making this an append
            i = bisect.bisect_right(timestamps, record.timestamp)
            timestamps.insert(i, record.timestamp)
            records.insert(i, record)

    def count_failures(
        self,
        address: str,
        since: float,
        until: float,
        username: Optional[str] = None,
    ) -> int:
        wanted = fold_username(username) if username is not None else None
        with self._locks.for_key(address):
            timestamps = self._timestamps.get(address)
            if not timestamps:
                return 0
            lo = bisect.bisect_left(timestamps, since)
            hi = bisect.bisect_right(timestamps, until)
            window = self._records[address][lo:hi]
        return sum(
            1
            for record in window
            if record.outcome is Outcome.FAILURE
            and (wanted is None or fold_username(record.username) == wanted)
        )

    def records(self, address: str) -> list[AttemptRecord]:
        with self._locks.for_key(address):
            return list(self._records.get(address, ()))

    def prune(self, older_than: float) -> int:
        removed = 0
        for address in list(self._timestamps):
            with self._locks.for_key(address):
                timestamps = self._timestamps.get(address)
                if timestamps is None:
                    continue
                cut = bisect.bisect_left(timestamps, older_than)
                if not cut:
                    continue
                del timestamps[:cut]
                del self._records[address][:cut]
                removed += cut
                if not timestamps:
                    del self._timestamps[address]
                    del self._records[address]
        return removed

    def __len__(self) -> int:
        return sum(len(items) for items in list(self._timestamps.values()))
