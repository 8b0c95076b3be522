# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""IP blacklist store.

Entries live in a KeyedStateStore (one key per range + reason). Lookups go
through an immutable interval index per address family that is rebuilt
whenever the backend revision moves, which also picks up bans and unbans
committed by other worker processes sharing the backend:

  starts   - range starts, sorted ascending
  max_ends - running maximum of range ends over the sorted prefix

A lookup bisects ``starts`` and walks left only while ``max_ends`` says a
covering range can still exist, so a miss costs O(log n).
"""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from loginshield.blacklist.models import BanReason, BlacklistEntry
from loginshield.core.clock import Clock, system_clock
from loginshield.core.logger import pseudonymize_ip
from loginshield.setup.ip_address import normalize_address, parse_range
from loginshield.storage.keyed import KeyedStateStore, MemoryStateStore

logger = logging.getLogger("loginshield.blacklist")


@dataclass(frozen=True)
class _FamilyIndex:
    entries: tuple[BlacklistEntry, ...]
    starts: tuple[int, ...]
    max_ends: tuple[int, ...]

    @classmethod
    def build(cls, entries: list[BlacklistEntry]) -> "_FamilyIndex":
        ordered = sorted(entries, key=lambda e: (e.range_start, e.range_end))
        max_ends: list[int] = []
        running = -1
        for entry in ordered:
            running = max(running, entry.range_end)
            max_ends.append(running)
        return cls(
            entries=tuple(ordered),
            starts=tuple(e.range_start for e in ordered),
            max_ends=tuple(max_ends),
        )

    def find(self, address: int, at_time: float) -> Optional[BlacklistEntry]:
        i = bisect.bisect_right(self.starts, address) - 1
        while i >= 0 and self.max_ends[i] >= address:
            entry = self.entries[i]
            if entry.range_end >= address and entry.is_active(at_time):
                return entry
            i -= 1
        return None


_EMPTY = _FamilyIndex.build([])


class BlacklistStore:
    """Durable set of banned address ranges with optional expiry."""

    def __init__(
        self,
        store: Optional[KeyedStateStore] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._store = store if store is not None else MemoryStateStore(name="blacklist")
        self._clock = clock
        self._index_lock = threading.Lock()
        self._index: dict[int, _FamilyIndex] = {}
        self._indexed_revision: Optional[int] = None
        self._rebuild_index()

    @property
    def backend(self) -> KeyedStateStore:
        return self._store

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ban(
        self,
        range_or_address: str,
        duration: Optional[float] = None,
        reason: BanReason = BanReason.MANUAL,
        comment: str = "",
    ) -> BlacklistEntry:
        """Blacklist an address or range.

        Banning the same range for the same reason again refreshes the
        expiry instead of adding a duplicate. A permanent entry is never
        downgraded to a temporary one by a refresh.

        Args:
            range_or_address: Address, CIDR block or 'start-end' span.
            duration: Ban length in seconds; None for permanent.
            reason: Why the range is banned.
            comment: Free-text note for administrators.

        Raises:
            InvalidAddress: If the range cannot be parsed.
            StorageUnavailable: If the backing store rejects the write.
        """
        if duration is not None and duration <= 0:
            raise ValueError("duration must be > 0 (or None for permanent)")
        version, start, end = parse_range(range_or_address)
        now = self._clock()
        expires_at = None if duration is None else now + duration
        candidate = BlacklistEntry(
            version=version,
            range_start=start,
            range_end=end,
            reason=reason,
            created_at=now,
            expires_at=expires_at,
            comment=comment,
        )

        def _upsert(current: Optional[dict]) -> dict:
            if current is None:
                return candidate.to_dict()
            existing = BlacklistEntry.from_dict(current)
            if not existing.is_active(now):
                return candidate.to_dict()
            refreshed = dict(current)
            if existing.expires_at is None or expires_at is None:
                refreshed["expires_at"] = None
            else:
                refreshed["expires_at"] = max(existing.expires_at, expires_at)
            if comment:
                refreshed["comment"] = comment
            return refreshed

        committed = BlacklistEntry.from_dict(self._store.update(candidate.key, _upsert))
        self._rebuild_index()
        logger.info(
            "Blacklisted %s (%s, %s)",
            pseudonymize_ip(committed.label),
            reason.value,
            "permanent" if committed.is_permanent else f"until {committed.expires_at:.0f}",
        )
        return committed

    def unban(self, range_or_address: str) -> int:
        """Remove every entry with exactly this range, whatever its reason.

        Returns:
            Number of entries removed.
        """
        version, start, end = parse_range(range_or_address)
        removed = 0
        for reason in BanReason:
            key = f"v{version}:{start}:{end}:{reason.value}"
            if self._store.delete(key):
                removed += 1
        if removed:
            self._rebuild_index()
            logger.info("Removed %d blacklist entr%s for %s", removed, "y" if removed == 1 else "ies", range_or_address)
        return removed

    def prune(self, at_time: Optional[float] = None) -> int:
        """Physically remove expired entries. Returns count removed."""
        at_time = self._clock() if at_time is None else at_time
        removed = 0
        for key, data in self._store.snapshot().items():
            if BlacklistEntry.from_dict(data).is_active(at_time):
                continue

            def _drop_if_expired(current: Optional[dict]) -> Optional[dict]:
                # Re-check under the key lock: the entry may have been refreshed
                if current is None or BlacklistEntry.from_dict(current).is_active(at_time):
                    return current
                return None

            if self._store.update(key, _drop_if_expired) is None:
                removed += 1
        if removed:
            self._rebuild_index()
            logger.info("Pruned %d expired blacklist entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_banned(self, address: str, at_time: Optional[float] = None) -> bool:
        """True if ``address`` falls inside any non-expired entry.

        Raises:
            InvalidAddress: If ``address`` is not a single IP address.
        """
        return self.find(address, at_time) is not None

    def find(self, address: str, at_time: Optional[float] = None) -> Optional[BlacklistEntry]:
        """Return one active entry covering ``address``, or None."""
        version, value, _ = parse_range(normalize_address(address))
        at_time = self._clock() if at_time is None else at_time
        return self._current_index().get(version, _EMPTY).find(value, at_time)

    def list_entries(self, at_time: Optional[float] = None, include_expired: bool = False) -> list[BlacklistEntry]:
        """All entries ordered by family and range start."""
        at_time = self._clock() if at_time is None else at_time
        result: list[BlacklistEntry] = []
        index = self._current_index()
        for version in sorted(index):
            for entry in index[version].entries:
                if include_expired or entry.is_active(at_time):
                    result.append(entry)
        return result

    def __len__(self) -> int:
        return sum(len(idx.entries) for idx in self._current_index().values())

    def _current_index(self) -> dict[int, _FamilyIndex]:
        """Index for the latest committed revision of the backend."""
        if self._store.revision() != self._indexed_revision:
            self._rebuild_index()
        return self._index

    def _rebuild_index(self) -> None:
        with self._index_lock:
            # Read the revision first: a commit racing the snapshot leaves
            # the recorded revision stale and forces another rebuild.
            revision = self._store.revision()
            by_family: dict[int, list[BlacklistEntry]] = {}
            for key, data in self._store.snapshot().items():
                try:
                    entry = BlacklistEntry.from_dict(data)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed blacklist entry %s: %s", key, exc)
                    continue
                by_family.setdefault(entry.version, []).append(entry)
            # Swap in one assignment so readers see either the old or new index
            self._index = {v: _FamilyIndex.build(items) for v, items in by_family.items()}
            self._indexed_revision = revision
