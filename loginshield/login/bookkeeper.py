# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Login attempt bookkeeping.

Two separate stores:

  states  - LockoutState per key, updated atomically on every attempt.
            This is what admission decisions read.
  history - AttemptLog of raw AttemptRecords, used for windowed failure
            counts and auditing only. Pruning it never touches counters.

Keys are the normalized remote address, plus ``<address>|<username>`` when
per-username tracking is enabled.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from loginshield.core.clock import Clock, system_clock
from loginshield.core.config import DEFAULT_POLICY, LockoutPolicy
from loginshield.core.logger import pseudonymize_ip
from loginshield.login.history import AttemptLog, MemoryAttemptLog, fold_username
from loginshield.login.models import AttemptRecord, LockoutState, Outcome
from loginshield.setup.ip_address import normalize_address
from loginshield.storage.keyed import KeyedStateStore, MemoryStateStore

logger = logging.getLogger("loginshield.bookkeeper")

StateMutator = Callable[[LockoutState], LockoutState]


def username_key(address: str, username: str) -> str:
    return f"{address}|{fold_username(username)}"


class AttemptBookkeeper:
    """Records attempt outcomes and maintains per-key failure counters."""

    def __init__(
        self,
        policy: LockoutPolicy = DEFAULT_POLICY,
        states: Optional[KeyedStateStore] = None,
        history: Optional[AttemptLog] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._policy = policy
        self._states = states if states is not None else MemoryStateStore(name="lockouts")
        self._history = history if history is not None else MemoryAttemptLog()
        self._clock = clock

    @property
    def policy(self) -> LockoutPolicy:
        return self._policy

    @property
    def states(self) -> KeyedStateStore:
        return self._states

    @property
    def history(self) -> AttemptLog:
        return self._history

    def keys_for(self, address: str, username: str = "") -> list[str]:
        """State keys touched by an attempt from ``address`` as ``username``."""
        keys = [address]
        if self._policy.track_usernames and username:
            keys.append(username_key(address, username))
        return keys

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        remote_address: str,
        username: str,
        outcome: Outcome | str,
        at_time: Optional[float] = None,
    ) -> LockoutState:
        """Append an AttemptRecord and update the LockoutState atomically.

        FAILURE increments ``failure_count``; SUCCESS resets it and clears
        any active lock.

        Returns:
            The committed per-address LockoutState.

        Raises:
            InvalidAddress: Before any mutation, if the address is malformed.
            StorageUnavailable: If a backing store rejects the write.
        """
        address = normalize_address(remote_address)
        outcome = Outcome(outcome)
        at_time = self._clock() if at_time is None else at_time
        username = username or ""

        if outcome is Outcome.FAILURE:
            mutator = self._failure_mutator(username, at_time)
        else:
            mutator = _success_mutator

        committed: Optional[LockoutState] = None
        for key in self.keys_for(address, username):
            state = self._update(key, address, mutator)
            if committed is None:
                committed = state

        record = AttemptRecord(address, username, at_time, outcome)
        self._history.append(record)
        return committed  # type: ignore[return-value]

    def _failure_mutator(self, username: str, at_time: float) -> StateMutator:
        policy = self._policy

        def _apply(state: LockoutState) -> LockoutState:
            if _cooled_down(state, at_time, policy.cooldown_period):
                state.escalation_level = 0
            if state.last_failure_at is not None and at_time - state.last_failure_at > policy.failure_window:
                state.failure_count = 0
            state.failure_count += 1
            state.last_failure_at = at_time
            state.last_username = username
            return state

        return _apply

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def get_state(self, remote_address: str, username: str = "") -> LockoutState:
        """Current LockoutState for an address (or address + username)."""
        address = normalize_address(remote_address)
        key = username_key(address, username) if username else address
        data = self._states.get(key)
        if data is None:
            return LockoutState(remote_address=address)
        return LockoutState.from_dict(data)

    def update_state(self, key: str, address: str, mutator: StateMutator) -> LockoutState:
        """Run ``mutator`` on the state stored under ``key`` atomically."""
        return self._update(key, address, mutator)

    def apply_cooldown(self, key: str, address: str, now: float) -> LockoutState:
        """Reset escalation when the key has been quiet for the cool-down."""
        cooldown = self._policy.cooldown_period
        current = self._states.get(key)
        if current is None:
            return LockoutState(remote_address=address)
        if not _cooled_down(LockoutState.from_dict(current), now, cooldown):
            return LockoutState.from_dict(current)

        def _decay(state: LockoutState) -> LockoutState:
            if _cooled_down(state, now, cooldown):
                logger.info(
                    "Escalation for %s decayed after %.0fs without failures",
                    pseudonymize_ip(address), now - state.last_failure_at,
                )
                state.escalation_level = 0
                state.failure_count = 0
            return state

        return self._update(key, address, _decay)

    def reset(self, remote_address: str) -> int:
        """Forget all lockout state for an address. Returns keys removed."""
        address = normalize_address(remote_address)
        prefix = f"{address}|"
        removed = 0
        for key in list(self._states.snapshot()):
            if key == address or key.startswith(prefix):
                if self._states.delete(key):
                    removed += 1
        return removed

    def _update(self, key: str, address: str, mutator: StateMutator) -> LockoutState:
        def _apply(current: Optional[dict]) -> dict:
            state = LockoutState.from_dict(current) if current else LockoutState(remote_address=address)
            return mutator(state).to_dict()

        return LockoutState.from_dict(self._states.update(key, _apply))

    # ------------------------------------------------------------------
    # Windowed queries
    # ------------------------------------------------------------------

    def get_failure_count(
        self,
        remote_address: str,
        window: Optional[float] = None,
        username: str = "",
        now: Optional[float] = None,
    ) -> int:
        """Number of FAILURE attempts inside the trailing ``window`` seconds."""
        address = normalize_address(remote_address)
        window = self._policy.failure_window if window is None else window
        now = self._clock() if now is None else now
        return self._history.count_failures(address, now - window, now, username or None)

    def get_attempts(self, remote_address: str) -> list[AttemptRecord]:
        """Retained attempt history for an address, oldest first."""
        return self._history.records(normalize_address(remote_address))

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune(self, older_than: Optional[float] = None) -> int:
        """Delete AttemptRecords with a timestamp before ``older_than``.

        Defaults to now minus the retention period. Idle lockout states
        (unlocked, no escalation, last failure before the horizon) are
        dropped as well.

        Returns:
            Number of attempt records removed.
        """
        now = self._clock()
        horizon = now - self._policy.retention if older_than is None else older_than
        cooldown = self._policy.cooldown_period
        removed = self._history.prune(horizon)

        idle = 0
        for key in list(self._states.snapshot()):

            def _drop_idle(current: Optional[dict]) -> Optional[dict]:
                nonlocal idle
                if not current:
                    return None
                state = LockoutState.from_dict(current)
                if state.is_locked(now):
                    return current
                if state.escalation_level and not _cooled_down(state, now, cooldown):
                    return current
                if state.last_failure_at is not None and state.last_failure_at >= horizon:
                    return current
                idle += 1
                return None

            self._states.update(key, _drop_idle)

        if removed or idle:
            logger.info("Pruned %d attempt records and %d idle lockout states", removed, idle)
        return removed


def _success_mutator(state: LockoutState) -> LockoutState:
    state.failure_count = 0
    state.locked_until = None
    return state


def _cooled_down(state: LockoutState, now: float, cooldown: float) -> bool:
    return (
        state.escalation_level > 0
        and state.last_failure_at is not None
        and now - state.last_failure_at >= cooldown
        and not state.is_locked(now)
    )
