# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Lockout gatekeeper: the escalation state machine.

Per remote address:

  ALLOWED --(failures >= threshold)--> LOCKED(until)
  LOCKED  --(lock expires)-----------> ALLOWED
  every lockout raises the escalation level by one; lock length is
  base_duration * growth_factor ** level, capped at max_lock_duration
  level >= max_escalations_before_ban --> BANNED (held by BlacklistStore)
  no failures for cooldown_period ----> level back to 0

The gatekeeper owns no data. It reads the AttemptBookkeeper and writes to
the BlacklistStore. Storage errors never produce a lock or a ban: they
are reported as DEGRADED events and the decision falls back to ALLOW.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loginshield.blacklist.bouncer import Admission, Bouncer
from loginshield.blacklist.models import BanReason
from loginshield.blacklist.store import BlacklistStore
from loginshield.core.clock import Clock, system_clock
from loginshield.core.config import LockoutPolicy
from loginshield.core.errors import StorageUnavailable
from loginshield.core.logger import pseudonymize_ip
from loginshield.events.sink import EventKind, EventSink, as_dispatcher
from loginshield.login.bookkeeper import AttemptBookkeeper
from loginshield.login.models import LockoutState, Outcome
from loginshield.setup.ip_address import normalize_address

logger = logging.getLogger("loginshield.gatekeeper")


class Verdict(str, Enum):
    ALLOW = "allow"
    DENY_LOCKED = "deny_locked"
    DENY_BANNED = "deny_banned"


@dataclass(frozen=True)
class Decision:
    """Admission decision for one login attempt."""

    verdict: Verdict
    retry_after: float = 0.0
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


ALLOW = Decision(Verdict.ALLOW)


@dataclass(frozen=True)
class AttemptResult:
    """What on_attempt_completed did."""

    locked: bool = False
    lock_duration: float = 0.0
    escalation_level: int = 0
    banned: bool = False
    degraded: bool = False


class LockoutGatekeeper:
    """Decides whether an address may attempt login and escalates lockouts."""

    def __init__(
        self,
        bookkeeper: AttemptBookkeeper,
        blacklist: BlacklistStore,
        bouncer: Optional[Bouncer] = None,
        sink: Optional[EventSink] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._bookkeeper = bookkeeper
        self._blacklist = blacklist
        self._sink = as_dispatcher(sink)
        self._bouncer = bouncer or Bouncer(blacklist, self._sink)
        self._clock = clock

    @property
    def policy(self) -> LockoutPolicy:
        return self._bookkeeper.policy

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def evaluate(self, remote_address: str, username: str = "") -> Decision:
        """ALLOW, DENY_LOCKED(retry_after) or DENY_BANNED.

        Raises:
            InvalidAddress: If the address is malformed.
        """
        address = normalize_address(remote_address)

        verdict = self._bouncer.inspect(address)
        if verdict.admission is Admission.DENY:
            return Decision(Verdict.DENY_BANNED, reason=verdict.reason)

        now = self._clock()
        retry_after = 0.0
        for key in self._bookkeeper.keys_for(address, username):
            try:
                state = self._bookkeeper.apply_cooldown(key, address, now)
            except StorageUnavailable as exc:
                self._degraded(address, username, "evaluate", exc)
                return ALLOW
            retry_after = max(retry_after, state.retry_after(now))

        if retry_after > 0:
            return Decision(
                Verdict.DENY_LOCKED,
                retry_after=retry_after,
                reason=f"locked out for {int(retry_after + 0.999)}s",
            )
        return ALLOW

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def on_attempt_completed(
        self,
        remote_address: str,
        username: str,
        outcome: Outcome | str,
    ) -> AttemptResult:
        """Apply the escalation policy after AttemptBookkeeper.record().

        SUCCESS needs no action here (the bookkeeper already cleared the
        counters). FAILURE locks the key once ``failure_count`` reaches the
        threshold and the windowed count confirms the failures are recent.
        The threshold check and the transition run inside one atomic
        per-key update, so concurrent failures trigger exactly one lockout
        per crossing.

        Raises:
            InvalidAddress: If the address is malformed.
        """
        address = normalize_address(remote_address)
        if Outcome(outcome) is Outcome.SUCCESS:
            return AttemptResult()

        policy = self.policy
        now = self._clock()
        result = AttemptResult()

        for key in self._bookkeeper.keys_for(address, username):
            per_user = key != address
            try:
                recent = self._bookkeeper.get_failure_count(
                    address, policy.failure_window,
                    username=username if per_user else "", now=now,
                )
                if recent < policy.max_failures_before_lockout:
                    continue
                locked, state, duration = self._try_lock(key, address, now)
            except StorageUnavailable as exc:
                self._degraded(address, username, "lockout", exc)
                return AttemptResult(degraded=True)

            if not locked:
                continue

            logger.warning(
                "%s locked out for %ds (level %d, user %r)",
                pseudonymize_ip(address), duration, state.escalation_level, username,
            )
            self._sink.notify(
                EventKind.LOCKOUT, address, username,
                {"duration": int(round(duration)), "escalation_level": state.escalation_level,
                 "scope": "username" if per_user else "address"},
            )
            banned = False
            if not per_user and state.escalation_level >= policy.max_escalations_before_ban:
                banned = self._promote_to_ban(address, username, state)
            if not result.locked or not per_user:
                result = AttemptResult(
                    locked=True,
                    lock_duration=duration,
                    escalation_level=state.escalation_level,
                    banned=banned or result.banned,
                )
        return result

    def _try_lock(self, key: str, address: str, now: float) -> tuple[bool, LockoutState, float]:
        policy = self.policy
        triggered = False
        duration = 0.0

        def _lock(state: LockoutState) -> LockoutState:
            nonlocal triggered, duration
            triggered = False
            if state.is_locked(now):
                return state
            if state.failure_count < policy.max_failures_before_lockout:
                return state
            duration = policy.lock_duration(state.escalation_level)
            state.locked_until = now + duration
            state.escalation_level += 1
            state.failure_count = 0
            triggered = True
            return state

        state = self._bookkeeper.update_state(key, address, _lock)
        return triggered, state, duration

    def _promote_to_ban(self, address: str, username: str, state: LockoutState) -> bool:
        policy = self.policy
        try:
            entry = self._blacklist.ban(
                address,
                policy.ban_duration,
                BanReason.AUTO_LOCKOUT,
                comment=f"{state.escalation_level} consecutive lockouts",
            )
        except StorageUnavailable as exc:
            self._degraded(address, username, "ban", exc)
            return False

        logger.warning(
            "%s blacklisted after %d lockouts (%s)",
            pseudonymize_ip(address), state.escalation_level,
            "permanent" if entry.is_permanent else f"{policy.ban_duration:.0f}s",
        )
        self._sink.notify(
            EventKind.BAN, address, username,
            {
                "reason": BanReason.AUTO_LOCKOUT.value,
                "escalation_level": state.escalation_level,
                "expires_at": entry.expires_at,
            },
        )
        return True

    def _degraded(self, address: str, username: str, operation: str, exc: Exception) -> None:
        logger.error("Storage failure during %s for %s: %s", operation, pseudonymize_ip(address), exc)
        self._sink.notify(
            EventKind.DEGRADED, address, username,
            {"store": "lockouts", "operation": operation, "error": str(exc)},
        )
