# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""loginshield - Entry Point.

Composes blacklist, bouncer, bookkeeper, gatekeeper, event sinks and
maintenance jobs from one ShieldConfig and offers a single API for the
authentication path and for administrators.

The authentication-path methods (check_request, evaluate, login_attempted)
never raise: any failure below them degrades to ALLOW and is reported as
a DEGRADED event.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from loginshield.blacklist.bouncer import Admission, Bouncer, BouncerVerdict
from loginshield.blacklist.models import BanReason, BlacklistEntry
from loginshield.blacklist.store import BlacklistStore
from loginshield.core.clock import Clock, system_clock
from loginshield.core.config import LockoutPolicy, ShieldConfig
from loginshield.core.errors import InvalidAddress, StorageUnavailable
from loginshield.core.logger import ShieldLogger, pseudonymize_ip
from loginshield.events.sink import (
    EventDispatcher,
    EventKind,
    EventSink,
    LoggingEventSink,
    RecordingSink,
    ShieldEvent,
)
from loginshield.login.bookkeeper import AttemptBookkeeper
from loginshield.login.gatekeeper import ALLOW, AttemptResult, Decision, LockoutGatekeeper
from loginshield.login.history import AttemptLog, MemoryAttemptLog
from loginshield.login.models import LockoutState, Outcome
from loginshield.maintenance import (
    RECUR_DAILY,
    RECUR_HOURLY,
    RECURRENCES,
    MaintenanceJob,
    MaintenanceSchedule,
)
from loginshield.setup.ip_address import (
    REMOTE_ADDR,
    format_range,
    normalize_address,
    parse_networks,
    parse_range,
    resolve_remote_address,
)
from loginshield.storage.keyed import KeyedStateStore, MemoryStateStore
from loginshield.storage.sql import DEFAULT_TIMEOUT, Database, SqlAttemptLog, SqlStateStore

logger = logging.getLogger("loginshield")


class LoginShield:
    """Brute-force login protection orchestrator."""

    def __init__(
        self,
        config: Optional[ShieldConfig] = None,
        clock: Clock = system_clock,
        sinks: Optional[list[EventSink]] = None,
    ) -> None:
        """Initialize all components from ``config``.

        Args:
            config: Loaded configuration; an empty in-memory config (all
                defaults) when omitted.
            clock: Time source shared by every component.
            sinks: Extra event sinks, notified after the built-in logging
                and recording sinks.

        Raises:
            StorageUnavailable: If a persistent store cannot be opened.
        """
        self._config = config or ShieldConfig.from_dict({})
        self._clock = clock
        policy = self._config.policy

        backend = self._config.get("loginshield.storage", "memory")
        log_dir = self._config.get("loginshield.log_dir")

        self._recorder = RecordingSink(max_events=int(self._config.get("loginshield.recent_events", 200)))
        self._event_logger = ShieldLogger(
            name="events",
            level=self._config.get("loginshield.log_level", "INFO"),
            log_dir=Path(log_dir) if log_dir else None,
        )
        self._events = EventDispatcher([LoggingEventSink(self._event_logger), self._recorder, *(sinks or [])])

        self._database: Optional[Database] = None
        blacklist_store, lockout_store, history = self._open_storage(backend)

        self._blacklist = BlacklistStore(blacklist_store, clock=clock)
        self._bouncer = Bouncer(self._blacklist, self._events)
        self._bookkeeper = AttemptBookkeeper(policy, states=lockout_store, history=history, clock=clock)
        self._gatekeeper = LockoutGatekeeper(
            self._bookkeeper, self._blacklist, self._bouncer, self._events, clock=clock,
        )

        self._connection_type = self._config.get("loginshield.connection_type", REMOTE_ADDR)
        proxies = self._config.get("loginshield.trusted_proxies") or []
        self._trusted_proxies = parse_networks(proxies) if proxies else None

        self._load_external_list(self._config.get("blacklist.external") or [])

        self._maintenance = MaintenanceSchedule(clock=clock)
        self._maintenance.add(MaintenanceJob(
            "prune_attempts",
            self._bookkeeper.prune,
            self._recurrence("maintenance.prune_attempts", RECUR_DAILY),
        ))
        self._maintenance.add(MaintenanceJob(
            "prune_blacklist",
            self._blacklist.prune,
            self._recurrence("maintenance.prune_blacklist", RECUR_HOURLY),
        ))

        logger.info(
            "loginshield initialized (storage=%s, connection=%s, threshold=%d)",
            backend, self._connection_type, policy.max_failures_before_lockout,
        )

    # -----------------------------------------------------------------
    # Components
    # -----------------------------------------------------------------

    @property
    def config(self) -> ShieldConfig:
        return self._config

    @property
    def policy(self) -> LockoutPolicy:
        return self._bookkeeper.policy

    def now(self) -> float:
        return self._clock()

    @property
    def blacklist(self) -> BlacklistStore:
        return self._blacklist

    @property
    def bouncer(self) -> Bouncer:
        return self._bouncer

    @property
    def bookkeeper(self) -> AttemptBookkeeper:
        return self._bookkeeper

    @property
    def gatekeeper(self) -> LockoutGatekeeper:
        return self._gatekeeper

    @property
    def events(self) -> EventDispatcher:
        return self._events

    @property
    def maintenance(self) -> MaintenanceSchedule:
        return self._maintenance

    # -----------------------------------------------------------------
    # Authentication path
    # -----------------------------------------------------------------

    def resolve_address(self, headers: Mapping[str, str], direct_address: str) -> str:
        """Normalized client address for a request, or "" if none is usable.

        A forged or garbled proxy header falls back to the socket peer.
        """
        raw = resolve_remote_address(
            self._connection_type, headers, direct_address, self._trusted_proxies,
        )
        for candidate in (raw, direct_address):
            if not candidate:
                continue
            try:
                return normalize_address(candidate)
            except InvalidAddress:
                logger.debug("Unusable client address %r", candidate)
        return ""

    def check_request(self, address: str) -> BouncerVerdict:
        """Fast blacklist gate for every incoming request."""
        try:
            return self._bouncer.inspect(address)
        except Exception as exc:
            self._degraded(address, "", "blacklist", "check_request", exc)
            return BouncerVerdict(Admission.ALLOW, address, reason="check failed")

    def evaluate(self, address: str, username: str = "") -> Decision:
        """May ``address`` attempt a login as ``username`` right now?"""
        try:
            return self._gatekeeper.evaluate(address, username)
        except InvalidAddress as exc:
            logger.warning("Evaluate skipped: %s", exc)
            return Decision(ALLOW.verdict, reason="invalid address")
        except Exception as exc:
            self._degraded(address, username, "lockouts", "evaluate", exc)
            return ALLOW

    def login_attempted(
        self,
        address: str,
        username: str,
        outcome: Outcome | str | bool,
    ) -> AttemptResult:
        """Report the outcome of an authentication attempt.

        Args:
            address: Client address as resolved by resolve_address().
            username: Username that was tried (may be empty).
            outcome: Outcome, its string value, or True for success.

        Returns:
            What the gatekeeper did (lockout, ban) in response.
        """
        if isinstance(outcome, bool):
            outcome = Outcome.SUCCESS if outcome else Outcome.FAILURE
        username = username or ""
        try:
            outcome = Outcome(outcome)
            self._bookkeeper.record(address, username, outcome)
        except InvalidAddress as exc:
            logger.warning("Attempt not recorded: %s", exc)
            return AttemptResult()
        except ValueError as exc:
            logger.error("Attempt not recorded, bad outcome %r: %s", outcome, exc)
            return AttemptResult()
        except StorageUnavailable as exc:
            self._degraded(address, username, "attempts", "record", exc)
            return AttemptResult(degraded=True)

        kind = EventKind.LOGIN_SUCCESS if outcome is Outcome.SUCCESS else EventKind.LOGIN_FAILURE
        self._events.notify(kind, normalize_address(address), username)

        try:
            return self._gatekeeper.on_attempt_completed(address, username, outcome)
        except Exception as exc:
            self._degraded(address, username, "lockouts", "on_attempt_completed", exc)
            return AttemptResult(degraded=True)

    # -----------------------------------------------------------------
    # Administration
    # -----------------------------------------------------------------

    def ban(
        self,
        range_or_address: str,
        duration: Optional[float] = None,
        reason: BanReason | str = BanReason.MANUAL,
        comment: str = "",
    ) -> BlacklistEntry:
        """Blacklist an address or range.

        Raises:
            InvalidAddress: If the range cannot be parsed.
            ValueError: If ``duration`` is not positive.
            StorageUnavailable: If the blacklist cannot be written.
        """
        entry = self._blacklist.ban(range_or_address, duration, BanReason(reason), comment)
        self._events.notify(
            EventKind.BAN, entry.label, "",
            {"reason": entry.reason.value, "expires_at": entry.expires_at, "comment": comment},
        )
        return entry

    def unban(self, range_or_address: str) -> int:
        """Remove all blacklist entries for the range.

        For a single address its lockout state is reset as well, so a
        freed address does not walk straight back into the ban.

        Returns:
            Number of blacklist entries removed.
        """
        version, start, end = parse_range(range_or_address)
        label = format_range(version, start, end)
        removed = self._blacklist.unban(range_or_address)
        if start == end:
            self._bookkeeper.reset(label)
        if removed:
            self._events.notify(EventKind.UNBAN, label, "", {"removed": removed})
        return removed

    def list_blacklist(self, include_expired: bool = False) -> list[BlacklistEntry]:
        return self._blacklist.list_entries(include_expired=include_expired)

    def get_lockout_state(self, address: str, username: str = "") -> LockoutState:
        return self._bookkeeper.get_state(address, username)

    def count_failures(self, address: str, window: Optional[float] = None) -> int:
        return self._bookkeeper.get_failure_count(address, window)

    def recent_events(self, kind: Optional[EventKind] = None) -> list[ShieldEvent]:
        """Most recent notifications, oldest first."""
        if kind is None:
            return self._recorder.events
        return self._recorder.of_kind(kind)

    def run_maintenance(self, now: Optional[float] = None, force: bool = False) -> dict[str, Any]:
        """Run due maintenance jobs (all of them with ``force``)."""
        if force:
            return self._maintenance.run_all(now)
        return self._maintenance.run_pending(now)

    def get_status(self) -> dict[str, Any]:
        """Return the status of all components."""
        now = self._clock()
        locked = sum(
            1 for data in self._bookkeeper.states.snapshot().values()
            if LockoutState.from_dict(data).is_locked(now)
        )
        return {
            "policy": self.policy.to_dict(),
            "connection_type": self._connection_type,
            "blacklist": {
                "backend": self._blacklist.backend.name,
                "active_entries": len(self._blacklist.list_entries()),
                "total_entries": len(self._blacklist),
            },
            "lockouts": {
                "tracked_keys": len(self._bookkeeper.states),
                "locked_keys": locked,
            },
            "events": {"sinks": len(self._events.sinks), "recent": len(self._recorder.events)},
            "maintenance": self._maintenance.status(),
        }

    def close(self) -> None:
        """Release the events log file and the database connections.

        The instance must not be used afterwards.
        """
        self._event_logger.close()
        self._bookkeeper.history.close()
        self._bookkeeper.states.close()
        self._blacklist.backend.close()
        if self._database is not None:
            self._database.close()
            self._database = None
        logger.info("loginshield closed")

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _open_storage(self, backend: str) -> tuple[KeyedStateStore, KeyedStateStore, AttemptLog]:
        """Blacklist store, lockout store and attempt history for ``backend``.

        ``sql`` shares one database between every process that points at
        the same URL; ``memory`` keeps everything in this process.
        """
        if backend == "sql":
            self._database = Database(
                self._config.database_url,
                timeout=float(self._config.get("loginshield.database_timeout", DEFAULT_TIMEOUT)),
            )
            return (
                SqlStateStore(self._database, "blacklist", track_revisions=True),
                SqlStateStore(self._database, "lockouts"),
                SqlAttemptLog(self._database),
            )
        if backend != "memory":
            logger.warning("Unknown storage backend %r, using memory", backend)
        return MemoryStateStore(name="blacklist"), MemoryStateStore(name="lockouts"), MemoryAttemptLog()

    def _load_external_list(self, entries: list[Any]) -> None:
        """Ban the ``blacklist.external`` ranges from the config.

        Each entry is a range string or a mapping with ``range`` and the
        optional ``duration`` and ``comment`` keys.
        """
        loaded = 0
        for item in entries:
            if isinstance(item, str):
                item = {"range": item}
            if not isinstance(item, dict) or "range" not in item:
                logger.warning("Skipping malformed external blacklist entry: %r", item)
                continue
            try:
                self._blacklist.ban(
                    str(item["range"]),
                    item.get("duration"),
                    BanReason.EXTERNAL_LIST,
                    item.get("comment", ""),
                )
                loaded += 1
            except (InvalidAddress, ValueError) as exc:
                logger.warning("Skipping external blacklist entry %r: %s", item["range"], exc)
        if loaded:
            logger.info("Loaded %d external blacklist entries", loaded)

    def _recurrence(self, key: str, default: str) -> str:
        value = self._config.get(key, default)
        if value not in RECURRENCES:
            logger.warning("Invalid recurrence %r for %s, using %s", value, key, default)
            return default
        return value

    def _degraded(self, address: str, username: str, store: str, operation: str, exc: Exception) -> None:
        logger.error("Degraded %s on %s for %s: %s", operation, store, pseudonymize_ip(address), exc)
        self._events.notify(
            EventKind.DEGRADED, address, username,
            {"store": store, "operation": operation, "error": str(exc)},
        )
