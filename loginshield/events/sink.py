# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Event sinks for lockout, ban and degraded-mode notifications.

The core only ever calls ``EventSink.notify``; what a sink does with the
event (log it, store it, page someone) is its own business. The
EventDispatcher fans one notification out to every registered sink and
absorbs sink failures so a broken sink can never break a login.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from loginshield.core.logger import ShieldLogger, pseudonymize_ip

logger = logging.getLogger("loginshield.events")


class EventKind(str, Enum):
    """Notification kinds emitted by the core."""

    LOCKOUT = "lockout"
    BAN = "ban"
    UNBAN = "unban"
    DEGRADED = "degraded"
    LOGIN_FAILURE = "login_failure"
    LOGIN_SUCCESS = "login_success"


# kind -> (severity, message template)
_EVENT_FORMATS: dict[EventKind, tuple[str, str]] = {
    EventKind.LOGIN_FAILURE: (
        "low",
        "Login attempt with username {username} failed.",
    ),
    EventKind.LOGIN_SUCCESS: (
        "low",
        "User {username} logged in successfully.",
    ),
    EventKind.LOCKOUT: (
        "medium",
        "Remote IP address {ip_address} has been locked out from login for "
        "{duration} seconds. Last username used for login was {username}.",
    ),
    EventKind.BAN: (
        "high",
        "Remote IP address {ip_address} has been blacklisted ({reason}).",
    ),
    EventKind.UNBAN: (
        "medium",
        "Blacklist entries for {ip_address} have been removed.",
    ),
    EventKind.DEGRADED: (
        "high",
        "Storage {store} unavailable during {operation}: {error}. "
        "Admission falls back to allow.",
    ),
}


_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def format_message(template: str, context: dict[str, Any]) -> str:
    """Replace ``{key}`` placeholders with context values in a single pass.

    Substituted values are never scanned again. Unknown placeholders are
    left untouched.
    """

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        return str(context[key]) if key in context else match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


@dataclass(frozen=True)
class ShieldEvent:
    """One notification as delivered to sinks."""

    kind: EventKind
    remote_address: str
    username: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return _EVENT_FORMATS[self.kind][0]

    @property
    def context(self) -> dict[str, Any]:
        return {"ip_address": self.remote_address, "username": self.username, **self.extra}

    @property
    def message(self) -> str:
        return format_message(_EVENT_FORMATS[self.kind][1], self.context)


class EventSink(ABC):
    """Receiver of core notifications."""

    @abstractmethod
    def notify(
        self,
        kind: EventKind,
        remote_address: str,
        username: str = "",
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        """Handle one notification. Must not block for long."""


class NullSink(EventSink):
    """Discards everything."""

    def notify(self, kind, remote_address, username="", extra=None) -> None:
        return None


class LoggingEventSink(EventSink):
    """Writes each notification as a structured security event."""

    def __init__(self, shield_logger: Optional[ShieldLogger] = None) -> None:
        self._log = shield_logger or ShieldLogger(name="events")

    def notify(self, kind, remote_address, username="", extra=None) -> None:
        event = ShieldEvent(kind, remote_address, username, dict(extra or {}))
        self._log.security_event(
            kind.value,
            event.severity,
            {
                "ip_address": remote_address,
                "username": username,
                "message": event.message,
                **event.extra,
            },
        )


class RecordingSink(EventSink):
    """Keeps the most recent events in memory (admin display, tests)."""

    def __init__(self, max_events: int = 1000) -> None:
        self._max_events = max_events
        self._events: list[ShieldEvent] = []

    def notify(self, kind, remote_address, username="", extra=None) -> None:
        self._events.append(ShieldEvent(kind, remote_address, username, dict(extra or {})))
        if len(self._events) > self._max_events:
            del self._events[: len(self._events) - self._max_events]

    @property
    def events(self) -> list[ShieldEvent]:
        return list(self._events)

    def of_kind(self, kind: EventKind) -> list[ShieldEvent]:
        return [e for e in self._events if e.kind is kind]

    def clear(self) -> None:
        self._events.clear()


class EventDispatcher(EventSink):
    """Forwards notifications to all registered sinks.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event.
    """

    def __init__(self, sinks: Optional[list[EventSink]] = None) -> None:
        self._sinks: list[EventSink] = list(sinks or [])

    def register(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    def notify(self, kind, remote_address, username="", extra=None) -> None:
        for sink in self._sinks:
            try:
                sink.notify(kind, remote_address, username, extra)
            except Exception as exc:
                logger.error(
                    "Event sink %s failed on %s for %s: %s",
                    type(sink).__name__, kind.value, pseudonymize_ip(remote_address), exc,
                )


def as_dispatcher(sink: Optional[EventSink]) -> EventDispatcher:
    """Wrap ``sink`` so that its failures are absorbed."""
    if isinstance(sink, EventDispatcher):
        return sink
    return EventDispatcher([sink] if sink is not None else [])
