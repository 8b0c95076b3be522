# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Bouncer: first gate for every request.

Read-only: it never writes to any store. Failures inside the blacklist
lookup fail open (ALLOW) and are reported as DEGRADED events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loginshield.blacklist.models import BlacklistEntry
from loginshield.blacklist.store import BlacklistStore
from loginshield.core.errors import InvalidAddress, StorageUnavailable
from loginshield.core.logger import pseudonymize_ip
from loginshield.events.sink import EventKind, EventSink, as_dispatcher

logger = logging.getLogger("loginshield.bouncer")


class Admission(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class BouncerVerdict:
    """Result of a bouncer check."""

    admission: Admission
    address: str = ""
    entry: Optional[BlacklistEntry] = None
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.admission is Admission.ALLOW


class Bouncer:
    """Rejects requests from blacklisted addresses."""

    def __init__(self, blacklist: BlacklistStore, sink: Optional[EventSink] = None) -> None:
        self._blacklist = blacklist
        self._sink = as_dispatcher(sink)

    def check(self, address: str) -> Admission:
        """ALLOW or DENY for ``address``."""
        return self.inspect(address).admission

    def inspect(self, address: str) -> BouncerVerdict:
        """Like check(), but also returns the matching entry.

        An address that cannot be parsed cannot match any entry and is
        allowed; the login path rejects it separately.
        """
        try:
            entry = self._blacklist.find(address)
        except InvalidAddress:
            logger.debug("Bouncer skipped unparseable address %r", address)
            return BouncerVerdict(Admission.ALLOW, address, reason="unparseable address")
        except StorageUnavailable as exc:
            logger.error("Blacklist lookup failed for %s: %s", pseudonymize_ip(address), exc)
            self._sink.notify(
                EventKind.DEGRADED, address, "",
                {"store": "blacklist", "operation": "check", "error": str(exc)},
            )
            return BouncerVerdict(Admission.ALLOW, address, reason="blacklist unavailable")

        if entry is None:
            return BouncerVerdict(Admission.ALLOW, address)
        return BouncerVerdict(
            Admission.DENY, address, entry=entry,
            reason=f"blacklisted ({entry.reason.value})",
        )

    def is_banned(self, address: str) -> bool:
        return self.check(address) is Admission.DENY
