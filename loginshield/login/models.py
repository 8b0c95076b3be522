# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Login attempt records and per-address lockout state."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional


class Outcome(str, Enum):
    """Result of one authentication attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AttemptRecord:
    """One observed authentication attempt. Immutable once written."""

    remote_address: str
    username: str
    timestamp: float
    outcome: Outcome

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_address": self.remote_address,
            "username": self.username,
            "timestamp": self.timestamp,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        return cls(
            remote_address=data["remote_address"],
            username=data.get("username", ""),
            timestamp=float(data["timestamp"]),
            outcome=Outcome(data["outcome"]),
        )


@dataclass
class LockoutState:
    """Escalation state for one key (an address, or address + username)."""

    remote_address: str
    failure_count: int = 0
    escalation_level: int = 0
    locked_until: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_username: str = ""

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def retry_after(self, now: float) -> float:
        """Seconds until the lock expires (0.0 when not locked)."""
        if not self.is_locked(now):
            return 0.0
        return self.locked_until - now  # type: ignore[operator]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockoutState":
        return cls(
            remote_address=data["remote_address"],
            failure_count=int(data.get("failure_count", 0)),
            escalation_level=int(data.get("escalation_level", 0)),
            locked_until=data.get("locked_until"),
            last_failure_at=data.get("last_failure_at"),
            last_username=data.get("last_username", ""),
        )
