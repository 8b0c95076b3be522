# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Blacklist entry model."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from loginshield.setup.ip_address import format_range


class BanReason(str, Enum):
    """Why an address range was blacklisted."""

    MANUAL = "manual"
    AUTO_LOCKOUT = "auto_lockout"
    EXTERNAL_LIST = "external_list"


@dataclass(frozen=True)
class BlacklistEntry:
    """A banned address or contiguous address range."""

    version: int
    range_start: int
    range_end: int
    reason: BanReason
    created_at: float
    expires_at: Optional[float] = None  # None = permanent
    comment: str = ""

    def __post_init__(self) -> None:
        if self.range_start > self.range_end:
            raise ValueError("range_start must be <= range_end")

    @property
    def key(self) -> str:
        """Storage key; one entry per (range, reason)."""
        return f"v{self.version}:{self.range_start}:{self.range_end}:{self.reason.value}"

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_active(self, at_time: float) -> bool:
        """Expired entries are inert even before they are pruned."""
        return self.expires_at is None or self.expires_at > at_time

    def contains(self, version: int, address: int) -> bool:
        return version == self.version and self.range_start <= address <= self.range_end

    @property
    def label(self) -> str:
        """Human readable range (address, CIDR block or start-end)."""
        return format_range(self.version, self.range_start, self.range_end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            # Stored as strings: IPv6 bounds exceed JSON-safe integers
            "range_start": str(self.range_start),
            "range_end": str(self.range_end),
            "reason": self.reason.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlacklistEntry":
        return cls(
            version=int(data["version"]),
            range_start=int(data["range_start"]),
            range_end=int(data["range_end"]),
            reason=BanReason(data["reason"]),
            created_at=float(data["created_at"]),
            expires_at=data.get("expires_at"),
            comment=data.get("comment", ""),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Dict for admin listings."""
        return {
            "range": self.label,
            "reason": self.reason.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "permanent": self.is_permanent,
            "comment": self.comment,
        }
