# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Pydantic models for the loginshield HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from loginshield.blacklist.models import BlacklistEntry
from loginshield.login.models import LockoutState


class DenyResponse(BaseModel):
    """Body of a 403/429 rejection."""

    detail: str
    retry_after: int | None = None


class BanRequest(BaseModel):
    """Blacklist an address, CIDR block or start-end range."""

    range: str = Field(..., min_length=1, max_length=100)
    duration: float | None = Field(None, gt=0)  # seconds; null = permanent
    comment: str = Field("", max_length=200)


class BlacklistEntryModel(BaseModel):
    range: str
    reason: str
    created_at: float
    expires_at: float | None = None
    permanent: bool
    comment: str = ""

    @classmethod
    def from_entry(cls, entry: BlacklistEntry) -> "BlacklistEntryModel":
        return cls(**entry.to_public_dict())


class BlacklistResponse(BaseModel):
    total: int
    entries: list[BlacklistEntryModel]


class UnbanResponse(BaseModel):
    range: str
    removed: int


class LockoutStateModel(BaseModel):
    """Lockout state of one address as seen by administrators."""

    remote_address: str
    failure_count: int
    escalation_level: int
    locked_until: float | None = None
    locked: bool
    retry_after: int
    last_failure_at: float | None = None
    last_username: str = ""

    @classmethod
    def from_state(cls, state: LockoutState, now: float) -> "LockoutStateModel":
        return cls(
            remote_address=state.remote_address,
            failure_count=state.failure_count,
            escalation_level=state.escalation_level,
            locked_until=state.locked_until,
            locked=state.is_locked(now),
            retry_after=int(round(state.retry_after(now))),
            last_failure_at=state.last_failure_at,
            last_username=state.last_username,
        )


class FailureCountResponse(BaseModel):
    address: str
    window: float
    failures: int


class EventModel(BaseModel):
    kind: str
    severity: str
    remote_address: str
    username: str = ""
    message: str
    extra: dict[str, Any] = {}
