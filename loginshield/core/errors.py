# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Exception hierarchy for loginshield."""

from __future__ import annotations


class ShieldError(Exception):
    """Base class for all loginshield errors."""


class InvalidAddress(ShieldError, ValueError):
    """Remote address (or range) could not be parsed."""

    def __init__(self, address: str, reason: str = "") -> None:
        self.address = address
        detail = f"Invalid address: {address!r}"
        if reason:
            detail += f" ({reason})"
        super().__init__(detail)


class StorageUnavailable(ShieldError):
    """Backing store read or write failed."""


class PolicyMisconfiguration(ShieldError, ValueError):
    """Lockout policy parameters are inconsistent.

    Carries every problem found so it can be reported in one log line.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))
