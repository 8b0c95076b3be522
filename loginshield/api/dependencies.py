# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""FastAPI glue for host applications.

  bouncer_middleware   - rejects blacklisted clients with 403 on every request
  login_guard          - dependency for login endpoints: 403 banned, 429 locked
  report_login_attempt - feed the outcome of the host's credential check back

Typical login endpoint::

    @app.post("/login")
    async def login(req: LoginRequest, address: str = Depends(login_guard)):
        ok = check_credentials(req.username, req.password)
        report_login_attempt(address, req.username, ok)
        ...
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from loginshield.api.models import DenyResponse
from loginshield.core.logger import pseudonymize_ip
from loginshield.login.gatekeeper import AttemptResult, Decision, Verdict
from loginshield.shield import LoginShield

logger = logging.getLogger("loginshield.api")

_shield: Optional[LoginShield] = None


def set_shield(instance: Optional[LoginShield]) -> None:
    global _shield
    _shield = instance


def get_shield() -> LoginShield:
    if _shield is None:
        raise RuntimeError("LoginShield not initialized; call set_shield() first")
    return _shield


def client_address(request: Request) -> str:
    """Resolved client address for ``request`` ("" when unusable)."""
    cached = getattr(request.state, "client_address", None)
    if cached is not None:
        return cached
    direct = request.client.host if request.client else ""
    address = get_shield().resolve_address(request.headers, direct)
    request.state.client_address = address
    return address


async def bouncer_middleware(request: Request, call_next):
    """Reject requests from blacklisted addresses before any routing."""
    address = client_address(request)
    if address:
        verdict = get_shield().check_request(address)
        if not verdict.allowed:
            logger.warning(
                "BOUNCED %s on %s (%s)", pseudonymize_ip(address), request.url.path, verdict.reason,
            )
            return JSONResponse(
                status_code=403,
                content=DenyResponse(detail="Access denied").model_dump(),
            )
    return await call_next(request)


def raise_for_decision(decision: Decision) -> None:
    """Translate a denying Decision into the matching HTTPException."""
    if decision.verdict is Verdict.DENY_BANNED:
        raise HTTPException(status_code=403, detail="Access denied")
    if decision.verdict is Verdict.DENY_LOCKED:
        retry_after = max(1, math.ceil(decision.retry_after))
        raise HTTPException(
            status_code=429,
            detail=f"Too many failed login attempts. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


def login_guard(request: Request) -> str:
    """Dependency for login endpoints. Returns the resolved client address.

    Raises:
        HTTPException: 403 for blacklisted, 429 with Retry-After for locked
            out addresses.
    """
    address = client_address(request)
    decision = get_shield().evaluate(address)
    if not decision.allowed:
        logger.warning("Login blocked for %s: %s", pseudonymize_ip(address), decision.reason)
    raise_for_decision(decision)
    return address


def check_username(address: str, username: str) -> None:
    """Per-username check once the request body has been parsed."""
    raise_for_decision(get_shield().evaluate(address, username))


def report_login_attempt(address: str, username: str, success: bool) -> AttemptResult:
    return get_shield().login_attempted(address, username, success)
