# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""loginshield admin API router.

Endpoints (all require the X-API-Key header):
  GET    /loginshield/blacklist              - list blacklist entries
  POST   /loginshield/blacklist              - ban an address or range
  DELETE /loginshield/blacklist?range=...    - unban a range
  GET    /loginshield/lockouts/{address}     - lockout state of an address
  GET    /loginshield/failures/{address}     - failures in the trailing window
  GET    /loginshield/events                 - recent notifications
  GET    /loginshield/status                 - component status
  POST   /loginshield/maintenance/run        - run maintenance jobs now
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response

from loginshield.api._limiter import limiter
from loginshield.api.dependencies import get_shield
from loginshield.api.models import (
    BanRequest,
    BlacklistEntryModel,
    BlacklistResponse,
    EventModel,
    FailureCountResponse,
    LockoutStateModel,
    UnbanResponse,
)
from loginshield.core.errors import InvalidAddress, StorageUnavailable
from loginshield.events.sink import EventKind
from loginshield.setup.ip_address import normalize_address

logger = logging.getLogger("loginshield.api")

admin_router = APIRouter(prefix="/loginshield", tags=["loginshield"])


def _check_auth(request: Request) -> None:
    """Check the X-API-Key header. Raises 401 when missing or wrong."""
    expected = os.getenv("LOGINSHIELD_API_KEY", "")
    provided = request.headers.get("X-API-Key", "")
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("ADMIN AUTH DENIED for %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


def _address_or_400(address: str) -> str:
    try:
        return normalize_address(address)
    except InvalidAddress as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ── Blacklist ─────────────────────────────────────────────────────────────────

@admin_router.get("/blacklist", response_model=BlacklistResponse)
@limiter.limit("60/minute")
async def list_blacklist(request: Request, response: Response, include_expired: bool = False):
    """List blacklist entries, ordered by address family and range start."""
    _check_auth(request)
    entries = get_shield().list_blacklist(include_expired=include_expired)
    return BlacklistResponse(
        total=len(entries),
        entries=[BlacklistEntryModel.from_entry(e) for e in entries],
    )


@admin_router.post("/blacklist", response_model=BlacklistEntryModel, status_code=201)
@limiter.limit("30/minute")
async def ban(request: Request, req: BanRequest, response: Response):
    """Ban an address or range. Re-banning refreshes the expiry."""
    _check_auth(request)
    try:
        entry = get_shield().ban(req.range, req.duration, comment=req.comment)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageUnavailable as exc:
        logger.error("Ban of %s failed: %s", req.range, exc)
        raise HTTPException(status_code=503, detail="Blacklist storage unavailable")
    logger.info("[Admin] Banned %s (%s)", entry.label, "permanent" if entry.is_permanent else f"{req.duration:.0f}s")
    return BlacklistEntryModel.from_entry(entry)


@admin_router.delete("/blacklist", response_model=UnbanResponse)
@limiter.limit("30/minute")
async def unban(request: Request, response: Response, range_spec: str = Query(..., alias="range")):
    """Remove every entry for exactly this range, whatever its reason."""
    _check_auth(request)
    try:
        removed = get_shield().unban(range_spec)
    except InvalidAddress as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except StorageUnavailable as exc:
        logger.error("Unban of %s failed: %s", range_spec, exc)
        raise HTTPException(status_code=503, detail="Blacklist storage unavailable")
    if not removed:
        raise HTTPException(status_code=404, detail=f"No blacklist entry for '{range_spec}'")
    return UnbanResponse(range=range_spec, removed=removed)


# ── Lockouts ──────────────────────────────────────────────────────────────────

@admin_router.get("/lockouts/{address}", response_model=LockoutStateModel)
@limiter.limit("60/minute")
async def get_lockout_state(address: str, request: Request, response: Response, username: str = ""):
    _check_auth(request)
    shield = get_shield()
    state = shield.get_lockout_state(_address_or_400(address), username)
    return LockoutStateModel.from_state(state, shield.now())


@admin_router.get("/failures/{address}", response_model=FailureCountResponse)
@limiter.limit("60/minute")
async def count_failures(
    address: str,
    request: Request,
    response: Response,
    window: Optional[float] = Query(None, gt=0),
):
    """Failed attempts from ``address`` in the trailing window (policy default)."""
    _check_auth(request)
    shield = get_shield()
    normalized = _address_or_400(address)
    window = shield.policy.failure_window if window is None else window
    return FailureCountResponse(
        address=normalized,
        window=window,
        failures=shield.count_failures(normalized, window),
    )


# ── Events & status ───────────────────────────────────────────────────────────

@admin_router.get("/events", response_model=list[EventModel])
@limiter.limit("60/minute")
async def recent_events(request: Request, response: Response, kind: Optional[str] = None, limit: int = Query(50, ge=1, le=1000)):
    _check_auth(request)
    try:
        wanted = EventKind(kind) if kind else None
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid kind '{kind}'. Valid: {[k.value for k in EventKind]}",
        )
    events = get_shield().recent_events(wanted)[-limit:]
    return [
        EventModel(
            kind=e.kind.value,
            severity=e.severity,
            remote_address=e.remote_address,
            username=e.username,
            message=e.message,
            extra=e.extra,
        )
        for e in events
    ]


@admin_router.get("/status")
@limiter.limit("30/minute")
async def status(request: Request, response: Response):
    _check_auth(request)
    return get_shield().get_status()


@admin_router.post("/maintenance/run")
@limiter.limit("5/minute")
async def run_maintenance(request: Request, response: Response):
    """Run all maintenance jobs immediately."""
    _check_auth(request)
    results = get_shield().run_maintenance(force=True)
    logger.info("[Admin] Maintenance run: %s", results)
    return {"results": results}
