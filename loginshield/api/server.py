# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""loginshield API server.

FastAPI application exposing the admin API, with the bouncer middleware
guarding every route. Serve it with any ASGI server, e.g.:

    uvicorn loginshield.api.server:create_app --factory
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from loginshield.api._limiter import limiter
from loginshield.api.admin_router import admin_router
from loginshield.api.dependencies import bouncer_middleware, set_shield
from loginshield.core.config import ShieldConfig
from loginshield.shield import LoginShield

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

logger = logging.getLogger("loginshield.api")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_app(shield: Optional[LoginShield] = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        shield: Ready LoginShield, left open on shutdown. When omitted,
            ``.env`` is loaded, the shield is built from ``LOGINSHIELD_CONFIG``
            (default ``config/default.yaml`` under the project root) and
            closed when the app shuts down.
    """
    owns_shield = shield is None
    if shield is None:
        load_dotenv(PROJECT_ROOT / ".env")
        config_path = os.environ.get("LOGINSHIELD_CONFIG", str(PROJECT_ROOT / "config" / "default.yaml"))
        config = ShieldConfig(config_path)
        _configure_logging(config.get("loginshield.log_level", "INFO"))
        shield = LoginShield(config)

    if not os.environ.get("LOGINSHIELD_API_KEY"):
        logger.warning("LOGINSHIELD_API_KEY not set, admin endpoints will reject every request")

    set_shield(shield)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Shutdown: close the shield this app built."""
        yield
        if owns_shield:
            shield.close()

    app = FastAPI(
        title="loginshield API",
        description="Brute-force login protection and IP blacklist administration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.state.shield = shield
    app.middleware("http")(bouncer_middleware)
    app.include_router(admin_router)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning("RATE LIMIT on %s", request.url.path)
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded. Try again later.", "retry_after": str(exc.detail)},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    logger.info("loginshield API ready")
    return app
