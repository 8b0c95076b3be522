# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>

"""Shared slowapi Limiter instance, imported by server.py and the admin router.

Requests are keyed by the client address the bouncer middleware resolved
(proxy headers honoured per connection type), or by the socket peer when
the middleware did not run.
"""

from starlette.requests import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def client_key(request: Request) -> str:
    resolved = getattr(request.state, "client_address", "")
    return resolved or get_remote_address(request)


limiter = Limiter(key_func=client_key)
