# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""loginshield structured logging.

Thin wrapper over the standard ``logging`` module that adds key/value
context, redaction of credentials that end up in login payloads, and a
dedicated JSONL file for security events (lockouts, bans, degraded storage).
"""

from __future__ import annotations

import ipaddress
import json
import logging
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

_SENSITIVE_KEYS = frozenset({
    "password", "passwd", "pwd", "pass", "secret", "token", "api_key",
    "apikey", "authorization", "cookie", "credential", "session",
})

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


def pseudonymize_ip(ip: str) -> str:
    """Blank the host part of an address for free-text log lines.

    IPv4 keeps the /24 (last octet nulled), IPv6 keeps the /48.
    Unparseable input is returned unchanged.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    prefix = 24 if addr.version == 4 else 48
    net = ipaddress.ip_network(f"{addr}/{prefix}", strict=False)
    return str(net.network_address)


def _redact_value(key: str, value: Any) -> Any:
    """Redact values stored under credential-like keys."""
    if key.lower() in _SENSITIVE_KEYS and value not in (None, ""):
        return "[REDACTED]"
    return value


class ShieldLogger:
    """Structured logger for loginshield components.

    Every instance writes to ``loginshield.<name>``; when ``log_dir`` is
    given, plain lines go to ``loginshield-<name>.log`` and security events
    additionally to ``security_events.jsonl``.
    """

    def __init__(
        self,
        name: str = "shield",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ) -> None:
        self._name = name
        self._logger = logging.getLogger(f"loginshield.{name}")
        self._logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        self._events_handler: Optional[logging.Handler] = None

        if log_dir:
            log_dir = Path(log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            fmt = logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            # Only add handlers once per logger name
            if not self._logger.handlers:
                file_handler = RotatingFileHandler(
                    log_dir / f"loginshield-{name}.log",
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                file_handler.setFormatter(fmt)
                self._logger.addHandler(file_handler)

            self._events_handler = RotatingFileHandler(
                log_dir / "security_events.jsonl",
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            self._events_handler.setFormatter(logging.Formatter("%(message)s"))

    @property
    def name(self) -> str:
        return self._name

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context)

    def security_event(self, event_type: str, severity: str, details: dict[str, Any]) -> dict[str, Any]:
        """Log a structured security event and return the emitted record.

        Args:
            event_type: Event identifier (e.g. 'lockout', 'ban').
            severity: low, medium, high or critical.
            details: Event-specific fields; credential-like keys are redacted.

        Returns:
            The JSON-serializable event dict that was written.
        """
        event = {
            "event_id": str(uuid.uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": self._name,
            "event_type": event_type,
            "severity": severity.upper(),
            **{k: _redact_value(k, v) for k, v in details.items()},
        }
        level = _SEVERITY_LEVELS.get(severity.lower(), logging.WARNING)
        line = json.dumps(event, ensure_ascii=False, default=str)
        self._logger.log(level, line)

        if self._events_handler is not None:
            record = logging.LogRecord(
                name="security", level=level, pathname="", lineno=0,
                msg=line, args=(), exc_info=None,
            )
            self._events_handler.emit(record)
        return event

    def close(self) -> None:
        """Release the events file handle."""
        if self._events_handler is not None:
            self._events_handler.close()
            self._events_handler = None

    def _log(self, level: int, message: str, context: dict[str, Any]) -> None:
        if context:
            ctx = " ".join(f"{k}={_redact_value(k, v)!r}" for k, v in context.items())
            self._logger.log(level, "%s | %s", message, ctx)
        else:
            self._logger.log(level, message)
