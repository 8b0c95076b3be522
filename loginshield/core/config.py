# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""loginshield configuration loader.

Loads the YAML configuration file, applies ``LOGINSHIELD_*`` environment
overrides and turns the ``lockout`` section into a validated LockoutPolicy.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from loginshield.core.errors import PolicyMisconfiguration

logger = logging.getLogger("loginshield.config")

_REQUIRED_KEYS = {"loginshield", "lockout"}
_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_VALID_BACKENDS = ("memory", "sql")

# env var -> dotted config key
_ENV_OVERRIDES = {
    "LOGINSHIELD_LOG_LEVEL": "loginshield.log_level",
    "LOGINSHIELD_DATA_DIR": "loginshield.data_dir",
    "LOGINSHIELD_STORAGE": "loginshield.storage",
    "LOGINSHIELD_DATABASE_URL": "loginshield.database_url",
    "LOGINSHIELD_CONNECTION_TYPE": "loginshield.connection_type",
    "LOGINSHIELD_MAX_FAILURES": "lockout.max_failures_before_lockout",
    "LOGINSHIELD_BASE_DURATION": "lockout.base_duration",
    "LOGINSHIELD_BAN_DURATION": "lockout.ban_duration",
}


@dataclass(frozen=True)
class LockoutPolicy:
    """Escalation policy parameters. Durations are in seconds."""

    max_failures_before_lockout: int = 5
    failure_window: float = 60 * 60
    base_duration: float = 60
    growth_factor: float = 2.0
    max_lock_duration: float = 24 * 60 * 60
    max_escalations_before_ban: int = 4
    ban_duration: Optional[float] = 7 * 24 * 60 * 60  # None = permanent
    cooldown_period: float = 24 * 60 * 60
    retention: float = 7 * 24 * 60 * 60
    track_usernames: bool = False

    def problems(self) -> list[str]:
        """Return a list of consistency problems (empty when valid)."""
        found: list[str] = []
        if self.max_failures_before_lockout < 1:
            found.append("max_failures_before_lockout must be >= 1")
        if self.failure_window <= 0:
            found.append("failure_window must be > 0")
        if self.base_duration <= 0:
            found.append("base_duration must be > 0")
        if self.growth_factor <= 1:
            found.append("growth_factor must be > 1")
        if self.max_lock_duration < self.base_duration:
            found.append("max_lock_duration must be >= base_duration")
        if self.max_escalations_before_ban < 1:
            found.append("max_escalations_before_ban must be >= 1")
        if self.ban_duration is not None and self.ban_duration <= 0:
            found.append("ban_duration must be > 0 (or null for permanent)")
        if self.cooldown_period < 0:
            found.append("cooldown_period must be >= 0")
        if self.retention < self.failure_window:
            found.append("retention must be >= failure_window")
        return found

    def validate(self) -> "LockoutPolicy":
        """Raise PolicyMisconfiguration if any parameter is inconsistent."""
        found = self.problems()
        if found:
            raise PolicyMisconfiguration(found)
        return self

    def lock_duration(self, escalation_level: int) -> float:
        """Lockout length for the given escalation level, capped.

        The cap is checked in log space first, so arbitrarily high levels
        never evaluate the power.
        """
        level = max(0, escalation_level)
        if self.base_duration <= 0 or self.growth_factor <= 1 or self.max_lock_duration <= self.base_duration:
            return min(self.base_duration, self.max_lock_duration)
        if level >= math.log(self.max_lock_duration / self.base_duration, self.growth_factor):
            return self.max_lock_duration
        return min(self.base_duration * self.growth_factor ** level, self.max_lock_duration)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockoutPolicy":
        """Build a policy from a config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown lockout settings: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_POLICY = LockoutPolicy()


def load_policy(data: Optional[dict[str, Any]]) -> LockoutPolicy:
    """Build a LockoutPolicy, falling back to built-in defaults when invalid.

    Misconfiguration is reported once here and never raised to callers.
    """
    if not data:
        return DEFAULT_POLICY
    try:
        return LockoutPolicy.from_dict(data).validate()
    except PolicyMisconfiguration as exc:
        logger.error("Lockout policy misconfigured (%s) - using built-in defaults", exc)
    except TypeError as exc:
        logger.error("Lockout policy has invalid value types (%s) - using built-in defaults", exc)
    return DEFAULT_POLICY


class ShieldConfig:
    """Central configuration manager.

    Reads a YAML file, overlays environment variables and exposes dotted-key
    access. A missing file yields an empty config, so every component runs on
    its defaults.
    """

    def __init__(self, config_path: str | Path = "config/default.yaml") -> None:
        self._config_path = Path(config_path)
        self._data: dict[str, Any] = {}
        self._policy: Optional[LockoutPolicy] = None
        self._load()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShieldConfig":
        """Build a config directly from a mapping (no file, no env)."""
        cfg = cls.__new__(cls)
        cfg._config_path = Path("<memory>")
        cfg._data = dict(data)
        cfg._policy = None
        return cfg

    def _load(self) -> None:
        self._policy = None
        if not self._config_path.exists():
            logger.warning("Config file not found: %s", self._config_path)
            self._data = {}
        else:
            raw = self._config_path.read_text(encoding="utf-8")
            self._data = yaml.safe_load(raw) or {}
        self._apply_env()

    def _apply_env(self) -> None:
        for env_name, key in _ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value is None or value == "":
                continue
            self._set(key, yaml.safe_load(value))

    def _set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        current = self._data
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a configuration value by dotted key path.

        Args:
            key: Dotted key path (e.g. 'lockout.base_duration').
            default: Fallback value if key is not found.
        """
        current: Any = self._data
        for part in key.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    @property
    def policy(self) -> LockoutPolicy:
        """The validated lockout policy (defaults when misconfigured)."""
        if self._policy is None:
            self._policy = load_policy(self.get("lockout"))
        return self._policy

    @property
    def data_dir(self) -> Path:
        return Path(self.get("loginshield.data_dir", "data"))

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL of the shared store; a SQLite file in data_dir by default."""
        url = self.get("loginshield.database_url")
        if url:
            return str(url)
        return f"sqlite:///{(self.data_dir / 'loginshield.db').as_posix()}"

    def reload(self) -> None:
        """Hot-reload configuration from disk.

        On validation failure the previous config is kept and the error logged.
        """
        old_data = self._data.copy()
        old_policy = self._policy
        self._load()
        try:
            self.validate()
            logger.info("Configuration reloaded from %s", self._config_path)
        except ValueError as e:
            logger.error("Config reload failed validation: %s - keeping previous config", e)
            self._data = old_data
            self._policy = old_policy

    def validate(self) -> bool:
        """Validate the structural parts of the configuration.

        Lockout policy values are not validated here; ``policy`` falls back
        to defaults instead.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self._data:
            raise ValueError("Configuration is empty or not loaded")

        missing = _REQUIRED_KEYS - set(self._data.keys())
        if missing:
            raise ValueError(f"Missing required config sections: {', '.join(sorted(missing))}")

        log_level = self.get("loginshield.log_level", "INFO")
        if log_level not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {log_level!r}")

        backend = self.get("loginshield.storage", "memory")
        if backend not in _VALID_BACKENDS:
            raise ValueError(f"Invalid storage backend: {backend!r} (expected memory/sql)")

        return True
