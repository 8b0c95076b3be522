# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Periodic maintenance jobs.

No thread is started here. The host's scheduler (cron, APScheduler, a
systemd timer, ...) calls ``MaintenanceSchedule.run_pending()`` as often as
it likes; each job runs at most once per recurrence interval.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loginshield.core.clock import Clock, system_clock

logger = logging.getLogger("loginshield.maintenance")

RECUR_HOURLY = "hourly"
RECUR_TWICEDAILY = "twicedaily"
RECUR_DAILY = "daily"

RECURRENCES: dict[str, int] = {
    RECUR_HOURLY: 60 * 60,
    RECUR_TWICEDAILY: 12 * 60 * 60,
    RECUR_DAILY: 24 * 60 * 60,
}


@dataclass
class MaintenanceJob:
    """A named callable with a recurrence."""

    name: str
    action: Callable[[], Any]
    recurrence: str = RECUR_DAILY
    last_run: Optional[float] = None
    last_result: Any = None
    last_error: str = ""

    def __post_init__(self) -> None:
        if self.recurrence not in RECURRENCES:
            raise ValueError(
                f"Unknown recurrence {self.recurrence!r} "
                f"(expected one of: {', '.join(RECURRENCES)})"
            )

    @property
    def interval(self) -> int:
        return RECURRENCES[self.recurrence]

    def next_run(self) -> Optional[float]:
        if self.last_run is None:
            return None
        return self.last_run + self.interval

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now >= self.last_run + self.interval

    def run(self, now: float) -> Any:
        """Run the action and remember when. Errors are logged, not raised."""
        self.last_run = now
        try:
            self.last_result = self.action()
            self.last_error = ""
        except Exception as exc:
            self.last_result = None
            self.last_error = str(exc)
            logger.error("Maintenance job %s failed: %s", self.name, exc)
            return None
        logger.info("Maintenance job %s finished: %s", self.name, self.last_result)
        return self.last_result


@dataclass
class MaintenanceSchedule:
    jobs: dict[str, MaintenanceJob] = field(default_factory=dict)
    clock: Clock = system_clock
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, job: MaintenanceJob) -> MaintenanceJob:
        with self._lock:
            self.jobs[job.name] = job
        return job

    def run_pending(self, now: Optional[float] = None) -> dict[str, Any]:
        """Run every job whose interval has elapsed.

        Returns:
            Mapping of job name to its result for the jobs that ran.
        """
        now = self.clock() if now is None else now
        results: dict[str, Any] = {}
        with self._lock:
            for job in self.jobs.values():
                if job.is_due(now):
                    results[job.name] = job.run(now)
        return results

    def run_all(self, now: Optional[float] = None) -> dict[str, Any]:
        """Run every job regardless of its schedule."""
        now = self.clock() if now is None else now
        with self._lock:
            return {job.name: job.run(now) for job in self.jobs.values()}

    def status(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": job.name,
                    "recurrence": job.recurrence,
                    "last_run": job.last_run,
                    "next_run": job.next_run(),
                    "last_error": job.last_error,
                }
                for job in self.jobs.values()
            ]
