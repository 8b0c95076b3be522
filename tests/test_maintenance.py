"""Tests for maintenance jobs and the polling schedule."""

from __future__ import annotations

import pytest

from loginshield.core.clock import FakeClock
from loginshield.maintenance import (
    RECUR_DAILY,
    RECUR_HOURLY,
    RECUR_TWICEDAILY,
    MaintenanceJob,
    MaintenanceSchedule,
)


class TestMaintenanceJob:

    def test_unknown_recurrence(self) -> None:
        with pytest.raises(ValueError, match="weekly"):
            MaintenanceJob("x", lambda: None, "weekly")

    def test_intervals(self) -> None:
        assert MaintenanceJob("h", lambda: None, RECUR_HOURLY).interval == 3600
        assert MaintenanceJob("t", lambda: None, RECUR_TWICEDAILY).interval == 43200
        assert MaintenanceJob("d", lambda: None, RECUR_DAILY).interval == 86400

    def test_due_until_first_run(self) -> None:
        job = MaintenanceJob("h", lambda: 1, RECUR_HOURLY)
        assert job.is_due(0)
        assert job.next_run() is None
        job.run(100)
        assert not job.is_due(3699)
        assert job.is_due(3700)
        assert job.next_run() == 3700

    def test_failing_job_is_contained(self) -> None:
        def _boom():
            raise RuntimeError("boom")

        job = MaintenanceJob("boom", _boom, RECUR_HOURLY)
        assert job.run(0) is None
        assert job.last_error == "boom"
        assert job.last_run == 0


class TestMaintenanceSchedule:

    def test_run_pending(self) -> None:
        clock = FakeClock(start=0)
        calls: list[str] = []
        schedule = MaintenanceSchedule(clock=clock)
        schedule.add(MaintenanceJob("hourly", lambda: calls.append("h") or 1, RECUR_HOURLY))
        schedule.add(MaintenanceJob("daily", lambda: calls.append("d") or 2, RECUR_DAILY))

        assert schedule.run_pending() == {"hourly": 1, "daily": 2}
        assert schedule.run_pending() == {}
        clock.advance(3600)
        assert schedule.run_pending() == {"hourly": 1}
        assert schedule.run_pending(now=86400) == {"hourly": 1, "daily": 2}
        assert calls == ["h", "d", "h", "h", "d"]

    def test_run_all_ignores_schedule(self) -> None:
        schedule = MaintenanceSchedule(clock=FakeClock(start=0))
        schedule.add(MaintenanceJob("a", lambda: "ok", RECUR_DAILY))
        schedule.run_pending()
        assert schedule.run_all() == {"a": "ok"}

    def test_status(self) -> None:
        schedule = MaintenanceSchedule(clock=FakeClock(start=0))
        schedule.add(MaintenanceJob("a", lambda: None, RECUR_HOURLY))
        schedule.run_pending()
        status = schedule.status()
        assert status == [{
            "name": "a", "recurrence": "hourly", "last_run": 0,
            "next_run": 3600, "last_error": "",
        }]
