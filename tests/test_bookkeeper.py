"""Tests for the AttemptBookkeeper."""

from __future__ import annotations

import threading

import pytest

from loginshield.core.clock import FakeClock
from loginshield.core.config import LockoutPolicy
from loginshield.core.errors import InvalidAddress
from loginshield.login.bookkeeper import AttemptBookkeeper, username_key
from loginshield.login.models import Outcome
from loginshield.storage.sql import Database, SqlAttemptLog, SqlStateStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bookkeeper(clock: FakeClock) -> AttemptBookkeeper:
    return AttemptBookkeeper(LockoutPolicy(failure_window=600, retention=3600), clock=clock)


class TestRecord:

    def test_failure_increments(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        state = bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        assert state.failure_count == 1
        assert state.last_failure_at == clock()
        assert state.last_username == "alice"
        state = bookkeeper.record("192.0.2.1", "alice", "failure")
        assert state.failure_count == 2

    def test_success_resets_count_and_lock(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)

        def _lock(state):
            state.locked_until = clock() + 60
            state.escalation_level = 1
            return state

        bookkeeper.update_state("192.0.2.1", "192.0.2.1", _lock)
        state = bookkeeper.record("192.0.2.1", "alice", Outcome.SUCCESS)
        assert state.failure_count == 0
        assert state.locked_until is None
        # Escalation only decays through the cool-down
        assert state.escalation_level == 1

    def test_invalid_address_records_nothing(self, bookkeeper: AttemptBookkeeper) -> None:
        with pytest.raises(InvalidAddress):
            bookkeeper.record("not-an-ip", "alice", Outcome.FAILURE)
        assert len(bookkeeper.states) == 0
        assert len(bookkeeper.history) == 0

    def test_invalid_outcome(self, bookkeeper: AttemptBookkeeper) -> None:
        with pytest.raises(ValueError):
            bookkeeper.record("192.0.2.1", "alice", "maybe")

    def test_address_is_normalized(self, bookkeeper: AttemptBookkeeper) -> None:
        bookkeeper.record("::ffff:192.0.2.1", "alice", Outcome.FAILURE)
        assert bookkeeper.get_state("192.0.2.1").failure_count == 1

    def test_stale_failures_do_not_accumulate(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        clock.advance(601)
        assert bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE).failure_count == 1

    def test_per_username_keys(self, clock: FakeClock) -> None:
        keeper = AttemptBookkeeper(LockoutPolicy(track_usernames=True), clock=clock)
        keeper.record("192.0.2.1", "Alice", Outcome.FAILURE)
        keeper.record("192.0.2.1", "bob", Outcome.FAILURE)
        assert keeper.get_state("192.0.2.1").failure_count == 2
        assert keeper.get_state("192.0.2.1", "alice").failure_count == 1
        assert set(keeper.states.snapshot()) == {
            "192.0.2.1", username_key("192.0.2.1", "alice"), username_key("192.0.2.1", "bob"),
        }

    def test_usernames_not_tracked_by_default(self, bookkeeper: AttemptBookkeeper) -> None:
        bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        assert list(bookkeeper.states.snapshot()) == ["192.0.2.1"]

    def test_concurrent_failures_converge(self, bookkeeper: AttemptBookkeeper) -> None:
        def _hammer() -> None:
            for _ in range(50):
                bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)

        threads = [threading.Thread(target=_hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert bookkeeper.get_state("192.0.2.1").failure_count == 400
        assert len(bookkeeper.get_attempts("192.0.2.1")) == 400


class TestFailureCount:

    def test_windowed_count(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        clock.advance(100)
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        bookkeeper.record("192.0.2.1", "a", Outcome.SUCCESS)
        clock.advance(100)
        assert bookkeeper.get_failure_count("192.0.2.1", window=150) == 1
        assert bookkeeper.get_failure_count("192.0.2.1", window=300) == 2
        assert bookkeeper.get_failure_count("192.0.2.1") == 2

    def test_count_by_username(self, bookkeeper: AttemptBookkeeper) -> None:
        bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        bookkeeper.record("192.0.2.1", "bob", Outcome.FAILURE)
        assert bookkeeper.get_failure_count("192.0.2.1", username="ALICE") == 1

    def test_unknown_address(self, bookkeeper: AttemptBookkeeper) -> None:
        assert bookkeeper.get_failure_count("192.0.2.99") == 0
        assert bookkeeper.get_attempts("192.0.2.99") == []


class TestCooldownAndReset:

    def test_apply_cooldown(self, clock: FakeClock) -> None:
        keeper = AttemptBookkeeper(LockoutPolicy(cooldown_period=1000), clock=clock)
        keeper.record("192.0.2.1", "a", Outcome.FAILURE)

        def _escalate(state):
            state.escalation_level = 2
            return state

        keeper.update_state("192.0.2.1", "192.0.2.1", _escalate)
        assert keeper.apply_cooldown("192.0.2.1", "192.0.2.1", clock() + 999).escalation_level == 2
        state = keeper.apply_cooldown("192.0.2.1", "192.0.2.1", clock() + 1000)
        assert state.escalation_level == 0
        assert keeper.get_state("192.0.2.1").escalation_level == 0

    def test_cooldown_does_not_write_unknown_key(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        state = bookkeeper.apply_cooldown("192.0.2.7", "192.0.2.7", clock())
        assert state.failure_count == 0
        assert len(bookkeeper.states) == 0

    def test_reset(self, clock: FakeClock) -> None:
        keeper = AttemptBookkeeper(LockoutPolicy(track_usernames=True), clock=clock)
        keeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        keeper.record("192.0.2.10", "alice", Outcome.FAILURE)
        assert keeper.reset("192.0.2.1") == 2
        assert keeper.get_state("192.0.2.1").failure_count == 0
        assert keeper.get_state("192.0.2.10").failure_count == 1


class TestPrune:

    def test_prune_drops_old_records(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        clock.advance(3000)
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        clock.advance(1000)
        assert bookkeeper.prune() == 1
        assert len(bookkeeper.get_attempts("192.0.2.1")) == 1

    def test_prune_explicit_horizon(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        bookkeeper.record("192.0.2.2", "a", Outcome.FAILURE)
        assert bookkeeper.prune(older_than=clock() + 1) == 2
        assert len(bookkeeper.history) == 0

    def test_prune_keeps_counters(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)

        def _lock(state):
            state.locked_until = clock() + 10_000
            state.escalation_level = 1
            return state

        bookkeeper.update_state("192.0.2.1", "192.0.2.1", _lock)
        clock.advance(4000)
        bookkeeper.prune()
        assert bookkeeper.get_state("192.0.2.1").escalation_level == 1

    def test_prune_drops_idle_states(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        clock.advance(4000)
        bookkeeper.prune()
        assert len(bookkeeper.states) == 0

    def test_concurrent_record_and_prune(self, bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        stop = threading.Event()

        def _pruner() -> None:
            while not stop.is_set():
                bookkeeper.prune()

        pruner = threading.Thread(target=_pruner)
        pruner.start()
        try:
            for _ in range(200):
                bookkeeper.record("192.0.2.1", "a", Outcome.FAILURE)
        finally:
            stop.set()
            pruner.join()
        assert len(bookkeeper.get_attempts("192.0.2.1")) == 200
        assert bookkeeper.get_state("192.0.2.1").failure_count == 200


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class TestSqlBackend:

    @pytest.fixture
    def sql_bookkeeper(self, tmp_path, clock: FakeClock) -> AttemptBookkeeper:
        database = Database(f"sqlite:///{(tmp_path / 'shield.db').as_posix()}")
        yield AttemptBookkeeper(
            LockoutPolicy(failure_window=600, retention=3600),
            states=SqlStateStore(database, "lockouts"),
            history=SqlAttemptLog(database),
            clock=clock,
        )
        database.close()

    def test_windowed_count_and_prune(self, sql_bookkeeper: AttemptBookkeeper, clock: FakeClock) -> None:
        sql_bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        clock.advance(700)
        sql_bookkeeper.record("192.0.2.1", "Alice", Outcome.FAILURE)
        sql_bookkeeper.record("192.0.2.1", "bob", Outcome.FAILURE)
        assert sql_bookkeeper.get_failure_count("192.0.2.1") == 2
        assert sql_bookkeeper.get_failure_count("192.0.2.1", window=1000, username="ALICE") == 2
        clock.advance(3000)
        assert sql_bookkeeper.prune() == 1
        assert len(sql_bookkeeper.get_attempts("192.0.2.1")) == 2

    def test_state_round_trips_through_database(self, sql_bookkeeper: AttemptBookkeeper) -> None:
        for _ in range(3):
            sql_bookkeeper.record("192.0.2.1", "alice", Outcome.FAILURE)
        state = sql_bookkeeper.get_state("192.0.2.1")
        assert state.failure_count == 3
        assert state.last_username == "alice"
        assert sql_bookkeeper.reset("192.0.2.1") == 1
        assert sql_bookkeeper.get_state("192.0.2.1").failure_count == 0
