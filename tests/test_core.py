"""Tests for loginshield core modules: ShieldLogger, ShieldConfig, LockoutPolicy."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from loginshield.core.clock import FakeClock
from loginshield.core.config import DEFAULT_POLICY, LockoutPolicy, ShieldConfig, load_policy
from loginshield.core.errors import InvalidAddress, PolicyMisconfiguration, ShieldError
from loginshield.core.logger import ShieldLogger, _redact_value, pseudonymize_ip


# -------------------------------------------------------------------------
# ShieldLogger Tests
# -------------------------------------------------------------------------

class TestShieldLogger:
    """Tests for the structured ShieldLogger."""

    def test_creates_logger_with_name(self) -> None:
        """The wrapped logger lives under the loginshield namespace."""
        log = ShieldLogger(name="test")
        assert log._logger.name == "loginshield.test"

    def test_default_level_is_info(self) -> None:
        log = ShieldLogger(name="test_default")
        assert log._logger.level == logging.INFO

    def test_custom_level(self) -> None:
        log = ShieldLogger(name="test_debug", level="DEBUG")
        assert log._logger.level == logging.DEBUG

    def test_context_fields_in_log(self, caplog) -> None:
        """Keyword context is rendered as key=value pairs."""
        log = ShieldLogger(name="test_ctx")
        with caplog.at_level(logging.INFO, logger="loginshield.test_ctx"):
            log.info("With context", ip="192.0.2.1", action="lockout")
        assert "ip=" in caplog.text
        assert "192.0.2.1" in caplog.text

    def test_security_event_severity_mapping(self, caplog) -> None:
        """high severity should be logged at ERROR."""
        log = ShieldLogger(name="test_sev")
        with caplog.at_level(logging.INFO, logger="loginshield.test_sev"):
            log.security_event("ban", "high", {"ip_address": "192.0.2.1"})
        assert caplog.records[-1].levelno == logging.ERROR
        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["event_type"] == "ban"
        assert payload["severity"] == "HIGH"

    def test_security_event_returns_record(self) -> None:
        log = ShieldLogger(name="test_ret")
        event = log.security_event("lockout", "medium", {"duration": 60})
        assert event["duration"] == 60
        assert event["component"] == "test_ret"
        assert "event_id" in event

    def test_redacts_sensitive_key(self) -> None:
        assert _redact_value("password", "hunter2") == "[REDACTED]"
        assert _redact_value("API_KEY", "abc") == "[REDACTED]"

    def test_does_not_redact_safe_values(self) -> None:
        assert _redact_value("username", "alice") == "alice"
        assert _redact_value("password", "") == ""

    def test_redaction_in_security_event(self, caplog) -> None:
        log = ShieldLogger(name="test_redact")
        with caplog.at_level(logging.INFO, logger="loginshield.test_redact"):
            log.security_event("login_failure", "low", {"username": "bob", "password": "s3cret"})
        assert "s3cret" not in caplog.text
        assert "[REDACTED]" in caplog.text

    def test_file_output(self, tmp_path: Path) -> None:
        """A log_dir yields both a text log and a JSONL events file."""
        log = ShieldLogger(name="file_test", log_dir=tmp_path)
        log.info("Test file output")
        log.security_event("lockout", "medium", {"ip_address": "192.0.2.1"})
        log.close()

        log_file = tmp_path / "loginshield-file_test.log"
        sec_file = tmp_path / "security_events.jsonl"
        assert log_file.exists()
        assert sec_file.exists()
        assert "Test file output" in log_file.read_text(encoding="utf-8")
        line = sec_file.read_text(encoding="utf-8").strip().splitlines()[-1]
        assert json.loads(line)["event_type"] == "lockout"


class TestPseudonymizeIp:

    def test_ipv4_last_octet_nulled(self) -> None:
        assert pseudonymize_ip("203.0.113.77") == "203.0.113.0"

    def test_ipv6_keeps_48(self) -> None:
        assert pseudonymize_ip("2001:db8:abcd:12::1") == "2001:db8:abcd::"

    def test_garbage_unchanged(self) -> None:
        assert pseudonymize_ip("not-an-ip") == "not-an-ip"


# -------------------------------------------------------------------------
# Errors
# -------------------------------------------------------------------------

class TestErrors:

    def test_invalid_address_is_value_error(self) -> None:
        err = InvalidAddress("999.1.1.1", "out of range")
        assert isinstance(err, ValueError)
        assert isinstance(err, ShieldError)
        assert "999.1.1.1" in str(err)
        assert err.address == "999.1.1.1"

    def test_policy_misconfiguration_lists_problems(self) -> None:
        err = PolicyMisconfiguration(["a is wrong", "b is wrong"])
        assert err.problems == ["a is wrong", "b is wrong"]
        assert "a is wrong; b is wrong" in str(err)


class TestFakeClock:

    def test_advance(self) -> None:
        clock = FakeClock(start=100.0)
        assert clock() == 100.0
        assert clock.advance(5) == 105.0
        assert clock() == 105.0


# -------------------------------------------------------------------------
# LockoutPolicy Tests
# -------------------------------------------------------------------------

class TestLockoutPolicy:

    def test_defaults_are_valid(self) -> None:
        assert DEFAULT_POLICY.problems() == []

    def test_lock_duration_grows_and_caps(self) -> None:
        policy = LockoutPolicy(base_duration=60, growth_factor=2, max_lock_duration=300)
        assert policy.lock_duration(0) == 60
        assert policy.lock_duration(1) == 120
        assert policy.lock_duration(2) == 240
        assert policy.lock_duration(3) == 300
        assert policy.lock_duration(10) == 300

    def test_lock_duration_at_extreme_levels(self) -> None:
        """Levels far past the float range still return the cap."""
        policy = LockoutPolicy(max_lock_duration=300, max_escalations_before_ban=100000)
        assert policy.lock_duration(1100) == 300
        assert policy.lock_duration(10**9) == 300
        assert policy.lock_duration(-3) == 60

    def test_lock_duration_when_base_equals_cap(self) -> None:
        policy = LockoutPolicy(base_duration=60, max_lock_duration=60)
        assert policy.lock_duration(0) == 60
        assert policy.lock_duration(5) == 60

    @pytest.mark.parametrize("kwargs", [
        {"max_failures_before_lockout": 0},
        {"growth_factor": 1.0},
        {"base_duration": 600, "max_lock_duration": 60},
        {"base_duration": -1},
        {"max_escalations_before_ban": 0},
        {"ban_duration": 0},
    ])
    def test_validate_rejects(self, kwargs) -> None:
        with pytest.raises(PolicyMisconfiguration):
            LockoutPolicy(**kwargs).validate()

    def test_from_dict_ignores_unknown(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="loginshield.config"):
            policy = LockoutPolicy.from_dict({"base_duration": 30, "bogus": 1})
        assert policy.base_duration == 30
        assert "bogus" in caplog.text

    def test_load_policy_falls_back_to_defaults(self, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="loginshield.config"):
            policy = load_policy({"growth_factor": 0.5})
        assert policy == DEFAULT_POLICY
        assert "growth_factor" in caplog.text

    def test_load_policy_bad_types(self) -> None:
        assert load_policy({"max_failures_before_lockout": "five"}) == DEFAULT_POLICY

    def test_load_policy_empty(self) -> None:
        assert load_policy(None) is DEFAULT_POLICY

    def test_permanent_ban_allowed(self) -> None:
        assert load_policy({"ban_duration": None}).ban_duration is None


# -------------------------------------------------------------------------
# ShieldConfig Tests
# -------------------------------------------------------------------------

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


class TestShieldConfig:
    """Tests for the ShieldConfig configuration manager."""

    def test_loads_config(self) -> None:
        cfg = ShieldConfig(config_path=CONFIG_PATH)
        assert cfg._data != {}
        assert cfg.validate() is True

    def test_get_dotted_key(self) -> None:
        cfg = ShieldConfig(config_path=CONFIG_PATH)
        assert cfg.get("loginshield.log_level") == "INFO"
        assert cfg.get("lockout.max_failures_before_lockout") == 5

    def test_get_missing_key_returns_default(self) -> None:
        cfg = ShieldConfig(config_path=CONFIG_PATH)
        assert cfg.get("nonexistent.key") is None
        assert cfg.get("nonexistent.key", "fallback") == "fallback"

    def test_policy_from_file(self) -> None:
        cfg = ShieldConfig(config_path=CONFIG_PATH)
        assert cfg.policy.base_duration == 60
        assert cfg.policy.growth_factor == 2.0

    def test_config_nonexistent_file(self, tmp_path: Path) -> None:
        cfg = ShieldConfig(config_path=tmp_path / "missing.yaml")
        assert cfg.get("loginshield") is None
        assert cfg.policy == DEFAULT_POLICY

    def test_validate_empty_config(self) -> None:
        cfg = ShieldConfig.from_dict({})
        with pytest.raises(ValueError, match="empty"):
            cfg.validate()

    def test_validate_missing_sections(self) -> None:
        cfg = ShieldConfig.from_dict({"loginshield": {}})
        with pytest.raises(ValueError, match="lockout"):
            cfg.validate()

    def test_validate_bad_backend(self) -> None:
        cfg = ShieldConfig.from_dict({"loginshield": {"storage": "redis"}, "lockout": {}})
        with pytest.raises(ValueError, match="storage"):
            cfg.validate()

    def test_env_override(self, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "cfg.yaml"
        path.write_text("loginshield:\n  log_level: INFO\nlockout:\n  base_duration: 60\n", encoding="utf-8")
        monkeypatch.setenv("LOGINSHIELD_BASE_DURATION", "15")
        monkeypatch.setenv("LOGINSHIELD_STORAGE", "memory")
        cfg = ShieldConfig(config_path=path)
        assert cfg.get("lockout.base_duration") == 15
        assert cfg.policy.base_duration == 15
        assert cfg.get("loginshield.storage") == "memory"

    def test_database_url_defaults_to_sqlite_in_data_dir(self, tmp_path: Path) -> None:
        cfg = ShieldConfig.from_dict({"loginshield": {"data_dir": str(tmp_path)}, "lockout": {}})
        assert cfg.database_url == f"sqlite:///{(tmp_path / 'loginshield.db').as_posix()}"

    def test_database_url_from_env(self, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "cfg.yaml"
        path.write_text("loginshield:\n  storage: sql\nlockout: {}\n", encoding="utf-8")
        monkeypatch.setenv("LOGINSHIELD_DATABASE_URL", "postgresql://shield:secret@db/loginshield")
        cfg = ShieldConfig(config_path=path)
        assert cfg.database_url == "postgresql://shield:secret@db/loginshield"
        assert cfg.validate() is True

    def test_reload_keeps_old_config_on_invalid(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yaml"
        path.write_text("loginshield:\n  log_level: INFO\nlockout:\n  base_duration: 60\n", encoding="utf-8")
        cfg = ShieldConfig(config_path=path)
        path.write_text("loginshield:\n  log_level: LOUD\nlockout: {}\n", encoding="utf-8")
        cfg.reload()
        assert cfg.get("loginshield.log_level") == "INFO"
        assert cfg.policy.base_duration == 60

    def test_reload_applies_valid_changes(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yaml"
        path.write_text("loginshield:\n  log_level: INFO\nlockout:\n  base_duration: 60\n", encoding="utf-8")
        cfg = ShieldConfig(config_path=path)
        assert cfg.policy.base_duration == 60
        path.write_text("loginshield:\n  log_level: DEBUG\nlockout:\n  base_duration: 30\n", encoding="utf-8")
        cfg.reload()
        assert cfg.get("loginshield.log_level") == "DEBUG"
        assert cfg.policy.base_duration == 30
