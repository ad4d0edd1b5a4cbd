"""Tests for the shared retry loop, backoff policies and duration parsing."""

import random

import pytest

from speedrun_core.backoff import (
    AI_POLICY,
    DEFAULT_POLICY,
    GITHUB_POLICY,
    BackoffConfig,
    BackoffPolicy,
    DeadlineExceeded,
    retry,
)
from speedrun_core.durations import parse_duration

NO_JITTER = BackoffPolicy(
    initial_interval=1.0,
    max_interval=4.0,
    multiplier=2.0,
    max_elapsed_time=20.0,
    randomization_factor=0.0,
)


class _FakeClock:
    """Monotonic clock that only advances when the retry loop sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _flaky(failures, exc=ConnectionError("boom"), result="ok"):
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc
        return result

    return operation, calls


class TestParseDuration:
    def test_plain_number_is_seconds(self):
        assert parse_duration(90) == 90.0
        assert parse_duration("2.5") == 2.5

    def test_units(self):
        assert parse_duration("90s") == 90
        assert parse_duration("2m") == 120
        assert parse_duration("7d") == 7 * 86400
        assert parse_duration("250ms") == 0.25

    def test_compound(self):
        assert parse_duration("1h30m") == 5400

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_duration("soon")
        with pytest.raises(ValueError):
            parse_duration("")
        with pytest.raises(ValueError):
            parse_duration("5x")


class TestBackoffPolicy:
    def test_intervals_grow_and_cap(self):
        waits = NO_JITTER.intervals()
        assert [next(waits) for _ in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_jitter_stays_within_factor(self):
        policy = BackoffPolicy(1.0, 10.0, 2.0, 60.0, 0.5)
        waits = policy.intervals(random.Random(7))
        first = next(waits)
        assert 0.5 <= first <= 1.5

    def test_with_defaults_fills_only_unset_fields(self):
        policy = BackoffPolicy(initial_interval=5.0).with_defaults(DEFAULT_POLICY)
        assert policy.initial_interval == 5.0
        assert policy.max_interval == DEFAULT_POLICY.max_interval
        assert policy.max_elapsed_time == DEFAULT_POLICY.max_elapsed_time


class TestBackoffConfig:
    def test_builtin_policies_without_config(self):
        cfg = BackoffConfig.from_config({})
        assert cfg.default == DEFAULT_POLICY
        assert cfg.github == GITHUB_POLICY
        assert cfg.ai == AI_POLICY

    def test_service_section_overrides_one_field(self):
        cfg = BackoffConfig.from_config({"ai": {"backoff": {"max_elapsed_time": "5m"}}})
        assert cfg.ai.max_elapsed_time == 300
        assert cfg.ai.initial_interval == AI_POLICY.initial_interval
        assert cfg.github == GITHUB_POLICY

    def test_global_section_applies_to_services(self):
        cfg = BackoffConfig.from_config({"backoff": {"max_elapsed_time": "10s"}})
        assert cfg.default.max_elapsed_time == 10
        assert cfg.github.max_elapsed_time == 10
        assert cfg.ai.max_elapsed_time == 10
        # Fields the global section does not set keep each service's built-ins.
        assert cfg.github.initial_interval == GITHUB_POLICY.initial_interval


class TestRetry:
    def test_returns_first_success_without_sleeping(self):
        clock = _FakeClock()
        op, calls = _flaky(0)
        assert retry(op, NO_JITTER, sleep=clock.sleep, clock=clock) == "ok"
        assert calls["n"] == 1
        assert clock.sleeps == []

    def test_retries_transient_failures(self):
        clock = _FakeClock()
        op, calls = _flaky(2)
        assert retry(op, NO_JITTER, sleep=clock.sleep, clock=clock) == "ok"
        assert calls["n"] == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_non_retryable_error_propagates_immediately(self):
        clock = _FakeClock()
        op, calls = _flaky(5, exc=ValueError("bad request"))
        with pytest.raises(ValueError):
            retry(op, NO_JITTER, retry_on=lambda e: isinstance(e, ConnectionError), sleep=clock.sleep, clock=clock)
        assert calls["n"] == 1

    def test_gives_up_after_max_elapsed_time(self):
        clock = _FakeClock()
        op, calls = _flaky(100)
        with pytest.raises(ConnectionError):
            retry(op, NO_JITTER, sleep=clock.sleep, clock=clock)
        # 1 + 2 + 4 + 4 + 4 + 4 = 19; the next 4s wait would pass 20s.
        assert clock.sleeps == [1.0, 2.0, 4.0, 4.0, 4.0, 4.0]
        assert calls["n"] == 7

    def test_caller_timeout_raises_deadline_exceeded(self):
        clock = _FakeClock()
        op, _ = _flaky(100)
        with pytest.raises(DeadlineExceeded) as exc_info:
            retry(op, NO_JITTER, timeout=2.5, description="search", sleep=clock.sleep, clock=clock)
        assert "search" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert clock.sleeps == [1.0]

    def test_timeout_longer_than_budget_keeps_policy_limit(self):
        clock = _FakeClock()
        op, _ = _flaky(100)
        with pytest.raises(ConnectionError):
            retry(op, NO_JITTER, timeout=1000, sleep=clock.sleep, clock=clock)
        assert sum(clock.sleeps) <= NO_JITTER.max_elapsed_time
