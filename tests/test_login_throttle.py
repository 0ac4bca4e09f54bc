"""Tests for per-username login throttling.

Attempts are counted in fixed windows, in Redis when it is reachable and in
process otherwise.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from churchregistry.service.login_throttle import LocalAttemptCounter, LoginThrottle
from churchregistry.service.runtime import reset_runtime_for_tests
from churchregistry.storage.redis_throttle import RedisAttemptCounter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakePipeline:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, *args, **kwargs):
        self.calls.append(("set", args, kwargs))

    def incr(self, *args):
        self.calls.append(("incr", args, {}))

    def ttl(self, *args):
        self.calls.append(("ttl", args, {}))

    async def execute(self):
        return self.results


def _redis_counter(results):
    counter = RedisAttemptCounter.__new__(RedisAttemptCounter)
    counter.redis_url = "redis://localhost:6379/0"
    counter.client = MagicMock()
    pipe = FakePipeline(results)
    counter.client.pipeline = MagicMock(return_value=pipe)
    return counter, pipe


class TestLocalAttemptCounter:
    def test_counts_within_window(self):
        clock = FakeClock()
        counter = LocalAttemptCounter(clock=clock)

        assert counter.record_attempt("ada", 60) == (1, 60)
        clock.now += 15
        assert counter.record_attempt("ada", 60) == (2, 45)

    def test_window_does_not_slide(self):
        clock = FakeClock()
        counter = LocalAttemptCounter(clock=clock)
        counter.record_attempt("ada", 60)
        clock.now += 59
        counter.record_attempt("ada", 60)

        clock.now += 1
        assert counter.record_attempt("ada", 60) == (1, 60)

    def test_usernames_are_independent(self):
        counter = LocalAttemptCounter(clock=FakeClock())
        counter.record_attempt("ada", 60)
        counter.record_attempt("ada", 60)

        assert counter.record_attempt("bola", 60)[0] == 1

    def test_closed_windows_are_pruned(self):
        clock = FakeClock()
        counter = LocalAttemptCounter(clock=clock)
        with patch("churchregistry.service.login_throttle._PRUNE_THRESHOLD", 3):
            for name in ("a", "b", "c"):
                counter.record_attempt(name, 60)
            clock.now += 61
            counter.record_attempt("d", 60)

        assert len(counter) == 1


class TestLoginThrottle:
    async def test_eleventh_attempt_is_refused(self):
        throttle = LoginThrottle(10, local=LocalAttemptCounter(clock=FakeClock()))

        decisions = [await throttle.hit("ada") for _ in range(11)]

        assert all(decision.allowed for decision in decisions[:10])
        assert decisions[0].remaining == 9
        assert decisions[9].remaining == 0
        refused = decisions[10]
        assert refused.allowed is False
        assert refused.reset_seconds == 60

    async def test_username_case_shares_a_count(self):
        throttle = LoginThrottle(2, local=LocalAttemptCounter(clock=FakeClock()))
        await throttle.hit("Ada")
        await throttle.hit("ADA")

        assert (await throttle.hit("ada")).allowed is False

    async def test_non_positive_limit_disables_throttling(self):
        throttle = LoginThrottle(0)

        for _ in range(50):
            assert (await throttle.hit("ada")).allowed is True
        assert len(throttle.local) == 0

    def test_window_must_be_positive(self):
        with pytest.raises(ValueError):
            LoginThrottle(10, window_seconds=0)

    async def test_counts_go_to_redis_when_present(self):
        redis = MagicMock()
        redis.record_attempt = AsyncMock(return_value=(3, 42))
        throttle = LoginThrottle(10, redis=redis)

        decision = await throttle.hit("Ada")

        redis.record_attempt.assert_awaited_once_with("ada", 60)
        assert (decision.allowed, decision.remaining, decision.reset_seconds) == (True, 7, 42)
        assert len(throttle.local) == 0

    async def test_redis_failure_falls_back_to_local_counts(self):
        redis = MagicMock()
        redis.record_attempt = AsyncMock(side_effect=RedisConnectionError("down"))
        throttle = LoginThrottle(1, redis=redis, local=LocalAttemptCounter(clock=FakeClock()))

        with patch("churchregistry.service.login_throttle.logger") as mock_logger:
            first = await throttle.hit("ada")
            second = await throttle.hit("ada")

        assert first.allowed is True
        assert second.allowed is False
        assert mock_logger.warning.call_args[0][0] == "login_throttle_redis_failed"


class TestRedisAttemptCounter:
    def test_keys_hide_usernames(self):
        key = RedisAttemptCounter.attempts_key("ada")
        assert key.startswith("login_attempts:")
        assert "ada" not in key
        assert RedisAttemptCounter.attempts_key("a:b") != RedisAttemptCounter.attempts_key("a_b")

    async def test_first_attempt_opens_window(self):
        counter, pipe = _redis_counter([True, 1, 60])

        assert await counter.record_attempt("ada", 60) == (1, 60)

        key = RedisAttemptCounter.attempts_key("ada")
        counter.client.pipeline.assert_called_once_with(transaction=True)
        assert pipe.calls == [
            ("set", (key, 0), {"ex": 60, "nx": True}),
            ("incr", (key,), {}),
            ("ttl", (key,), {}),
        ]

    async def test_missing_ttl_reports_full_window(self):
        counter, _ = _redis_counter([None, 4, -1])

        assert await counter.record_attempt("ada", 60) == (4, 60)


class TestRuntimeWithoutRedis:
    def test_unreachable_redis_is_not_fatal(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://redis.invalid:6379/0")

        def unreachable(self):
            raise RedisConnectionError("no route to host")

        monkeypatch.setattr(RedisAttemptCounter, "verify_connection", unreachable)

        runtime = reset_runtime_for_tests()

        assert runtime.redis is None
        assert runtime.login_throttle.redis is None

    def test_empty_redis_url_uses_local_counts(self):
        runtime = reset_runtime_for_tests()

        assert runtime.redis is None
        assert runtime.login_throttle.limit == runtime.settings.login_rate_limit_per_minute
