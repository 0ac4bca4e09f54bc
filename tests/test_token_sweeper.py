"""Tests for the background refresh token sweeper."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from churchregistry.service.token_sweeper import RefreshTokenSweeper
from churchregistry.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("sweeper-user")


class TestSweepOnce:
    async def test_removes_only_expired_tokens(self, memory_store, user):
        now = datetime.now(timezone.utc)
        expired = memory_store.create_refresh_token(user.id, 5, now=now - timedelta(hours=1))
        live = memory_store.create_refresh_token(user.id, 60, now=now)
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=60)

        removed = await sweeper.sweep_once(now)

        assert removed == 1
        assert memory_store.get_refresh_token(expired.value) is None
        assert memory_store.get_refresh_token(live.value) is not None

    async def test_nothing_to_remove(self, memory_store, user):
        memory_store.create_refresh_token(user.id, 60)
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=60)

        assert await sweeper.sweep_once() == 0

    def test_interval_must_be_positive(self, memory_store):
        with pytest.raises(ValueError):
            RefreshTokenSweeper(memory_store, interval_seconds=0)


class TestLifecycle:
    async def test_start_runs_an_immediate_sweep_and_stop_cancels(self, memory_store, user):
        memory_store.create_refresh_token(
            user.id, 1, now=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=3600)

        await sweeper.start()
        assert sweeper.is_running
        for _ in range(50):
            if not memory_store.refresh_tokens:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert not sweeper.is_running
        assert memory_store.refresh_tokens == {}

    async def test_double_start_keeps_one_task(self, memory_store):
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=3600)

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    async def test_stop_without_start(self, memory_store):
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=3600)
        await sweeper.stop()
        assert not sweeper.is_running

    async def test_loop_survives_store_errors(self, memory_store):
        calls = []

        def failing(before):
            calls.append(before)
            raise RuntimeError("database went away")

        memory_store.delete_expired_refresh_tokens = failing
        sweeper = RefreshTokenSweeper(memory_store, interval_seconds=3600)

        await sweeper.start()
        for _ in range(50):
            if calls:
                break
            await asyncio.sleep(0.01)
        assert sweeper.is_running
        await sweeper.stop()

        assert len(calls) == 1
