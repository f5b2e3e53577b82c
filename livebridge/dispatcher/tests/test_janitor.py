"""
Tests for WorkerJanitor
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from livebridge.dispatcher.services.janitor import WorkerJanitor


class TestWorkerJanitor:
    @pytest.fixture
    def mock_pool_manager(self):
        pm = MagicMock()
        pm.prune_all_pools = AsyncMock(return_value={})
        return pm

    @pytest.fixture
    def janitor(self, mock_pool_manager):
        return WorkerJanitor(pool_manager=mock_pool_manager, interval=0.05, idle_timeout=60.0)

    def test_janitor_creation(self, janitor, mock_pool_manager):
        assert janitor.pool_manager is mock_pool_manager
        assert janitor.interval == 0.05
        assert janitor.idle_timeout == 60.0
        assert janitor._task is None

    @pytest.mark.asyncio
    async def test_janitor_start_stop(self, janitor):
        await janitor.start()
        task = janitor._task
        assert task is not None
        assert not task.done()

        await janitor.stop()
        assert task.done()
        assert janitor._task is None

    @pytest.mark.asyncio
    async def test_run_once_counts_pruned_workers(self, janitor, mock_pool_manager):
        mock_pool_manager.prune_all_pools.return_value = {"fn-a": ["w1", "w2"], "fn-b": ["w3"]}

        assert await janitor.run_once() == 3
        mock_pool_manager.prune_all_pools.assert_awaited_once_with(60.0)

    @pytest.mark.asyncio
    async def test_loop_survives_prune_errors(self, janitor, mock_pool_manager):
        calls = []

        async def prune(idle_timeout):
            calls.append(idle_timeout)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return {}

        mock_pool_manager.prune_all_pools.side_effect = prune

        await janitor.start()
        await asyncio.sleep(0.2)
        await janitor.stop()

        assert mock_pool_manager.prune_all_pools.await_count >= 2
