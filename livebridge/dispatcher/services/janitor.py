"""
WorkerJanitor - periodic pruning of idle pooled workers.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .worker_pool import WorkerPoolManager

logger = logging.getLogger("dispatcher.janitor")


class WorkerJanitor:
    """Kills pooled workers that stayed idle longer than `idle_timeout`."""

    def __init__(
        self,
        pool_manager: "WorkerPoolManager",
        interval: float = 30,
        idle_timeout: float = 300.0,
    ):
        self.pool_manager = pool_manager
        self.interval = interval
        self.idle_timeout = idle_timeout
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Worker Janitor started (interval: {self.interval}s, idle_timeout: {self.idle_timeout}s)"
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Worker Janitor stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Pruning failed: {e}")

    async def run_once(self) -> int:
        pruned = await self.pool_manager.prune_all_pools(self.idle_timeout)
        total = 0
        for function_id, workers in pruned.items():
            logger.info(f"Pruned {len(workers)} idle workers from {function_id}")
            total += len(workers)
        return total
