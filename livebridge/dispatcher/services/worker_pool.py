"""
WorkerPool - warm worker reuse for pooled isolation.

One pool per (function id, artifact fingerprint) with Condition-based
capacity control, so a source change naturally starts a fresh pool and the
old one drains as its workers go idle.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Set, Tuple

from .worker import WorkerProcess

logger = logging.getLogger("dispatcher.worker_pool")

PoolKey = Tuple[str, str]


class WorkerPool:
    """
    Bounded set of workers for one artifact.

    Waiters block on an asyncio.Condition until a worker is released or
    capacity frees up (eviction, pruning, failed spawn).
    """

    def __init__(
        self,
        function_id: str,
        fingerprint: str,
        max_capacity: int = 1,
        acquire_timeout: float = 30.0,
    ):
        self.function_id = function_id
        self.fingerprint = fingerprint
        self.max_capacity = max_capacity
        self.acquire_timeout = acquire_timeout

        self._cv = asyncio.Condition()
        self._idle_workers: Deque[WorkerProcess] = deque()
        self._all_workers: Set[WorkerProcess] = set()
        self._spawning_count = 0

    async def acquire(self, spawn: Callable[[], Awaitable[WorkerProcess]]) -> WorkerProcess:
        """
        Take an idle worker or spawn one when under capacity.

        Raises:
            asyncio.TimeoutError: No worker became available in time
        """
        async with self._cv:
            start_time = time.monotonic()

            while True:
                while self._idle_workers:
                    worker = self._idle_workers.popleft()
                    if worker.alive:
                        return worker
                    # Died while idle.
                    self._all_workers.discard(worker)

                if len(self._all_workers) + self._spawning_count < self.max_capacity:
                    self._spawning_count += 1
                    break

                remaining = self.acquire_timeout - (time.monotonic() - start_time)
                if remaining <= 0:
                    raise asyncio.TimeoutError(f"Worker acquire timeout for {self.function_id}")
                try:
                    await asyncio.wait_for(self._cv.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise asyncio.TimeoutError(f"Worker acquire timeout for {self.function_id}")

        # Spawning is I/O; do it outside the lock.
        try:
            worker = await spawn()
        except BaseException:
            async with self._cv:
                self._spawning_count -= 1
                self._cv.notify_all()
            raise

        async with self._cv:
            self._all_workers.add(worker)
            self._spawning_count -= 1
            return worker

    async def release(self, worker: WorkerProcess) -> bool:
        """
        Return a healthy worker to the idle queue.

        Returns False if the pool no longer owns the worker (drained); the
        caller is then responsible for stopping it.
        """
        async with self._cv:
            if worker not in self._all_workers:
                return False
            worker.last_used_at = time.time()
            self._idle_workers.append(worker)
            self._cv.notify_all()
            return True

    async def evict(self, worker: WorkerProcess) -> None:
        """Drop a worker that timed out or crashed and kill it."""
        async with self._cv:
            self._all_workers.discard(worker)
            try:
                self._idle_workers.remove(worker)
            except ValueError:
                pass
            self._cv.notify_all()
        await worker.kill()

    async def prune_idle_workers(self, idle_timeout: float) -> List[WorkerProcess]:
        """Remove and return workers idle for longer than `idle_timeout`."""
        async with self._cv:
            now = time.time()
            pruned = []
            surviving: Deque[WorkerProcess] = deque()

            while self._idle_workers:
                worker = self._idle_workers.popleft()
                if now - worker.last_used_at > idle_timeout or not worker.alive:
                    self._all_workers.discard(worker)
                    pruned.append(worker)
                else:
                    surviving.append(worker)

            self._idle_workers = surviving
            if pruned:
                self._cv.notify_all()
            return pruned

    async def drain(self) -> List[WorkerProcess]:
        """Detach every worker (shutdown or superseded artifact)."""
        async with self._cv:
            workers = list(self._all_workers)
            self._all_workers.clear()
            self._idle_workers.clear()
            self._cv.notify_all()
            return workers

    @property
    def size(self) -> int:
        return len(self._all_workers)

    @property
    def busy(self) -> int:
        return len(self._all_workers) - len(self._idle_workers)

    @property
    def stats(self) -> dict:
        return {
            "function_id": self.function_id,
            "fingerprint": self.fingerprint[:12],
            "total_workers": len(self._all_workers),
            "idle": len(self._idle_workers),
            "spawning": self._spawning_count,
            "max_capacity": self.max_capacity,
        }


class WorkerPoolManager:
    """
    Pools for every (function, fingerprint) pair, created lazily.
    """

    def __init__(self, max_capacity: int = 4, acquire_timeout: float = 30.0):
        self.max_capacity = max_capacity
        self.acquire_timeout = acquire_timeout
        self._pools: Dict[PoolKey, WorkerPool] = {}
        self._lock = asyncio.Lock()

    async def get_pool(self, function_id: str, fingerprint: str) -> WorkerPool:
        key = (function_id, fingerprint)
        if key not in self._pools:
            async with self._lock:
                if key not in self._pools:
                    self._pools[key] = WorkerPool(
                        function_id,
                        fingerprint,
                        max_capacity=self.max_capacity,
                        acquire_timeout=self.acquire_timeout,
                    )
                    logger.info(
                        f"Created worker pool for {function_id} "
                        f"({fingerprint[:12]}, max={self.max_capacity})"
                    )
        return self._pools[key]

    async def retire_stale(self, function_id: str, current_fingerprint: str) -> int:
        """Kill idle workers of older artifacts for a function; busy ones finish first."""
        stale = [
            pool
            for (fid, fp), pool in list(self._pools.items())
            if fid == function_id and fp != current_fingerprint
        ]
        killed = 0
        for pool in stale:
            for worker in await pool.prune_idle_workers(idle_timeout=-1):
                await worker.kill()
                killed += 1
            if pool.size == 0:
                async with self._lock:
                    self._pools.pop((pool.function_id, pool.fingerprint), None)
        return killed

    async def prune_all_pools(self, idle_timeout: float) -> Dict[str, List[WorkerProcess]]:
        pruned: Dict[str, List[WorkerProcess]] = {}
        for key, pool in list(self._pools.items()):
            workers = await pool.prune_idle_workers(idle_timeout)
            for worker in workers:
                await worker.kill()
            if workers:
                pruned.setdefault(pool.function_id, []).extend(workers)
            if pool.size == 0:
                async with self._lock:
                    if self._pools.get(key) is pool and pool.size == 0:
                        del self._pools[key]
        return pruned

    async def shutdown_all(self) -> None:
        for pool in list(self._pools.values()):
            for worker in await pool.drain():
                await worker.kill()
        self._pools.clear()
        logger.info("All worker pools drained")

    @property
    def stats(self) -> List[dict]:
        return [pool.stats for pool in self._pools.values()]
