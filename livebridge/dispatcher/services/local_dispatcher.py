"""
Where: livebridge/dispatcher/services/local_dispatcher.py
What: Turns each forwarded invocation into exactly one InvocationResult.
Why: Single place where lookup, build and execution meet, and where every
     failure is converted into an outcome tag instead of escaping.

Per-request states:
    received -> resolving -> building -> executing -> responded
    received -> resolving -> notFound
    any state -> timedOut
"""

import asyncio
import logging
import time
from collections import Counter
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Set

from livebridge.common.core.request_context import (
    clear_invocation_context,
    set_invocation_context,
)
from livebridge.common.models.internal import InvocationRequest, InvocationResult, Outcome

from ..core.exceptions import (
    BuildError,
    FunctionNotFoundError,
    HandlerError,
    LiveBridgeError,
    WorkerTimeoutError,
    outcome_for,
)
from ..models.artifact import BuildArtifact
from ..models.function import FunctionDefinition
from .build_orchestrator import BuildOrchestrator
from .function_registry import FunctionRegistry
from .worker import WorkerExecutor, handler_result
from .worker_pool import WorkerPoolManager

if TYPE_CHECKING:
    from .bridge_client import BridgeClient

logger = logging.getLogger("dispatcher.local_dispatcher")


class DispatchState(str, Enum):
    RECEIVED = "received"
    RESOLVING = "resolving"
    BUILDING = "building"
    EXECUTING = "executing"
    RESPONDED = "responded"
    NOT_FOUND = "notFound"
    TIMED_OUT = "timedOut"


class LocalDispatcher:
    def __init__(
        self,
        registry: FunctionRegistry,
        orchestrator: BuildOrchestrator,
        executor: WorkerExecutor,
        pool_manager: Optional[WorkerPoolManager] = None,
    ):
        """
        Args:
            registry: Function definitions, populated before serving starts
            orchestrator: Artifact cache and builders
            executor: Starts worker processes
            pool_manager: When given, node/python workers are reused
        """
        self.registry = registry
        self.orchestrator = orchestrator
        self.executor = executor
        self.pool_manager = pool_manager

        self._states: Dict[str, DispatchState] = {}
        self._outcomes: Counter = Counter()
        self._tasks: Set[asyncio.Task] = set()

    async def handle(self, request: InvocationRequest) -> InvocationResult:
        """
        Resolve, build and execute one request. Never raises.
        """
        set_invocation_context(request.request_id, request.function_id)
        self._states[request.request_id] = DispatchState.RECEIVED
        started = time.monotonic()
        try:
            remaining = request.remaining()
            if remaining <= 0:
                raise WorkerTimeoutError(request.function_id, 0.0)
            try:
                result = await asyncio.wait_for(self._dispatch(request), timeout=remaining)
            except asyncio.TimeoutError:
                raise WorkerTimeoutError(request.function_id, remaining)
        except LiveBridgeError as e:
            result = self._failure(request, e)
        except Exception as e:
            logger.exception(f"Unexpected failure dispatching {request.request_id}")
            result = InvocationResult.failure(
                request.request_id, outcome_for(e), str(e), error_type=type(e).__name__
            )
        finally:
            self._states.pop(request.request_id, None)
            clear_invocation_context()

        self._outcomes[result.outcome.value] += 1
        logger.info(
            f"Invocation of {request.function_id} finished: {result.outcome.value} "
            f"({(time.monotonic() - started) * 1000:.0f}ms)",
            extra={"invocation_id": request.request_id, "function_id": request.function_id},
        )
        return result

    async def _dispatch(self, request: InvocationRequest) -> InvocationResult:
        self._transition(request, DispatchState.RESOLVING)
        definition = self.registry.lookup(request.function_id)

        self._transition(request, DispatchState.BUILDING)
        async with self.orchestrator.lease(definition) as artifact:
            self._transition(request, DispatchState.EXECUTING)
            if self.pool_manager is not None and artifact.kind == "directory":
                payload = await self._run_pooled(definition, artifact, request)
            else:
                payload = await self.executor.run(definition, artifact, request)

        self._transition(request, DispatchState.RESPONDED)
        return InvocationResult.success(request.request_id, payload)

    async def _run_pooled(
        self,
        definition: FunctionDefinition,
        artifact: BuildArtifact,
        request: InvocationRequest,
    ) -> bytes:
        assert self.pool_manager is not None
        await self.pool_manager.retire_stale(definition.id, artifact.fingerprint)
        pool = await self.pool_manager.get_pool(definition.id, artifact.fingerprint)

        try:
            worker = await pool.acquire(lambda: self.executor.spawn(definition, artifact))
        except asyncio.TimeoutError:
            raise WorkerTimeoutError(definition.id, pool.acquire_timeout)

        try:
            response = await worker.invoke(request, request.remaining())
        except BaseException:
            # Timed out, crashed or abandoned mid-call: never reuse it.
            await pool.evict(worker)
            raise
        if not await pool.release(worker):
            await worker.kill()
        return handler_result(response)

    def _transition(self, request: InvocationRequest, state: DispatchState) -> None:
        self._states[request.request_id] = state
        logger.debug(f"{request.request_id}: {state.value}")

    def _failure(self, request: InvocationRequest, exc: LiveBridgeError) -> InvocationResult:
        if isinstance(exc, HandlerError):
            return InvocationResult.failure(
                request.request_id,
                Outcome.HANDLER_ERROR,
                exc.message,
                error_type=exc.error_type,
                stack_trace=exc.stack_trace,
            )
        if isinstance(exc, BuildError):
            return InvocationResult.failure(
                request.request_id, Outcome.BUILD_ERROR, exc.diagnostics, error_type="BuildError"
            )
        if isinstance(exc, WorkerTimeoutError):
            self._transition(request, DispatchState.TIMED_OUT)
        elif isinstance(exc, FunctionNotFoundError):
            self._transition(request, DispatchState.NOT_FOUND)
        return InvocationResult.failure(
            request.request_id, exc.outcome, str(exc), error_type=type(exc).__name__
        )

    async def serve(self, bridge: "BridgeClient") -> None:
        """
        Consume the bridge and answer every request on its own task.

        Returns when the bridge is closed; in-flight requests are awaited.
        """
        try:
            async for request in bridge.receive():
                task = asyncio.create_task(self._serve_one(bridge, request))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _serve_one(self, bridge: "BridgeClient", request: InvocationRequest) -> None:
        result = await self.handle(request)
        try:
            await bridge.respond(request.request_id, result)
        except Exception as e:
            # No retry: the stub times out on its own.
            logger.error(
                f"Failed to deliver result for {request.request_id}: {e}",
                extra={"invocation_id": request.request_id, "function_id": request.function_id},
            )

    def state_of(self, request_id: str) -> Optional[DispatchState]:
        return self._states.get(request_id)

    @property
    def stats(self) -> dict:
        return {
            "active": len(self._states),
            "outcomes": dict(self._outcomes),
        }
