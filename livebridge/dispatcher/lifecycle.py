"""
Where: livebridge/dispatcher/lifecycle.py
What: Dispatcher startup/shutdown orchestration for shared resources.
Why: Keep main.py focused on app assembly while preserving lifecycle behavior.

Startup order matters: the registry is fully populated before the bridge
session is opened, so no request can observe a half-loaded registry.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI

from livebridge.common.core.blob_store import blob_store_from_url
from livebridge.common.core.http_client import HttpClientFactory

from .config import DispatcherConfig
from .core.exceptions import StartupError, TransportError
from .services.bridge_client import BridgeClient
from .services.build_orchestrator import BuildOrchestrator
from .services.builders import default_builders
from .services.config_reloader import ConfigReloader
from .services.function_registry import FunctionRegistry
from .services.janitor import WorkerJanitor
from .services.local_dispatcher import LocalDispatcher
from .services.worker import WorkerExecutor
from .services.worker_pool import WorkerPoolManager

logger = logging.getLogger("dispatcher.main")

SHUTDOWN_GRACE_SECONDS = 10.0


@asynccontextmanager
async def manage_lifespan(
    app: FastAPI, dispatcher_config: DispatcherConfig, prewarm: bool = False
) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    factory = HttpClientFactory(dispatcher_config)
    factory.configure_global_settings()
    client = factory.create_async_client(timeout=httpx.Timeout(30.0))

    orchestrator: Optional[BuildOrchestrator] = None
    pool_manager: Optional[WorkerPoolManager] = None
    janitor: Optional[WorkerJanitor] = None
    reloader: Optional[ConfigReloader] = None
    bridge: Optional[BridgeClient] = None
    serve_task: Optional[asyncio.Task] = None
    prewarm_task: Optional[asyncio.Task] = None

    try:
        function_registry = FunctionRegistry(dispatcher_config.FUNCTIONS_CONFIG_PATH)
        function_registry.load_functions_config()

        orchestrator = BuildOrchestrator(
            build_root=dispatcher_config.BUILD_ROOT,
            builders=default_builders(dispatcher_config),
            build_timeout=dispatcher_config.BUILD_TIMEOUT,
            error_cache_ttl=dispatcher_config.BUILD_ERROR_CACHE_TTL,
            cache_max_entries=dispatcher_config.BUILD_CACHE_MAX_ENTRIES,
        )

        if dispatcher_config.WORKER_ISOLATION == "pooled":
            pool_manager = WorkerPoolManager(
                max_capacity=dispatcher_config.WORKER_POOL_MAX_SIZE,
                acquire_timeout=dispatcher_config.WORKER_ACQUIRE_TIMEOUT,
            )
            janitor = WorkerJanitor(
                pool_manager,
                interval=dispatcher_config.JANITOR_INTERVAL,
                idle_timeout=dispatcher_config.WORKER_IDLE_TIMEOUT_SECONDS,
            )
            await janitor.start()
            logger.info(
                f"Pooled workers enabled (max {dispatcher_config.WORKER_POOL_MAX_SIZE} per function)"
            )

        local_dispatcher = LocalDispatcher(
            registry=function_registry,
            orchestrator=orchestrator,
            executor=WorkerExecutor(dispatcher_config),
            pool_manager=pool_manager,
        )

        bridge = BridgeClient(
            client,
            dispatcher_config.RELAY_URL,
            blob_store=blob_store_from_url(dispatcher_config.BLOB_STORE_URL),
            inline_limit=dispatcher_config.INLINE_PAYLOAD_LIMIT,
            poll_wait=dispatcher_config.POLL_WAIT_SECONDS,
            backoff=dispatcher_config.RECONNECT_BACKOFF_SECONDS,
            backoff_max=dispatcher_config.RECONNECT_BACKOFF_MAX_SECONDS,
        )
        try:
            await bridge.connect()
        except TransportError as e:
            raise StartupError(str(e)) from e

        reloader = ConfigReloader(
            dispatcher_config.FUNCTIONS_CONFIG_PATH,
            function_registry.reload,
            interval=dispatcher_config.CONFIG_RELOAD_INTERVAL,
            enabled=dispatcher_config.CONFIG_RELOAD_ENABLED,
        )
        reloader.start()

        if prewarm:
            prewarm_task = asyncio.create_task(
                orchestrator.prewarm(function_registry.list_definitions())
            )
        serve_task = asyncio.create_task(local_dispatcher.serve(bridge))

        app.state.http_client = client
        app.state.function_registry = function_registry
        app.state.build_orchestrator = orchestrator
        app.state.local_dispatcher = local_dispatcher
        app.state.bridge_client = bridge
        app.state.pool_manager = pool_manager
        app.state.config_reloader = reloader

        logger.info(
            f"Dispatcher ready: {len(function_registry)} functions, relay {dispatcher_config.RELAY_URL}"
        )
        yield
    finally:
        if reloader:
            reloader.stop()

        if bridge:
            bridge.stop()
        if serve_task:
            try:
                await asyncio.wait_for(serve_task, timeout=SHUTDOWN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("In-flight invocations did not finish before shutdown")
        if bridge:
            await bridge.close()

        if prewarm_task and not prewarm_task.done():
            prewarm_task.cancel()

        if janitor:
            await janitor.stop()

        if pool_manager:
            await pool_manager.shutdown_all()

        if orchestrator:
            await orchestrator.shutdown()

        logger.info("Dispatcher shutting down, closing http client.")
        await client.aclose()
