"""
Dependency Injection for the control API.

Manage request handler dependencies using FastAPI Depends.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request

from ..services.bridge_client import BridgeClient
from ..services.build_orchestrator import BuildOrchestrator
from ..services.function_registry import FunctionRegistry
from ..services.local_dispatcher import LocalDispatcher
from ..services.worker_pool import WorkerPoolManager


def get_function_registry(request: Request) -> FunctionRegistry:
    return request.app.state.function_registry


def get_build_orchestrator(request: Request) -> BuildOrchestrator:
    return request.app.state.build_orchestrator


def get_local_dispatcher(request: Request) -> LocalDispatcher:
    return request.app.state.local_dispatcher


def get_bridge_client(request: Request) -> BridgeClient:
    return request.app.state.bridge_client


def get_pool_manager(request: Request) -> Optional[WorkerPoolManager]:
    return getattr(request.app.state, "pool_manager", None)


FunctionRegistryDep = Annotated[FunctionRegistry, Depends(get_function_registry)]
BuildOrchestratorDep = Annotated[BuildOrchestrator, Depends(get_build_orchestrator)]
LocalDispatcherDep = Annotated[LocalDispatcher, Depends(get_local_dispatcher)]
BridgeClientDep = Annotated[BridgeClient, Depends(get_bridge_client)]
PoolManagerDep = Annotated[Optional[WorkerPoolManager], Depends(get_pool_manager)]
