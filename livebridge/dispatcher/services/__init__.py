"""
Services package.

Provides the registry, build, execution and bridge components.
"""

from .bridge_client import BridgeClient
from .build_orchestrator import BuildOrchestrator
from .builders import NodeBuilder, PassthroughBuilder, PythonBuilder, default_builders
from .function_registry import FunctionRegistry
from .local_dispatcher import DispatchState, LocalDispatcher
from .worker import WorkerExecutor
from .worker_pool import WorkerPool, WorkerPoolManager

__all__ = [
    "BridgeClient",
    "BuildOrchestrator",
    "DispatchState",
    "FunctionRegistry",
    "LocalDispatcher",
    "NodeBuilder",
    "PassthroughBuilder",
    "PythonBuilder",
    "WorkerExecutor",
    "WorkerPool",
    "WorkerPoolManager",
    "default_builders",
]
