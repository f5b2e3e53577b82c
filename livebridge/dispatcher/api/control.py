"""
Local control surface.

Read-only views of the bridge, the registry and the build cache, plus a
force-rebuild action. Bound to localhost by default.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter

from ..models.artifact import BuildArtifact
from ..models.function import FunctionDefinition
from .deps import (
    BridgeClientDep,
    BuildOrchestratorDep,
    FunctionRegistryDep,
    LocalDispatcherDep,
    PoolManagerDep,
)

logger = logging.getLogger("dispatcher.control")

router = APIRouter(prefix="/control")


def _artifact_view(artifact: Optional[BuildArtifact]) -> Optional[Dict[str, Any]]:
    if artifact is None:
        return None
    return {
        "fingerprint": artifact.fingerprint,
        "location": artifact.location,
        "kind": artifact.kind,
        "produced_at": artifact.produced_at,
    }


def _function_view(definition: FunctionDefinition, orchestrator) -> Dict[str, Any]:
    return {
        "id": definition.id,
        "runtime": definition.runtime,
        "handler": definition.handler,
        "src_path": definition.src_path,
        "timeout": definition.timeout,
        "bundle": definition.bundle.enabled,
        "artifact": _artifact_view(orchestrator.latest(definition.id)),
    }


@router.get("/connection")
async def get_connection(bridge: BridgeClientDep):
    return bridge.connection.model_dump(mode="json")


@router.get("/functions")
async def list_functions(registry: FunctionRegistryDep, orchestrator: BuildOrchestratorDep):
    return {
        "functions": [_function_view(d, orchestrator) for d in registry.list_definitions()]
    }


@router.post("/functions/{function_id}/rebuild")
async def rebuild_function(
    function_id: str, registry: FunctionRegistryDep, orchestrator: BuildOrchestratorDep
):
    """Force a fresh build. BuildError and unknown ids map to 422 / 404."""
    definition = registry.lookup(function_id)
    logger.info(f"Forced rebuild requested for {function_id}")
    artifact = await orchestrator.rebuild(definition)
    return {"id": function_id, "artifact": _artifact_view(artifact)}


@router.get("/build/stats")
async def build_stats(
    orchestrator: BuildOrchestratorDep,
    dispatcher: LocalDispatcherDep,
    pool_manager: PoolManagerDep,
):
    return {
        "build": orchestrator.stats,
        "dispatch": dispatcher.stats,
        "pools": pool_manager.stats if pool_manager is not None else [],
    }
