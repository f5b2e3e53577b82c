"""
Dependency Injection for the relay API.

Manage request handler dependencies using FastAPI Depends.
"""

import secrets
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from ..config import RelayConfig
from ..hub import BridgeHub


def get_hub(request: Request) -> BridgeHub:
    return request.app.state.hub


def get_relay_config(request: Request) -> RelayConfig:
    return request.app.state.config


BridgeHubDep = Annotated[BridgeHub, Depends(get_hub)]
RelayConfigDep = Annotated[RelayConfig, Depends(get_relay_config)]


async def verify_api_key(
    config: RelayConfigDep, x_api_key: Optional[str] = Header(None)
) -> None:
    """
    Check the shared bridge key when one is configured.

    Raises:
        HTTPException: 401 on a missing or wrong key
    """
    if not config.RELAY_API_KEY:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, config.RELAY_API_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")


ApiKeyDep = Depends(verify_api_key)
