"""
Bridge relay - rendezvous between deployed stubs and the local dispatcher.

Stubs POST framed invocations; the developer's dispatcher keeps a long-poll
session open, pulls request frames and posts response frames back.
"""

import logging
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from livebridge.common.core.exception_handlers import (
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from livebridge.common.core.framing import CONTENT_TYPE, FrameError
from livebridge.common.core.logging_config import configure_queue_logging, setup_logging

from .api.deps import ApiKeyDep, BridgeHubDep, RelayConfigDep
from .config import RelayConfig
from .hub import BridgeHub, DuplicateRequestError, DuplicateResponseError, SessionGoneError

logger = logging.getLogger("relay.main")

router = APIRouter(prefix="/bridge", dependencies=[ApiKeyDep])


@router.post("/sessions")
async def open_session(hub: BridgeHubDep):
    session_id = hub.open_session()
    return {"session_id": session_id}


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str, hub: BridgeHubDep):
    hub.close_session(session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/next")
async def next_request(
    session_id: str,
    request: Request,
    hub: BridgeHubDep,
    config: RelayConfigDep,
    wait: float = Query(default=10.0, ge=0.0),
):
    frame = await hub.next_request(session_id, min(wait, config.POLL_WAIT_MAX_SECONDS))
    if frame is None:
        return Response(status_code=204)
    if await request.is_disconnected():
        # The poller went away while waiting; keep the request for the next poll.
        hub.requeue(session_id, frame)
        return Response(status_code=204)
    return Response(content=frame, media_type=CONTENT_TYPE)


@router.post("/sessions/{session_id}/responses", status_code=202)
async def deliver_response(session_id: str, request: Request, hub: BridgeHubDep):
    frame = await request.body()
    result = hub.deliver(session_id, frame)
    return {"request_id": result.request_id, "outcome": result.outcome.value}


@router.post("/invocations")
async def invoke(request: Request, hub: BridgeHubDep):
    frame = await request.body()
    response_frame = await hub.invoke(frame)
    return Response(content=response_frame, media_type=CONTENT_TYPE)


@router.get("/status")
async def status(hub: BridgeHubDep):
    return hub.status


async def session_gone_handler(request: Request, exc: SessionGoneError):
    return JSONResponse(status_code=410, content={"message": str(exc)})


async def duplicate_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"message": str(exc)})


async def frame_error_handler(request: Request, exc: FrameError):
    return JSONResponse(status_code=400, content={"message": "Malformed frame", "detail": str(exc)})


def create_app(config: Optional[RelayConfig] = None, hub: Optional[BridgeHub] = None) -> FastAPI:
    """Assemble the relay application."""
    if config is None:
        from .config import config as default_config

        config = default_config

    app = FastAPI(title="livebridge relay", version="1.0.0", root_path=config.root_path)
    app.state.config = config
    app.state.hub = hub or BridgeHub(liveness_seconds=config.SESSION_LIVENESS_SECONDS)

    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SessionGoneError, session_gone_handler)
    app.add_exception_handler(DuplicateRequestError, duplicate_handler)
    app.add_exception_handler(DuplicateResponseError, duplicate_handler)
    app.add_exception_handler(FrameError, frame_error_handler)

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


def main() -> None:
    """Console entry point: serve the relay with uvicorn."""
    from .config import config

    setup_logging(config.LOG_CONFIG_PATH)
    configure_queue_logging("livebridge-relay", config.LOG_SINK_URL)

    host, _, port = config.RELAY_BIND_ADDR.rpartition(":")
    logger.info(f"Starting relay on {config.RELAY_BIND_ADDR}")
    uvicorn.run(create_app(config), host=host or "0.0.0.0", port=int(port), log_config=None)


if __name__ == "__main__":
    main()
