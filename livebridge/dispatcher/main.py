"""
Local dispatcher - executes forwarded invocations against local sources.

Serves the control API with uvicorn; the bridge session and the worker
machinery live in the application lifespan (see lifecycle.py).
"""

import argparse
import logging
import socket
import sys
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from livebridge.common.core.exception_handlers import (
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)

from .api.control import router as control_router
from .config import DispatcherConfig
from .core.exceptions import BuildError, FunctionNotFoundError, StartupError
from .core.logging_config import setup_logging
from .lifecycle import manage_lifespan

logger = logging.getLogger("dispatcher.main")


async def function_not_found_handler(request: Request, exc: FunctionNotFoundError):
    return JSONResponse(status_code=404, content={"message": str(exc)})


async def build_error_handler(request: Request, exc: BuildError):
    return JSONResponse(
        status_code=422,
        content={"message": "Build failed", "detail": exc.diagnostics},
    )


def create_app(
    dispatcher_config: Optional[DispatcherConfig] = None,
    prewarm: bool = False,
    lifespan: bool = True,
) -> FastAPI:
    """
    Assemble the control API.

    With `lifespan=False` nothing is started; callers populate app.state.
    """
    if dispatcher_config is None:
        from .config import config as default_config

        dispatcher_config = default_config

    def _lifespan(app: FastAPI):
        return manage_lifespan(app, dispatcher_config, prewarm=prewarm)

    app = FastAPI(
        title="livebridge dispatcher",
        version="1.0.0",
        lifespan=_lifespan if lifespan else None,
    )
    app.state.config = dispatcher_config

    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(FunctionNotFoundError, function_not_found_handler)
    app.add_exception_handler(BuildError, build_error_handler)

    app.include_router(control_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


def bind_control_socket(address: str) -> socket.socket:
    """
    Bind the control API listener up front so a busy port fails fast.

    Raises:
        StartupError: The address is malformed or cannot be bound
    """
    host, _, port = address.rpartition(":")
    try:
        port_number = int(port)
    except ValueError:
        raise StartupError(f"Invalid control address: {address}")

    sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host.strip("[]") or "127.0.0.1", port_number))
        sock.listen(128)
    except OSError as e:
        sock.close()
        raise StartupError(f"Cannot bind control API to {address}: {e}") from e
    sock.setblocking(False)
    return sock


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="livebridge-dispatcher",
        description="Run deployed functions against local sources through the bridge relay.",
    )
    parser.add_argument("--config", help="Function definitions file (functions.yml)")
    parser.add_argument("--relay-url", help="Bridge relay URL")
    parser.add_argument("--control-addr", help="Control API listen address (host:port)")
    parser.add_argument(
        "--prewarm", action="store_true", help="Build every registered function on startup"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    args = parse_args(argv)
    from .config import config

    overrides = {}
    if args.config:
        overrides["FUNCTIONS_CONFIG_PATH"] = args.config
    if args.relay_url:
        overrides["RELAY_URL"] = args.relay_url
    if args.control_addr:
        overrides["CONTROL_BIND_ADDR"] = args.control_addr
    dispatcher_config = config.model_copy(update=overrides)

    setup_logging(dispatcher_config)

    try:
        sock = bind_control_socket(dispatcher_config.CONTROL_BIND_ADDR)
    except StartupError as e:
        logger.error(str(e))
        return 1

    app = create_app(dispatcher_config, prewarm=args.prewarm)
    server = uvicorn.Server(uvicorn.Config(app, lifespan="on", log_config=None))
    logger.info(f"Control API listening on {dispatcher_config.CONTROL_BIND_ADDR}")
    server.run(sockets=[sock])
    if not server.started:
        logger.error("Dispatcher failed to start")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
