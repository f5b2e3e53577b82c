import asyncio
import sys
import textwrap
import time
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from livebridge.common.core.blob_store import FileBlobStore
from livebridge.common.models.internal import InvocationRequest
from livebridge.dispatcher.config import DispatcherConfig
from livebridge.dispatcher.core.exceptions import BuildError
from livebridge.dispatcher.models.function import FunctionDefinition
from livebridge.dispatcher.services.builders import BuildOutput
from livebridge.relay.config import RelayConfig
from livebridge.relay.main import create_app


@pytest.fixture
def dispatcher_config(tmp_path) -> DispatcherConfig:
    return DispatcherConfig(
        _env_file=None,
        BUILD_ROOT=str(tmp_path / ".livebridge" / "artifacts"),
        PYTHON_COMMAND=sys.executable,
        CONFIG_RELOAD_ENABLED=False,
    )


@pytest.fixture
def write_source(tmp_path):
    """Write a file under the project root (tmp_path) and return its path."""

    def _write(relative: str, content: str) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def python_function():
    def _make(function_id="fn-a", src_path="functions/a", **kwargs) -> FunctionDefinition:
        kwargs.setdefault("handler", "app.handler")
        kwargs.setdefault("runtime", "python3.11")
        return FunctionDefinition(id=function_id, src_path=src_path, **kwargs)

    return _make


@pytest.fixture
def make_request():
    counter = {"n": 0}

    def _make(function_id: str, payload: bytes = b"{}", timeout: float = 10.0) -> InvocationRequest:
        counter["n"] += 1
        now = time.time()
        return InvocationRequest(
            request_id=f"req-{counter['n']}",
            function_id=function_id,
            payload=payload,
            arrival=now,
            deadline=now + timeout,
        )

    return _make


class CountingBuilder:
    """Test builder: copies nothing, fails when the handler source says so."""

    family = "python"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0

    async def build(self, definition, src_root, out_dir):
        self.calls += 1
        await asyncio.sleep(self.delay)
        source = (src_root / f"{definition.handler_file}.py").read_text(encoding="utf-8")
        if "FAIL" in source:
            raise BuildError(definition.id, "builder refused: FAIL marker")
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / "built.txt").write_text(source, encoding="utf-8")
        return BuildOutput(
            location=out_dir, entry=definition.handler_file, export=definition.handler_export
        )


@pytest.fixture
def counting_builder():
    return CountingBuilder()


@pytest.fixture
def relay_app():
    return create_app(RelayConfig(_env_file=None))


@pytest_asyncio.fixture
async def relay_client(relay_app):
    """Client for an in-process relay."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=relay_app), base_url="http://relay"
    ) as client:
        yield client


@pytest.fixture
def blob_store(tmp_path):
    return FileBlobStore(str(tmp_path / "blobs"))
