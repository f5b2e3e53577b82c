import asyncio
import time

import httpx
import pytest

from livebridge.common.core.framing import decode_response, encode_request, encode_response
from livebridge.common.models.internal import InvocationRequest, InvocationResult, Outcome
from livebridge.relay.config import RelayConfig
from livebridge.relay.main import create_app


def _config(**overrides) -> RelayConfig:
    return RelayConfig(_env_file=None, **overrides)


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay")


def _frame(request_id="req-1") -> bytes:
    return encode_request(
        InvocationRequest(
            request_id=request_id, function_id="fn-a", payload=b"{}", deadline=time.time() + 5
        )
    )


@pytest.mark.asyncio
async def test_invocation_routed_through_session():
    app = create_app(_config())

    async with _client(app) as client:
        session_id = (await client.post("/bridge/sessions")).json()["session_id"]

        invoke = asyncio.create_task(client.post("/bridge/invocations", content=_frame()))
        polled = await client.get(f"/bridge/sessions/{session_id}/next", params={"wait": 2})
        assert polled.status_code == 200

        delivered = await client.post(
            f"/bridge/sessions/{session_id}/responses",
            content=encode_response(InvocationResult.success("req-1", b'{"ok": true}')),
        )
        assert delivered.status_code == 202

        response = await invoke
        result, _ = decode_response(response.content)
        assert result.outcome is Outcome.SUCCESS
        assert result.payload == b'{"ok": true}'


@pytest.mark.asyncio
async def test_empty_poll_returns_204():
    app = create_app(_config())

    async with _client(app) as client:
        session_id = (await client.post("/bridge/sessions")).json()["session_id"]
        response = await client.get(f"/bridge/sessions/{session_id}/next", params={"wait": 0.05})

    assert response.status_code == 204


@pytest.mark.asyncio
async def test_unknown_session_returns_410():
    app = create_app(_config())

    async with _client(app) as client:
        response = await client.get("/bridge/sessions/unknown/next", params={"wait": 0})

    assert response.status_code == 410


@pytest.mark.asyncio
async def test_duplicate_response_returns_409():
    app = create_app(_config())

    async with _client(app) as client:
        session_id = (await client.post("/bridge/sessions")).json()["session_id"]
        response = await client.post(
            f"/bridge/sessions/{session_id}/responses",
            content=encode_response(InvocationResult.success("never-sent", b"{}")),
        )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_malformed_frame_returns_400():
    app = create_app(_config())

    async with _client(app) as client:
        response = await client.post("/bridge/invocations", content=b"not a frame")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_no_session_returns_transport_error_frame():
    app = create_app(_config())

    async with _client(app) as client:
        response = await client.post("/bridge/invocations", content=_frame())

    assert response.status_code == 200
    result, _ = decode_response(response.content)
    assert result.outcome is Outcome.TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_api_key_required_when_configured():
    app = create_app(_config(RELAY_API_KEY="bridge-key"))

    async with _client(app) as client:
        denied = await client.get("/bridge/status")
        allowed = await client.get("/bridge/status", headers={"X-Api-Key": "bridge-key"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["state"] == "disconnected"


def test_poll_wait_must_be_shorter_than_liveness():
    with pytest.raises(ValueError):
        _config(POLL_WAIT_MAX_SECONDS=40.0, SESSION_LIVENESS_SECONDS=30.0)
