import asyncio
import time

import httpx
import pytest
import respx

from livebridge.common.core.blob_store import resolve_payload
from livebridge.common.core.framing import decode_response, encode_request
from livebridge.common.models.internal import (
    ConnectionState,
    InvocationRequest,
    InvocationResult,
    Outcome,
)
from livebridge.dispatcher.core.exceptions import TransportError
from livebridge.dispatcher.services.bridge_client import BridgeClient


@pytest.fixture
def make_bridge(relay_client):
    def _make(**kwargs) -> BridgeClient:
        kwargs.setdefault("poll_wait", 0.2)
        kwargs.setdefault("backoff", 0.05)
        return BridgeClient(relay_client, "http://relay", **kwargs)

    return _make


def _request(request_id="req-1", payload=b'{"n": 1}', timeout=5.0) -> InvocationRequest:
    return InvocationRequest(
        request_id=request_id,
        function_id="fn-a",
        payload=payload,
        deadline=time.time() + timeout,
    )


async def _invoke(relay_client, request, blob_ref=False):
    response = await relay_client.post(
        "/bridge/invocations", content=encode_request(request, blob_ref=blob_ref)
    )
    return decode_response(response.content)


async def _next(bridge: BridgeClient):
    receiver = bridge.receive()
    try:
        return await asyncio.wait_for(receiver.__anext__(), timeout=5)
    finally:
        await receiver.aclose()


@pytest.mark.asyncio
async def test_connect_opens_session(make_bridge, relay_app):
    bridge = make_bridge()

    session_id = await bridge.connect()

    assert bridge.connection.state is ConnectionState.CONNECTED
    assert bridge.connection.session_id == session_id
    assert relay_app.state.hub.status["session_id"] == session_id


@pytest.mark.asyncio
async def test_request_response_round_trip(make_bridge, relay_client):
    bridge = make_bridge()
    await bridge.connect()

    invocation = asyncio.create_task(_invoke(relay_client, _request()))
    request = await _next(bridge)
    await bridge.respond(request.request_id, InvocationResult.success(request.request_id, b"42"))
    result, is_ref = await invocation

    assert request.payload == b'{"n": 1}'
    assert result.outcome is Outcome.SUCCESS
    assert result.payload == b"42"
    assert is_ref is False


@pytest.mark.asyncio
async def test_offloaded_request_is_fetched_and_deleted(
    make_bridge, relay_client, blob_store, tmp_path
):
    bridge = make_bridge(blob_store=blob_store)
    await bridge.connect()
    ref = blob_store.put("requests/req-1", b"x" * 1000)

    invocation = asyncio.create_task(
        _invoke(relay_client, _request(payload=ref.encode()), blob_ref=True)
    )
    request = await _next(bridge)
    await bridge.respond(request.request_id, InvocationResult.success(request.request_id, b"1"))
    await invocation

    assert request.payload == b"x" * 1000
    assert not (tmp_path / "blobs/requests/req-1").exists()


@pytest.mark.asyncio
async def test_unfetchable_blob_answers_transport_error(
    make_bridge, relay_client, blob_store, tmp_path
):
    bridge = make_bridge(blob_store=blob_store)
    await bridge.connect()
    missing_ref = (tmp_path / "blobs/requests/gone").as_uri()

    async def consume():
        async for _ in bridge.receive():
            pytest.fail("request with an unfetchable payload must not be yielded")

    consumer = asyncio.create_task(consume())
    try:
        result, _ = await asyncio.wait_for(
            _invoke(relay_client, _request(payload=missing_ref.encode()), blob_ref=True),
            timeout=5,
        )
    finally:
        bridge.stop()
        await consumer

    assert result.outcome is Outcome.TRANSPORT_ERROR
    assert "Failed to fetch blob" in result.error["errorMessage"]


@pytest.mark.asyncio
async def test_oversized_result_is_offloaded(make_bridge, relay_client, blob_store):
    bridge = make_bridge(blob_store=blob_store, inline_limit=16)
    await bridge.connect()
    big = b"y" * 4096

    invocation = asyncio.create_task(_invoke(relay_client, _request()))
    request = await _next(bridge)
    await bridge.respond(request.request_id, InvocationResult.success(request.request_id, big))
    result, is_ref = await invocation

    assert is_ref is True
    assert resolve_payload(result.payload, is_ref, blob_store) == big


@pytest.mark.asyncio
async def test_oversized_result_without_store_becomes_transport_error(
    make_bridge, relay_client
):
    bridge = make_bridge(inline_limit=16)
    await bridge.connect()

    invocation = asyncio.create_task(_invoke(relay_client, _request()))
    request = await _next(bridge)
    await bridge.respond(
        request.request_id, InvocationResult.success(request.request_id, b"z" * 100)
    )
    result, _ = await invocation

    assert result.outcome is Outcome.TRANSPORT_ERROR
    assert "exceeds inline limit" in result.error["errorMessage"]


@pytest.mark.asyncio
async def test_late_response_is_not_raised(make_bridge):
    bridge = make_bridge()
    await bridge.connect()

    await bridge.respond("req-unknown", InvocationResult.success("req-unknown", b"1"))


@pytest.mark.asyncio
async def test_respond_without_session_raises(make_bridge):
    bridge = make_bridge()

    with pytest.raises(TransportError):
        await bridge.respond("req-1", InvocationResult.success("req-1", b"1"))


@pytest.mark.asyncio
async def test_unreachable_relay_raises_transport_error():
    async with httpx.AsyncClient() as client:
        with respx.mock(base_url="http://relay.invalid") as mock:
            mock.post("/bridge/sessions").mock(side_effect=httpx.ConnectError("refused"))
            bridge = BridgeClient(client, "http://relay.invalid")

            with pytest.raises(TransportError, match="Could not open bridge session"):
                await bridge.connect()

    assert bridge.connection.state is ConnectionState.CONNECTING


@pytest.mark.asyncio
async def test_replaced_session_reconnects(make_bridge, relay_app):
    bridge = make_bridge()
    old_session = await bridge.connect()

    async def consume():
        async for _ in bridge.receive():
            pass

    consumer = asyncio.create_task(consume())
    try:
        relay_app.state.hub.open_session()
        for _ in range(100):
            connection = bridge.connection
            reconnected = connection.session_id not in (None, old_session)
            if reconnected and connection.state is ConnectionState.CONNECTED:
                break
            await asyncio.sleep(0.05)
    finally:
        bridge.stop()
        await consumer

    assert bridge.connection.session_id != old_session
    assert relay_app.state.hub.status["session_id"] == bridge.connection.session_id


@pytest.mark.asyncio
async def test_close_deletes_session(make_bridge, relay_app):
    bridge = make_bridge()
    await bridge.connect()

    await bridge.close()

    assert bridge.closed
    assert bridge.connection.state is ConnectionState.DISCONNECTED
    assert relay_app.state.hub.status["session_id"] is None
