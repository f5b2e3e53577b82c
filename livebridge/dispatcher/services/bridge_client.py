"""
Where: livebridge/dispatcher/services/bridge_client.py
What: Local end of the bridge: long-polls the relay for request frames and
      posts response frames back.
Why: The developer machine is not reachable from the cloud; it dials out and
     keeps one session open instead.

Lost polls move the connection to `connecting` and are retried with
exponential backoff. Individual invocations are never retried.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

import httpx

from livebridge.common.core.blob_store import (
    BlobFetchError,
    BlobStore,
    BlobStoreError,
    offload_payload,
    resolve_payload,
)
from livebridge.common.core.framing import (
    CONTENT_TYPE,
    FrameError,
    decode_request,
    encode_response,
)
from livebridge.common.models.internal import (
    BridgeConnection,
    ConnectionState,
    InvocationRequest,
    InvocationResult,
    Outcome,
)

from ..core.exceptions import TransportError

logger = logging.getLogger("dispatcher.bridge_client")


class BridgeClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        relay_url: str,
        blob_store: Optional[BlobStore] = None,
        inline_limit: int = 128 * 1024,
        poll_wait: float = 15.0,
        backoff: float = 1.0,
        backoff_max: float = 15.0,
    ):
        self._client = client
        self.relay_url = relay_url.rstrip("/")
        self.blob_store = blob_store
        self.inline_limit = inline_limit
        self.poll_wait = poll_wait
        self.backoff = backoff
        self.backoff_max = backoff_max

        self._connection = BridgeConnection(endpoint=self.relay_url)
        self._closed = asyncio.Event()

    @property
    def connection(self) -> BridgeConnection:
        """Snapshot of the session state."""
        return self._connection.model_copy()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _set_state(self, state: ConnectionState, session_id: Optional[str] = None) -> None:
        previous = self._connection.state
        self._connection.state = state
        self._connection.session_id = session_id
        if state is ConnectionState.CONNECTED:
            self._connection.last_activity = time.time()
        if previous is not state:
            logger.info(f"Bridge {previous.value} -> {state.value} ({self.relay_url})")

    def _url(self, path: str) -> str:
        return f"{self.relay_url}/bridge{path}"

    async def connect(self) -> str:
        """
        Open a session on the relay (replacing any previous one).

        Raises:
            TransportError: The relay is unreachable or refused the session
        """
        self._set_state(ConnectionState.CONNECTING)
        try:
            response = await self._client.post(self._url("/sessions"))
            response.raise_for_status()
            session_id = response.json()["session_id"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            self._set_state(ConnectionState.CONNECTING)
            raise TransportError(f"Could not open bridge session at {self.relay_url}: {e}") from e
        self._set_state(ConnectionState.CONNECTED, session_id)
        return session_id

    async def receive(self) -> AsyncIterator[InvocationRequest]:
        """
        Yield forwarded requests until close() is called.

        Offloaded payloads are fetched (and deleted) before the request is
        yielded; a request whose blob cannot be fetched is answered with a
        transportError right here.
        """
        delay = self.backoff
        while not self.closed:
            session_id = self._connection.session_id
            if session_id is None:
                try:
                    await self.connect()
                    delay = self.backoff
                except TransportError as e:
                    logger.warning(f"{e}; retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    delay = min(delay * 2, self.backoff_max)
                continue

            response = await self._poll(session_id)
            if response is None:
                if self.closed:
                    break
                self._set_state(ConnectionState.CONNECTING, session_id)
                await self._sleep(delay)
                delay = min(delay * 2, self.backoff_max)
                continue

            if response.status_code == 410:
                logger.warning(f"Bridge session {session_id} is gone; reconnecting")
                self._set_state(ConnectionState.CONNECTING)
                continue
            if response.status_code not in (200, 204):
                logger.warning(f"Unexpected poll status {response.status_code}: {response.text[:200]}")
                self._set_state(ConnectionState.CONNECTING, session_id)
                await self._sleep(delay)
                delay = min(delay * 2, self.backoff_max)
                continue

            delay = self.backoff
            self._set_state(ConnectionState.CONNECTED, session_id)
            if response.status_code == 204:
                continue

            request = await self._decode(response.content)
            if request is not None:
                yield request

    async def _poll(self, session_id: str) -> Optional[httpx.Response]:
        poll = asyncio.ensure_future(
            self._client.get(
                self._url(f"/sessions/{session_id}/next"),
                params={"wait": self.poll_wait},
                timeout=self.poll_wait + 10.0,
            )
        )
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({poll, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
        if not poll.done():
            poll.cancel()
            try:
                await poll
            except asyncio.CancelledError:
                pass
            return None
        try:
            return poll.result()
        except httpx.HTTPError as e:
            logger.warning(f"Bridge poll failed: {e}")
            return None

    async def _decode(self, frame: bytes) -> Optional[InvocationRequest]:
        try:
            request, is_ref = decode_request(frame)
        except FrameError as e:
            logger.error(f"Discarding malformed request frame: {e}")
            return None
        if not is_ref:
            return request
        try:
            payload = await asyncio.to_thread(
                resolve_payload, request.payload, True, self.blob_store
            )
        except BlobFetchError as e:
            logger.error(
                f"Could not fetch offloaded payload for {request.request_id}: {e}",
                extra={"invocation_id": request.request_id, "function_id": request.function_id},
            )
            await self.respond(
                request.request_id,
                InvocationResult.failure(request.request_id, Outcome.TRANSPORT_ERROR, str(e)),
            )
            return None
        return request.model_copy(update={"payload": payload})

    async def respond(self, request_id: str, result: InvocationResult) -> None:
        """
        Post the single result for a request id.

        Results larger than the inline limit travel through the blob store.
        A 409 (late or duplicate) is logged, not raised.

        Raises:
            TransportError: No session, or the relay is unreachable
        """
        session_id = self._connection.session_id
        if session_id is None:
            raise TransportError(f"No bridge session to deliver {request_id}")

        try:
            payload, is_ref = await asyncio.to_thread(
                offload_payload,
                result.payload,
                self.inline_limit,
                self.blob_store,
                f"responses/{request_id}",
            )
        except (BlobStoreError, OSError) as e:
            logger.error(f"Could not offload result for {request_id}: {e}")
            result = InvocationResult.failure(request_id, Outcome.TRANSPORT_ERROR, str(e))
            payload, is_ref = result.payload, False

        frame = encode_response(result.model_copy(update={"payload": payload}), blob_ref=is_ref)
        try:
            response = await self._client.post(
                self._url(f"/sessions/{session_id}/responses"),
                content=frame,
                headers={"Content-Type": CONTENT_TYPE},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Could not deliver result for {request_id}: {e}") from e

        if response.status_code == 409:
            logger.warning(f"Relay rejected result for {request_id} (late or duplicate)")
            return
        if response.status_code == 410:
            raise TransportError(f"Bridge session {session_id} is gone; result for {request_id} lost")
        if response.status_code >= 400:
            raise TransportError(
                f"Relay refused result for {request_id}: {response.status_code} {response.text[:200]}"
            )
        self._connection.last_activity = time.time()

    def stop(self) -> None:
        """Stop receiving; the session stays open so in-flight results can be delivered."""
        self._closed.set()

    async def close(self) -> None:
        """Stop receiving and close the relay session."""
        self.stop()
        session_id = self._connection.session_id
        if session_id is not None:
            try:
                await self._client.delete(self._url(f"/sessions/{session_id}"))
            except httpx.HTTPError as e:
                logger.debug(f"Ignoring error closing session {session_id}: {e}")
        self._set_state(ConnectionState.DISCONNECTED)

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
