"""
Where: livebridge/relay/hub.py
What: In-memory rendezvous between stub invocations and the local session.
Why: The stub dials the relay per invocation; the developer machine keeps one
     long-poll session open. The hub pairs each request with exactly one response.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Tuple

from livebridge.common.core.framing import (
    decode_request,
    decode_response,
    encode_response,
)
from livebridge.common.models.internal import (
    ConnectionState,
    InvocationResult,
    Outcome,
)

logger = logging.getLogger("relay.hub")


class SessionGoneError(Exception):
    """Raised when a session id is unknown or was replaced."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class DuplicateRequestError(Exception):
    """Raised when a request id is already in flight."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request already in flight: {request_id}")


class DuplicateResponseError(Exception):
    """Raised when a response arrives for an unknown or already answered request."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"No pending request for response: {request_id}")


@dataclass
class LocalSession:
    session_id: str
    created_at: float
    last_activity: float
    outbox: Deque[Tuple[str, bytes]] = field(default_factory=deque)
    ready: asyncio.Condition = field(default_factory=asyncio.Condition)
    polling: int = 0


@dataclass
class PendingInvocation:
    request_id: str
    function_id: str
    session_id: str
    future: "asyncio.Future[bytes]"


class BridgeHub:
    """
    Pairs stub requests with the local session's responses.

    Exactly one response frame is accepted per request id. A request that finds
    no live session fails fast with a transportError frame.
    """

    def __init__(self, liveness_seconds: float = 30.0):
        self.liveness_seconds = liveness_seconds
        self._session: Optional[LocalSession] = None
        self._pending: Dict[str, PendingInvocation] = {}

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------

    def open_session(self) -> str:
        """Open the local session, replacing any previous one."""
        if self._session is not None:
            self._fail_session(self._session.session_id, "Local session replaced")
        now = time.time()
        session_id = uuid.uuid4().hex
        self._session = LocalSession(session_id=session_id, created_at=now, last_activity=now)
        logger.info(f"Local session opened: {session_id}")
        return session_id

    def close_session(self, session_id: str) -> None:
        session = self._require_session(session_id)
        self._fail_session(session.session_id, "Local session closed")
        self._session = None
        logger.info(f"Local session closed: {session_id}")

    async def next_request(self, session_id: str, wait: float) -> Optional[bytes]:
        """
        Long-poll for the next request frame.

        A frame leaves the outbox only in the same step that returns it, so a
        poll cancelled while waiting never loses a request.

        Returns:
            The request frame, or None if nothing arrived within `wait`
        """
        session = self._require_session(session_id)
        session.last_activity = time.time()
        session.polling += 1
        deadline = time.monotonic() + max(wait, 0.0)
        try:
            async with session.ready:
                while True:
                    while session.outbox:
                        request_id, frame = session.outbox.popleft()
                        # Requests abandoned by their stub (timeout) are dropped here.
                        if request_id in self._pending:
                            return frame
                        logger.debug(f"Dropping abandoned request {request_id}")
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    try:
                        await asyncio.wait_for(session.ready.wait(), remaining)
                    except asyncio.TimeoutError:
                        return None
        finally:
            session.polling -= 1
            session.last_activity = time.time()

    def requeue(self, session_id: str, frame: bytes) -> None:
        """
        Put an undelivered request frame back at the head of the outbox.

        Used when the long-poll response carrying it could not be sent.
        """
        session = self._session
        if session is None or session.session_id != session_id:
            return
        request, _ = decode_request(frame)
        if request.request_id not in self._pending:
            return
        session.outbox.appendleft((request.request_id, frame))
        self._notify(session)
        logger.info(f"Requeued undelivered request {request.request_id}")

    def _notify(self, session: LocalSession) -> None:
        async def _wake() -> None:
            async with session.ready:
                session.ready.notify()

        asyncio.get_running_loop().create_task(_wake())

    def deliver(self, session_id: str, frame: bytes) -> InvocationResult:
        """
        Accept the response frame for a pending request.

        Raises:
            SessionGoneError: Unknown session
            DuplicateResponseError: Unknown or already answered request id
        """
        session = self._require_session(session_id)
        session.last_activity = time.time()
        result, _ = decode_response(frame)
        pending = self._pending.get(result.request_id)
        if pending is None or pending.future.done() or pending.session_id != session_id:
            raise DuplicateResponseError(result.request_id)
        pending.future.set_result(frame)
        return result

    # ------------------------------------------------------------------
    # Stub side
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        session = self._session
        if session is None:
            return False
        if session.polling > 0:
            return True
        return time.time() - session.last_activity <= self.liveness_seconds

    async def invoke(self, frame: bytes) -> bytes:
        """
        Forward a request frame and wait for its response frame.

        Raises:
            FrameError: Malformed request frame
            DuplicateRequestError: Request id already in flight
        """
        request, _ = decode_request(frame)

        if request.request_id in self._pending:
            raise DuplicateRequestError(request.request_id)

        session = self._session
        if session is None or not self.is_connected:
            logger.warning(
                f"No live local session for {request.function_id}",
                extra={"invocation_id": request.request_id, "function_id": request.function_id},
            )
            return encode_response(
                InvocationResult.failure(
                    request.request_id,
                    Outcome.TRANSPORT_ERROR,
                    "No local dispatcher is connected to the bridge",
                )
            )

        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = PendingInvocation(
            request_id=request.request_id,
            function_id=request.function_id,
            session_id=session.session_id,
            future=future,
        )

        try:
            async with session.ready:
                session.outbox.append((request.request_id, frame))
                session.ready.notify()
            remaining = request.remaining()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            return await asyncio.wait_for(future, remaining)
        except asyncio.TimeoutError:
            logger.info(
                f"Invocation timed out waiting for local response: {request.request_id}",
                extra={"invocation_id": request.request_id, "function_id": request.function_id},
            )
            return encode_response(
                InvocationResult.failure(
                    request.request_id, Outcome.TIMEOUT, "Deadline elapsed before a response arrived"
                )
            )
        finally:
            self._pending.pop(request.request_id, None)

    # ------------------------------------------------------------------

    @property
    def status(self) -> dict:
        session = self._session
        if session is None:
            state = ConnectionState.DISCONNECTED
        elif self.is_connected:
            state = ConnectionState.CONNECTED
        else:
            state = ConnectionState.CONNECTING
        return {
            "state": state.value,
            "session_id": session.session_id if session else None,
            "last_activity": session.last_activity if session else None,
            "pending": len(self._pending),
        }

    def _require_session(self, session_id: str) -> LocalSession:
        session = self._session
        if session is None or session.session_id != session_id:
            raise SessionGoneError(session_id)
        return session

    def _fail_session(self, session_id: str, reason: str) -> None:
        for pending in list(self._pending.values()):
            if pending.session_id == session_id and not pending.future.done():
                pending.future.set_result(
                    encode_response(
                        InvocationResult.failure(
                            pending.request_id, Outcome.TRANSPORT_ERROR, reason
                        )
                    )
                )
