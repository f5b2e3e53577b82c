"""
Bridge wire models.

Shared by the stub, the relay and the local dispatcher.
"""

import json
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Outcome(str, Enum):
    """Outcome tag carried by every InvocationResult."""

    SUCCESS = "success"
    HANDLER_ERROR = "handlerError"
    BUILD_ERROR = "buildError"
    NOT_FOUND = "notFound"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transportError"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class InvocationRequest(BaseModel):
    """Stub -> local dispatcher: one forwarded platform invocation."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1, description="Unique per forwarded call")
    function_id: str = Field(..., min_length=1, description="Target function id")
    payload: bytes = Field(default=b"", description="Opaque event payload")
    arrival: float = Field(default_factory=time.time, description="Arrival (epoch seconds)")
    deadline: float = Field(..., description="Deadline (epoch seconds)")

    def remaining(self, now: Optional[float] = None) -> float:
        """Seconds left before the deadline (negative once elapsed)."""
        return self.deadline - (time.time() if now is None else now)


class InvocationResult(BaseModel):
    """
    Local dispatcher -> stub: the single result for a request id.

    On success `payload` holds the handler's response bytes; for every other
    outcome it holds a JSON error document (errorType, errorMessage, stackTrace).
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    outcome: Outcome
    payload: bytes = b""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def error(self) -> Optional[Dict[str, Any]]:
        """Decoded error document, or None on success."""
        if self.ok:
            return None
        try:
            doc = json.loads(self.payload.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            message = self.payload.decode("utf-8", "replace")
            return {"errorType": self.outcome.value, "errorMessage": message}
        if isinstance(doc, dict):
            return doc
        return {"errorType": self.outcome.value, "errorMessage": str(doc)}

    @classmethod
    def success(cls, request_id: str, payload: bytes) -> "InvocationResult":
        return cls(request_id=request_id, outcome=Outcome.SUCCESS, payload=payload)

    @classmethod
    def failure(
        cls,
        request_id: str,
        outcome: Outcome,
        message: str,
        error_type: Optional[str] = None,
        stack_trace: Optional[List[str]] = None,
    ) -> "InvocationResult":
        doc: Dict[str, Any] = {
            "errorType": error_type or outcome.value,
            "errorMessage": message,
        }
        if stack_trace:
            doc["stackTrace"] = stack_trace
        return cls(
            request_id=request_id,
            outcome=outcome,
            payload=json.dumps(doc, ensure_ascii=False).encode("utf-8"),
        )


class BridgeConnection(BaseModel):
    """Snapshot of the local session with the relay."""

    endpoint: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    session_id: Optional[str] = None
    last_activity: float = 0.0
