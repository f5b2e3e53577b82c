"""
Where: livebridge/stub/handler.py
What: The handler deployed in place of the real function code.
Why: Every platform invocation is forwarded to the developer's machine and the
     result is handed back as if the function had run remotely.

The stub never interprets the event or the result beyond JSON encoding, so
the same shim fronts functions of every runtime.
"""

import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx

from livebridge.common.core.blob_store import (
    BlobStore,
    BlobStoreError,
    blob_store_from_url,
    offload_payload,
)
from livebridge.common.core.http_client import HttpClientFactory
from livebridge.common.core.request_context import set_invocation_context
from livebridge.common.models.internal import InvocationRequest, InvocationResult, Outcome

from .bridge_client import send
from .config import StubConfig, config
from .lambda_logging import robust_lambda_logger

logger = logging.getLogger("stub.handler")


class BridgeInvocationError(Exception):
    """
    Raised to the platform when the forwarded invocation did not succeed.

    Carries the outcome tag and the error document produced locally.
    """

    def __init__(
        self,
        outcome: Outcome,
        error_type: str,
        message: str,
        stack_trace: Optional[List[str]] = None,
    ):
        self.outcome = outcome
        self.error_type = error_type
        self.message = message
        self.stack_trace = stack_trace or []
        super().__init__(f"[{outcome.value}] {error_type}: {message}")

    @classmethod
    def from_result(cls, result: InvocationResult) -> "BridgeInvocationError":
        doc: Dict[str, Any] = result.error or {}
        return cls(
            result.outcome,
            str(doc.get("errorType") or result.outcome.value),
            str(doc.get("errorMessage") or ""),
            list(doc.get("stackTrace") or []),
        )


# Reused across invocations of a warm container.
_client: Optional[httpx.Client] = None


def _get_client(stub_config: StubConfig) -> httpx.Client:
    global _client  # noqa: PLW0603
    if _client is None:
        _client = HttpClientFactory(stub_config).create_sync_client()
    return _client


def _remaining_seconds(context: Any, default: float) -> float:
    getter = getattr(context, "get_remaining_time_in_millis", None)
    if getter is None:
        return default
    return getter() / 1000.0


def _decode_result(payload: bytes) -> Any:
    if not payload:
        return None
    text = payload.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


def forward(
    event: Any,
    context: Any,
    stub_config: Optional[StubConfig] = None,
    client: Optional[httpx.Client] = None,
    blob_store: Optional[BlobStore] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Forward one invocation and translate its outcome.

    Raises:
        BridgeInvocationError: handlerError, buildError, notFound and
            transportError outcomes, or a timeout that outlived the sleep
    """
    cfg = stub_config or config
    if blob_store is None:
        blob_store = blob_store_from_url(cfg.BLOB_STORE_URL)

    function_id = cfg.LIVEBRIDGE_FUNCTION_ID or getattr(context, "function_name", "")
    platform_id = getattr(context, "aws_request_id", None) or uuid.uuid4().hex
    # Platform retries reuse the request id; each forwarded call must be unique.
    request_id = f"{platform_id}-{uuid.uuid4().hex[:8]}"
    set_invocation_context(request_id, function_id)

    if not cfg.LIVEBRIDGE_ENDPOINT:
        raise BridgeInvocationError(
            Outcome.TRANSPORT_ERROR, "ConfigurationError", "LIVEBRIDGE_ENDPOINT is not set"
        )

    now = time.time()
    remaining = _remaining_seconds(context, cfg.DEFAULT_TIMEOUT_SECONDS)
    deadline = now + max(remaining - cfg.DEADLINE_MARGIN_SECONDS, 0.0)

    payload = json.dumps(event).encode("utf-8")
    try:
        body, is_ref = offload_payload(
            payload, cfg.INLINE_PAYLOAD_LIMIT, blob_store, f"requests/{request_id}"
        )
    except (BlobStoreError, OSError) as e:
        raise BridgeInvocationError(Outcome.TRANSPORT_ERROR, "PayloadTooLarge", str(e))

    request = InvocationRequest(
        request_id=request_id,
        function_id=function_id,
        payload=body,
        arrival=now,
        deadline=deadline,
    )
    result = send(
        cfg.LIVEBRIDGE_ENDPOINT,
        request,
        client or _get_client(cfg),
        blob_ref=is_ref,
        blob_store=blob_store,
    )

    if result.ok:
        return _decode_result(result.payload)

    if result.outcome is Outcome.TIMEOUT:
        # Let the platform's own timeout fire, as it would for the real code.
        logger.warning(f"Invocation {request_id} timed out locally; waiting for platform timeout")
        sleep(max(_remaining_seconds(context, 0.0), 0.0))

    error = BridgeInvocationError.from_result(result)
    logger.error(f"Invocation {request_id} failed: {error}")
    raise error


@robust_lambda_logger(sink_url=config.LOG_SINK_URL)
def handler(event, context):
    """Platform entry point."""
    return forward(event, context)
