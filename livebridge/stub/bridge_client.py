"""
Stub side of the bridge: one synchronous round trip per invocation.
"""

import logging
from typing import Optional

import httpx

from livebridge.common.core.blob_store import BlobFetchError, BlobStore, resolve_payload
from livebridge.common.core.framing import (
    CONTENT_TYPE,
    FrameError,
    decode_response,
    encode_request,
)
from livebridge.common.models.internal import InvocationRequest, InvocationResult, Outcome

logger = logging.getLogger("stub.bridge_client")

MIN_TIMEOUT_SECONDS = 0.1


def send(
    endpoint: str,
    request: InvocationRequest,
    client: httpx.Client,
    blob_ref: bool = False,
    blob_store: Optional[BlobStore] = None,
) -> InvocationResult:
    """
    Forward a request through the relay and return its result.

    Never raises and never retries: connection failures, resets, non-200
    answers and malformed frames all come back as a transportError result.
    Waiting is bounded by the request deadline; running out of time yields a
    timeout result.
    """
    url = f"{endpoint.rstrip('/')}/bridge/invocations"
    timeout = max(request.remaining(), MIN_TIMEOUT_SECONDS)

    try:
        response = client.post(
            url,
            content=encode_request(request, blob_ref=blob_ref),
            headers={"Content-Type": CONTENT_TYPE},
            timeout=timeout,
        )
    except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
        # The relay was never reached; fail fast instead of waiting out the deadline.
        logger.warning(f"Bridge unreachable at {url}: {type(e).__name__}")
        return InvocationResult.failure(
            request.request_id, Outcome.TRANSPORT_ERROR, f"Bridge unreachable: {e}"
        )
    except (httpx.ReadTimeout, httpx.WriteTimeout):
        return InvocationResult.failure(
            request.request_id,
            Outcome.TIMEOUT,
            f"No result from the bridge within {timeout:.2f}s",
        )
    except httpx.HTTPError as e:
        logger.warning(f"Bridge unreachable at {url}: {e}")
        return InvocationResult.failure(
            request.request_id, Outcome.TRANSPORT_ERROR, f"Bridge unreachable: {e}"
        )

    if response.status_code != 200:
        return InvocationResult.failure(
            request.request_id,
            Outcome.TRANSPORT_ERROR,
            f"Bridge answered {response.status_code}: {response.text[:500]}",
        )

    try:
        result, is_ref = decode_response(response.content)
    except FrameError as e:
        return InvocationResult.failure(
            request.request_id, Outcome.TRANSPORT_ERROR, f"Malformed response frame: {e}"
        )
    if result.request_id != request.request_id:
        return InvocationResult.failure(
            request.request_id,
            Outcome.TRANSPORT_ERROR,
            f"Response for {result.request_id} does not match request {request.request_id}",
        )

    if is_ref:
        try:
            payload = resolve_payload(result.payload, True, blob_store)
        except BlobFetchError as e:
            return InvocationResult.failure(request.request_id, Outcome.TRANSPORT_ERROR, str(e))
        result = result.model_copy(update={"payload": payload})
    return result
