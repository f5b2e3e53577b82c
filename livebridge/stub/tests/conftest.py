import time

import httpx
import pytest

from livebridge.common.core.blob_store import FileBlobStore
from livebridge.common.core.framing import decode_request, encode_response
from livebridge.common.models.internal import InvocationResult
from livebridge.stub.config import StubConfig


class FakeContext:
    def __init__(self, remaining_ms=3000, request_id="aws-req-1", function_name="deployed-fn"):
        self.aws_request_id = request_id
        self.function_name = function_name
        self._deadline = time.time() + remaining_ms / 1000.0

    def get_remaining_time_in_millis(self):
        return max(0, int((self._deadline - time.time()) * 1000))


@pytest.fixture
def stub_config():
    return StubConfig(
        _env_file=None,
        LIVEBRIDGE_ENDPOINT="http://relay.test",
        LIVEBRIDGE_FUNCTION_ID="fn-a",
        DEADLINE_MARGIN_SECONDS=0.5,
    )


@pytest.fixture
def client():
    with httpx.Client() as client:
        yield client


@pytest.fixture
def blob_store(tmp_path):
    return FileBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def fake_context():
    return FakeContext


@pytest.fixture
def echo_relay():
    return make_echo_relay


def make_echo_relay(outcome_factory=None):
    """
    Relay double: decodes the request frame and answers with a response frame.

    `outcome_factory(request)` builds the InvocationResult; by default the
    request payload is echoed back as a success.
    """
    seen = []

    def respond(http_request: httpx.Request) -> httpx.Response:
        request, is_ref = decode_request(http_request.content)
        seen.append((request, is_ref))
        if outcome_factory is None:
            result = InvocationResult.success(request.request_id, request.payload)
        else:
            result = outcome_factory(request)
        return httpx.Response(200, content=encode_response(result))

    respond.seen = seen
    return respond
