"""
Where: livebridge/common/core/framing.py
What: Binary framing for bridge requests and responses.
Why: Stub, relay and dispatcher must agree on one byte layout.

Layout (big endian):

    magic "LB" | version u8 | kind u8 | flags u8
    request_id  u16 length + utf-8
    request:    function_id u16 length + utf-8 | arrival f64 | deadline f64
    response:   outcome u8
    payload     u32 length + bytes

When FLAG_BLOB_REF is set the payload bytes are a blob reference, not the payload.
"""

import struct
from typing import Tuple

from livebridge.common.models.internal import InvocationRequest, InvocationResult, Outcome

MAGIC = b"LB"
VERSION = 1

KIND_REQUEST = 1
KIND_RESPONSE = 2

FLAG_BLOB_REF = 0x01

CONTENT_TYPE = "application/vnd.livebridge.frame"

_HEADER = struct.Struct(">2sBBB")
_SHORT = struct.Struct(">H")
_LONG = struct.Struct(">I")
_TIMES = struct.Struct(">dd")
_OUTCOME = struct.Struct(">B")

_OUTCOME_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.HANDLER_ERROR: 1,
    Outcome.BUILD_ERROR: 2,
    Outcome.NOT_FOUND: 3,
    Outcome.TIMEOUT: 4,
    Outcome.TRANSPORT_ERROR: 5,
}
_CODE_OUTCOMES = {code: outcome for outcome, code in _OUTCOME_CODES.items()}


class FrameError(ValueError):
    """Raised when bytes cannot be decoded as a bridge frame."""


def _pack_str(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise FrameError(f"Field too long for frame: {len(raw)} bytes")
    return _SHORT.pack(len(raw)) + raw


def _pack_payload(payload: bytes) -> bytes:
    if len(payload) > 0xFFFFFFFF:
        raise FrameError(f"Payload too long for frame: {len(payload)} bytes")
    return _LONG.pack(len(payload)) + payload


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise FrameError("Truncated frame")
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def string(self) -> str:
        (length,) = self.unpack(_SHORT)
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameError(f"Invalid utf-8 in frame field: {e}") from e

    def payload(self) -> bytes:
        (length,) = self.unpack(_LONG)
        return self.take(length)

    def finish(self) -> None:
        if self.offset != len(self.data):
            raise FrameError(f"Trailing bytes after frame: {len(self.data) - self.offset}")


def _read_header(reader: _Reader, expected_kind: int) -> int:
    magic, version, kind, flags = reader.unpack(_HEADER)
    if magic != MAGIC:
        raise FrameError("Bad frame magic")
    if version != VERSION:
        raise FrameError(f"Unsupported frame version: {version}")
    if kind != expected_kind:
        raise FrameError(f"Unexpected frame kind: {kind}")
    return flags


def encode_request(request: InvocationRequest, blob_ref: bool = False) -> bytes:
    flags = FLAG_BLOB_REF if blob_ref else 0
    return b"".join(
        [
            _HEADER.pack(MAGIC, VERSION, KIND_REQUEST, flags),
            _pack_str(request.request_id),
            _pack_str(request.function_id),
            _TIMES.pack(request.arrival, request.deadline),
            _pack_payload(request.payload),
        ]
    )


def decode_request(data: bytes) -> Tuple[InvocationRequest, bool]:
    """
    Decode a request frame.

    Returns:
        (request, blob_ref) where blob_ref tells whether payload is a blob reference
    """
    reader = _Reader(data)
    flags = _read_header(reader, KIND_REQUEST)
    request_id = reader.string()
    function_id = reader.string()
    arrival, deadline = reader.unpack(_TIMES)
    payload = reader.payload()
    reader.finish()
    if not request_id or not function_id:
        raise FrameError("Request frame missing request id or function id")
    request = InvocationRequest(
        request_id=request_id,
        function_id=function_id,
        payload=payload,
        arrival=arrival,
        deadline=deadline,
    )
    return request, bool(flags & FLAG_BLOB_REF)


def encode_response(result: InvocationResult, blob_ref: bool = False) -> bytes:
    flags = FLAG_BLOB_REF if blob_ref else 0
    return b"".join(
        [
            _HEADER.pack(MAGIC, VERSION, KIND_RESPONSE, flags),
            _pack_str(result.request_id),
            _OUTCOME.pack(_OUTCOME_CODES[result.outcome]),
            _pack_payload(result.payload),
        ]
    )


def decode_response(data: bytes) -> Tuple[InvocationResult, bool]:
    reader = _Reader(data)
    flags = _read_header(reader, KIND_RESPONSE)
    request_id = reader.string()
    (code,) = reader.unpack(_OUTCOME)
    payload = reader.payload()
    reader.finish()
    if not request_id:
        raise FrameError("Response frame missing request id")
    outcome = _CODE_OUTCOMES.get(code)
    if outcome is None:
        raise FrameError(f"Unknown outcome code: {code}")
    return (
        InvocationResult(request_id=request_id, outcome=outcome, payload=payload),
        bool(flags & FLAG_BLOB_REF),
    )
