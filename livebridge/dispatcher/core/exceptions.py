"""
Custom exception classes.

Represent errors raised while resolving, building and executing a forwarded
invocation. Each maps to exactly one outcome tag.
"""

from typing import List, Optional

from livebridge.common.core.blob_store import BlobFetchError
from livebridge.common.models.internal import Outcome


class LiveBridgeError(Exception):
    """Base exception class for the local dispatcher."""

    outcome: Outcome = Outcome.HANDLER_ERROR


class FunctionNotFoundError(LiveBridgeError):
    """Raised when a function id is unknown to the registry."""

    outcome = Outcome.NOT_FOUND

    def __init__(self, function_id: str):
        self.function_id = function_id
        super().__init__(f"Function not found: {function_id}")


class BuildError(LiveBridgeError):
    """Raised when a builder fails; carries the builder diagnostics."""

    outcome = Outcome.BUILD_ERROR

    def __init__(self, function_id: str, diagnostics: str, fingerprint: Optional[str] = None):
        self.function_id = function_id
        self.diagnostics = diagnostics
        self.fingerprint = fingerprint
        super().__init__(f"Build failed for {function_id}: {diagnostics}")


class HandlerError(LiveBridgeError):
    """The executed handler threw or returned an error."""

    outcome = Outcome.HANDLER_ERROR

    def __init__(self, error_type: str, message: str, stack_trace: Optional[List[str]] = None):
        self.error_type = error_type
        self.message = message
        self.stack_trace = stack_trace or []
        super().__init__(f"{error_type}: {message}")


class WorkerTimeoutError(LiveBridgeError):
    """Raised when a worker exceeds the invocation deadline."""

    outcome = Outcome.TIMEOUT

    def __init__(self, function_id: str, timeout: float):
        self.function_id = function_id
        self.timeout = timeout
        super().__init__(f"Invocation of {function_id} exceeded its deadline ({timeout:.2f}s)")


class WorkerCrashError(LiveBridgeError):
    """Raised when a worker exits without producing a result."""

    outcome = Outcome.HANDLER_ERROR

    def __init__(self, function_id: str, returncode: Optional[int], stderr_tail: str = ""):
        self.function_id = function_id
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        detail = f"Worker for {function_id} exited with code {returncode} before responding"
        if stderr_tail:
            detail = f"{detail}: {stderr_tail}"
        super().__init__(detail)


class TransportError(LiveBridgeError):
    """Raised when the bridge cannot deliver a message."""

    outcome = Outcome.TRANSPORT_ERROR


class StartupError(Exception):
    """Fatal condition during dispatcher startup (e.g. control socket cannot bind)."""


def outcome_for(exc: BaseException) -> Outcome:
    """Map an exception to its outcome tag."""
    if isinstance(exc, LiveBridgeError):
        return exc.outcome
    if isinstance(exc, BlobFetchError):
        return Outcome.TRANSPORT_ERROR
    return Outcome.HANDLER_ERROR
