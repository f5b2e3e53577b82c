"""
Core logic package.

Provides fingerprinting, copy rules and the exception hierarchy.
"""

from .copy_files import apply_copy_files
from .exceptions import (
    BuildError,
    FunctionNotFoundError,
    HandlerError,
    LiveBridgeError,
    StartupError,
    TransportError,
    WorkerCrashError,
    WorkerTimeoutError,
    outcome_for,
)
from .fingerprint import compute_fingerprint

__all__ = [
    "apply_copy_files",
    "compute_fingerprint",
    "BuildError",
    "FunctionNotFoundError",
    "HandlerError",
    "LiveBridgeError",
    "StartupError",
    "TransportError",
    "WorkerCrashError",
    "WorkerTimeoutError",
    "outcome_for",
]
