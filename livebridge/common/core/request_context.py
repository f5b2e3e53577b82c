"""
RequestContext management.
Use ContextVar to share the current invocation across async execution.
"""

from contextvars import ContextVar
from typing import Optional


# Context variable for the forwarded invocation (request id).
_invocation_id_var: ContextVar[Optional[str]] = ContextVar("invocation_id", default=None)
# Context variable for the target function id.
_function_id_var: ContextVar[Optional[str]] = ContextVar("function_id", default=None)


def get_invocation_id() -> Optional[str]:
    """Get the current invocation id."""
    return _invocation_id_var.get()


def get_function_id() -> Optional[str]:
    """Get the current function id."""
    return _function_id_var.get()


def generate_invocation_id() -> str:
    """
    Generate and set a new invocation id (UUID) for the current context.
    """
    import uuid

    new_id = str(uuid.uuid4())
    _invocation_id_var.set(new_id)
    return new_id


def set_invocation_context(invocation_id: str, function_id: Optional[str] = None) -> None:
    """
    Bind an invocation to the current context.

    Args:
        invocation_id: Request id of the forwarded call
        function_id: Target function id, if already known
    """
    _invocation_id_var.set(invocation_id)
    if function_id is not None:
        _function_id_var.set(function_id)


def clear_invocation_context() -> None:
    """Clear the invocation context."""
    _invocation_id_var.set(None)
    _function_id_var.set(None)
