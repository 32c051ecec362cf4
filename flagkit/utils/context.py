"""
Request Context Utilities.

Carries the request id through async code so log lines emitted deep
inside the flag engine can be correlated with the HTTP request (or the
scheduler pass) that caused them.

Usage:
    from flagkit.utils.context import get_request_id

    logger.info("Processing", request_id=get_request_id())
"""

from contextvars import ContextVar, Token
from typing import Any, Optional

# Request-scoped context using contextvars (async-safe)
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID (None outside a request)."""
    return _request_id.get()


def set_request_id(request_id: str) -> Token:
    """Set the request ID for the current context."""
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def add_request_context(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Structlog processor that adds the request id to all logs.
    """
    request_id = get_request_id()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict
