"""
Lightweight logging context helpers for propagating request/sandbox identifiers.

Usage:

    from runbox_Server_API.app.core.Logging.log_context import log_context, new_request_id

    with log_context(request_id=new_request_id(), sandbox_id=sandbox_id) as log:
        log.info("Provisioning")

The context manager both contextualizes the base logger (so nested logs inherit
the fields) and yields a bound logger for convenience.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from loguru import logger

REQUEST_ID_HEADER = "X-Request-ID"


def new_request_id() -> str:
    """Return a new opaque request identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Set structured logging fields for the enclosed block and yield a bound logger."""
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        yield logger.bind(**clean)


def ensure_request_id(request: Any) -> str:
    """Return a request_id for a FastAPI Request, synthesizing one if needed.

    Prefers ``request.state.request_id``, then the ``X-Request-ID`` header, and
    stores whatever it settles on back on ``request.state``.
    """
    state = getattr(request, "state", None)
    req_id = getattr(state, "request_id", None)
    if not req_id:
        headers = getattr(request, "headers", None) or {}
        req_id = headers.get(REQUEST_ID_HEADER) or headers.get(REQUEST_ID_HEADER.lower())
    if not req_id:
        req_id = new_request_id()
    if state is not None:
        state.request_id = str(req_id)
    return str(req_id)
