from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from autoflow.context import reset_cascade_depth, reset_correlation_id, set_cascade_depth, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
# Matches the ledger's correlation_id column width.
_MAX_LENGTH = 128
_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")


def resolve_correlation_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if candidate and len(candidate) <= _MAX_LENGTH and _ALLOWED.match(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds one correlation id per request; every ledger record created while serving it carries that id."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        correlation_token = set_correlation_id(correlation_id)
        depth_token = set_cascade_depth(None)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_cascade_depth(depth_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
