"""
Request correlation for the game service.

Each HTTP request (and each settlement run) is a span written to the log as
one structured TRACE line. Trace and request ids are echoed back in response
headers and copied into error envelopes.
"""
import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"
REQUEST_ID_HEADER = "X-Request-ID"

def _short_id(length: int) -> str:
    return uuid.uuid4().hex[:length]

class TraceSpan:
    """A timed operation, logged once when it finishes."""

    def __init__(self, service: str, operation: str, trace_id: Optional[str] = None, parent_id: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or _short_id(16)
        self.span_id = _short_id(8)
        self.parent_id = parent_id
        self.tags: Dict[str, Any] = {}
        self.failed = False
        self.started_at = time.time()
        self._clock = time.perf_counter()

    def tag(self, **tags) -> "TraceSpan":
        self.tags.update(tags)
        return self

    def fail(self, error: Exception) -> "TraceSpan":
        self.failed = True
        return self.tag(error_type=type(error).__name__, error_message=str(error))

    def finish(self):
        record = {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_id,
            "status": "error" if self.failed else "ok",
            "duration_ms": round((time.perf_counter() - self._clock) * 1000, 2),
            "timestamp": self.started_at,
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.fail(exc_val)
        self.finish()

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def span(self, operation: str, trace_id: Optional[str] = None, parent_id: Optional[str] = None) -> TraceSpan:
        return TraceSpan(self.service_name, operation, trace_id, parent_id)

    def span_for_request(self, request: Request) -> TraceSpan:
        """Continue the caller's trace when it sent one."""
        span = self.span(
            f"{request.method} {request.url.path}",
            trace_id=request.headers.get(TRACE_HEADER),
            parent_id=request.headers.get(SPAN_HEADER),
        )
        return span.tag(http_method=request.method, http_path=request.url.path)

game_tracer = Tracer("game-service")

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.span_for_request(request) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or span.span_id

        response = await call_next(request)
        span.tag(http_status=response.status_code)
        if response.status_code >= 500:
            span.failed = True

        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response
