"""
Correlation ID-based tracing for webhook requests and the reconcile
work they trigger on queue worker threads
"""
import json
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

def new_trace_id() -> str:
    return uuid.uuid4().hex[:16]

class TraceSpan:
    """One timed operation; a context manager that owns the trace context while open.

    Worker threads are pooled, so the previous trace/span ids are restored on
    exit instead of leaking into whatever the thread runs next.
    """

    def __init__(self, name: str, service: str, trace_id: str = None, parent_span_id: str = None):
        self.name = name
        self.service = service
        self.span_id = uuid.uuid4().hex[:8]
        self.trace_id = trace_id or new_trace_id()
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {}
        self.status = "ok"
        self.started = time.time()
        self._tokens = None

    def add_tag(self, key: str, value) -> "TraceSpan":
        self.tags[key] = value
        return self

    def set_error(self, error: Exception) -> "TraceSpan":
        self.status = "error"
        self.tags["error.type"] = type(error).__name__
        self.tags["error.message"] = str(error)
        return self

    def finish(self) -> Dict[str, Any]:
        record = {
            "service": self.service,
            "operation": self.name,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round((time.time() - self.started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")
        return record

    def __enter__(self):
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()
        trace_token, span_token = self._tokens
        span_id_var.reset(span_token)
        trace_id_var.reset(trace_token)

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None) -> TraceSpan:
        """Child of the current span when one is open, else a new trace"""
        return TraceSpan(name, self.service_name,
                         trace_id=trace_id or trace_id_var.get(),
                         parent_span_id=span_id_var.get())

    def start_span_from_request(self, request: Request) -> TraceSpan:
        # Gateways do not send trace headers, but internal callers and tests may
        span = TraceSpan(f"{request.method} {request.url.path}", self.service_name,
                         trace_id=request.headers.get("X-Trace-ID"),
                         parent_span_id=request.headers.get("X-Span-ID"))
        span.add_tag("http.method", request.method)
        return span

reconciler_tracer = Tracer("hotspot-reconciler")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

def get_trace_headers() -> Dict[str, str]:
    """Headers that carry the current trace to the gateway and device APIs"""
    headers = {}
    if trace_id_var.get():
        headers["X-Trace-ID"] = trace_id_var.get()
    if span_id_var.get():
        headers["X-Span-ID"] = span_id_var.get()
    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.start_span_from_request(request) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers["X-Trace-ID"] = span.trace_id
        return response
