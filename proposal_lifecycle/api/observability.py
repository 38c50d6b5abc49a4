import json
import logging
import os
import re
import time
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from prometheus_fastapi_instrumentator import Instrumentator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
proposal_id_var: ContextVar[str] = ContextVar("proposal_id", default="")
approval_instance_id_var: ContextVar[str] = ContextVar("approval_instance_id", default="")

_PROPOSAL_PATH = re.compile(r"^/proposals/(?P<resource_id>[^/]+)")
_APPROVAL_PATH = re.compile(r"^/approvals/(?P<resource_id>[^/]+)")
_TRACEPARENT = re.compile(r"^[0-9a-f]{2}-(?P<trace_id>[0-9a-f]{32})-[0-9a-f]{16}-[0-9a-f]{2}$")

_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str]], ...] = (
    ("correlation_id", correlation_id_var),
    ("request_id", request_id_var),
    ("trace_id", trace_id_var),
    ("proposal_id", proposal_id_var),
    ("approval_instance_id", approval_instance_id_var),
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the request context of the current task."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "service": os.getenv("SERVICE_NAME", "proposal-lifecycle"),
            "environment": os.getenv("ENVIRONMENT", "local"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field, var in _CONTEXT_FIELDS:
            payload[field] = var.get() or None
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update(extra_fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {key: value for key, value in payload.items() if value is not None},
            default=str,
        )


def configure_logging(level: Optional[str] = None) -> None:
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)


def _path_id(pattern: re.Pattern[str], path: str) -> Optional[str]:
    match = pattern.match(path)
    return match.group("resource_id") if match is not None else None


def proposal_id_from_path(path: str) -> Optional[str]:
    return _path_id(_PROPOSAL_PATH, path)


def approval_instance_id_from_path(path: str) -> Optional[str]:
    return _path_id(_APPROVAL_PATH, path)


def trace_id_from_traceparent(traceparent: str) -> Optional[str]:
    match = _TRACEPARENT.match(traceparent.strip().lower())
    return match.group("trace_id") if match is not None else None


def setup_observability(app: FastAPI) -> None:
    configure_logging()
    Instrumentator().instrument(app).expose(app)

    @app.middleware("http")
    async def _request_observability_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        logger = logging.getLogger("http.access")
        started = time.perf_counter()
        path = request.url.path

        correlation_id = request.headers.get("X-Correlation-Id") or f"corr_{uuid4().hex[:12]}"
        request_id = request.headers.get("X-Request-Id") or f"req_{uuid4().hex[:12]}"
        trace_id = trace_id_from_traceparent(request.headers.get("traceparent", ""))
        trace_id = trace_id or uuid4().hex

        tokens = [
            (correlation_id_var, correlation_id_var.set(correlation_id)),
            (request_id_var, request_id_var.set(request_id)),
            (trace_id_var, trace_id_var.set(trace_id)),
            (proposal_id_var, proposal_id_var.set(proposal_id_from_path(path) or "")),
            (
                approval_instance_id_var,
                approval_instance_id_var.set(approval_instance_id_from_path(path) or ""),
            ),
        ]
        status_code = 500
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "request.completed",
                extra={
                    "extra_fields": {
                        "http_method": request.method,
                        "endpoint": path,
                        "status_code": status_code,
                        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                    }
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers["X-Correlation-Id"] = response.headers.get(
            "X-Correlation-Id", correlation_id
        )
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Trace-Id"] = trace_id
        response.headers["traceparent"] = f"00-{trace_id}-0000000000000001-01"
        return response
