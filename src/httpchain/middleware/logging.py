"""
=============================================================================
LOGGING MIDDLEWARE
=============================================================================

Access logging for every request that enters the pipeline.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                  WHERE EACH PART RUNS                               │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │  before-logic   assign request id, start the clock                  │
    │  after-logic    stop the clock, add X-Request-ID to the response    │
    │  terminate      write the access log line                           │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The log line is written from the terminate hook, so it is emitted once
per request on every path: normal responses, responses produced by an
inner stage that short-circuited, and runs that ended in an error (logged
at ERROR with status "-").

Place it FIRST so its timing covers the whole chain:

    pipeline.add(LoggingMiddleware())
    pipeline.add(ErrorHandlerMiddleware())
    pipeline.add(AuthMiddleware(authenticator))

=============================================================================
"""

from dataclasses import dataclass
from typing import Optional
import json
import logging
import time
import uuid

from .base import NextHandler, TerminableMiddleware
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse


# Namespaced so access logs can be routed separately:
#   logging.getLogger("httpchain.access").addHandler(file_handler)
logger = logging.getLogger("httpchain.access")

REQUEST_ID = "request_id"
DURATION_MS = "duration_ms"
_STARTED_AT = "logging.started_at"


@dataclass
class RequestLog:
    """One access log entry."""

    request_id: str
    method: str
    path: str
    query: str
    client_ip: str
    user_agent: str
    status_code: Optional[int]
    content_length: int
    duration_ms: float
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "method": self.method,
            "path": self.path,
            "query": self.query,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "status_code": self.status_code,
            "content_length": self.content_length,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp,
        }

    def to_text(self) -> str:
        """Apache-style line: ip - - [time] "GET /path" 200 123 4.56ms [id]"""
        status = self.status_code if self.status_code is not None else "-"
        return (
            f'{self.client_ip or "-"} - - [{self.timestamp}] '
            f'"{self.method} {self.path}" {status} '
            f'{self.content_length} {self.duration_ms:.2f}ms [{self.request_id}]'
        )


class LoggingMiddleware(TerminableMiddleware):
    """
    Request logging middleware.

    Usage:
        LoggingMiddleware()                             # text lines
        LoggingMiddleware(log_format="json")            # JSON lines
        LoggingMiddleware(skip_paths=["/health"])       # quiet probes
    """

    def __init__(
        self,
        log_format: str = "text",
        include_request_id: bool = True,
        request_id_header: str = "X-Request-ID",
        log_level: int = logging.INFO,
        skip_paths: Optional[list] = None,
    ):
        """
        Args:
            log_format: "text" or "json"
            include_request_id: Add the request id header to responses
            request_id_header: Header read for an incoming id and written
                               on the response
            log_level: Level for successful requests
            skip_paths: Paths that are never logged
        """
        if log_format not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {log_format!r}")
        self.log_format = log_format
        self.include_request_id = include_request_id
        self.request_id_header = request_id_header
        self.log_level = log_level
        self.skip_paths = set(skip_paths or [])

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        # Reuse a caller-supplied id so logs correlate across services.
        request_id = request.get_header(self.request_id_header) or uuid.uuid4().hex[:8]
        request.attributes[REQUEST_ID] = request_id
        started = time.perf_counter()
        request.attributes[_STARTED_AT] = started

        try:
            response = next(request)
        finally:
            request.attributes[DURATION_MS] = (time.perf_counter() - started) * 1000

        if self.include_request_id:
            response.headers[self.request_id_header] = request_id

        return response

    def terminate(self, request: HTTPRequest, response: Optional[HTTPResponse]) -> None:
        if request.path in self.skip_paths:
            return

        entry = self._build_entry(request, response)

        if response is None:
            logger.error(f"Request failed: {self._format(entry)}")
            return

        logger.log(self.log_level, self._format(entry))

    def _build_entry(self, request: HTTPRequest, response: Optional[HTTPResponse]) -> RequestLog:
        # Short-circuited before this stage ran: no id or timing yet.
        request_id = request.attributes.get(REQUEST_ID, "-")
        duration_ms = request.attributes.get(DURATION_MS)
        if duration_ms is None:
            started = request.attributes.get(_STARTED_AT)
            duration_ms = (time.perf_counter() - started) * 1000 if started else 0.0

        query = "&".join(
            f"{name}={value}"
            for name, values in request.query_params.items()
            for value in values
        )

        return RequestLog(
            request_id=request_id,
            method=request.method,
            path=request.path,
            query=query,
            client_ip=request.client_ip,
            user_agent=request.user_agent or "-",
            status_code=int(response.status) if response is not None else None,
            content_length=len(response.body) if response is not None else 0,
            duration_ms=duration_ms,
            timestamp=time.strftime("%d/%b/%Y:%H:%M:%S %z"),
        )

    def _format(self, entry: RequestLog) -> str:
        if self.log_format == "json":
            return json.dumps(entry.to_dict())
        return entry.to_text()
