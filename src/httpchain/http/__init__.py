"""
HTTP data model: request, response, status codes and routing.

No parsing or serialization lives here. Requests are built in-process by
whatever transport hosts the kernel (or by tests), and responses are
handed back to it as dataclasses.
"""

from .request import HTTPRequest
from .response import (
    HTTPResponse,
    ResponseBuilder,
    ok,
    created,
    no_content,
    bad_request,
    unauthorized,
    forbidden,
    not_found,
    method_not_allowed,
    too_many_requests,
    internal_error,
    problem,
)
from .router import Router, Route, RouteMatch
from .status_codes import HTTPStatus

__all__ = [
    "HTTPRequest",
    "HTTPResponse",
    "ResponseBuilder",
    "ok",
    "created",
    "no_content",
    "bad_request",
    "unauthorized",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "too_many_requests",
    "internal_error",
    "problem",
    "Router",
    "Route",
    "RouteMatch",
    "HTTPStatus",
]
