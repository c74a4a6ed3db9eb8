"""
=============================================================================
HTTP RESPONSE
=============================================================================

The value a terminal handler produces and every stage hands back outward.

    Terminal handler          Stage after-logic           Caller
    returns HTTPResponse ──►  may add headers,   ──►      receives the
                              replace the body            final response

Responses are plain mutable dataclasses. Stages post-process them in
place (``response.set_header(...)``) or return a different one.

=============================================================================
BUILDER PATTERN
=============================================================================

    (ResponseBuilder()
        .status(HTTPStatus.CREATED)
        .header("Location", "/users/42")
        .json({"id": 42})
        .build())

The convenience functions at the bottom of this module (ok, not_found,
problem, ...) cover the common cases.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import json

from .status_codes import HTTPStatus


@dataclass
class HTTPResponse:
    """A response flowing back out through the middleware chain."""

    status: HTTPStatus = HTTPStatus.OK
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        """e.g. "HTTP/1.1 200 OK"."""
        return f"{self.version} {int(self.status)} {HTTPStatus.coerce(self.status).phrase}"

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON."""
        return json.loads(self.body.decode("utf-8"))

    def set_header(self, name: str, value: str) -> "HTTPResponse":
        """Set a header; returns self for chaining."""
        self.headers[name] = value
        return self

    def set_body(self, body: Union[str, bytes]) -> "HTTPResponse":
        """Set the body, encoding strings as UTF-8."""
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        return self


class ResponseBuilder:
    """
    Fluent builder for HTTPResponse.

    Every setter returns the builder; ``build()`` produces the response.
    """

    def __init__(self):
        self._status = HTTPStatus.OK
        self._headers: Dict[str, str] = {}
        self._body = b""

    def status(self, status: HTTPStatus) -> "ResponseBuilder":
        self._status = status
        return self

    def header(self, name: str, value: str) -> "ResponseBuilder":
        self._headers[name] = value
        return self

    def headers(self, headers: Dict[str, str]) -> "ResponseBuilder":
        self._headers.update(headers)
        return self

    def content_type(self, content_type: str) -> "ResponseBuilder":
        return self.header("Content-Type", content_type)

    def body(self, body: Union[str, bytes]) -> "ResponseBuilder":
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        return self

    def text(self, text: str, content_type: str = "text/plain; charset=utf-8") -> "ResponseBuilder":
        self.content_type(content_type)
        return self.body(text)

    def json(self, data: Any, content_type: str = "application/json; charset=utf-8") -> "ResponseBuilder":
        """
        Set a JSON body.

        ``default=str`` keeps datetimes and similar values from breaking
        serialization of error payloads.
        """
        self.content_type(content_type)
        return self.body(json.dumps(data, default=str))

    def build(self) -> HTTPResponse:
        return HTTPResponse(
            status=self._status,
            headers=dict(self._headers),
            body=self._body,
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def ok(body: Union[str, bytes, dict, list] = "", content_type: Optional[str] = None) -> HTTPResponse:
    """
    200 OK. dict/list bodies become JSON, str becomes text, bytes are sent
    as-is.
    """
    builder = ResponseBuilder().status(HTTPStatus.OK)

    if isinstance(body, (dict, list)):
        builder.json(body)
    elif isinstance(body, str):
        builder.text(body, content_type or "text/plain; charset=utf-8")
    else:
        builder.body(body)
        if content_type:
            builder.content_type(content_type)

    return builder.build()


def created(body: Union[str, bytes, dict, list] = "", location: Optional[str] = None) -> HTTPResponse:
    """201 Created, with an optional Location header."""
    builder = ResponseBuilder().status(HTTPStatus.CREATED)

    if isinstance(body, (dict, list)):
        builder.json(body)
    elif body:
        builder.body(body)

    if location:
        builder.header("Location", location)

    return builder.build()


def no_content() -> HTTPResponse:
    return ResponseBuilder().status(HTTPStatus.NO_CONTENT).build()


def bad_request(message: str = "Bad Request") -> HTTPResponse:
    return ResponseBuilder().status(HTTPStatus.BAD_REQUEST).json({"error": message}).build()


def unauthorized(message: str = "Unauthorized", realm: str = "api", scheme: str = "Bearer") -> HTTPResponse:
    """
    401 Unauthorized with a WWW-Authenticate challenge.

    401 means "not authenticated". For "authenticated but not allowed"
    use forbidden().
    """
    return (ResponseBuilder()
        .status(HTTPStatus.UNAUTHORIZED)
        .header("WWW-Authenticate", f'{scheme} realm="{realm}"')
        .json({"error": message})
        .build())


def forbidden(message: str = "Forbidden") -> HTTPResponse:
    return ResponseBuilder().status(HTTPStatus.FORBIDDEN).json({"error": message}).build()


def not_found(message: str = "Not Found") -> HTTPResponse:
    return ResponseBuilder().status(HTTPStatus.NOT_FOUND).json({"error": message}).build()


def method_not_allowed(allowed_methods: List[str]) -> HTTPResponse:
    """405 with the Allow header listing the valid methods."""
    return (ResponseBuilder()
        .status(HTTPStatus.METHOD_NOT_ALLOWED)
        .header("Allow", ", ".join(allowed_methods))
        .json({"error": "Method Not Allowed", "allowed": allowed_methods})
        .build())


def too_many_requests(retry_after: int, limit: int) -> HTTPResponse:
    """429 with Retry-After and X-RateLimit-* headers."""
    return (ResponseBuilder()
        .status(HTTPStatus.TOO_MANY_REQUESTS)
        .header("Retry-After", str(retry_after))
        .header("X-RateLimit-Limit", str(limit))
        .header("X-RateLimit-Remaining", "0")
        .json({
            "error": "Too Many Requests",
            "message": f"Rate limit exceeded. Try again in {retry_after} seconds.",
            "retry_after": retry_after,
        })
        .build())


def internal_error(message: str = "Internal Server Error") -> HTTPResponse:
    """500. Keep the message generic in production."""
    return ResponseBuilder().status(HTTPStatus.INTERNAL_SERVER_ERROR).json({"error": message}).build()


def problem(
    status: int,
    detail: Optional[str] = None,
    instance: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    type_base: str = "about:blank",
) -> HTTPResponse:
    """
    RFC 7807 problem details response.

        {
            "type": "about:blank",
            "title": "Not Found",
            "status": 404,
            "detail": "User 42 does not exist",
            "instance": "/users/42"
        }
    """
    code = HTTPStatus.coerce(status)
    payload: Dict[str, Any] = {
        "type": type_base,
        "title": code.phrase,
        "status": int(code),
    }
    if detail:
        payload["detail"] = detail
    if instance:
        payload["instance"] = instance

    builder = (ResponseBuilder()
        .status(code)
        .json(payload, content_type="application/problem+json"))
    if headers:
        builder.headers(headers)
    return builder.build()
