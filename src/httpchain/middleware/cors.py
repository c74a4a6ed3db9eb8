"""
=============================================================================
CORS MIDDLEWARE
=============================================================================

Cross-Origin Resource Sharing for browser clients.

    ┌─────────────────────────────────────────────────────────────────────┐
    │   Browser                                   Pipeline                │
    │                                                                      │
    │   OPTIONS /api/users  ─────────────────►   CORSMiddleware           │
    │   Origin: https://app.example               answers 204 itself      │
    │   Access-Control-Request-Method: POST       (short-circuit: auth    │
    │                       ◄─────────────────    and handlers never run) │
    │                                                                      │
    │   POST /api/users     ─────────────────►   CORSMiddleware           │
    │   Origin: https://app.example               → rest of the chain     │
    │                       ◄─────────────────    after-logic adds        │
    │                                             Access-Control-* headers│
    └─────────────────────────────────────────────────────────────────────┘

Place it before authentication: preflight requests carry no credentials
and must succeed anyway.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import List

from .base import Middleware, NextHandler
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, ResponseBuilder
from ..http.status_codes import HTTPStatus


@dataclass
class CORSConfig:
    """
    CORS policy.

    Development:
        CORSConfig()   # any origin, common methods and headers

    Production:
        CORSConfig(
            allow_origins=["https://app.example"],
            allow_credentials=True,
        )

    ``allow_credentials`` with ``"*"`` echoes the request origin instead
    of sending "*", which browsers reject for credentialed requests.
    """

    allow_origins: List[str] = field(default_factory=lambda: ["*"])
    allow_methods: List[str] = field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
    )
    allow_headers: List[str] = field(
        default_factory=lambda: ["Content-Type", "Authorization", "X-Requested-With"]
    )
    expose_headers: List[str] = field(default_factory=list)
    allow_credentials: bool = False
    max_age: int = 86400  # seconds a browser may cache a preflight answer

    def is_origin_allowed(self, origin: str) -> bool:
        return "*" in self.allow_origins or origin in self.allow_origins


class CORSMiddleware(Middleware):
    """Answer preflights and decorate responses with CORS headers."""

    def __init__(self, config: CORSConfig = None):
        self.config = config or CORSConfig()

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        origin = request.get_header("Origin")

        if self._is_preflight(request):
            return self._preflight(request, origin)

        response = next(request)
        self._add_cors_headers(response, origin)
        return response

    @staticmethod
    def _is_preflight(request: HTTPRequest) -> bool:
        # A bare OPTIONS without Access-Control-Request-Method is an
        # ordinary request and goes to the handler.
        return (
            request.method == "OPTIONS"
            and bool(request.get_header("Access-Control-Request-Method"))
        )

    def _preflight(self, request: HTTPRequest, origin: str) -> HTTPResponse:
        response = ResponseBuilder().status(HTTPStatus.NO_CONTENT).build()
        if not self._add_cors_headers(response, origin):
            return response

        response.headers["Access-Control-Allow-Methods"] = ", ".join(self.config.allow_methods)
        if request.get_header("Access-Control-Request-Headers"):
            response.headers["Access-Control-Allow-Headers"] = ", ".join(self.config.allow_headers)
        response.headers["Access-Control-Max-Age"] = str(self.config.max_age)
        return response

    def _add_cors_headers(self, response: HTTPResponse, origin: str) -> bool:
        """
        Add the origin-dependent headers. Returns False (and adds nothing)
        when the origin is not allowed; the browser then blocks the
        response on its side.
        """
        if "*" in self.config.allow_origins:
            if self.config.allow_credentials:
                allowed_origin = origin or "*"
            else:
                allowed_origin = "*"
        elif origin in self.config.allow_origins:
            allowed_origin = origin
        else:
            return False

        response.headers["Access-Control-Allow-Origin"] = allowed_origin

        if self.config.allow_credentials:
            response.headers["Access-Control-Allow-Credentials"] = "true"

        if self.config.expose_headers:
            response.headers["Access-Control-Expose-Headers"] = ", ".join(self.config.expose_headers)

        # Caches must key on Origin or they will replay the wrong header.
        vary = response.headers.get("Vary", "")
        if "Origin" not in vary:
            response.headers["Vary"] = f"{vary}, Origin".lstrip(", ")

        return True
