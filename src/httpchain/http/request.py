"""
=============================================================================
HTTP REQUEST
=============================================================================

The mutable context object passed down the middleware chain.

=============================================================================
WHO WRITES WHAT
=============================================================================

    ┌──────────────────┬──────────────────────────────────────────────────┐
    │  Field           │  Written by                                      │
    ├──────────────────┼──────────────────────────────────────────────────┤
    │  method, path,   │  the host transport (or a test) when the         │
    │  headers, body   │  request is constructed                          │
    │  path_params     │  Router.dispatch (raw ":param" strings)          │
    │  bindings        │  Router.dispatch (values from route resolvers)   │
    │  user            │  AuthMiddleware                                  │
    │  attributes      │  any stage: request id, timings, flags           │
    └──────────────────┴──────────────────────────────────────────────────┘

Header names are case-insensitive (RFC 7230), so keys are normalised to
lower case when the request is created. ``get_header("Content-Type")``
and ``headers["content-type"]`` both work.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import json

from ..errors import HTTPException


@dataclass
class HTTPRequest:
    """
    A request travelling through the pipeline.

    Example:
        request = HTTPRequest(
            method="GET",
            path="/users/42",
            headers={"Authorization": "Bearer abc"},
            query_params={"page": ["1"]},
        )
    """

    method: str
    path: str
    version: str = "HTTP/1.1"

    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, list] = field(default_factory=dict)
    body: bytes = b""

    # Filled in by the router
    path_params: Dict[str, str] = field(default_factory=dict)
    bindings: Dict[str, Any] = field(default_factory=dict)

    client_address: Tuple[str, int] = ("", 0)

    # Filled in by stages
    user: Optional[Any] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    _body_json: Optional[Any] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {name.lower(): value for name, value in self.headers.items()}
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def content_type(self) -> Optional[str]:
        """Content-Type without parameters ("application/json")."""
        ct = self.headers.get("content-type", "")
        return ct.split(";")[0].strip().lower() or None

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def client_ip(self) -> str:
        return self.client_address[0]

    @property
    def is_json(self) -> bool:
        return self.content_type == "application/json"

    @property
    def json(self) -> Any:
        """
        Body parsed as JSON, cached after the first access.

        Raises:
            HTTPException: 400 when the body is not valid JSON.
        """
        if self._body_json is None and self.body:
            try:
                self._body_json = json.loads(self.body.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise HTTPException(400, f"Invalid JSON body: {e}") from e
        return self._body_json

    # =========================================================================
    # ACCESSORS
    # =========================================================================

    def get_header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)

    def get_query(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value of a query parameter."""
        values = self.query_params.get(name, [])
        return values[0] if values else default

    def get_query_list(self, name: str) -> list:
        """All values of a query parameter."""
        return list(self.query_params.get(name, []))
