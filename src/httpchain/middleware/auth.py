"""
=============================================================================
AUTHENTICATION MIDDLEWARE
=============================================================================

Resolves the caller's identity through an injected authenticator and
rejects the request when there is none.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   request ──► authenticator(request) ──► user?                      │
    │                                           │                          │
    │                      ┌────────────────────┴─────────┐               │
    │                      ▼                              ▼               │
    │              request.user = user            401 Unauthorized        │
    │              continue the chain             (short-circuit)         │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The middleware knows nothing about tokens, sessions or user stores. The
authenticator is any callable ``(request) -> user or None``:

    def authenticator(request):
        token = extract_bearer_token(request)
        return user_store.by_token(token) if token else None

    pipeline.add(AuthMiddleware(authenticator))

=============================================================================
"""

from typing import Any, Callable, Optional
import logging

from .base import Middleware, NextHandler
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, unauthorized


logger = logging.getLogger(__name__)

Authenticator = Callable[[HTTPRequest], Optional[Any]]


def extract_bearer_token(request: HTTPRequest) -> Optional[str]:
    """
    Token from an ``Authorization: Bearer <token>`` header, or None.

    The scheme match is case-insensitive.
    """
    header = request.get_header("Authorization").strip()
    if not header:
        return None

    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None

    token = token.strip()
    return token or None


class TokenAuthenticator:
    """
    Authenticator built from a token verifier.

        verify = {"secret-token": {"id": 1, "name": "alice"}}.get
        auth = AuthMiddleware(TokenAuthenticator(verify))

    Args:
        verify: Maps a bearer token to a user, or None when invalid
    """

    def __init__(self, verify: Callable[[str], Optional[Any]]):
        self.verify = verify

    def __call__(self, request: HTTPRequest) -> Optional[Any]:
        token = extract_bearer_token(request)
        if token is None:
            return None
        return self.verify(token)


class AuthMiddleware(Middleware):
    """
    Require (or, with ``optional=True``, attach) an authenticated user.

    Args:
        authenticator: ``(request) -> user or None``
        optional: Continue without a user instead of rejecting
        realm: Realm advertised in the WWW-Authenticate challenge
    """

    def __init__(self, authenticator: Authenticator, optional: bool = False, realm: str = "api"):
        self.authenticator = authenticator
        self.optional = optional
        self.realm = realm

    @property
    def name(self) -> str:
        return "OptionalAuthMiddleware" if self.optional else "AuthMiddleware"

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        user = self.authenticator(request)

        if user is None and not self.optional:
            logger.warning(f"Authentication failed: {request.method} {request.path}")
            return unauthorized("Authentication required", realm=self.realm)

        request.user = user
        return next(request)
