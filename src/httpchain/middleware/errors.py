"""
Error handling middleware.

Converts errors raised further down the chain into problem responses
(RFC 7807). The pipeline itself never assigns status codes; this stage
does.

    HTTPException(404, "User not found")      → 404 problem response
    StageError / TerminalError wrapping an
        HTTPException                         → that exception's status
    anything else                             → 500, logged with traceback

Place it near the top of the pipeline, inside logging:

    pipeline.use(LoggingMiddleware(), ErrorHandlerMiddleware(), ...)
"""

from typing import Optional
import logging

from .base import Middleware, NextHandler
from ..errors import HTTPException, PipelineError
from ..http.request import HTTPRequest
from ..http.response import HTTPResponse, problem


logger = logging.getLogger(__name__)


def find_http_exception(error: BaseException) -> Optional[HTTPException]:
    """
    Return the HTTPException behind ``error``, following ``original``
    through nested PipelineErrors.
    """
    current: Optional[BaseException] = error
    while current is not None:
        if isinstance(current, HTTPException):
            return current
        if isinstance(current, PipelineError):
            current = current.original
        else:
            return None
    return None


class ErrorHandlerMiddleware(Middleware):
    """
    Catch errors from inner stages and answer with a problem response.

    Args:
        debug: Include the exception text in 500 responses. Never enable
               in production; it leaks internals.
        type_base: Value of the problem "type" member.
    """

    def __init__(self, debug: bool = False, type_base: str = "about:blank"):
        self.debug = debug
        self.type_base = type_base

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        try:
            return next(request)
        except Exception as exc:
            return self.render(request, exc)

    def render(self, request: HTTPRequest, error: Exception) -> HTTPResponse:
        """Build the response for ``error``."""
        http_error = find_http_exception(error)

        if http_error is not None:
            if http_error.status_code >= 500:
                logger.error(f"{request.method} {request.path} failed: {http_error}", exc_info=error)
            else:
                logger.info(f"{request.method} {request.path} -> {http_error.status_code}: {http_error}")
            return problem(
                http_error.status_code,
                detail=http_error.message,
                instance=request.path,
                headers=http_error.headers,
                type_base=self.type_base,
            )

        logger.error(f"Unhandled error on {request.method} {request.path}: {error}", exc_info=error)

        detail = None
        if self.debug:
            root = error.original if isinstance(error, PipelineError) and error.original else error
            detail = f"{type(root).__name__}: {root}"

        return problem(500, detail=detail, instance=request.path, type_base=self.type_base)
