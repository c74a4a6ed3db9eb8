"""
=============================================================================
ERRORS
=============================================================================

Exception types raised while assembling and running middleware pipelines.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        EXCEPTION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   PipelineError                 raised out of a pipeline run         │
    │   ├── StageError                a middleware stage failed            │
    │   ├── TerminalError             the terminal handler failed          │
    │   └── TerminateHookError        a terminate hook failed (logged,     │
    │                                 never raised to the caller)          │
    │                                                                      │
    │   HTTPException                 "respond with this status" request   │
    │                                 from a handler or stage              │
    │                                                                      │
    │   ValueError                                                         │
    │   ├── ConfigError               invalid PipelineConfig               │
    │   └── MiddlewareConfigError     bad alias / group / identifier       │
    │       └── UnknownMiddlewareError                                     │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Wrapping happens once, at the innermost boundary. An exception escaping
the terminal becomes a TerminalError; an exception escaping a stage that
is not already a PipelineError becomes a StageError. The original is kept
both as ``original`` and as ``__cause__``.

=============================================================================
"""

from typing import Dict, Optional


class PipelineError(Exception):
    """Base class for failures that escape a pipeline run."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class StageError(PipelineError):
    """
    A middleware stage failed to process the request.

    Enclosing stages may catch this and convert it into a response.
    """

    def __init__(
        self,
        stage: str,
        original: Optional[BaseException] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            message = f"Stage {stage!r} failed"
            if original is not None:
                message += f": {type(original).__name__}: {original}"
        super().__init__(message, original)
        self.stage = stage


class TerminalError(PipelineError):
    """The terminal handler (usually a route handler) failed."""

    def __init__(self, original: Optional[BaseException] = None, message: Optional[str] = None):
        if message is None:
            message = "Terminal handler failed"
            if original is not None:
                message += f": {type(original).__name__}: {original}"
        super().__init__(message, original)


class TerminateHookError(PipelineError):
    """A post-completion terminate hook failed. Never re-raised."""

    def __init__(self, stage: str, original: BaseException):
        super().__init__(
            f"Terminate hook of {stage!r} failed: {type(original).__name__}: {original}",
            original,
        )
        self.stage = stage


class HTTPException(Exception):
    """
    Raised by a handler or stage to ask for a specific error response.

    ErrorHandlerMiddleware turns it into a problem response with
    ``status_code``. Without an error handler in the chain it surfaces to
    the caller wrapped in a StageError or TerminalError.

    Usage:
        if user is None:
            raise HTTPException(404, "User not found")
    """

    def __init__(
        self,
        status_code: int,
        message: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = int(status_code)
        self.message = message
        self.headers = dict(headers or {})


def abort(status_code: int, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
    """Raise an HTTPException. Shorthand for handlers."""
    raise HTTPException(status_code, message, headers)


class ConfigError(ValueError):
    """Invalid PipelineConfig value."""


class MiddlewareConfigError(ValueError):
    """A middleware alias, group or identifier is malformed."""


class UnknownMiddlewareError(MiddlewareConfigError):
    """An identifier names neither an alias nor a group."""

    def __init__(self, name: str):
        super().__init__(f"Unknown middleware or group: {name!r}")
        self.name = name
