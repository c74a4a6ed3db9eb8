"""
=============================================================================
BASE MIDDLEWARE INTERFACE
=============================================================================

Defines what a pipeline stage is. The pipeline that chains stages lives in
``pipeline.py``.

=============================================================================
THE STAGE CONTRACT
=============================================================================

A stage has one operation: given a request and a continuation ("the rest
of the pipeline"), produce a response.

    def __call__(self, request, next) -> response

Inside that call a stage may:

    (a) pass through         return next(request)
    (b) transform            response = next(request)
                             response.set_header("X-Served-By", "edge-1")
                             return response
    (c) short-circuit        return unauthorized()      # next never called
    (d) fail                 raise SomethingWentWrong()

A stage owns no per-request state. Anything it needs (an authenticator, a
config object, a clock) is handed to its constructor before the chain is
assembled. Per-request data goes on the request (``request.attributes``).

=============================================================================
TERMINATE HOOKS
=============================================================================

A stage that also exposes ``terminate(request, response)`` is
*terminable*. After the outermost response is known, the pipeline calls
every terminable stage's hook once, in list order, whether or not that
stage was reached:

    ┌──────────┐   ┌──────────┐   ┌──────────┐
    │  Log     │──►│  Auth    │─X │  Handler │     Auth short-circuits
    └──────────┘   └──────────┘   └──────────┘
         │
         ▼
    response ready ──► Log.terminate(request, response)
                       Auth.terminate(request, response)   (if defined)

``response`` is None when the run ended in an unhandled error.

=============================================================================
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from ..http.request import HTTPRequest
from ..http.response import HTTPResponse


# =============================================================================
# TYPE ALIASES
# =============================================================================

# The continuation handed to each stage, and the shape of a terminal handler.
NextHandler = Callable[[HTTPRequest], HTTPResponse]

# A terminate hook: (request, response-or-None) -> None
TerminateHook = Callable[[HTTPRequest, Optional[HTTPResponse]], None]


class Middleware(ABC):
    """
    Abstract base class for pipeline stages.

    Anatomy:

        class Timing(Middleware):
            def __call__(self, request, next):
                # before-logic: runs outer-to-inner
                started = time.perf_counter()

                response = next(request)

                # after-logic: runs inner-to-outer
                elapsed = time.perf_counter() - started
                response.set_header("X-Elapsed", f"{elapsed:.4f}")
                return response
    """

    @abstractmethod
    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        """
        Process the request.

        Args:
            request: The request travelling inward
            next: The rest of the pipeline. Call it to continue, or return
                  without calling it to short-circuit.

        Returns:
            The response to hand back to the enclosing stage
        """

    @property
    def name(self) -> str:
        """Name used in logs and errors."""
        return self.__class__.__name__


class TerminableMiddleware(Middleware):
    """
    A stage with a terminate hook.

    Subclassing is optional: the pipeline looks for a callable
    ``terminate`` attribute on any stage. This base exists to make the
    intent explicit and have the method checked as abstract.
    """

    @abstractmethod
    def terminate(self, request: HTTPRequest, response: Optional[HTTPResponse]) -> None:
        """Run once after the final response is known (None on error)."""


# =============================================================================
# FUNCTION MIDDLEWARE
# =============================================================================


class FunctionMiddleware(Middleware):
    """
    Wraps a plain ``(request, next) -> response`` function as a stage.

        def add_header(request, next):
            response = next(request)
            response.set_header("X-Custom", "value")
            return response

        pipeline.add(FunctionMiddleware(add_header))

    A terminate callback can be attached:

        FunctionMiddleware(audit, terminate=flush_audit_log)
    """

    def __init__(
        self,
        func: Callable[[HTTPRequest, NextHandler], HTTPResponse],
        name: Optional[str] = None,
        terminate: Optional[TerminateHook] = None,
    ):
        self._func = func
        self._name = name or getattr(func, "__name__", type(func).__name__)
        if terminate is not None:
            # Instance attribute: only stages that were given a hook expose one.
            self.terminate = terminate

    def __call__(self, request: HTTPRequest, next: NextHandler) -> HTTPResponse:
        return self._func(request, next)

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"FunctionMiddleware({self._name!r})"


def function_middleware(
    func: Optional[Callable[[HTTPRequest, NextHandler], HTTPResponse]] = None,
    *,
    name: Optional[str] = None,
    terminate: Optional[TerminateHook] = None,
):
    """
    Decorator form of FunctionMiddleware.

        @function_middleware
        def my_middleware(request, next):
            return next(request)

        @function_middleware(name="audit", terminate=flush)
        def audit(request, next):
            ...
    """
    def decorator(f):
        return FunctionMiddleware(f, name=name, terminate=terminate)

    if func is not None:
        return decorator(func)
    return decorator


# =============================================================================
# HELPERS
# =============================================================================


def as_middleware(stage: Any) -> Middleware:
    """
    Coerce a stage to a Middleware.

    Middleware instances pass through; plain callables are wrapped in
    FunctionMiddleware (keeping any ``terminate`` attribute they carry).
    """
    if isinstance(stage, Middleware):
        return stage
    if callable(stage):
        return FunctionMiddleware(stage, terminate=getattr(stage, "terminate", None))
    raise TypeError(f"Not a middleware stage: {stage!r}")


def stage_name(stage: Any) -> str:
    """Best-effort display name for a stage."""
    name = getattr(stage, "name", None)
    if isinstance(name, str):
        return name
    return getattr(stage, "__name__", type(stage).__name__)


def terminate_hook(stage: Any) -> Optional[TerminateHook]:
    """Return the stage's terminate hook, or None if it has none."""
    hook = getattr(stage, "terminate", None)
    return hook if callable(hook) else None
