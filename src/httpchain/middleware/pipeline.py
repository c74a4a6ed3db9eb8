"""
=============================================================================
MIDDLEWARE PIPELINE
=============================================================================

Runs an ordered list of stages around a terminal handler.
Implements the Chain of Responsibility pattern.

=============================================================================
EXECUTION ORDER
=============================================================================

    pipeline = MiddlewarePipeline([A, B, C])
    pipeline.run(request, terminal)

    ┌─────────────────────────────────────────────────────────────────────┐
    │  A                                                                  │
    │  ┌───────────────────────────────────────────────────────────────┐  │
    │  │  B                                                            │  │
    │  │  ┌─────────────────────────────────────────────────────────┐  │  │
    │  │  │  C                                                      │  │  │
    │  │  │  ┌───────────────────────────────────────────────────┐  │  │  │
    │  │  │  │                  TERMINAL HANDLER                 │  │  │  │
    │  │  │  └───────────────────────────────────────────────────┘  │  │  │
    │  │  └─────────────────────────────────────────────────────────┘  │  │
    │  └───────────────────────────────────────────────────────────────┘  │
    └─────────────────────────────────────────────────────────────────────┘

    A-before, B-before, C-before, terminal, C-after, B-after, A-after

If B returns without calling its continuation, C and the terminal never
run, and only A's after-logic follows.

=============================================================================
STATE MACHINE (per request)
=============================================================================

    NOT_STARTED ──► RUNNING(0) ──► RUNNING(1) ──► ... ──► TERMINAL
                                                             │
    COMPLETED ◄── UNWINDING(0) ◄── UNWINDING(1) ◄── ... ◄────┘

A short-circuit at stage k goes straight from RUNNING(k) to UNWINDING(k).
COMPLETED is final; terminate hooks run after it is reached.

=============================================================================
ERRORS
=============================================================================

An exception escaping the terminal becomes TerminalError; one escaping a
stage becomes StageError. Both unwind through the enclosing stages like a
normal return, so any of them can catch it and answer with a response.
Whatever reaches the top is re-raised from run().

KeyboardInterrupt, SystemExit and other non-Exception errors are never
wrapped. They propagate out of run() and execute() once the terminate
hooks have run.

Terminate hook failures are logged and collected on the Execution. They
never change the response and never reach the caller.

=============================================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple
import logging

from ..errors import PipelineError, StageError, TerminalError, TerminateHookError
from .base import Middleware, NextHandler, as_middleware, stage_name, terminate_hook


logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Lifecycle of a single pipeline run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    TERMINAL = "terminal"
    UNWINDING = "unwinding"
    COMPLETED = "completed"


@dataclass
class Execution:
    """
    Record of one pipeline run.

    Created fresh for every request, so concurrent runs of the same
    pipeline never share one.

    Attributes:
        request: The request the run was started with
        stages: Names of the stages in the pipeline, in order
        state: Current PipelineState
        stage_index: Index of the stage the state refers to (None for the
                     terminal handler and before/after the run)
        entered: Names of stages whose before-logic ran, in order
        terminal_invoked: Whether the terminal handler was called
        short_circuited_by: Name of the innermost stage that returned
                            without calling its continuation
        response: Final response (None if the run failed)
        error: PipelineError that reached the top, if any
        hook_errors: Failures raised by terminate hooks
        history: Every (state, stage_index) transition, in order
    """

    request: Any
    stages: Tuple[str, ...] = ()
    state: PipelineState = PipelineState.NOT_STARTED
    stage_index: Optional[int] = None
    entered: List[str] = field(default_factory=list)
    terminal_invoked: bool = False
    short_circuited_by: Optional[str] = None
    response: Optional[Any] = None
    error: Optional[PipelineError] = None
    hook_errors: List[TerminateHookError] = field(default_factory=list)
    history: List[Tuple[PipelineState, Optional[int]]] = field(default_factory=list, repr=False)

    def transition(self, state: PipelineState, index: Optional[int] = None) -> None:
        self.state = state
        self.stage_index = index
        self.history.append((state, index))

    @property
    def succeeded(self) -> bool:
        """True when the run completed with a response."""
        return self.state is PipelineState.COMPLETED and self.error is None


HookErrorCallback = Callable[[TerminateHookError], None]


class MiddlewarePipeline:
    """
    An ordered list of stages that can be run around any terminal handler.

    =========================================================================
    USAGE
    =========================================================================

        pipeline = MiddlewarePipeline()
        pipeline.add(LoggingMiddleware())
        pipeline.add(AuthMiddleware(authenticator))

        response = pipeline.run(request, router_handler)

        # or keep a pre-wrapped handler around
        handler = pipeline.wrap(router_handler)
        response = handler(request)

    Build the pipeline once at startup and reuse it. The stage list is
    copied at the start of every run, so a stage added while a request is
    in flight only affects later requests.

    =========================================================================
    """

    def __init__(
        self,
        middleware: Iterable[Any] = (),
        on_hook_error: Optional[HookErrorCallback] = None,
    ):
        """
        Args:
            middleware: Initial stages (Middleware instances or plain
                        ``(request, next)`` callables), outermost first
            on_hook_error: Called with each TerminateHookError, after it
                           has been logged. Use it to feed metrics.
        """
        self._middleware: List[Middleware] = []
        self._on_hook_error = on_hook_error
        self.use(*middleware)

    def add(self, middleware: Any) -> "MiddlewarePipeline":
        """Append a stage (first added = outermost). Returns self."""
        stage = as_middleware(middleware)
        self._middleware.append(stage)
        logger.debug(f"Added middleware: {stage.name}")
        return self

    def use(self, *middleware: Any) -> "MiddlewarePipeline":
        """Append several stages at once. Returns self."""
        for mw in middleware:
            self.add(mw)
        return self

    # =========================================================================
    # RUNNING
    # =========================================================================

    def run(self, request: Any, terminal: NextHandler) -> Any:
        """
        Run the pipeline around ``terminal`` and return the response.

        Raises:
            StageError / TerminalError: an error nobody converted into a
            response reached the top of the pipeline
        """
        execution = self.execute(request, terminal)
        if execution.error is not None:
            raise execution.error
        return execution.response

    def execute(self, request: Any, terminal: NextHandler) -> Execution:
        """
        Run the pipeline and return the Execution record instead of raising.

        Terminate hooks have already run when this returns, and also when a
        non-Exception error such as KeyboardInterrupt propagates out.
        """
        stages = tuple(self._middleware)
        execution = Execution(
            request=request,
            stages=tuple(stage_name(stage) for stage in stages),
        )
        chain = self._build_chain(stages, terminal, execution)

        try:
            execution.response = chain(request)
        except PipelineError as exc:
            execution.error = exc
            logger.debug(f"Pipeline run ended with {type(exc).__name__}: {exc}")
        finally:
            execution.transition(PipelineState.COMPLETED)
            self._run_terminate_hooks(stages, execution)

        return execution

    def wrap(self, handler: NextHandler) -> NextHandler:
        """
        Return a one-argument handler that runs this pipeline around
        ``handler``. Terminate hooks fire on every call.
        """
        def wrapped(request: Any) -> Any:
            return self.run(request, handler)

        return wrapped

    # =========================================================================
    # CHAIN ASSEMBLY
    # =========================================================================
    #
    # Given [A, B, C] the chain is built inside-out:
    #
    #     current = terminal
    #     current = link(C, current)
    #     current = link(B, current)
    #     current = link(A, current)     → A(B(C(terminal)))
    #
    # Each link is a closure over its stage, its continuation and the
    # Execution of this run.
    # =========================================================================

    def _build_chain(
        self,
        stages: Tuple[Middleware, ...],
        terminal: NextHandler,
        execution: Execution,
    ) -> NextHandler:
        current = self._terminal_link(terminal, execution)
        for index in reversed(range(len(stages))):
            current = self._stage_link(index, stages[index], current, execution)
        return current

    def _terminal_link(self, terminal: NextHandler, execution: Execution) -> NextHandler:
        def handler(request: Any) -> Any:
            execution.transition(PipelineState.TERMINAL)
            execution.terminal_invoked = True
            try:
                return terminal(request)
            except PipelineError:
                raise
            except Exception as exc:
                raise TerminalError(exc) from exc
            finally:
                execution.transition(PipelineState.UNWINDING)

        return handler

    def _stage_link(
        self,
        index: int,
        stage: Middleware,
        next_handler: NextHandler,
        execution: Execution,
    ) -> NextHandler:
        name = stage_name(stage)

        def handler(request: Any) -> Any:
            execution.transition(PipelineState.RUNNING, index)
            execution.entered.append(name)
            continued = False

            def continuation(req: Any) -> Any:
                nonlocal continued
                continued = True
                return next_handler(req)

            try:
                response = stage(request, continuation)
            except PipelineError:
                raise
            except Exception as exc:
                raise StageError(name, exc) from exc
            finally:
                execution.transition(PipelineState.UNWINDING, index)

            if not continued and execution.short_circuited_by is None:
                execution.short_circuited_by = name
                logger.debug(f"Middleware {name} short-circuited the pipeline")
            return response

        return handler

    # =========================================================================
    # TERMINATE HOOKS
    # =========================================================================

    def _run_terminate_hooks(self, stages: Tuple[Middleware, ...], execution: Execution) -> None:
        seen = set()
        for stage in stages:
            hook = terminate_hook(stage)
            if hook is None or id(stage) in seen:
                continue
            seen.add(id(stage))

            try:
                hook(execution.request, execution.response)
            except Exception as exc:
                error = TerminateHookError(stage_name(stage), exc)
                error.__cause__ = exc
                execution.hook_errors.append(error)
                logger.error(str(error), exc_info=exc)
                self._report_hook_error(error)

    def _report_hook_error(self, error: TerminateHookError) -> None:
        if self._on_hook_error is None:
            return
        try:
            self._on_hook_error(error)
        except Exception:
            logger.exception("on_hook_error callback failed")

    def __len__(self) -> int:
        return len(self._middleware)

    def __iter__(self) -> Iterator[Middleware]:
        return iter(list(self._middleware))

    def __repr__(self) -> str:
        names = ", ".join(stage.name for stage in self._middleware)
        return f"MiddlewarePipeline([{names}])"


def run(
    request: Any,
    stages: Iterable[Any],
    terminal: NextHandler,
    on_hook_error: Optional[HookErrorCallback] = None,
) -> Any:
    """
    One-shot helper: run ``stages`` around ``terminal`` for ``request``.

        response = run(request, [LoggingMiddleware(), auth], handler)
    """
    return MiddlewarePipeline(stages, on_hook_error=on_hook_error).run(request, terminal)
