"""
=============================================================================
KERNEL
=============================================================================

Ties the router, the middleware registry and the pipeline runner together.
A host transport builds an HTTPRequest and calls ``kernel.handle(request)``.

=============================================================================
REQUEST FLOW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   handle(request)                                                   │
    │        │                                                             │
    │        ▼                                                             │
    │   router.match(method, path) ──── no match ──┐                      │
    │        │                                     │                      │
    │        ▼                                     ▼                      │
    │   pipeline for the route:              global pipeline around       │
    │   global + group + route               router.fallback (404/405)    │
    │   middleware, minus excluded                                        │
    │        │                                                             │
    │        ▼                                                             │
    │   pipeline.run(request, dispatch)                                   │
    │        │   bindings resolved, handler called                         │
    │        ▼                                                             │
    │   response  ──►  terminate hooks  ──►  caller                       │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Global and route middleware are resolved into ONE pipeline per route, so
terminate hooks fire once per request after the outermost response. The
resolved pipelines are cached; ``use()`` and ``reload()`` clear the cache.

=============================================================================
"""

from functools import partial
from typing import Any, Callable, Dict, Iterable, Optional
import logging
import threading

from .config import PipelineConfig, setup_logging
from .http.request import HTTPRequest
from .http.response import HTTPResponse
from .http.router import Route, Router
from .middleware.auth import AuthMiddleware, Authenticator
from .middleware.cors import CORSConfig, CORSMiddleware
from .middleware.errors import ErrorHandlerMiddleware
from .middleware.logging import LoggingMiddleware
from .middleware.pipeline import Execution, HookErrorCallback, MiddlewarePipeline
from .middleware.rate_limit import RateLimitMiddleware
from .middleware.registry import MiddlewareRegistry


logger = logging.getLogger(__name__)


def build_default_registry(
    config: PipelineConfig,
    authenticator: Optional[Authenticator] = None,
) -> MiddlewareRegistry:
    """
    Registry with the built-in aliases and groups.

        log             LoggingMiddleware
        errors          ErrorHandlerMiddleware
        cors            CORSMiddleware
        throttle[:r,b]  RateLimitMiddleware (r req/s, burst b)
        auth            AuthMiddleware            (only with an authenticator)
        auth.optional   AuthMiddleware(optional)  (only with an authenticator)

        web = [cors]
        api = [throttle, auth]
    """
    registry = MiddlewareRegistry()

    registry.alias("log", LoggingMiddleware(
        log_format=config.log_format,
        request_id_header=config.request_id_header,
        skip_paths=list(config.log_skip_paths),
    ))
    registry.alias("errors", ErrorHandlerMiddleware(debug=config.debug))
    registry.alias("cors", CORSMiddleware(CORSConfig(allow_origins=list(config.cors_allow_origins))))

    def throttle(rate: Optional[str] = None, burst: Optional[str] = None) -> RateLimitMiddleware:
        return RateLimitMiddleware(
            requests_per_second=float(rate) if rate else config.rate_limit_per_second,
            burst_size=int(burst) if burst else config.rate_limit_burst,
        )

    registry.alias("throttle", throttle)

    api_group = ["throttle"]
    if authenticator is not None:
        registry.alias("auth", AuthMiddleware(authenticator))
        registry.alias("auth.optional", AuthMiddleware(authenticator, optional=True))
        api_group.append("auth")

    registry.group("web", ["cors"])
    registry.group("api", api_group)
    registry.set_priority(config.priority)
    return registry


class Kernel:
    """
    Application entry point for in-process request handling.

    Usage:
        kernel = Kernel(PipelineConfig(middleware=("log", "errors")),
                        authenticator=TokenAuthenticator(tokens.get))

        @kernel.get("/users/:user", middleware=["api"],
                    bindings={"user": users.get})
        def show_user(request):
            return ok(request.bindings["user"])

        response = kernel.handle(HTTPRequest("GET", "/users/42"))
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        registry: Optional[MiddlewareRegistry] = None,
        router: Optional[Router] = None,
        authenticator: Optional[Authenticator] = None,
        on_hook_error: Optional[HookErrorCallback] = None,
    ):
        """
        Args:
            config: Kernel configuration (validated here)
            registry: Middleware registry; defaults to the built-in one
            router: Router to dispatch to; a new one by default
            authenticator: Enables the "auth" aliases of the default
                           registry. Ignored when ``registry`` is given.
            on_hook_error: Forwarded to every pipeline (see
                           MiddlewarePipeline)
        """
        self.config = config or PipelineConfig()
        self.config.validate()

        self.registry = registry or build_default_registry(self.config, authenticator)
        self.router = router or Router()
        self._on_hook_error = on_hook_error

        self._middleware = list(self.config.middleware)
        self._pipelines: Dict[Optional[Route], MiddlewarePipeline] = {}
        self._lock = threading.Lock()

        # Unknown global identifiers fail at startup, not per request.
        self.registry.expand(self._middleware)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def use(self, *identifiers: Any) -> "Kernel":
        """Append global middleware. Returns self."""
        self.registry.expand(identifiers)
        with self._lock:
            self._middleware.extend(identifiers)
            self._pipelines.clear()
        return self

    def reload(self) -> None:
        """Drop cached pipelines (after changing routes or the registry)."""
        with self._lock:
            self._pipelines.clear()

    @property
    def middleware(self) -> list:
        return list(self._middleware)

    def route(self, path: str, method: Optional[str] = None, name: Optional[str] = None, **options: Any):
        return self.router.route(path, method, name, **options)

    def get(self, path: str, **options: Any):
        return self.router.get(path, **options)

    def post(self, path: str, **options: Any):
        return self.router.post(path, **options)

    def put(self, path: str, **options: Any):
        return self.router.put(path, **options)

    def patch(self, path: str, **options: Any):
        return self.router.patch(path, **options)

    def delete(self, path: str, **options: Any):
        return self.router.delete(path, **options)

    def group(self, prefix: str, middleware: Iterable[Any] = ()) -> Router:
        return self.router.group(prefix, middleware)

    # =========================================================================
    # REQUEST HANDLING
    # =========================================================================

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        """
        Run the request through its pipeline and return the response.

        Raises:
            StageError / TerminalError: no stage converted an error into a
            response (e.g. "errors" is not in the pipeline)
        """
        pipeline, terminal = self._prepare(request)
        return pipeline.run(request, terminal)

    def execute(self, request: HTTPRequest) -> Execution:
        """Like handle() but returns the Execution record."""
        pipeline, terminal = self._prepare(request)
        return pipeline.execute(request, terminal)

    def _prepare(self, request: HTTPRequest):
        match = self.router.match(request.method, request.path)
        if match is None:
            return self.pipeline_for(None), self.router.fallback
        terminal: Callable[[HTTPRequest], HTTPResponse] = partial(self.router.dispatch, match)
        return self.pipeline_for(match.route), terminal

    def pipeline_for(self, route: Optional[Route]) -> MiddlewarePipeline:
        """The (cached) pipeline for ``route``; None means unmatched requests."""
        with self._lock:
            pipeline = self._pipelines.get(route)
            if pipeline is None:
                pipeline = self._build_pipeline(route)
                self._pipelines[route] = pipeline
            return pipeline

    def _build_pipeline(self, route: Optional[Route]) -> MiddlewarePipeline:
        identifiers = list(self._middleware)
        exclude: list = []
        if route is not None:
            identifiers.extend(route.middleware)
            exclude = route.excluded_middleware

        stages = self.registry.resolve(identifiers, exclude=exclude)
        pipeline = MiddlewarePipeline(stages, on_hook_error=self._on_hook_error)

        target = f"{route.method or 'ANY'} {route.path}" if route else "<fallback>"
        logger.debug(f"Built pipeline for {target}: {pipeline!r}")
        return pipeline


def create_kernel(
    config: Optional[PipelineConfig] = None,
    authenticator: Optional[Authenticator] = None,
    configure_logging: bool = True,
) -> Kernel:
    """
    Kernel from ``config`` (or HTTPCHAIN_* environment variables), with
    logging configured.
    """
    config = config or PipelineConfig.from_env()
    if configure_logging:
        setup_logging(config)
    return Kernel(config, authenticator=authenticator)
