"""
=============================================================================
HTTPCHAIN - Middleware Pipeline Kernel for HTTP Request Handling
=============================================================================

A request goes through an ordered list of stages (middleware), reaches a
terminal handler, and the response travels back out through the same
stages in reverse. Stages can short-circuit, convert errors into
responses, and register terminate hooks that run after the response.

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    httpchain/
    ├── __init__.py          # This file - package exports
    ├── kernel.py            # Kernel: router + registry + pipelines
    ├── config.py            # PipelineConfig dataclass, logging setup
    ├── errors.py            # Pipeline and HTTP exceptions
    ├── http/                # HTTP data model
    │   ├── request.py       # HTTPRequest dataclass
    │   ├── response.py      # HTTPResponse, builder, helpers
    │   ├── router.py        # Routing, route middleware, bindings
    │   └── status_codes.py  # HTTPStatus enum
    └── middleware/
        ├── base.py          # Stage contract, function stages
        ├── pipeline.py      # The pipeline runner
        ├── registry.py      # Aliases, groups, priority
        ├── logging.py       # Access log (terminate hook)
        ├── errors.py        # Errors → problem responses
        ├── auth.py          # Bearer token authentication
        ├── cors.py          # CORS handling
        └── rate_limit.py    # Token bucket rate limiting

=============================================================================
QUICK START
=============================================================================

    from httpchain import Kernel, PipelineConfig, HTTPRequest
    from httpchain.http import ok

    kernel = Kernel(PipelineConfig(middleware=("log", "errors")))

    @kernel.get("/hello/:name")
    def hello(request):
        return ok({"hello": request.path_params["name"]})

    response = kernel.handle(HTTPRequest("GET", "/hello/world"))

=============================================================================
"""

from .config import PipelineConfig, setup_logging
from .errors import (
    PipelineError,
    StageError,
    TerminalError,
    TerminateHookError,
    HTTPException,
    ConfigError,
    MiddlewareConfigError,
    UnknownMiddlewareError,
    abort,
)
from .http import HTTPRequest, HTTPResponse, HTTPStatus, ResponseBuilder, Router
from .kernel import Kernel, build_default_registry, create_kernel
from .middleware import (
    Middleware,
    TerminableMiddleware,
    MiddlewarePipeline,
    MiddlewareRegistry,
    Execution,
    PipelineState,
    function_middleware,
    run,
)

__version__ = "1.0.0"
__all__ = [
    # Kernel
    "Kernel",
    "create_kernel",
    "build_default_registry",
    "PipelineConfig",
    "setup_logging",

    # Pipeline
    "Middleware",
    "TerminableMiddleware",
    "MiddlewarePipeline",
    "MiddlewareRegistry",
    "Execution",
    "PipelineState",
    "function_middleware",
    "run",

    # HTTP
    "HTTPRequest",
    "HTTPResponse",
    "HTTPStatus",
    "ResponseBuilder",
    "Router",

    # Errors
    "PipelineError",
    "StageError",
    "TerminalError",
    "TerminateHookError",
    "HTTPException",
    "ConfigError",
    "MiddlewareConfigError",
    "UnknownMiddlewareError",
    "abort",
]
