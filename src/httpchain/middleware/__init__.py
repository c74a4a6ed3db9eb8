"""
=============================================================================
MIDDLEWARE
=============================================================================

The pipeline runner, the stage contract, the registry that resolves stage
names from configuration, and the built-in stages.

    ┌─────────────────────────────────────────────────────────────────────┐
    │   Incoming request                                                  │
    │        │                                                            │
    │        ▼                                                            │
    │   LoggingMiddleware       request id, timing, access log (terminate)│
    │        ▼                                                            │
    │   ErrorHandlerMiddleware  errors below → problem responses          │
    │        ▼                                                            │
    │   CORSMiddleware          preflight short-circuit, CORS headers     │
    │        ▼                                                            │
    │   RateLimitMiddleware     429 short-circuit                         │
    │        ▼                                                            │
    │   AuthMiddleware          401 short-circuit, request.user           │
    │        ▼                                                            │
    │   route handler                                                     │
    │        │                                                            │
    │        ▼                                                            │
    │   response flows back up through the same stages                    │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .base import (
    Middleware,
    TerminableMiddleware,
    FunctionMiddleware,
    NextHandler,
    function_middleware,
)
from .pipeline import MiddlewarePipeline, Execution, PipelineState, run
from .registry import MiddlewareRegistry, parse_identifier
from .logging import LoggingMiddleware, RequestLog
from .errors import ErrorHandlerMiddleware
from .auth import AuthMiddleware, TokenAuthenticator, extract_bearer_token
from .cors import CORSMiddleware, CORSConfig
from .rate_limit import RateLimitMiddleware, TokenBucket

__all__ = [
    # Contract and runner
    "Middleware",
    "TerminableMiddleware",
    "FunctionMiddleware",
    "NextHandler",
    "function_middleware",
    "MiddlewarePipeline",
    "Execution",
    "PipelineState",
    "run",

    # Resolution
    "MiddlewareRegistry",
    "parse_identifier",

    # Built-in stages
    "LoggingMiddleware",
    "RequestLog",
    "ErrorHandlerMiddleware",
    "AuthMiddleware",
    "TokenAuthenticator",
    "extract_bearer_token",
    "CORSMiddleware",
    "CORSConfig",
    "RateLimitMiddleware",
    "TokenBucket",
]
