"""
=============================================================================
PIPELINE CONFIGURATION
=============================================================================

Centralized configuration for the kernel and its built-in middleware.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION SOURCES                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. Code            PipelineConfig(log_level="DEBUG")              │
    │   2. Environment     HTTPCHAIN_LOG_LEVEL=DEBUG                      │
    │   3. Defaults        the dataclass field defaults below             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Validation happens eagerly (Kernel calls validate() on construction) so a
typo in HTTPCHAIN_MIDDLEWARE fails at startup, not on the first request.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Tuple
import logging
import os

from .errors import ConfigError


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _env_number(name: str, default, convert):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a {convert.__name__}, got {raw!r}") from exc


@dataclass
class PipelineConfig:
    """
    Configuration for the kernel and the default middleware registry.

    Development:
        PipelineConfig(log_level="DEBUG", debug=True)

    Production:
        PipelineConfig(
            middleware=("log", "errors", "cors"),
            log_format="json",
            cors_allow_origins=("https://app.example",),
        )
    """

    # ─────────────────────────────────────────────────────────────────────
    # PIPELINE
    # ─────────────────────────────────────────────────────────────────────

    middleware: Tuple[str, ...] = ("log", "errors")
    """Global middleware identifiers, outermost first."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """DEBUG, INFO, WARNING, ERROR or CRITICAL."""

    log_format: str = "text"
    """Access log format: 'text' (Apache-style) or 'json'."""

    log_skip_paths: Tuple[str, ...] = ()
    """Paths excluded from access logs (health probes)."""

    request_id_header: str = "X-Request-ID"

    # ─────────────────────────────────────────────────────────────────────
    # ERRORS
    # ─────────────────────────────────────────────────────────────────────

    debug: bool = False
    """Expose exception text in 500 responses. Development only."""

    # ─────────────────────────────────────────────────────────────────────
    # BUILT-IN MIDDLEWARE DEFAULTS
    # ─────────────────────────────────────────────────────────────────────

    rate_limit_per_second: float = 10.0
    rate_limit_burst: int = 20

    cors_allow_origins: Tuple[str, ...] = ("*",)

    priority: Tuple[str, ...] = field(
        default=("log", "errors", "cors", "throttle", "auth", "auth.optional")
    )
    """Aliases kept in this relative order whenever they meet in a pipeline."""

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """
        Build a config from HTTPCHAIN_* environment variables.

            HTTPCHAIN_MIDDLEWARE          comma list   (log,errors)
            HTTPCHAIN_LOG_LEVEL           INFO
            HTTPCHAIN_LOG_FORMAT          text | json
            HTTPCHAIN_LOG_SKIP_PATHS      comma list
            HTTPCHAIN_REQUEST_ID_HEADER   X-Request-ID
            HTTPCHAIN_DEBUG               true | false
            HTTPCHAIN_RATE_LIMIT          requests per second
            HTTPCHAIN_RATE_BURST          bucket size
            HTTPCHAIN_CORS_ORIGINS        comma list   (*)
        """
        defaults = cls()
        return cls(
            middleware=_env_list("HTTPCHAIN_MIDDLEWARE", defaults.middleware),
            log_level=os.getenv("HTTPCHAIN_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("HTTPCHAIN_LOG_FORMAT", defaults.log_format),
            log_skip_paths=_env_list("HTTPCHAIN_LOG_SKIP_PATHS", defaults.log_skip_paths),
            request_id_header=os.getenv("HTTPCHAIN_REQUEST_ID_HEADER", defaults.request_id_header),
            debug=_env_bool("HTTPCHAIN_DEBUG", defaults.debug),
            rate_limit_per_second=_env_number(
                "HTTPCHAIN_RATE_LIMIT", defaults.rate_limit_per_second, float
            ),
            rate_limit_burst=_env_number("HTTPCHAIN_RATE_BURST", defaults.rate_limit_burst, int),
            cors_allow_origins=_env_list("HTTPCHAIN_CORS_ORIGINS", defaults.cors_allow_origins),
        )

    def validate(self) -> None:
        """Fail fast on invalid values."""
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid log_level: {self.log_level!r}")

        if self.log_format not in ("text", "json"):
            raise ConfigError(f"log_format must be 'text' or 'json', got {self.log_format!r}")

        if self.rate_limit_per_second <= 0:
            raise ConfigError("rate_limit_per_second must be > 0")

        if self.rate_limit_burst < 1:
            raise ConfigError("rate_limit_burst must be >= 1")

        if not self.request_id_header:
            raise ConfigError("request_id_header must not be empty")

        if any(not name for name in self.middleware):
            raise ConfigError("middleware identifiers must not be empty")


def setup_logging(config: PipelineConfig) -> None:
    """Configure logging for an application built on httpchain."""
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logging.getLogger("httpchain").setLevel(level)
