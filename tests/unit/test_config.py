"""
Unit tests for PipelineConfig.
"""

import logging

import pytest

from httpchain.config import PipelineConfig, setup_logging
from httpchain.errors import ConfigError


ENV_VARS = (
    "HTTPCHAIN_MIDDLEWARE",
    "HTTPCHAIN_LOG_LEVEL",
    "HTTPCHAIN_LOG_FORMAT",
    "HTTPCHAIN_LOG_SKIP_PATHS",
    "HTTPCHAIN_REQUEST_ID_HEADER",
    "HTTPCHAIN_DEBUG",
    "HTTPCHAIN_RATE_LIMIT",
    "HTTPCHAIN_RATE_BURST",
    "HTTPCHAIN_CORS_ORIGINS",
)


class TestDefaults:

    def test_defaults_are_valid(self):
        config = PipelineConfig()
        config.validate()

        assert config.middleware == ("log", "errors")
        assert config.log_format == "text"
        assert config.priority[:2] == ("log", "errors")


class TestFromEnv:
    """Tests for HTTPCHAIN_* environment variables."""

    def test_no_env_gives_defaults(self, monkeypatch):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)

        assert PipelineConfig.from_env() == PipelineConfig()

    def test_reads_values(self, monkeypatch):
        monkeypatch.setenv("HTTPCHAIN_MIDDLEWARE", "log, errors ,cors")
        monkeypatch.setenv("HTTPCHAIN_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("HTTPCHAIN_LOG_FORMAT", "json")
        monkeypatch.setenv("HTTPCHAIN_LOG_SKIP_PATHS", "/health,/ready")
        monkeypatch.setenv("HTTPCHAIN_DEBUG", "yes")
        monkeypatch.setenv("HTTPCHAIN_RATE_LIMIT", "2.5")
        monkeypatch.setenv("HTTPCHAIN_RATE_BURST", "5")
        monkeypatch.setenv("HTTPCHAIN_CORS_ORIGINS", "https://app.example")

        config = PipelineConfig.from_env()

        assert config.middleware == ("log", "errors", "cors")
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"
        assert config.log_skip_paths == ("/health", "/ready")
        assert config.debug is True
        assert config.rate_limit_per_second == 2.5
        assert config.rate_limit_burst == 5
        assert config.cors_allow_origins == ("https://app.example",)

    def test_bad_bool(self, monkeypatch):
        monkeypatch.setenv("HTTPCHAIN_DEBUG", "maybe")
        with pytest.raises(ConfigError):
            PipelineConfig.from_env()

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("HTTPCHAIN_RATE_BURST", "lots")
        with pytest.raises(ConfigError):
            PipelineConfig.from_env()


class TestValidate:

    @pytest.mark.parametrize("overrides", [
        {"log_level": "LOUD"},
        {"log_format": "xml"},
        {"rate_limit_per_second": 0},
        {"rate_limit_burst": 0},
        {"request_id_header": ""},
        {"middleware": ("log", "")},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            PipelineConfig(**overrides).validate()

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            PipelineConfig(log_level="LOUD").validate()


def test_setup_logging_sets_package_level():
    package_logger = logging.getLogger("httpchain")
    try:
        setup_logging(PipelineConfig(log_level="DEBUG"))
        assert package_logger.level == logging.DEBUG

        setup_logging(PipelineConfig(log_level="WARNING"))
        assert package_logger.level == logging.WARNING
    finally:
        package_logger.setLevel(logging.NOTSET)
