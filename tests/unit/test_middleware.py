"""
Unit tests for the built-in middleware stages.
"""

import json
import logging

import pytest

from httpchain.errors import HTTPException, StageError, TerminalError, abort
from httpchain.http import HTTPRequest, HTTPStatus, ok
from httpchain.middleware import (
    AuthMiddleware,
    CORSConfig,
    CORSMiddleware,
    ErrorHandlerMiddleware,
    LoggingMiddleware,
    MiddlewarePipeline,
    RateLimitMiddleware,
    TokenAuthenticator,
    TokenBucket,
    extract_bearer_token,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(method: str = "GET", path: str = "/", **kwargs) -> HTTPRequest:
    kwargs.setdefault("client_address", ("10.0.0.1", 5000))
    return HTTPRequest(method=method, path=path, **kwargs)


def failing(request):
    raise ValueError("boom")


# =============================================================================
# LOGGING
# =============================================================================


class TestLoggingMiddleware:
    """Tests for LoggingMiddleware."""

    def test_request_id_header_added(self, echo):
        response = MiddlewarePipeline([LoggingMiddleware()]).run(make_request(), echo)

        assert len(response.headers["X-Request-ID"]) == 8

    def test_incoming_request_id_reused(self, echo):
        request = make_request(headers={"X-Request-ID": "abc123"})
        response = MiddlewarePipeline([LoggingMiddleware()]).run(request, echo)

        assert response.headers["X-Request-ID"] == "abc123"
        assert request.attributes["request_id"] == "abc123"

    def test_request_id_header_can_be_disabled(self, echo):
        middleware = LoggingMiddleware(include_request_id=False)
        response = MiddlewarePipeline([middleware]).run(make_request(), echo)

        assert "X-Request-ID" not in response.headers

    def test_access_line_logged_once(self, echo, caplog):
        request = make_request(path="/users", headers={"X-Request-ID": "abc123"})

        with caplog.at_level(logging.INFO, logger="httpchain.access"):
            MiddlewarePipeline([LoggingMiddleware()]).run(request, echo)

        records = [r for r in caplog.records if r.name == "httpchain.access"]
        assert len(records) == 1
        message = records[0].getMessage()
        assert '"GET /users" 200' in message
        assert "[abc123]" in message
        assert message.startswith("10.0.0.1")

    def test_json_format(self, echo, caplog):
        request = make_request(path="/users", query_params={"page": ["2"]})

        with caplog.at_level(logging.INFO, logger="httpchain.access"):
            MiddlewarePipeline([LoggingMiddleware(log_format="json")]).run(request, echo)

        entry = json.loads(caplog.records[-1].getMessage())
        assert entry["method"] == "GET"
        assert entry["path"] == "/users"
        assert entry["query"] == "page=2"
        assert entry["status_code"] == 200
        assert entry["content_length"] == len(b"hello")

    def test_failed_request_logged_as_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="httpchain.access"):
            with pytest.raises(TerminalError):
                MiddlewarePipeline([LoggingMiddleware()]).run(make_request(), failing)

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert "Request failed" in record.getMessage()
        assert '"GET /" -' in record.getMessage()

    def test_duration_recorded_on_error(self):
        request = make_request()

        with pytest.raises(TerminalError):
            MiddlewarePipeline([LoggingMiddleware()]).run(request, failing)

        assert request.attributes["duration_ms"] >= 0

    def test_skip_paths(self, echo, caplog):
        with caplog.at_level(logging.INFO, logger="httpchain.access"):
            MiddlewarePipeline([LoggingMiddleware(skip_paths=["/health"])]).run(
                make_request(path="/health"), echo
            )

        assert not [r for r in caplog.records if r.name == "httpchain.access"]

    def test_invalid_format(self):
        with pytest.raises(ValueError):
            LoggingMiddleware(log_format="xml")


# =============================================================================
# ERROR HANDLING
# =============================================================================


class TestErrorHandlerMiddleware:
    """Tests for ErrorHandlerMiddleware."""

    def test_passes_responses_through(self, echo):
        response = MiddlewarePipeline([ErrorHandlerMiddleware()]).run(make_request(), echo)
        assert response.text == "hello"

    def test_http_exception_becomes_problem(self):
        def handler(request):
            abort(404, "User not found")

        response = MiddlewarePipeline([ErrorHandlerMiddleware()]).run(
            make_request(path="/users/42"), handler
        )

        assert response.status == HTTPStatus.NOT_FOUND
        assert response.headers["Content-Type"] == "application/problem+json"
        assert response.json() == {
            "type": "about:blank",
            "title": "Not Found",
            "status": 404,
            "detail": "User not found",
            "instance": "/users/42",
        }

    def test_unlisted_status_keeps_body_in_sync(self):
        def handler(request):
            abort(423, "locked")

        response = MiddlewarePipeline([ErrorHandlerMiddleware()]).run(make_request(), handler)

        assert response.status == HTTPStatus.BAD_REQUEST
        assert response.json()["status"] == int(response.status)
        assert response.json()["title"] == "Bad Request"
        assert response.json()["detail"] == "locked"

    def test_http_exception_from_stage(self, echo):
        def guard(request, next):
            raise HTTPException(403, "Nope", headers={"X-Reason": "policy"})

        response = MiddlewarePipeline([ErrorHandlerMiddleware(), guard]).run(make_request(), echo)

        assert response.status == HTTPStatus.FORBIDDEN
        assert response.headers["X-Reason"] == "policy"

    def test_unexpected_error_is_500(self, caplog):
        with caplog.at_level(logging.ERROR, logger="httpchain.middleware.errors"):
            response = MiddlewarePipeline([ErrorHandlerMiddleware()]).run(make_request(), failing)

        assert response.status == HTTPStatus.INTERNAL_SERVER_ERROR
        assert "detail" not in response.json()
        assert "boom" in caplog.text

    def test_debug_exposes_error(self):
        response = MiddlewarePipeline([ErrorHandlerMiddleware(debug=True)]).run(
            make_request(), failing
        )

        assert response.json()["detail"] == "ValueError: boom"

    def test_custom_type_base(self):
        middleware = ErrorHandlerMiddleware(type_base="https://errors.example/problem")
        response = MiddlewarePipeline([middleware]).run(make_request(), failing)

        assert response.json()["type"] == "https://errors.example/problem"

    def test_render_direct(self):
        error = StageError("auth", HTTPException(401, "Who are you"))
        response = ErrorHandlerMiddleware().render(make_request(), error)

        assert response.status == HTTPStatus.UNAUTHORIZED


# =============================================================================
# AUTHENTICATION
# =============================================================================


USERS_BY_TOKEN = {"secret-token": {"id": 1, "name": "alice"}}


class TestAuth:
    """Tests for AuthMiddleware and token extraction."""

    @pytest.mark.parametrize("header, expected", [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("Bearer   abc  ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("", None),
    ])
    def test_extract_bearer_token(self, header, expected):
        request = make_request(headers={"Authorization": header} if header else {})
        assert extract_bearer_token(request) == expected

    def test_valid_token_sets_user(self, order):
        seen = []

        def handler(request):
            seen.append(request.user)
            return ok("hi")

        auth = AuthMiddleware(TokenAuthenticator(USERS_BY_TOKEN.get))
        request = make_request(headers={"Authorization": "Bearer secret-token"})
        response = MiddlewarePipeline([auth]).run(request, handler)

        assert response.status == HTTPStatus.OK
        assert seen == [{"id": 1, "name": "alice"}]

    def test_invalid_token_is_401(self, echo, order):
        auth = AuthMiddleware(TokenAuthenticator(USERS_BY_TOKEN.get))
        request = make_request(headers={"Authorization": "Bearer wrong"})
        response = MiddlewarePipeline([auth]).run(request, echo)

        assert response.status == HTTPStatus.UNAUTHORIZED
        assert response.headers["WWW-Authenticate"] == 'Bearer realm="api"'
        assert order == []

    def test_optional_auth_continues(self, echo):
        auth = AuthMiddleware(TokenAuthenticator(USERS_BY_TOKEN.get), optional=True)
        request = make_request()
        response = MiddlewarePipeline([auth]).run(request, echo)

        assert response.text == "hello"
        assert request.user is None
        assert auth.name == "OptionalAuthMiddleware"

    def test_custom_authenticator(self, echo):
        auth = AuthMiddleware(lambda request: request.get_header("X-User") or None, realm="internal")

        denied = MiddlewarePipeline([auth]).run(make_request(), echo)
        allowed = MiddlewarePipeline([auth]).run(make_request(headers={"X-User": "bob"}), echo)

        assert denied.headers["WWW-Authenticate"] == 'Bearer realm="internal"'
        assert allowed.status == HTTPStatus.OK

    def test_logging_auth_echo_without_credentials(self, echo, order, caplog):
        """Logging outside auth still runs when auth short-circuits."""
        auth = AuthMiddleware(TokenAuthenticator(USERS_BY_TOKEN.get))
        pipeline = MiddlewarePipeline([LoggingMiddleware(), auth])

        with caplog.at_level(logging.INFO, logger="httpchain.access"):
            execution = pipeline.execute(make_request(path="/me"), echo)

        assert execution.response.status == HTTPStatus.UNAUTHORIZED
        assert "X-Request-ID" in execution.response.headers
        assert execution.short_circuited_by == "AuthMiddleware"
        assert execution.terminal_invoked is False
        assert order == []
        assert '"GET /me" 401' in caplog.text


# =============================================================================
# CORS
# =============================================================================


def preflight(origin: str = "https://app.example", **headers) -> HTTPRequest:
    headers = {"Origin": origin, "Access-Control-Request-Method": "POST", **headers}
    return make_request(method="OPTIONS", path="/api/users", headers=headers)


class TestCORS:
    """Tests for CORSMiddleware."""

    def test_preflight_short_circuits(self, echo, order):
        response = MiddlewarePipeline([CORSMiddleware()]).run(
            preflight(**{"Access-Control-Request-Headers": "Authorization"}), echo
        )

        assert response.status == HTTPStatus.NO_CONTENT
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert "POST" in response.headers["Access-Control-Allow-Methods"]
        assert "Authorization" in response.headers["Access-Control-Allow-Headers"]
        assert response.headers["Access-Control-Max-Age"] == "86400"
        assert order == []

    def test_preflight_disallowed_origin(self, echo):
        middleware = CORSMiddleware(CORSConfig(allow_origins=["https://app.example"]))
        response = MiddlewarePipeline([middleware]).run(preflight("https://evil.example"), echo)

        assert response.status == HTTPStatus.NO_CONTENT
        assert "Access-Control-Allow-Origin" not in response.headers
        assert "Access-Control-Allow-Methods" not in response.headers

    def test_simple_request_gets_headers(self, echo):
        request = make_request(headers={"Origin": "https://app.example"})
        response = MiddlewarePipeline([CORSMiddleware()]).run(request, echo)

        assert response.text == "hello"
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["Vary"] == "Origin"

    def test_specific_origin_echoed(self, echo):
        middleware = CORSMiddleware(CORSConfig(allow_origins=["https://app.example"]))
        request = make_request(headers={"Origin": "https://app.example"})
        response = MiddlewarePipeline([middleware]).run(request, echo)

        assert response.headers["Access-Control-Allow-Origin"] == "https://app.example"

    def test_credentials_echo_origin_with_wildcard(self, echo):
        middleware = CORSMiddleware(CORSConfig(allow_credentials=True, expose_headers=["X-Request-ID"]))
        request = make_request(headers={"Origin": "https://app.example"})
        response = MiddlewarePipeline([middleware]).run(request, echo)

        assert response.headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert response.headers["Access-Control-Allow-Credentials"] == "true"
        assert response.headers["Access-Control-Expose-Headers"] == "X-Request-ID"

    def test_existing_vary_kept(self):
        def handler(request):
            return ok("hi").set_header("Vary", "Accept-Encoding")

        request = make_request(headers={"Origin": "https://app.example"})
        response = MiddlewarePipeline([CORSMiddleware()]).run(request, handler)

        assert response.headers["Vary"] == "Accept-Encoding, Origin"

    def test_bare_options_reaches_handler(self, echo, order):
        request = make_request(method="OPTIONS", headers={"Origin": "https://app.example"})
        MiddlewarePipeline([CORSMiddleware()]).run(request, echo)

        assert order == ["terminal"]

    def test_config_origin_check(self):
        config = CORSConfig(allow_origins=["https://app.example"])

        assert config.is_origin_allowed("https://app.example")
        assert not config.is_origin_allowed("https://evil.example")


# =============================================================================
# RATE LIMITING
# =============================================================================


class TestTokenBucket:
    """Tests for TokenBucket."""

    def test_consume_until_empty(self):
        bucket = TokenBucket(max_tokens=2, tokens_per_second=1, clock=FakeClock())

        assert bucket.consume()
        assert bucket.consume()
        assert not bucket.consume()

    def test_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(max_tokens=2, tokens_per_second=1, clock=clock)
        bucket.consume(2)

        clock.advance(1.5)
        assert bucket.available_tokens == pytest.approx(1.5)

        clock.advance(10)
        assert bucket.available_tokens == 2

    def test_time_until_available(self):
        clock = FakeClock()
        bucket = TokenBucket(max_tokens=1, tokens_per_second=2, clock=clock)

        assert bucket.time_until_available() == 0.0
        bucket.consume()
        assert bucket.time_until_available() == pytest.approx(0.5)


class TestRateLimitMiddleware:
    """Tests for RateLimitMiddleware."""

    def test_allows_up_to_burst(self, echo):
        clock = FakeClock()
        pipeline = MiddlewarePipeline([RateLimitMiddleware(1.0, 2, clock=clock)])

        first = pipeline.run(make_request(), echo)
        second = pipeline.run(make_request(), echo)
        third = pipeline.run(make_request(), echo)

        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status == HTTPStatus.TOO_MANY_REQUESTS
        assert third.headers["Retry-After"] == "2"

    def test_rejection_short_circuits(self, order):
        clock = FakeClock()
        calls = []

        def handler(request):
            calls.append(request.path)
            return ok()

        pipeline = MiddlewarePipeline([RateLimitMiddleware(1.0, 1, clock=clock)])
        pipeline.run(make_request(), handler)
        execution = pipeline.execute(make_request(), handler)

        assert calls == ["/"]
        assert execution.short_circuited_by == "RateLimitMiddleware"

    def test_refills_over_time(self, echo):
        clock = FakeClock()
        pipeline = MiddlewarePipeline([RateLimitMiddleware(1.0, 1, clock=clock)])

        pipeline.run(make_request(), echo)
        assert pipeline.run(make_request(), echo).status == HTTPStatus.TOO_MANY_REQUESTS

        clock.advance(1.0)
        assert pipeline.run(make_request(), echo).status == HTTPStatus.OK

    def test_keys_are_independent(self, echo):
        clock = FakeClock()
        pipeline = MiddlewarePipeline([RateLimitMiddleware(1.0, 1, clock=clock)])

        pipeline.run(make_request(client_address=("10.0.0.1", 1)), echo)
        response = pipeline.run(make_request(client_address=("10.0.0.2", 1)), echo)

        assert response.status == HTTPStatus.OK

    def test_custom_key_func(self, echo):
        limiter = RateLimitMiddleware(1.0, 1, key_func=lambda r: r.get_header("X-API-Key"), clock=FakeClock())
        pipeline = MiddlewarePipeline([limiter])

        pipeline.run(make_request(headers={"X-API-Key": "a"}), echo)
        blocked = pipeline.run(make_request(headers={"X-API-Key": "a"}), echo)
        other = pipeline.run(make_request(headers={"X-API-Key": "b"}), echo)

        assert blocked.status == HTTPStatus.TOO_MANY_REQUESTS
        assert other.status == HTTPStatus.OK

    def test_reset(self, echo):
        limiter = RateLimitMiddleware(1.0, 1, clock=FakeClock())
        pipeline = MiddlewarePipeline([limiter])

        pipeline.run(make_request(), echo)
        limiter.reset("10.0.0.1")

        assert pipeline.run(make_request(), echo).status == HTTPStatus.OK

    def test_idle_buckets_cleaned_up(self, echo):
        clock = FakeClock()
        limiter = RateLimitMiddleware(1.0, 1, cleanup_interval=10, bucket_ttl=30, clock=clock)
        pipeline = MiddlewarePipeline([limiter])

        pipeline.run(make_request(client_address=("10.0.0.1", 1)), echo)
        clock.advance(60)
        pipeline.run(make_request(client_address=("10.0.0.2", 1)), echo)

        assert set(limiter._buckets) == {"10.0.0.2"}

    @pytest.mark.parametrize("rate, burst", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_arguments(self, rate, burst):
        with pytest.raises(ValueError):
            RateLimitMiddleware(rate, burst)
