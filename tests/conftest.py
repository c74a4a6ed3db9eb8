"""
pytest configuration and fixtures.
"""

from typing import Callable, List

import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from httpchain import Kernel, PipelineConfig
from httpchain.http import HTTPRequest, HTTPResponse, ok
from httpchain.middleware import Middleware, TokenAuthenticator


TOKENS = {
    "secret-token": {"id": 1, "name": "alice"},
}


class Recorder(Middleware):
    """Stage that appends "<label>-before" / "<label>-after" to a shared log."""

    def __init__(self, label: str, log: List[str]):
        self.label = label
        self.log = log

    @property
    def name(self) -> str:
        return self.label

    def __call__(self, request, next):
        self.log.append(f"{self.label}-before")
        response = next(request)
        self.log.append(f"{self.label}-after")
        return response


class Terminable(Recorder):
    """Recorder with a terminate hook that logs "<label>-terminate"."""

    def terminate(self, request, response):
        self.log.append(f"{self.label}-terminate")


@pytest.fixture
def order() -> List[str]:
    """Shared order log for recorder stages."""
    return []


@pytest.fixture
def recorder(order: List[str]) -> Callable[[str], Recorder]:
    """Factory: recorder("A") → a pass-through stage logging into ``order``."""
    return lambda label: Recorder(label, order)


@pytest.fixture
def terminable(order: List[str]) -> Callable[[str], Terminable]:
    return lambda label: Terminable(label, order)


@pytest.fixture
def echo(order: List[str]) -> Callable[[HTTPRequest], HTTPResponse]:
    """Terminal handler that returns "hello" and logs "terminal"."""
    def handler(request: HTTPRequest) -> HTTPResponse:
        order.append("terminal")
        return ok("hello")
    return handler


@pytest.fixture
def get_request() -> HTTPRequest:
    return HTTPRequest(
        method="GET",
        path="/api/users",
        headers={"User-Agent": "pytest", "Accept": "application/json"},
        query_params={"page": ["1"], "limit": ["10"]},
        client_address=("127.0.0.1", 54321),
    )


@pytest.fixture
def authenticator() -> TokenAuthenticator:
    return TokenAuthenticator(TOKENS.get)


@pytest.fixture
def kernel(authenticator: TokenAuthenticator) -> Kernel:
    """Kernel with the default registry, auth enabled and a couple of routes."""
    kernel = Kernel(PipelineConfig(middleware=("log", "errors")), authenticator=authenticator)

    @kernel.get("/hello")
    def hello(request: HTTPRequest) -> HTTPResponse:
        return ok("hello")

    @kernel.get("/me", middleware=["auth"])
    def me(request: HTTPRequest) -> HTTPResponse:
        return ok({"user": request.user["name"]})

    return kernel
