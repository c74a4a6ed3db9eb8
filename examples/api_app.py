"""
=============================================================================
EXAMPLE: USER API ON THE KERNEL
=============================================================================

Builds a small user API on httpchain and drives it with in-process
requests. It shows:

1. Kernel configuration (global middleware)
2. Route groups with group middleware ("api" = throttle + auth)
3. Route middleware and exclusions
4. Explicit parameter binding (":user" → a user dict, or 404)
5. Error handling through ErrorHandlerMiddleware (abort → problem+json)
6. A custom terminate hook (audit log written after every response)

ARCHITECTURE OVERVIEW:
─────────────────────

    ┌─────────────────────────────────────────────────────────────────┐
    │                 kernel.handle(HTTPRequest(...))                 │
    └─────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────┐
    │  log ─► errors ─► audit ─► throttle ─► auth ─► bindings/handler │
    │                                                                  │
    │  global: log, errors, audit      group "api": throttle, auth    │
    └─────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────┐
    │  response ─► terminate hooks (access log, audit) ─► caller      │
    └─────────────────────────────────────────────────────────────────┘

Run it:

    python examples/api_app.py

=============================================================================
"""

import logging
import sys
from pathlib import Path

# Allow running from a checkout without installing the package.
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from httpchain import HTTPRequest, Kernel, PipelineConfig, abort, setup_logging
from httpchain.http import created, no_content, ok
from httpchain.middleware import FunctionMiddleware, TokenAuthenticator


logger = logging.getLogger("api_app")


# =============================================================================
# IN-MEMORY DATA
# =============================================================================

users_db = {
    "1": {"id": 1, "name": "Alice", "email": "alice@example.com"},
    "2": {"id": 2, "name": "Bob", "email": "bob@example.com"},
}

tokens = {"alice-token": users_db["1"]}


# =============================================================================
# AUDIT STAGE
# =============================================================================
# A pass-through stage whose only job happens in its terminate hook, after
# the final response is known (including 401s and 429s produced further in).

def audit_terminate(request, response):
    status = int(response.status) if response is not None else "-"
    user = request.user["name"] if request.user else "anonymous"
    logger.info(f"audit: {user} {request.method} {request.path} -> {status}")


audit = FunctionMiddleware(lambda request, next: next(request), name="audit", terminate=audit_terminate)


# =============================================================================
# APPLICATION
# =============================================================================

def build_app() -> Kernel:
    config = PipelineConfig(
        middleware=("log", "errors"),
        log_level="INFO",
        rate_limit_per_second=5.0,
        rate_limit_burst=10,
    )
    setup_logging(config)

    kernel = Kernel(config, authenticator=TokenAuthenticator(tokens.get))
    kernel.use(audit)

    @kernel.get("/health", without_middleware=["log"])
    def health(request):
        return ok({"status": "healthy"})

    api = kernel.group("/api", middleware=["api"])

    @api.get("/users", without_middleware=["auth"])
    def list_users(request):
        return ok({"users": list(users_db.values())})

    @api.get("/users/:user", bindings={"user": users_db.get})
    def show_user(request):
        return ok(request.bindings["user"])

    @api.post("/users")
    def create_user(request):
        data = request.json
        if not data or "name" not in data:
            abort(422, "Field 'name' is required")

        user_id = str(max(int(key) for key in users_db) + 1)
        user = {"id": int(user_id), "name": data["name"], "email": data.get("email")}
        users_db[user_id] = user
        return created(user, location=f"/api/users/{user_id}")

    @api.delete("/users/:user", bindings={"user": users_db.get})
    def delete_user(request):
        users_db.pop(str(request.bindings["user"]["id"]))
        return no_content()

    return kernel


def main():
    kernel = build_app()
    auth = {"Authorization": "Bearer alice-token"}

    requests = [
        HTTPRequest("GET", "/health"),
        HTTPRequest("GET", "/api/users"),
        HTTPRequest("GET", "/api/users/1"),
        HTTPRequest("GET", "/api/users/1", headers=auth),
        HTTPRequest("GET", "/api/users/99", headers=auth),
        HTTPRequest("POST", "/api/users", headers=auth, body=b'{"email": "x@example.com"}'),
        HTTPRequest("POST", "/api/users", headers=auth, body=b'{"name": "Charlie"}'),
        HTTPRequest("DELETE", "/api/users/2", headers=auth),
        HTTPRequest("PUT", "/api/users"),
    ]

    for request in requests:
        response = kernel.handle(request)
        print(f"{request.method:6} {request.path:16} -> {response.status_line}")
        if response.body:
            print(f"       {response.text}")


if __name__ == "__main__":
    main()
