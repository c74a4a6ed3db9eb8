"""
=============================================================================
URL ROUTER
=============================================================================

Maps (method, path) to a handler, and carries the per-route middleware
and parameter bindings the kernel assembles around that handler.

=============================================================================
PATH PATTERNS
=============================================================================

    /users              static, exact match
    /users/:id          :id captures one segment      → {"id": "42"}
    /files/*path        *path captures the remainder  → {"path": "a/b.txt"}

First registered, first matched: register /users/me before /users/:id.

=============================================================================
ROUTE MIDDLEWARE AND GROUPS
=============================================================================

    api = router.group("/api", middleware=["api"])

    @api.get("/users/:id", middleware=["throttle:5,10"],
             without_middleware=["auth"])
    def show_user(request): ...

    Route.middleware            == ["api", "throttle:5,10"]
    Route.excluded_middleware   == ["auth"]

Identifiers are resolved later by the kernel's MiddlewareRegistry; the
router only records them.

=============================================================================
EXPLICIT PARAMETER BINDING
=============================================================================

Binding is an explicit table supplied at registration time, never
inferred from handler argument names:

    @router.get("/users/:user", bindings={"user": users.find})
    def show_user(request):
        user = request.bindings["user"]

A resolver receives the raw segment. Returning None or raising
LookupError (KeyError, IndexError) answers 404 before the handler runs.

=============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging
import re

from .request import HTTPRequest
from .response import HTTPResponse, method_not_allowed, not_found


logger = logging.getLogger(__name__)

Handler = Callable[[HTTPRequest], HTTPResponse]
Resolver = Callable[[str], Any]

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


@dataclass(eq=False)
class Route:
    """
    A registered route.

    ``eq=False`` keeps identity hashing: the kernel caches one pipeline
    per Route object.
    """

    path: str
    method: Optional[str]
    handler: Handler
    name: Optional[str] = None
    middleware: List[Any] = field(default_factory=list)
    excluded_middleware: List[str] = field(default_factory=list)
    bindings: Dict[str, Resolver] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    _pattern: Optional[re.Pattern] = field(default=None, repr=False)
    _param_names: List[str] = field(default_factory=list, repr=False)

    @property
    def param_names(self) -> List[str]:
        return list(self._param_names)

    def bind(self, param: str, resolver: Resolver) -> "Route":
        """Attach a resolver for ``param``. Returns self."""
        if param not in self._param_names:
            raise ValueError(f"Route {self.path!r} has no parameter {param!r}")
        self.bindings[param] = resolver
        return self

    def with_middleware(self, *identifiers: Any) -> "Route":
        self.middleware.extend(identifiers)
        return self

    def without_middleware(self, *names: str) -> "Route":
        self.excluded_middleware.extend(names)
        return self


@dataclass
class RouteMatch:
    """A matched route plus the raw path parameters."""

    route: Route
    params: Dict[str, str]


def _normalize(path: str) -> str:
    return "/" + path.strip("/") if path != "/" else "/"


class Router:
    """
    Request router with dynamic segments, groups and route middleware.

        router = Router()

        @router.get("/users")
        def list_users(request):
            return ok({"users": []})

        api = router.group("/api/v1", middleware=["api"])

        @api.post("/users")
        def create_user(request):
            return created(request.json)
    """

    def __init__(self, prefix: str = "", middleware: Iterable[Any] = ()):
        """
        Args:
            prefix: Path prefix for every route registered here
            middleware: Middleware identifiers applied to every route
                        registered here (group middleware)
        """
        self.prefix = prefix.rstrip("/")
        self.middleware: List[Any] = list(middleware)
        self._routes: List[Route] = []
        self._named_routes: Dict[str, Route] = {}
        self._sub_routers: List[Tuple[str, "Router"]] = []

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def add_route(
        self,
        path: str,
        handler: Handler,
        method: Optional[str] = None,
        name: Optional[str] = None,
        middleware: Iterable[Any] = (),
        without_middleware: Iterable[str] = (),
        bindings: Optional[Dict[str, Resolver]] = None,
        **meta: Any,
    ) -> Route:
        """
        Register a route.

        Args:
            path: URL pattern (e.g. /users/:id)
            handler: ``(request) -> response``
            method: HTTP method, None for any
            name: Name for url_for()
            middleware: Route middleware identifiers, appended after the
                        group middleware
            without_middleware: Alias or group names to drop from this
                                route's resolved pipeline, including
                                global ones
            bindings: ``{param: resolver}``
            **meta: Free-form metadata (route.meta)
        """
        full_path = self.prefix + path
        pattern, param_names = self._compile_pattern(full_path)

        route = Route(
            path=full_path,
            method=method.upper() if method else None,
            handler=handler,
            name=name,
            middleware=self.middleware + list(middleware),
            excluded_middleware=list(without_middleware),
            meta=meta,
            _pattern=pattern,
            _param_names=param_names,
        )
        for param, resolver in (bindings or {}).items():
            route.bind(param, resolver)

        self._routes.append(route)
        if name:
            self._named_routes[name] = route

        logger.debug(f"Registered route {route.method or 'ANY'} {route.path}")
        return route

    def _compile_pattern(self, path: str) -> Tuple[re.Pattern, List[str]]:
        """
        "/users/:id/posts/:post_id" → ^/users/(?P<id>[^/]+)/posts/(?P<post_id>[^/]+)$
        "/files/*path"              → ^/files/(?P<path>.*)$
        """
        param_names: List[str] = []
        regex_parts = ["^"]

        for segment in path.split("/"):
            if not segment:
                continue

            regex_parts.append("/")

            if segment.startswith(":"):
                param_name = segment[1:]
                param_names.append(param_name)
                regex_parts.append(f"(?P<{param_name}>[^/]+)")
            elif segment.startswith("*"):
                param_name = segment[1:] or "wildcard"
                param_names.append(param_name)
                regex_parts.append(f"(?P<{param_name}>.*)")
                break  # wildcard consumes the rest
            else:
                regex_parts.append(re.escape(segment))

        if len(regex_parts) == 1:
            regex_parts.append("/")
        regex_parts.append("$")
        return re.compile("".join(regex_parts)), param_names

    # =========================================================================
    # MATCHING AND DISPATCH
    # =========================================================================

    def match(self, method: str, path: str) -> Optional[RouteMatch]:
        """First route matching method and path, or None."""
        path = _normalize(path)

        for route in self._routes:
            if route.method and route.method != method.upper():
                continue
            found = route._pattern.match(path) if route._pattern else None
            if found:
                return RouteMatch(route=route, params=found.groupdict())

        for _, sub_router in self._sub_routers:
            if path.startswith(sub_router.prefix or "/"):
                result = sub_router.match(method, path)
                if result:
                    return result

        return None

    def get_allowed_methods(self, path: str) -> List[str]:
        """Methods registered for ``path``, for 405 responses."""
        path = _normalize(path)
        methods = set()

        for route in self.routes():
            if route._pattern and route._pattern.match(path):
                if route.method is None:
                    return list(ALL_METHODS)
                methods.add(route.method)

        return sorted(methods)

    def dispatch(self, match: RouteMatch, request: HTTPRequest) -> HTTPResponse:
        """
        Call the matched route's handler.

        Stores raw parameters on ``request.path_params``, runs the route's
        resolvers into ``request.bindings``, then calls the handler.
        """
        route = match.route
        request.path_params = dict(match.params)

        for param, resolver in route.bindings.items():
            raw = match.params.get(param)
            try:
                value = resolver(raw)
            except LookupError:
                value = None
            if value is None:
                logger.debug(f"Binding {param}={raw!r} not found for {route.path}")
                return not_found(f"No {param} matches {raw!r}")
            request.bindings[param] = value

        return route.handler(request)

    def fallback(self, request: HTTPRequest) -> HTTPResponse:
        """Response for an unmatched request: 405 if the path exists, else 404."""
        allowed = self.get_allowed_methods(request.path)
        if allowed:
            return method_not_allowed(allowed)
        return not_found(f"No route matches {request.path}")

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        """Match and dispatch in one step. Usable as a terminal handler."""
        match = self.match(request.method, request.path)
        if match:
            return self.dispatch(match, request)
        return self.fallback(request)

    # =========================================================================
    # DECORATORS
    # =========================================================================

    def route(
        self,
        path: str,
        method: Optional[str] = None,
        name: Optional[str] = None,
        **options: Any,
    ) -> Callable[[Handler], Handler]:
        """
        Decorator form of add_route(). Accepts the same keyword options
        (middleware, without_middleware, bindings, metadata).
        """
        def decorator(handler: Handler) -> Handler:
            self.add_route(path, handler, method, name, **options)
            return handler
        return decorator

    def get(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "GET", name, **options)

    def post(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "POST", name, **options)

    def put(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "PUT", name, **options)

    def patch(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "PATCH", name, **options)

    def delete(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "DELETE", name, **options)

    def head(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "HEAD", name, **options)

    def options(self, path: str, name: Optional[str] = None, **options: Any) -> Callable[[Handler], Handler]:
        return self.route(path, "OPTIONS", name, **options)

    # =========================================================================
    # GROUPS AND UTILITIES
    # =========================================================================

    def group(self, prefix: str, middleware: Iterable[Any] = ()) -> "Router":
        """
        Child router under ``prefix``. Its routes get this router's group
        middleware followed by ``middleware``.
        """
        sub_router = Router(self.prefix + prefix, self.middleware + list(middleware))
        self._sub_routers.append((prefix, sub_router))
        return sub_router

    def url_for(self, name: str, **params: str) -> Optional[str]:
        """Build the path of a named route, or None if unknown."""
        route = self._named_routes.get(name)
        if route is None:
            for _, sub_router in self._sub_routers:
                url = sub_router.url_for(name, **params)
                if url is not None:
                    return url
            return None

        url = route.path
        for param_name, value in params.items():
            url = url.replace(f":{param_name}", str(value))
            url = url.replace(f"*{param_name}", str(value))
        return url

    def routes(self) -> List[Route]:
        """All routes, including those of groups."""
        all_routes = list(self._routes)
        for _, sub_router in self._sub_routers:
            all_routes.extend(sub_router.routes())
        return all_routes
