"""
=============================================================================
MIDDLEWARE REGISTRY
=============================================================================

Turns configuration-level identifiers ("log", "throttle:60,30", "api")
into the ordered list of stage objects a pipeline runs.

=============================================================================
IDENTIFIERS
=============================================================================

    "log"                alias → a stage
    "throttle:60,30"     alias with parameters → factory("60", "30")
    "api"                group → its members, expanded in place
    LoggingMiddleware()  a stage object, used as is

    ┌─────────────────────────────────────────────────────────────────────┐
    │                       RESOLUTION STEPS                              │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │  ["log", "api", "cors"]                                             │
    │        │                                                             │
    │        ▼  1. expand groups (recursively, cycles rejected)           │
    │  ["log", "throttle", "auth", "cors"]                                │
    │        │                                                             │
    │        ▼  2. drop duplicates (first occurrence wins)                │
    │        ▼  3. drop excluded aliases (route without_middleware)       │
    │        ▼  4. reorder prioritised aliases among their own slots      │
    │  ["log", "cors", "throttle", "auth"]                                │
    │        │                                                             │
    │        ▼  5. build stage objects                                    │
    │  [LoggingMiddleware, CORSMiddleware, RateLimit..., AuthMiddleware]  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PRIORITY
=============================================================================

Some stages must run before others no matter how routes combine them (an
error handler outside auth, auth before anything that reads request.user).
Only aliases named in the priority list move, and only among the
positions they already occupy:

    priority:  ["errors", "auth"]
    resolved:  ["auth", "cors", "errors"]
    result:    ["errors", "cors", "auth"]      (cors keeps its slot)

=============================================================================
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import threading

from ..errors import MiddlewareConfigError, UnknownMiddlewareError
from .base import Middleware, as_middleware


logger = logging.getLogger(__name__)

# A factory receives the alias parameters as strings and returns a stage.
MiddlewareFactory = Callable[..., Any]
AliasTarget = Union[Middleware, MiddlewareFactory]
Identifier = Union[str, Middleware, Callable[..., Any]]


def parse_identifier(identifier: str) -> Tuple[str, Tuple[str, ...]]:
    """
    Split "name:arg1,arg2" into ("name", ("arg1", "arg2")).

        parse_identifier("log")             → ("log", ())
        parse_identifier("throttle:60,30")  → ("throttle", ("60", "30"))
    """
    name, sep, raw = identifier.partition(":")
    name = name.strip()
    if not name:
        raise MiddlewareConfigError(f"Empty middleware name in {identifier!r}")
    if not sep:
        return name, ()
    params = tuple(part.strip() for part in raw.split(","))
    if any(not part for part in params):
        raise MiddlewareConfigError(f"Empty parameter in {identifier!r}")
    return name, params


class MiddlewareRegistry:
    """
    Named stages, named groups and a priority order.

    Usage:
        registry = MiddlewareRegistry()
        registry.alias("log", LoggingMiddleware())
        registry.alias("throttle", lambda rate="10", burst="20":
                       RateLimitMiddleware(float(rate), int(burst)))
        registry.group("api", ["throttle:5,10", "auth"])
        registry.set_priority(["log", "auth"])

        stages = registry.resolve(["log", "api"])
        pipeline = MiddlewarePipeline(stages)
    """

    def __init__(self):
        self._aliases: Dict[str, AliasTarget] = {}
        self._groups: Dict[str, List[Identifier]] = {}
        self._priority: List[str] = []
        self._instances: Dict[Tuple[str, Tuple[str, ...]], Middleware] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def alias(self, name: str, target: AliasTarget) -> "MiddlewareRegistry":
        """
        Register a stage under a name.

        Args:
            name: Alias used in identifiers
            target: A Middleware instance (shared by every pipeline that
                    resolves it), or a class / factory callable invoked
                    with the identifier's parameters to build a stage.
                    Built stages are cached per (name, parameters).
        """
        self._check_name(name)
        if name in self._groups:
            raise MiddlewareConfigError(f"{name!r} is already a middleware group")
        if not (isinstance(target, Middleware) or callable(target)):
            raise MiddlewareConfigError(f"Alias {name!r} target is not callable: {target!r}")
        self._aliases[name] = target
        with self._lock:
            for key in [key for key in self._instances if key[0] == name]:
                del self._instances[key]
        logger.debug(f"Registered middleware alias: {name}")
        return self

    def group(self, name: str, members: Iterable[Identifier]) -> "MiddlewareRegistry":
        """Register (or replace) a named group of identifiers."""
        self._check_name(name)
        if name in self._aliases:
            raise MiddlewareConfigError(f"{name!r} is already a middleware alias")
        self._groups[name] = list(members)
        logger.debug(f"Registered middleware group: {name} = {self._groups[name]}")
        return self

    def prepend_to_group(self, name: str, member: Identifier) -> "MiddlewareRegistry":
        """Add a member to the front of a group unless already present."""
        members = self._groups.setdefault(name, [])
        if member not in members:
            members.insert(0, member)
        return self

    def append_to_group(self, name: str, member: Identifier) -> "MiddlewareRegistry":
        """Add a member to the end of a group unless already present."""
        members = self._groups.setdefault(name, [])
        if member not in members:
            members.append(member)
        return self

    def set_priority(self, names: Sequence[str]) -> "MiddlewareRegistry":
        """Set the alias priority order (see module docs)."""
        self._priority = list(names)
        return self

    def has(self, name: str) -> bool:
        return name in self._aliases or name in self._groups

    def is_group(self, name: str) -> bool:
        return name in self._groups

    @property
    def aliases(self) -> List[str]:
        return list(self._aliases)

    @property
    def groups(self) -> Dict[str, List[Identifier]]:
        return {name: list(members) for name, members in self._groups.items()}

    @property
    def priority(self) -> List[str]:
        return list(self._priority)

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
        self,
        identifiers: Iterable[Identifier],
        exclude: Iterable[str] = (),
    ) -> List[Middleware]:
        """
        Resolve identifiers into stage objects, in execution order.

        Args:
            identifiers: Aliases, groups, "alias:params" strings or stages
            exclude: Alias or group names to drop. Excluding a group drops
                     every member it would contribute.

        Raises:
            UnknownMiddlewareError: an identifier names nothing registered
            MiddlewareConfigError: malformed identifier, group cycle, or
                                   parameters given to an instance alias
        """
        excluded = self._expand_exclusions(exclude)
        flat = self._flatten(identifiers, excluded)
        flat = self._sort_by_priority(flat)
        return [self._build(item) for item in flat]

    def expand(self, identifiers: Iterable[Identifier], exclude: Iterable[str] = ()) -> List[Identifier]:
        """Like resolve() but returns the ordered identifiers, not stages."""
        excluded = self._expand_exclusions(exclude)
        return self._sort_by_priority(self._flatten(identifiers, excluded))

    def _flatten(self, identifiers: Iterable[Identifier], excluded: set) -> List[Identifier]:
        flat: List[Identifier] = []
        seen: set = set()

        def visit(identifier: Identifier, trail: Tuple[str, ...]) -> None:
            if not isinstance(identifier, str):
                key = ("object", id(identifier))
                if key not in seen:
                    seen.add(key)
                    flat.append(identifier)
                return

            name, _ = parse_identifier(identifier)
            if name in excluded:
                return

            if name in self._groups:
                if name in trail:
                    cycle = " -> ".join(trail + (name,))
                    raise MiddlewareConfigError(f"Middleware group cycle: {cycle}")
                for member in self._groups[name]:
                    visit(member, trail + (name,))
                return

            if name not in self._aliases:
                raise UnknownMiddlewareError(name)

            key = ("alias", identifier.replace(" ", ""))
            if key not in seen:
                seen.add(key)
                flat.append(identifier)

        for identifier in identifiers:
            visit(identifier, ())
        return flat

    def _expand_exclusions(self, exclude: Iterable[str]) -> set:
        # Excluding a group excludes its members too.
        excluded: set = set()
        pending = [parse_identifier(name)[0] for name in exclude]
        while pending:
            name = pending.pop()
            if name in excluded:
                continue
            excluded.add(name)
            for member in self._groups.get(name, []):
                if isinstance(member, str):
                    pending.append(parse_identifier(member)[0])
        return excluded

    def _sort_by_priority(self, flat: List[Identifier]) -> List[Identifier]:
        if not self._priority:
            return flat

        rank = {name: position for position, name in enumerate(self._priority)}
        slots = [
            index for index, item in enumerate(flat)
            if isinstance(item, str) and parse_identifier(item)[0] in rank
        ]
        if len(slots) < 2:
            return flat

        ranked = sorted(
            (flat[index] for index in slots),
            key=lambda item: rank[parse_identifier(item)[0]],
        )
        result = list(flat)
        for index, item in zip(slots, ranked):
            result[index] = item
        return result

    def _build(self, identifier: Identifier) -> Middleware:
        if not isinstance(identifier, str):
            return as_middleware(identifier)

        name, params = parse_identifier(identifier)
        target = self._aliases[name]

        if isinstance(target, Middleware):
            if params:
                raise MiddlewareConfigError(
                    f"Alias {name!r} is a shared instance and takes no parameters"
                )
            return target

        # One instance per identifier, so "throttle:5,10" shares its
        # buckets across every pipeline that resolves it.
        key = (name, params)
        with self._lock:
            stage = self._instances.get(key)
            if stage is None:
                try:
                    stage = as_middleware(target(*params))
                except (TypeError, ValueError) as exc:
                    raise MiddlewareConfigError(
                        f"Cannot build middleware {identifier!r}: {exc}"
                    ) from exc
                self._instances[key] = stage
                logger.debug(f"Built middleware {identifier!r}: {stage.name}")
        return stage

    @staticmethod
    def _check_name(name: str) -> None:
        if not name or ":" in name or "," in name:
            raise MiddlewareConfigError(f"Invalid middleware name: {name!r}")
