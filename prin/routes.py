from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Tuple, Union
from urllib.parse import urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


class ConfigError(Exception):
    """Raised when routes or the configuration file are invalid."""


class InvalidRouteError(ConfigError):
    """Raised when a prefix or target cannot form a route."""


class DuplicatePrefixError(ConfigError):
    """Raised when two routes share the same prefix."""

    def __init__(self, prefix: str):
        super().__init__(f"Duplicate route prefix: {prefix}")
        self.prefix = prefix


def normalize_prefix(prefix: str) -> str:
    """Strip surrounding whitespace and trailing slashes, keeping the root `/`."""
    prefix = (prefix or "").strip()
    if not prefix.startswith("/"):
        raise InvalidRouteError(f"Route prefix must start with '/': {prefix!r}")
    return prefix.rstrip("/") or "/"


@dataclass(frozen=True)
class Route:
    """A path prefix mapped to a backend origin."""
    prefix: str
    target: str

    def __post_init__(self):
        if not self.prefix.startswith("/") or (self.prefix != "/" and self.prefix.endswith("/")):
            raise InvalidRouteError(f"Invalid route prefix: {self.prefix!r}")
        parsed = urlsplit(self.target)
        if parsed.scheme not in DEFAULT_PORTS or not parsed.hostname:
            raise InvalidRouteError(
                f"Route target must be an absolute http(s) URL: {self.target!r}"
            )
        try:
            parsed.port
        except ValueError as e:
            raise InvalidRouteError(f"Invalid port in target {self.target!r}: {e}")

    @classmethod
    def create(cls, prefix: str, target: str) -> "Route":
        """Build a route from user input, normalizing the prefix and target."""
        return cls(normalize_prefix(prefix), (target or "").strip())

    @property
    def scheme(self) -> str:
        return urlsplit(self.target).scheme

    @property
    def host(self) -> str:
        return urlsplit(self.target).hostname

    @property
    def port(self) -> int:
        parsed = urlsplit(self.target)
        return parsed.port or DEFAULT_PORTS[parsed.scheme]

    @property
    def authority(self) -> str:
        """Value for the Host header of forwarded requests."""
        netloc = urlsplit(self.target).netloc
        return netloc.rsplit("@", 1)[-1]

    def url_for(self, remainder: str, query: str = "") -> str:
        """
        Build the request-target sent to the backend.

        Args:
            remainder: Request path left after stripping the prefix
            query: Raw query string of the inbound request, without '?'

        Returns:
            Origin-form request-target, never empty
        """
        base_path = urlsplit(self.target).path.rstrip("/")
        path = base_path + remainder
        if not path.startswith("/"):
            path = "/" + path
        return f"{path}?{query}" if query else path


@dataclass(frozen=True)
class Matched:
    route: Route
    remainder: str


class _NoMatch:
    """Result of a lookup that found no route."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH = _NoMatch()

MatchResult = Union[Matched, _NoMatch]


def _prefix_matches(prefix: str, path: str) -> bool:
    if prefix == "/":
        return path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


class RouteTable:
    """
    Immutable collection of routes answering longest-prefix lookups.

    Routes are scanned linearly, longest prefix first. Equal-length
    candidates are ordered by prefix so that lookups are deterministic.
    """

    def __init__(self, routes: Iterable[Route] = ()):
        self._routes: Tuple[Route, ...] = tuple(routes)
        seen = set()
        for route in self._routes:
            if route.prefix in seen:
                raise DuplicatePrefixError(route.prefix)
            seen.add(route.prefix)
        self._by_specificity = tuple(
            sorted(self._routes, key=lambda r: (-len(r.prefix), r.prefix))
        )

    @property
    def routes(self) -> Tuple[Route, ...]:
        """Routes in the order they were configured."""
        return self._routes

    def __len__(self) -> int:
        return len(self._routes)

    def __iter__(self) -> Iterator[Route]:
        return iter(self._routes)

    def match(self, path: str) -> MatchResult:
        """
        Find the most specific route for a request path.

        Args:
            path: Request path, without query string

        Returns:
            Matched with the route and the path remainder, or NO_MATCH
        """
        for route in self._by_specificity:
            if _prefix_matches(route.prefix, path):
                remainder = path if route.prefix == "/" else path[len(route.prefix):]
                return Matched(route, remainder)
        return NO_MATCH


RouteSpec = Union[Route, Tuple[str, str]]


def build_route_table(routes: Union[Mapping[str, str], Iterable[RouteSpec]]) -> RouteTable:
    """
    Build a RouteTable from a configuration snapshot.

    Args:
        routes: Mapping of prefix to target, or a sequence of Route objects
            or (prefix, target) pairs

    Raises:
        InvalidRouteError: if an entry is not a valid route
        DuplicatePrefixError: if two entries share a prefix after normalization
    """
    if isinstance(routes, Mapping):
        routes = routes.items()
    built = []
    for entry in routes:
        if isinstance(entry, Route):
            built.append(entry)
        else:
            prefix, target = entry
            built.append(Route.create(prefix, target))
    return RouteTable(built)
