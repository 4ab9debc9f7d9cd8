from typing import Dict, Optional
import json
import logging
import os
import sys

from .routes import ConfigError, Route, RouteTable, build_route_table

logger = logging.getLogger(__name__)

APP_NAME = "prin"
CONFIG_ENV_VAR = "PRIN_CONFIG"


def get_config_path() -> str:
    """
    Locate the configuration file.

    $PRIN_CONFIG wins; otherwise the platform's per-user config directory
    is used, e.g. ~/.config/prin/config.json on Linux.
    """
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return override

    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return os.path.join(base, APP_NAME, "config.json")


class ProxyConfig:
    """Persistent route configuration for the reverse proxy."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration with optional config file path.

        Args:
            config_path: Path to JSON configuration file
        """
        self.config_path = config_path or get_config_path()
        self._routes: Dict[str, str] = {}

    @property
    def routes(self) -> Dict[str, str]:
        """Get the configured routes as a prefix to target mapping."""
        return dict(self._routes)

    def load(self) -> 'ProxyConfig':
        """
        Load routes from the config file, creating an empty one if missing.

        Raises:
            ConfigError: if the file cannot be read or is not a valid config
        """
        if not os.path.exists(self.config_path):
            self._routes = {}
            self.save()
            logger.info(f"Created new config file at {self.config_path}")
            return self

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Error loading config file {self.config_path}: {e}")

        routes = file_config.get("routes") if isinstance(file_config, dict) else None
        if not isinstance(routes, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in routes.items()
        ):
            raise ConfigError(
                f"Invalid config format in {self.config_path}: "
                "expected {\"routes\": {\"<prefix>\": \"<target>\"}}"
            )
        self._routes = routes
        logger.debug(f"Loaded {len(routes)} route(s) from {self.config_path}")
        return self

    def save(self) -> None:
        """Write routes to the config file, creating parent directories."""
        config_dir = os.path.dirname(self.config_path)
        try:
            if config_dir:
                os.makedirs(config_dir, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump({"routes": self._routes}, f, indent=2)
                f.write("\n")
        except OSError as e:
            raise ConfigError(f"Error writing config file {self.config_path}: {e}")

    def add_route(self, prefix: str, target: str) -> Route:
        """Add or replace a route; the prefix is normalized first."""
        route = Route.create(prefix, target)
        self._routes[route.prefix] = route.target
        return route

    def update_route(self, prefix: str, target: str) -> Route:
        """
        Point an existing route at a new target.

        Raises:
            KeyError: if no route has this prefix
        """
        if prefix not in self._routes:
            raise KeyError(prefix)
        route = Route.create(prefix, target)
        self._routes[prefix] = route.target
        return route

    def remove_route(self, prefix: str) -> None:
        """
        Delete a route.

        Raises:
            KeyError: if no route has this prefix
        """
        del self._routes[prefix]

    def to_route_table(self) -> RouteTable:
        """Build the immutable table served by a running proxy."""
        return build_route_table(self._routes)
