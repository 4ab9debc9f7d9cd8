"""
A path-prefix reverse proxy with interactively managed routes.
"""

__version__ = "1.0.0"

from .routes import (
    ConfigError,
    DuplicatePrefixError,
    InvalidRouteError,
    Matched,
    NO_MATCH,
    Route,
    RouteTable,
    build_route_table,
)
from .forwarder import (
    BackendProtocolError,
    BackendTimeout,
    BackendUnreachable,
    ForwardOutcome,
    Forwarder,
    Success,
)
from .handler import RequestHandler
from .models import HTTPRequest, HTTPResponse
from .server import BindError, ProxyServer, run_proxy
from .config import ProxyConfig

__all__ = [
    'Route', 'RouteTable', 'Matched', 'NO_MATCH', 'build_route_table',
    'ConfigError', 'DuplicatePrefixError', 'InvalidRouteError',
    'Forwarder', 'ForwardOutcome', 'Success',
    'BackendUnreachable', 'BackendTimeout', 'BackendProtocolError',
    'RequestHandler', 'HTTPRequest', 'HTTPResponse',
    'ProxyServer', 'BindError', 'run_proxy', 'ProxyConfig',
]
