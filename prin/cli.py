"""
Command line interface.

    prin start [-p PORT]          run the proxy with the saved routes
    prin config add|edit|delete   change routes interactively
    prin config list              show the saved routes
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from . import __version__
from .config import ProxyConfig
from .forwarder import DEFAULT_TIMEOUT
from .prompts import ask, confirm, select
from .routes import ConfigError, Route
from .server import DEFAULT_HOST, DEFAULT_PORT, BindError, run_proxy

logger = logging.getLogger(__name__)


def port_number(value: str) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535, got {port}")
    return port


def list_routes(routes: Dict[str, str]) -> None:
    if not routes:
        print("No routes configured.")
        return
    print("\nConfigured Routes:")
    for prefix, target in routes.items():
        print(f"  {prefix} -> {target}")


# ----------------------------
# start
# ----------------------------

def run_start(args) -> int:
    try:
        config = ProxyConfig(args.config).load()
        route_table = config.to_route_table()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    list_routes(config.routes)
    print(f"\nStarting server on http://{args.host}:{args.port}")
    try:
        run_proxy(args.host, args.port, route_table, timeout=args.timeout)
    except BindError as e:
        print(f"Server error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


# ----------------------------
# config add / edit / delete / list
# ----------------------------

def add_route(config: ProxyConfig) -> bool:
    print("\n=== Adding New Route ===")
    prefix = ask("Enter route prefix (e.g., /api)")
    target = ask("Enter target URL (e.g., http://localhost:3000)")
    route = Route.create(prefix, target)

    question = f"Add route: {route.prefix} -> {route.target}?"
    existing = config.routes.get(route.prefix)
    if existing is not None:
        question = f"Replace route: {route.prefix} -> {existing} with {route.target}?"
    if not confirm(question):
        print("Operation cancelled.")
        return False

    config.add_route(route.prefix, route.target)
    print(f"Route added: {route.prefix} -> {route.target}")
    return True


def edit_route(config: ProxyConfig) -> bool:
    print("\n=== Editing Route ===")
    prefixes = list(config.routes)
    if not prefixes:
        print("No routes found. Please add a route first.")
        return False

    selected = prefixes[select("Select route to edit", prefixes)]
    current_target = config.routes[selected]
    print(f"Current target: {current_target}")
    new_target = ask("Enter new target URL", default=current_target)
    Route.create(selected, new_target)

    if not confirm(f"Update route {selected} -> {new_target}?"):
        print("Operation cancelled.")
        return False

    config.update_route(selected, new_target)
    print(f"Route updated: {selected} -> {new_target}")
    return True


def delete_route(config: ProxyConfig) -> bool:
    print("\n=== Deleting Route ===")
    prefixes = list(config.routes)
    if not prefixes:
        print("No routes found. Nothing to delete.")
        return False

    selected = prefixes[select("Select route to delete", prefixes)]
    if not confirm(f"Delete route: {selected}?"):
        print("Operation cancelled.")
        return False

    config.remove_route(selected)
    print(f"Route deleted: {selected}")
    return True


CONFIG_ACTIONS = {
    "add": add_route,
    "edit": edit_route,
    "delete": delete_route,
}


def run_config(args) -> int:
    try:
        config = ProxyConfig(args.config).load()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.action == "list":
        list_routes(config.routes)
        return 0

    try:
        changed = CONFIG_ACTIONS[args.action](config)
        if changed:
            config.save()
            print("Configuration saved.")
    except (ConfigError, EOFError, KeyboardInterrupt) as e:
        print(f"Error: {str(e) or 'input aborted'}", file=sys.stderr)
        return 1
    return 0


# ----------------------------
# Parser
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prin",
        description="A simple reverse proxy CLI",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--config",
        help="Path to the config file (default: $PRIN_CONFIG or the user config dir)",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    start = subparsers.add_parser("start", help="Start the reverse proxy server")
    start.add_argument(
        "-p", "--port",
        type=port_number,
        default=DEFAULT_PORT,
        help=f"Port to run the proxy server on (default: {DEFAULT_PORT})",
    )
    start.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Address to listen on (default: {DEFAULT_HOST})",
    )
    start.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Backend connect/read timeout in seconds (default: {DEFAULT_TIMEOUT:g})",
    )
    start.set_defaults(func=run_start)

    config = subparsers.add_parser("config", help="Configure the reverse proxy")
    config.add_argument(
        "action",
        choices=["add", "edit", "delete", "list"],
        help="Add, edit, delete or list routes",
    )
    config.set_defaults(func=run_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
