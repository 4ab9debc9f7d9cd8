import socket
import threading
import logging
from contextlib import suppress
from typing import Optional

from .forwarder import DEFAULT_TIMEOUT
from .handler import RequestHandler
from .routes import RouteTable

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


class BindError(Exception):
    """Raised when the listening socket cannot be bound."""


class ProxyServer:
    """Core server implementation for the reverse proxy."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 route_table: Optional[RouteTable] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on, 0 for any free port
            route_table: Routes mapping path prefixes to backend origins
            timeout: Client and backend socket timeout in seconds
        """
        self._host = host
        self._port = port
        self._route_table = route_table if route_table is not None else RouteTable()
        self._server_socket: Optional[socket.socket] = None

        # Initialize request handler
        self._handler = RequestHandler(self._route_table, timeout)

        self._running = False

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number; the actual one once bound."""
        return self._port

    @property
    def route_table(self) -> RouteTable:
        """Get the routes served by this proxy."""
        return self._route_table

    @property
    def server_socket(self) -> Optional[socket.socket]:
        """Get the server socket, None until bound."""
        return self._server_socket

    def bind(self) -> None:
        """
        Bind and listen on the configured address.

        Raises:
            BindError: if the address is in use or not permitted
        """
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        server_socket = socket.socket(family, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self._host, self._port))
            server_socket.listen(128)
        except OSError as e:
            server_socket.close()
            raise BindError(f"Cannot listen on {self._host}:{self._port}: {e}") from e

        self._server_socket = server_socket
        self._port = server_socket.getsockname()[1]
        logger.info(f"Reverse proxy started on {self._host}:{self._port}")

    def serve(self) -> None:
        """Accept connections until shutdown() is called."""
        if self._server_socket is None:
            self.bind()
        self._running = True
        try:
            while self._running:
                try:
                    client_socket, client_address = self._server_socket.accept()
                    if not self._running:
                        client_socket.close()
                        break

                    # Handle each client in a separate thread
                    thread = threading.Thread(
                        target=self._handler.handle_client,
                        args=(client_socket, client_address)
                    )
                    thread.daemon = True
                    thread.start()
                except OSError as e:
                    if self._running:  # Only log if we're still meant to be running
                        logger.error(f"Server error: {e}")

        finally:
            self._server_socket.close()

    def start(self) -> None:
        """Bind, then serve until shutdown."""
        self.bind()
        self.serve()

    def shutdown(self) -> None:
        """Shutdown the proxy server gracefully."""
        self._running = False
        if self._server_socket is None:
            return
        # Create a dummy connection to unblock accept()
        wake_host = "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host
        with suppress(OSError):
            with socket.create_connection((wake_host, self._port), timeout=1):
                pass
        self._server_socket.close()


def run_proxy(bind_address: str, port: int, route_table: RouteTable,
              timeout: float = DEFAULT_TIMEOUT) -> None:
    """
    Run the proxy in the calling thread until interrupted.

    Raises:
        BindError: if the port cannot be bound
    """
    server = ProxyServer(host=bind_address, port=port, route_table=route_table,
                         timeout=timeout)
    server.bind()
    try:
        server.serve()
    finally:
        server.shutdown()
