import socket
import logging
from typing import BinaryIO, Optional, Tuple

from .forwarder import DEFAULT_TIMEOUT, Forwarder, RelayInterrupted, Success
from .models import (
    CONTINUE_RESPONSE,
    LAST_CHUNK,
    ClientRequestError,
    HTTPRequest,
    HTTPResponse,
    ProtocolError,
    RequestBody,
    encode_chunk,
    read_head,
)
from .routes import RouteTable

logger = logging.getLogger(__name__)

# Largest unwanted request body read off the wire to keep a connection alive
DRAIN_LIMIT = 1024 * 1024


class RequestHandler:
    """Handles the requests arriving on individual client connections."""

    def __init__(self, route_table: RouteTable, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the request handler.

        Args:
            route_table: Routes used to pick a backend for each request
            timeout: Socket timeout in seconds, for clients and backends alike
        """
        self._route_table = route_table
        self._timeout = timeout
        self._forwarder = Forwarder(timeout)

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Serve requests on a client connection until either side closes it.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)
        rfile = client_socket.makefile('rb')

        try:
            while self._handle_request(client_socket, rfile, client_address):
                pass
        except socket.timeout:
            logger.debug(f"Connection from {client_address} timed out")
        except (ClientRequestError, OSError) as e:
            logger.info(f"Client {client_address} disconnected: {e}")
        except Exception as e:
            logger.exception(f"Error handling client {client_address}: {e}")
        finally:
            rfile.close()
            client_socket.close()

    def _handle_request(self, client_socket: socket.socket, rfile: BinaryIO,
                        client_address: Tuple[str, int]) -> bool:
        """Serve one request; returns whether the connection can be reused."""
        try:
            lines = read_head(rfile)
        except ProtocolError as e:
            logger.warning(f"Malformed request from {client_address}: {e}")
            self._send(client_socket, HTTPResponse.create_error(400, close=True))
            return False
        if lines is None:
            return False

        request = HTTPRequest.from_head_lines(lines)
        if request is None:
            logger.warning(f"Malformed request line from {client_address}: {lines[0]!r}")
            self._send(client_socket, HTTPResponse.create_error(400, close=True))
            return False

        try:
            body = request.open_body(rfile)
        except ProtocolError as e:
            logger.warning(f"Bad request framing from {client_address}: {e}")
            self._send(client_socket, HTTPResponse.create_error(400, close=True))
            return False

        match = self._route_table.match(request.path)
        if not match:
            in_sync = self._discard(body, sent=not request.expects_continue)
            keep_alive = request.keep_alive and in_sync
            logger.info(f'{client_address[0]} "{request.method} {request.target}" 404 (no route)')
            self._send(client_socket, HTTPResponse.create_json(
                404, {"error": "Not Found", "path": request.path},
                close=not keep_alive
            ))
            return keep_alive

        if body is not None and request.expects_continue:
            client_socket.sendall(CONTINUE_RESPONSE)

        outcome = self._forwarder.relay(
            request, body, match.route, match.remainder, client_address, client_socket
        )
        logger.info(
            f'{client_address[0]} "{request.method} {request.target}" '
            f'-> {match.route.target} {outcome.status_code}'
        )

        if isinstance(outcome, Success):
            keep_alive = request.keep_alive and (body is None or body.complete)
            return self._write_success(client_socket, request, outcome, keep_alive,
                                       client_address)

        in_sync = self._discard(body, sent=True)
        keep_alive = request.keep_alive and in_sync
        self._send(client_socket, HTTPResponse.create_error(
            outcome.status_code, close=not keep_alive
        ))
        return keep_alive

    def _write_success(self, client_socket: socket.socket, request: HTTPRequest,
                       outcome: Success, keep_alive: bool,
                       client_address: Tuple[str, int]) -> bool:
        """Stream a backend response to the client, re-framing the body as needed."""
        response = outcome.response
        chunked = False
        if outcome.body is not None and outcome.content_length is None:
            if request.protocol == "HTTP/1.0":
                # HTTP/1.0 clients cannot read chunked bodies; delimit by closing
                keep_alive = False
            else:
                chunked = True
                response.headers.append(("Transfer-Encoding", "chunked"))
        if not keep_alive:
            response.headers.append(("Connection", "close"))
        elif request.protocol == "HTTP/1.0":
            response.headers.append(("Connection", "keep-alive"))

        try:
            client_socket.sendall(response.head_bytes())
            if outcome.body is None:
                return keep_alive
            try:
                for data in outcome.body:
                    if data:
                        client_socket.sendall(encode_chunk(data) if chunked else data)
            except RelayInterrupted as e:
                # Status line already sent; all we can do is cut the body short
                logger.error(f"Truncated response to {client_address}: {e}")
                return False
            if chunked:
                client_socket.sendall(LAST_CHUNK)
            return keep_alive
        finally:
            outcome.close()

    @staticmethod
    def _discard(body: Optional[RequestBody], sent: bool) -> bool:
        """
        Drop what is left of a request body nobody will read.

        Args:
            body: Request body, possibly partly consumed
            sent: Whether the client is sending the body, i.e. it did not
                ask for 100 Continue or was given it

        Returns:
            Whether the connection is still in sync for another request;
            False for bodies not yet sent or larger than DRAIN_LIMIT
        """
        if body is None or body.complete:
            return True
        if not sent:
            return False
        drained = 0
        for data in body:
            drained += len(data)
            if drained > DRAIN_LIMIT:
                return False
        return True

    @staticmethod
    def _send(client_socket: socket.socket, response: HTTPResponse) -> None:
        client_socket.sendall(response.to_bytes())
