import select
import socket
import ssl
import logging
import threading
from contextlib import suppress
from dataclasses import dataclass
from typing import BinaryIO, Callable, ClassVar, Iterator, List, Optional, Tuple

from .models import (
    ClientDisconnected,
    Header,
    HTTPRequest,
    HTTPResponse,
    ProtocolError,
    RequestBody,
    LAST_CHUNK,
    encode_chunk,
    get_header,
    get_header_values,
    iter_chunked_body,
    iter_fixed_body,
    iter_until_close,
    read_head,
    remove_headers,
    strip_hop_by_hop,
)
from .routes import Route

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

NO_BODY_STATUSES = frozenset({204, 304})


class RelayInterrupted(Exception):
    """Raised from a response body stream when the backend fails mid-stream."""


class ForwardOutcome:
    """Result of relaying one request to a backend."""


@dataclass
class Success(ForwardOutcome):
    """
    The backend answered with a parseable response head.

    `response` holds the status line and the end-to-end headers. `body`
    streams the response body and is None when the response has none.
    The backend connection stays open until the body is exhausted or
    close() is called. The body raises RelayInterrupted if the backend
    fails and ClientDisconnected if the watched client hangs up.
    """
    response: HTTPResponse
    body: Optional[Iterator[bytes]] = None
    closer: Optional[Callable[[], None]] = None

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def content_length(self) -> Optional[int]:
        return self.response.content_length

    def close(self) -> None:
        if self.closer:
            self.closer()


@dataclass
class BackendFailure(ForwardOutcome):
    reason: str
    status_code: ClassVar[int] = 502


class BackendUnreachable(BackendFailure):
    """DNS failure, refused connection, TLS failure or connection lost while sending."""
    status_code = 502


class BackendTimeout(BackendFailure):
    """No response head received within the timeout."""
    status_code = 504


class BackendProtocolError(BackendFailure):
    """The backend sent something that is not a valid HTTP response."""
    status_code = 502


class _HangupWatch:
    """
    Watches a client socket from a helper thread while the relay waits on the backend.

    The relay thread is blocked reading the backend and cannot notice the
    client going away. When the client sends EOF (or resets), `on_hangup`
    is called from the watch thread. Readable data from the client is a
    pipelined request and ends the watch without touching it.
    """

    def __init__(self, client_socket: socket.socket, on_hangup: Callable[[], None]):
        self._client = client_socket
        self._on_hangup = on_hangup
        self._wake_r, self._wake_w = socket.socketpair()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._stopped = False
        self.hung_up = False

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        with suppress(OSError):
            self._wake_w.send(b"\0")
        self._thread.join()
        self._wake_r.close()
        self._wake_w.close()

    def _run(self) -> None:
        try:
            readable, _, _ = select.select([self._client, self._wake_r], [], [])
            if self._wake_r in readable:
                return
            if self._client.recv(1, socket.MSG_PEEK):
                return
        except socket.timeout:
            return
        except (OSError, ValueError):
            # Reset by the client, or its socket closed under us
            pass
        self.hung_up = True
        self._on_hangup()


class _BackendConnection:
    """Outbound socket and its buffered reader, closed together."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.rfile: BinaryIO = sock.makefile("rb")
        self._watch: Optional[_HangupWatch] = None

    def watch(self, client_socket: socket.socket) -> None:
        """Shut the backend connection down as soon as the client hangs up."""
        self._watch = _HangupWatch(client_socket, self._abort)
        self._watch.start()

    @property
    def client_gone(self) -> bool:
        return self._watch is not None and self._watch.hung_up

    def _abort(self) -> None:
        # SSLSocket.shutdown() drops the TLS object under the thread reading it
        with suppress(OSError):
            socket.socket.shutdown(self.sock, socket.SHUT_RDWR)

    def close(self) -> None:
        if self._watch is not None:
            self._watch.stop()
        self.rfile.close()
        self.sock.close()


class Forwarder:
    """Relays a matched request to its backend and streams the response back."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the forwarder.

        Args:
            timeout: Connect and per-read timeout for backend sockets, in seconds
        """
        self._timeout = timeout
        self._ssl_context: Optional[ssl.SSLContext] = None

    def relay(self, request: HTTPRequest, body: Optional[RequestBody], route: Route,
              remainder: str, client_address: Tuple[str, int],
              client_socket: Optional[socket.socket] = None) -> ForwardOutcome:
        """
        Forward one request to the route's backend.

        Args:
            request: Parsed inbound request head
            body: Streaming inbound body, or None if the request has none
            route: Matched route
            remainder: Request path with the route prefix stripped
            client_address: Address of the calling client
            client_socket: Client connection to watch for hangups once the
                request is sent; the backend connection is shut down if it closes

        Returns:
            Success with a streaming body, or a BackendFailure subclass

        Raises:
            ClientRequestError: if reading the inbound body from the client fails
            ClientDisconnected: if the client hangs up before the response head
        """
        request_target = route.url_for(remainder, request.query)
        upstream = f"{route.target.rstrip('/')}{request_target}"
        logger.debug(f"Forwarding {request.method} {request.target} to {upstream}")

        try:
            conn = _BackendConnection(self._connect(route))
        except socket.timeout:
            return self._failed(BackendTimeout(f"Timed out connecting to {route.target}"))
        except OSError as e:
            # gaierror, ConnectionRefusedError and ssl.SSLError all land here
            return self._failed(BackendUnreachable(f"Cannot connect to {route.target}: {e}"))

        outcome: ForwardOutcome = BackendUnreachable(f"Relay to {upstream} aborted")
        try:
            outcome = self._exchange(conn, request, body, route, request_target,
                                     client_address[0], client_socket)
            return outcome
        finally:
            if not isinstance(outcome, Success):
                conn.close()

    def _connect(self, route: Route) -> socket.socket:
        sock = socket.create_connection((route.host, route.port), timeout=self._timeout)
        if route.scheme != "https":
            return sock
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context()
        try:
            return self._ssl_context.wrap_socket(sock, server_hostname=route.host)
        except OSError:
            sock.close()
            raise

    def _exchange(self, conn: _BackendConnection, request: HTTPRequest,
                  body: Optional[RequestBody], route: Route,
                  request_target: str, client_ip: str,
                  client_socket: Optional[socket.socket]) -> ForwardOutcome:
        head = self._build_request_head(request, body, route, request_target, client_ip)
        try:
            conn.sock.sendall(head)
            if body is not None:
                for data in body:
                    if data:
                        conn.sock.sendall(encode_chunk(data) if body.chunked else data)
                if body.chunked:
                    conn.sock.sendall(LAST_CHUNK)
        except socket.timeout:
            return self._failed(BackendTimeout(f"Timed out sending request to {route.target}"))
        except OSError as e:
            return self._failed(BackendUnreachable(f"Connection to {route.target} lost while sending: {e}"))

        if client_socket is not None:
            conn.watch(client_socket)
        try:
            response = self._read_response_head(conn.rfile)
            chunks = self._response_chunks(conn.rfile, request.method, response)
        except (OSError, ProtocolError) as e:
            if conn.client_gone:
                raise ClientDisconnected(
                    f"Client left while waiting for {route.target}") from e
            if isinstance(e, socket.timeout):
                return self._failed(BackendTimeout(
                    f"{route.target} did not respond within {self._timeout}s"))
            if isinstance(e, ProtocolError):
                return self._failed(BackendProtocolError(
                    f"Invalid response from {route.target}: {e}"))
            return self._failed(BackendUnreachable(f"Connection to {route.target} lost: {e}"))

        response.headers = strip_hop_by_hop(response.headers)
        if chunks is None:
            conn.close()
            return Success(response=response)
        return Success(
            response=response,
            body=self._stream(chunks, conn, route),
            closer=conn.close
        )

    def _build_request_head(self, request: HTTPRequest, body: Optional[RequestBody],
                            route: Route, request_target: str, client_ip: str) -> bytes:
        headers: List[Header] = strip_hop_by_hop(request.headers)
        forwarded_for = get_header_values(headers, "X-Forwarded-For") + [client_ip]
        headers = remove_headers(headers, "Host", "Expect", "X-Forwarded-For")
        if body is not None and body.chunked:
            headers = remove_headers(headers, "Content-Length")
            headers.append(("Transfer-Encoding", "chunked"))
        headers.insert(0, ("Host", route.authority))
        headers.append(("X-Forwarded-For", ", ".join(forwarded_for)))
        headers.append(("Connection", "close"))

        lines = [f"{request.method} {request_target} HTTP/1.1"]
        lines.extend(f"{k}: {v}" for k, v in headers)
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    @staticmethod
    def _read_response_head(rfile: BinaryIO) -> HTTPResponse:
        while True:
            lines = read_head(rfile)
            if lines is None:
                raise ProtocolError("Connection closed without a response")
            response = HTTPResponse.from_head_lines(lines)
            if response.status_code == 101:
                raise ProtocolError("Unexpected protocol switch")
            if response.status_code >= 200:
                return response
            logger.debug(f"Skipping interim response {response.status_code}")

    @staticmethod
    def _response_chunks(rfile: BinaryIO, method: str,
                         response: HTTPResponse) -> Optional[Iterator[bytes]]:
        """Pick the body framing of a response; None if it has no body."""
        if method == "HEAD" or response.status_code in NO_BODY_STATUSES:
            return None
        if get_header(response.headers, "Transfer-Encoding") is not None:
            # Transfer-Encoding overrides any Content-Length
            response.headers = remove_headers(response.headers, "Content-Length")
            if response.is_chunked:
                return iter_chunked_body(rfile)
            return iter_until_close(rfile)
        length = response.content_length
        if length is not None:
            return iter_fixed_body(rfile, length)
        return iter_until_close(rfile)

    @staticmethod
    def _stream(chunks: Iterator[bytes], conn: _BackendConnection,
                route: Route) -> Iterator[bytes]:
        try:
            yield from chunks
        except (OSError, ProtocolError) as e:
            if conn.client_gone:
                raise ClientDisconnected(
                    f"Client left while streaming from {route.target}") from e
            if isinstance(e, socket.timeout):
                raise RelayInterrupted(
                    f"Timed out reading response body from {route.target}") from e
            raise RelayInterrupted(f"Response body from {route.target} cut short: {e}") from e
        finally:
            conn.close()
        if conn.client_gone:
            # A close-delimited body ends cleanly once the backend is shut down
            raise ClientDisconnected(f"Client left while streaming from {route.target}")

    @staticmethod
    def _failed(failure: BackendFailure) -> BackendFailure:
        logger.warning(f"{type(failure).__name__}: {failure.reason}")
        return failure
