import io
import socket
import threading
import time
import unittest
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from prin.forwarder import (
    BackendProtocolError,
    BackendTimeout,
    BackendUnreachable,
    Forwarder,
    RelayInterrupted,
    Success,
)
from prin.models import ClientDisconnected, HTTPRequest
from prin.routes import Route

CLIENT_ADDRESS = ("127.0.0.1", 54321)


class ScriptedBackend:
    """One-shot TCP backend that records a request and replies with canned bytes."""

    def __init__(self, reply: bytes = b""):
        self.reply = reply
        self.received = b""
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(1)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._run)
        self._thread.daemon = True
        self._thread.start()

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def _run(self):
        conn, _ = self._sock.accept()
        with conn:
            conn.settimeout(5)
            data = b""
            while b"\r\n\r\n" not in data:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            head = data.split(b"\r\n\r\n")[0].lower()
            if b"transfer-encoding: chunked" in head:
                while not data.endswith(b"0\r\n\r\n"):
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    data += chunk
            elif b"content-length:" in head:
                length = int(head.split(b"content-length:")[1].split(b"\r\n")[0])
                while len(data) < len(head) + 4 + length:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    data += chunk
            self.received = data
            if self.reply:
                conn.sendall(self.reply)

    def join(self):
        self._thread.join(timeout=5)
        self._sock.close()


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestForwarderFailures(unittest.TestCase):
    """Test cases for backend failure classification."""

    def setUp(self):
        self.forwarder = Forwarder(timeout=0.5)
        self.request = HTTPRequest("GET", "/api/test", "HTTP/1.1", [("Host", "proxy")])

    def test_connection_refused(self):
        """Test a closed port is reported as unreachable."""
        # Arrange
        route = Route("/api", f"http://127.0.0.1:{unused_port()}")

        # Act
        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)

        # Assert
        self.assertIsInstance(outcome, BackendUnreachable)
        self.assertEqual(outcome.status_code, 502)

    def test_dns_failure(self):
        route = Route("/api", "http://backend.invalid")

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)

        self.assertIsInstance(outcome, BackendUnreachable)

    def test_silent_backend_times_out(self):
        """Test a backend that accepts but never answers yields a timeout."""
        # Arrange
        silent = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        silent.bind(("127.0.0.1", 0))
        silent.listen(1)
        self.addCleanup(silent.close)
        route = Route("/api", f"http://127.0.0.1:{silent.getsockname()[1]}")

        # Act
        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)

        # Assert
        self.assertIsInstance(outcome, BackendTimeout)
        self.assertEqual(outcome.status_code, 504)

    def test_malformed_status_line(self):
        """Test an unparseable response is a protocol error."""
        backend = ScriptedBackend(b"THIS IS NOT HTTP\r\n\r\n")
        route = Route("/api", backend.url)

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, BackendProtocolError)
        self.assertEqual(outcome.status_code, 502)

    def test_empty_response(self):
        backend = ScriptedBackend(b"")
        route = Route("/api", backend.url)

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, BackendProtocolError)

    def test_invalid_content_length(self):
        backend = ScriptedBackend(b"HTTP/1.1 200 OK\r\nContent-Length: lots\r\n\r\n")
        route = Route("/api", backend.url)

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, BackendProtocolError)

    def test_non_ascii_digits_in_status_code(self):
        """Test a status code with a superscript digit is a protocol error, not a crash."""
        backend = ScriptedBackend(b"HTTP/1.1 \xb200 OK\r\nContent-Length: 0\r\n\r\n")
        route = Route("/api", backend.url)

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, BackendProtocolError)
        self.assertEqual(outcome.status_code, 502)

    def test_non_ascii_digits_in_content_length(self):
        backend = ScriptedBackend(b"HTTP/1.1 200 OK\r\nContent-Length: \xb2\r\n\r\n")
        route = Route("/api", backend.url)

        outcome = self.forwarder.relay(self.request, None, route, "/test", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, BackendProtocolError)

    def test_client_hangup_abandons_relay(self):
        """Test the relay stops waiting on the backend once the client hangs up."""
        # Arrange
        silent = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        silent.bind(("127.0.0.1", 0))
        silent.listen(1)
        self.addCleanup(silent.close)
        route = Route("/api", f"http://127.0.0.1:{silent.getsockname()[1]}")
        proxy_side, client_side = socket.socketpair()
        self.addCleanup(proxy_side.close)
        hangup = threading.Timer(0.2, client_side.close)

        # Act
        started = time.monotonic()
        hangup.start()
        with self.assertRaises(ClientDisconnected):
            Forwarder(timeout=5).relay(self.request, None, route, "/test", CLIENT_ADDRESS,
                                       client_socket=proxy_side)
        elapsed = time.monotonic() - started

        # Assert
        self.assertLess(elapsed, 2)


class TestForwarderRelay(unittest.TestCase):
    """Test cases for successful relays."""

    def setUp(self):
        self.forwarder = Forwarder(timeout=2)

    def test_outbound_request(self):
        """Test the request sent to the backend: path, headers and forwarding marker."""
        # Arrange
        backend = ScriptedBackend(b"HTTP/1.1 204 No Content\r\n\r\n")
        route = Route("/api", backend.url)
        request = HTTPRequest("GET", "/api/users?page=2", "HTTP/1.1", [
            ("Host", "localhost:8000"),
            ("Connection", "Upgrade, X-Private"),
            ("Upgrade", "websocket"),
            ("X-Private", "secret"),
            ("Proxy-Authorization", "Basic abc"),
            ("Keep-Alive", "timeout=5"),
            ("TE", "trailers"),
            ("X-Forwarded-For", "10.0.0.1"),
            ("Accept", "application/json"),
        ])

        # Act
        outcome = self.forwarder.relay(request, None, route, "/users", CLIENT_ADDRESS)
        backend.join()
        head = backend.received.decode("latin-1")
        lines = head.split("\r\n")
        names = {line.split(":")[0].lower() for line in lines[1:] if ":" in line}

        # Assert
        self.assertIsInstance(outcome, Success)
        self.assertEqual(outcome.status_code, 204)
        self.assertEqual(lines[0], "GET /users?page=2 HTTP/1.1")
        self.assertIn(f"Host: 127.0.0.1:{backend.port}", lines)
        self.assertIn("X-Forwarded-For: 10.0.0.1, 127.0.0.1", lines)
        self.assertIn("Accept: application/json", lines)
        self.assertIn("Connection: close", lines)
        for hop in ["upgrade", "x-private", "proxy-authorization", "keep-alive", "te"]:
            self.assertNotIn(hop, names)

    def test_forwarding_marker_created(self):
        backend = ScriptedBackend(b"HTTP/1.1 204 No Content\r\n\r\n")
        route = Route("/", backend.url)
        request = HTTPRequest("GET", "/", "HTTP/1.1")

        self.forwarder.relay(request, None, route, "/", CLIENT_ADDRESS)
        backend.join()

        self.assertIn(b"X-Forwarded-For: 127.0.0.1\r\n", backend.received)

    def test_response_headers_and_chunked_body(self):
        """Test hop-by-hop response headers are stripped and chunks decoded in order."""
        # Arrange
        backend = ScriptedBackend(
            b"HTTP/1.1 200 OK\r\n"
            b"Transfer-Encoding: chunked\r\n"
            b"Connection: keep-alive\r\n"
            b"Keep-Alive: timeout=5\r\n"
            b"Proxy-Authenticate: Basic\r\n"
            b"X-App: demo\r\n"
            b"\r\n"
            b"5\r\nhello\r\n1\r\n \r\n5\r\nworld\r\n0\r\n\r\n"
        )
        route = Route("/api", backend.url)
        request = HTTPRequest("GET", "/api", "HTTP/1.1")

        # Act
        outcome = self.forwarder.relay(request, None, route, "", CLIENT_ADDRESS)
        body = b"".join(outcome.body)
        backend.join()

        # Assert
        self.assertIsInstance(outcome, Success)
        self.assertEqual(body, b"hello world")
        self.assertEqual(outcome.response.headers, [("X-App", "demo")])
        self.assertIsNone(outcome.content_length)

    def test_interim_response_skipped(self):
        backend = ScriptedBackend(
            b"HTTP/1.1 100 Continue\r\n\r\n"
            b"HTTP/1.1 201 Created\r\nContent-Length: 2\r\n\r\nok"
        )
        route = Route("/api", backend.url)
        request = HTTPRequest("GET", "/api", "HTTP/1.1")

        outcome = self.forwarder.relay(request, None, route, "", CLIENT_ADDRESS)
        body = b"".join(outcome.body)
        backend.join()

        self.assertEqual(outcome.status_code, 201)
        self.assertEqual(outcome.content_length, 2)
        self.assertEqual(body, b"ok")

    def test_head_response_has_no_body(self):
        backend = ScriptedBackend(b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\n")
        route = Route("/api", backend.url)
        request = HTTPRequest("HEAD", "/api", "HTTP/1.1")

        outcome = self.forwarder.relay(request, None, route, "", CLIENT_ADDRESS)
        backend.join()

        self.assertIsInstance(outcome, Success)
        self.assertIsNone(outcome.body)
        self.assertEqual(outcome.content_length, 1000)

    def test_chunked_request_body_reframed(self):
        """Test a chunked inbound body reaches the backend chunked and intact."""
        # Arrange
        backend = ScriptedBackend(b"HTTP/1.1 204 No Content\r\n\r\n")
        route = Route("/api", backend.url)
        request = HTTPRequest("POST", "/api/upload", "HTTP/1.1",
                              [("Transfer-Encoding", "chunked")])
        body = request.open_body(io.BytesIO(b"3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n"))

        # Act
        outcome = self.forwarder.relay(request, body, route, "/upload", CLIENT_ADDRESS)
        backend.join()

        # Assert
        self.assertIsInstance(outcome, Success)
        self.assertTrue(body.complete)
        self.assertIn(b"Transfer-Encoding: chunked\r\n", backend.received)
        self.assertTrue(backend.received.endswith(b"\r\n\r\n3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n"))

    def test_content_length_request_body(self):
        backend = ScriptedBackend(b"HTTP/1.1 204 No Content\r\n\r\n")
        route = Route("/api", backend.url)
        request = HTTPRequest("PUT", "/api/item", "HTTP/1.1", [("Content-Length", "4")])
        body = request.open_body(io.BytesIO(b"data"))

        self.forwarder.relay(request, body, route, "/item", CLIENT_ADDRESS)
        backend.join()

        self.assertIn(b"Content-Length: 4\r\n", backend.received)
        self.assertTrue(backend.received.endswith(b"\r\n\r\ndata"))

    def test_mid_stream_failure_interrupts_body(self):
        """Test a backend dropping mid-body raises RelayInterrupted after the data it sent."""
        # Arrange
        backend = ScriptedBackend(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\n0123456789")
        route = Route("/api", backend.url)
        request = HTTPRequest("GET", "/api", "HTTP/1.1")

        # Act
        outcome = self.forwarder.relay(request, None, route, "", CLIENT_ADDRESS)
        received = bytearray()
        with self.assertRaises(RelayInterrupted):
            for data in outcome.body:
                received.extend(data)
        backend.join()

        # Assert
        self.assertEqual(outcome.status_code, 200)
        self.assertEqual(bytes(received), b"0123456789")


if __name__ == '__main__':
    unittest.main()
