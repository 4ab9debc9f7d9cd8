import json
import string
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, BinaryIO, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

Header = Tuple[str, str]

CRLF = b"\r\n"
MAX_LINE = 65536
MAX_HEADERS = 100
CHUNK_SIZE = 65536
LAST_CHUNK = b"0\r\n\r\n"
CONTINUE_RESPONSE = b"HTTP/1.1 100 Continue\r\n\r\n"

# Headers scoped to a single connection; never relayed across the proxy
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

_HEX_DIGITS = frozenset(string.hexdigits)
_DIGITS = frozenset(string.digits)


class ProtocolError(Exception):
    """Raised when an HTTP message cannot be parsed."""


class ClientRequestError(Exception):
    """Raised when the request body can no longer be read from the client."""


class ClientDisconnected(ClientRequestError):
    """Raised when the client hangs up while its request is being relayed."""


def is_digits(value: str) -> bool:
    """True for a non-empty run of ASCII digits; str.isdigit() also accepts '²'."""
    return bool(value) and set(value) <= _DIGITS


def get_header(headers: List[Header], name: str) -> Optional[str]:
    """Return the first value of a header, matched case-insensitively."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def get_header_values(headers: List[Header], name: str) -> List[str]:
    name = name.lower()
    return [value for key, value in headers if key.lower() == name]


def remove_headers(headers: List[Header], *names: str) -> List[Header]:
    lowered = {n.lower() for n in names}
    return [(k, v) for k, v in headers if k.lower() not in lowered]


def header_tokens(headers: List[Header], name: str) -> List[str]:
    """Split a comma-separated list header into lowercase tokens."""
    tokens = []
    for value in get_header_values(headers, name):
        tokens.extend(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers: List[Header]) -> List[Header]:
    """
    Remove hop-by-hop headers, including any named in the Connection header.

    Args:
        headers: Header list of a request or response

    Returns:
        A new header list safe to relay to the next hop
    """
    connection_scoped: Set[str] = set(header_tokens(headers, "Connection"))
    return [
        (k, v) for k, v in headers
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in connection_scoped
    ]


def read_head(rfile: BinaryIO) -> Optional[List[bytes]]:
    """
    Read the start line and header lines of an HTTP message.

    Returns:
        Lines without line endings, or None if the peer closed the
        connection before sending anything
    """
    lines: List[bytes] = []
    while True:
        line = rfile.readline(MAX_LINE + 1)
        if len(line) > MAX_LINE:
            raise ProtocolError("Header line too long")
        if not line:
            if not lines:
                return None
            raise ProtocolError("Connection closed before end of headers")
        if line in (b"\r\n", b"\n"):
            if not lines:
                # Stray CRLF between pipelined messages
                continue
            return lines
        lines.append(line.rstrip(b"\r\n"))
        if len(lines) > MAX_HEADERS + 1:
            raise ProtocolError("Too many headers")


def parse_header_lines(lines: List[bytes]) -> List[Header]:
    headers = []
    for raw in lines:
        line = raw.decode("latin-1")
        if line[:1] in (" ", "\t"):
            raise ProtocolError("Obsolete header line folding")
        key, sep, value = line.partition(":")
        if not sep or not key or key != key.strip():
            raise ProtocolError(f"Malformed header line: {line!r}")
        headers.append((key, value.strip()))
    return headers


def parse_content_length(headers: List[Header]) -> Optional[int]:
    values = header_tokens(headers, "Content-Length")
    if not values:
        return None
    if len(set(values)) != 1 or not is_digits(values[0]):
        raise ProtocolError(f"Invalid Content-Length: {', '.join(values)}")
    return int(values[0])


def is_chunked(headers: List[Header]) -> bool:
    codings = header_tokens(headers, "Transfer-Encoding")
    return bool(codings) and codings[-1] == "chunked"


def encode_chunk(data: bytes) -> bytes:
    return f"{len(data):x}".encode("ascii") + CRLF + data + CRLF


def iter_fixed_body(rfile: BinaryIO, length: int) -> Iterator[bytes]:
    """Yield a body of known length as it arrives."""
    remaining = length
    while remaining > 0:
        data = rfile.read1(min(CHUNK_SIZE, remaining))
        if not data:
            raise ProtocolError(f"Connection closed with {remaining} body bytes outstanding")
        remaining -= len(data)
        yield data


def iter_chunked_body(rfile: BinaryIO) -> Iterator[bytes]:
    """Yield the decoded data of a chunked body, discarding trailers."""
    while True:
        line = rfile.readline(MAX_LINE + 1)
        if not line:
            raise ProtocolError("Connection closed inside chunked body")
        if len(line) > MAX_LINE:
            raise ProtocolError("Chunk size line too long")
        size_field = line.split(b";", 1)[0].strip().decode("latin-1")
        if not size_field or not set(size_field) <= _HEX_DIGITS:
            raise ProtocolError(f"Invalid chunk size: {size_field!r}")
        size = int(size_field, 16)

        if size == 0:
            while True:
                line = rfile.readline(MAX_LINE + 1)
                if not line or line in (b"\r\n", b"\n"):
                    return

        yield from iter_fixed_body(rfile, size)
        if rfile.readline(MAX_LINE + 1) not in (b"\r\n", b"\n"):
            raise ProtocolError("Missing CRLF after chunk data")


def iter_until_close(rfile: BinaryIO) -> Iterator[bytes]:
    """Yield a body delimited by the peer closing the connection."""
    while True:
        data = rfile.read1(CHUNK_SIZE)
        if not data:
            return
        yield data


class RequestBody:
    """
    Streams an inbound request body from the client connection.

    Read failures are raised as ClientRequestError so that callers can tell
    them apart from failures on the backend side. `complete` turns True once
    the whole body has been consumed.
    """

    def __init__(self, chunks: Iterator[bytes], chunked: bool):
        self._chunks = chunks
        self.chunked = chunked
        self.complete = False

    def __iter__(self) -> 'RequestBody':
        return self

    def __next__(self) -> bytes:
        try:
            return next(self._chunks)
        except StopIteration:
            self.complete = True
            raise
        except (OSError, ProtocolError) as e:
            raise ClientRequestError(str(e)) from e


@dataclass
class HTTPRequest:
    """Model representing the head of an inbound HTTP request."""
    method: str
    target: str
    protocol: str
    headers: List[Header] = field(default_factory=list)

    @classmethod
    def from_head_lines(cls, lines: List[bytes]) -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from raw head lines, or None if malformed."""
        try:
            method, target, protocol = lines[0].decode("latin-1").split()
            if not protocol.startswith("HTTP/1."):
                return None
            return cls(
                method=method,
                target=target,
                protocol=protocol,
                headers=parse_header_lines(lines[1:])
            )
        except (ValueError, IndexError, ProtocolError):
            return None

    @property
    def path(self) -> str:
        if self.target.startswith("/") or self.target == "*":
            return self.target.partition("?")[0]
        # absolute-form, as sent by clients configured to use a proxy
        return urlsplit(self.target).path or "/"

    @property
    def query(self) -> str:
        if self.target.startswith("/") or self.target == "*":
            return self.target.partition("?")[2]
        return urlsplit(self.target).query

    @property
    def keep_alive(self) -> bool:
        tokens = header_tokens(self.headers, "Connection")
        if self.protocol == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    @property
    def expects_continue(self) -> bool:
        return "100-continue" in header_tokens(self.headers, "Expect")

    def open_body(self, rfile: BinaryIO) -> Optional[RequestBody]:
        """
        Prepare a streaming reader for the request body.

        Returns:
            RequestBody, or None if the request carries no body bytes

        Raises:
            ProtocolError: if the body framing headers are invalid
        """
        if get_header(self.headers, "Transfer-Encoding") is not None:
            if not is_chunked(self.headers):
                raise ProtocolError("Unsupported Transfer-Encoding on request")
            return RequestBody(iter_chunked_body(rfile), chunked=True)
        length = parse_content_length(self.headers)
        if not length:
            return None
        return RequestBody(iter_fixed_body(rfile, length), chunked=False)


@dataclass
class HTTPResponse:
    """Model representing an HTTP response head, with an optional inline body."""
    status_code: int
    status_message: str
    headers: List[Header] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_head_lines(cls, lines: List[bytes]) -> 'HTTPResponse':
        """
        Create HTTPResponse instance from raw head lines.

        Raises:
            ProtocolError: if the status line or headers are malformed
        """
        status_line = lines[0].decode("latin-1")
        protocol, _, rest = status_line.partition(" ")
        status_code, _, status_message = rest.partition(" ")
        if not protocol.startswith("HTTP/") or len(status_code) != 3 or not is_digits(status_code):
            raise ProtocolError(f"Malformed status line: {status_line!r}")
        code = int(status_code)
        if not 100 <= code <= 599:
            raise ProtocolError(f"Invalid status code: {code}")
        return cls(
            status_code=code,
            status_message=status_message.strip(),
            headers=parse_header_lines(lines[1:])
        )

    @property
    def content_length(self) -> Optional[int]:
        return parse_content_length(self.headers)

    @property
    def is_chunked(self) -> bool:
        return is_chunked(self.headers)

    def head_bytes(self) -> bytes:
        """Serialize the status line and headers."""
        lines = [f"HTTP/1.1 {self.status_code} {self.status_message}"]
        lines.extend(f"{k}: {v}" for k, v in self.headers)
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    def to_bytes(self) -> bytes:
        return self.head_bytes() + self.body

    @classmethod
    def create_error(cls, status_code: int, message: Optional[str] = None,
                     close: bool = False) -> 'HTTPResponse':
        """Create a plain-text error response."""
        phrase = HTTPStatus(status_code).phrase
        body = (message or phrase).encode("utf-8")
        return cls._with_body(status_code, phrase, "text/plain; charset=utf-8", body, close)

    @classmethod
    def create_json(cls, status_code: int, data: Any,
                    close: bool = False) -> 'HTTPResponse':
        """Create a JSON response."""
        body = json.dumps(data).encode("utf-8")
        return cls._with_body(status_code, HTTPStatus(status_code).phrase,
                              "application/json", body, close)

    @classmethod
    def _with_body(cls, status_code: int, phrase: str, content_type: str,
                   body: bytes, close: bool) -> 'HTTPResponse':
        headers = [
            ("Content-Type", content_type),
            ("Content-Length", str(len(body))),
        ]
        if close:
            headers.append(("Connection", "close"))
        return cls(status_code=status_code, status_message=phrase, headers=headers, body=body)
