"""
mpstream - Transports

Byte sinks reachable through a collection URI.

Supported URIs:
    file:/path/to/file     local file (truncated on first open unless append=True)
    file:-                 standard output (never closed)
    tcp:host[:port]        TCP collection service (default port 3003)
    host[:port]            under-qualified form, same as tcp:

Every transport writes one line at a time and flushes immediately so
measurements reach the sink promptly even at low volume.
"""

import logging
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .errors import CollectionConnectionError, TransportError, UnsupportedScheme

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3003
STDOUT_PATH = "-"


@dataclass(frozen=True)
class CollectionURI:
    """A fully-qualified collection URI."""

    scheme: str
    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None

    @property
    def is_stdout(self) -> bool:
        return self.scheme == "file" and self.path == STDOUT_PATH

    def __str__(self) -> str:
        if self.scheme == "file":
            return f"file:{self.path}"
        return f"tcp:{self.host}:{self.port}"


def _parse_port(value: str, uri: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise UnsupportedScheme(f"Unable to parse collection URI '{uri}'") from None
    if not 0 < port < 65536:
        raise UnsupportedScheme(f"Port out of range in collection URI '{uri}'")
    return port


def resolve(uri: str) -> CollectionURI:
    """
    Parse a potentially under-qualified collection URI.

    Examples:
        hostname            -> tcp:hostname:3003
        hostname:3004       -> tcp:hostname:3004
        tcp:hostname        -> tcp:hostname:3003
        tcp:hostname:3004   -> tcp:hostname:3004
        file:/P/A/T/H       -> file:/P/A/T/H
        file:-              -> standard output

    Raises:
        UnsupportedScheme: Unknown scheme or malformed URI
    """
    if isinstance(uri, CollectionURI):
        return uri
    if not uri or not str(uri).strip():
        raise UnsupportedScheme("Empty collection URI")

    uri = str(uri).strip()

    # File paths may themselves contain colons
    if uri.startswith("file:"):
        path = uri[len("file:"):]
        if not path:
            raise UnsupportedScheme(f"Missing path in collection URI '{uri}'")
        return CollectionURI("file", path=path)

    parts = uri.split(":")

    if len(parts) == 1:
        host, port = parts[0], DEFAULT_PORT
    elif len(parts) == 2:
        if parts[0] == "tcp":
            host, port = parts[1], DEFAULT_PORT
        elif parts[1].isdigit():
            host, port = parts[0], _parse_port(parts[1], uri)
        else:
            raise UnsupportedScheme(f"Unknown scheme '{parts[0]}' in collection URI '{uri}'")
    elif len(parts) == 3:
        if parts[0] != "tcp":
            raise UnsupportedScheme(f"Unknown scheme '{parts[0]}' in collection URI '{uri}'")
        host, port = parts[1], _parse_port(parts[2], uri)
    else:
        raise UnsupportedScheme(f"Unable to parse collection URI '{uri}'")

    if not host:
        raise UnsupportedScheme(f"Missing host in collection URI '{uri}'")
    return CollectionURI("tcp", host=host, port=port)


class Transport(ABC):
    """
    A line-oriented byte sink.

    A transport may be opened again after a failure; channels rely on this
    to reconnect without creating a new object.
    """

    def __init__(self, uri: CollectionURI):
        self.uri = uri

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def open(self):
        """
        Establish the sink.

        Raises:
            CollectionConnectionError: If the sink cannot be opened
        """

    @abstractmethod
    def write_line(self, text: str):
        """
        Write text plus a line terminator and flush.

        Raises:
            TransportError: On any write failure
        """

    @abstractmethod
    def close(self):
        """Best-effort flush and release. Never raises."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uri})"


class FileTransport(Transport):
    """
    Writes to a local file or to standard output (file:-).

    The first open truncates the file unless append=True; any reopen after a
    failure appends so already-written measurements are kept.
    """

    def __init__(self, uri: CollectionURI, append: bool = False):
        super().__init__(uri)
        self.append = append
        self._stream = None
        self._opened_before = False

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self):
        if self.uri.is_stdout:
            self._stream = sys.stdout
            self._opened_before = True
            return

        mode = "a" if (self.append or self._opened_before) else "w"
        try:
            self._stream = open(self.uri.path, mode, encoding="utf-8")
        except OSError as e:
            raise CollectionConnectionError(f"Cannot open '{self.uri.path}': {e}") from e
        self._opened_before = True
        logger.debug(f"Opened {self.uri} (mode={mode})")

    def write_line(self, text: str):
        if self._stream is None:
            raise TransportError(f"{self.uri} is not open")
        try:
            self._stream.write(text + "\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            raise TransportError(f"Write to {self.uri} failed: {e}") from e

    def close(self):
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
        if self.uri.is_stdout:
            return
        try:
            stream.close()
        except OSError as e:
            logger.debug(f"Error closing {self.uri}: {e}")


class TCPTransport(Transport):
    """Streams lines to a TCP collection service."""

    def __init__(self, uri: CollectionURI, connect_timeout: Optional[float] = 10.0):
        super().__init__(uri)
        self.connect_timeout = connect_timeout
        self._sock: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def open(self):
        try:
            sock = socket.create_connection((self.uri.host, self.uri.port), timeout=self.connect_timeout)
        except OSError as e:
            raise CollectionConnectionError(f"Cannot connect to {self.uri}: {e}") from e

        # Blocking writes from here on; disable Nagle so small lines go out immediately
        sock.settimeout(None)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        self._sock = sock
        logger.debug(f"Connected to {self.uri}")

    def write_line(self, text: str):
        if self._sock is None:
            raise TransportError(f"{self.uri} is not connected")
        try:
            self._sock.sendall((text + "\n").encode("utf-8"))
        except OSError as e:
            raise TransportError(f"Write to {self.uri} failed: {e}") from e

    def close(self):
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Error closing {self.uri}: {e}")


def create_transport(uri, append: bool = False) -> Transport:
    """
    Build the transport for a collection URI.

    Args:
        uri: URI string or CollectionURI
        append: Append to (instead of truncating) file sinks

    Raises:
        UnsupportedScheme: If the URI cannot be resolved
    """
    resolved = resolve(uri)
    if resolved.scheme == "file":
        return FileTransport(resolved, append=append)
    return TCPTransport(resolved)
