"""
Tests for mpstream.transport module

Tests cover:
- Collection URI resolution (qualified and under-qualified forms)
- FileTransport truncate/append semantics and stdout handling
- TCPTransport connect and write error mapping
- create_transport() dispatch
"""

import sys
import socket
from pathlib import Path
from unittest.mock import MagicMock, patch

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from mpstream.errors import CollectionConnectionError, TransportError, UnsupportedScheme
from mpstream.transport import (
    DEFAULT_PORT,
    CollectionURI,
    FileTransport,
    TCPTransport,
    create_transport,
    resolve,
)


class TestResolve:
    """Test resolve() URI parsing."""

    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("hostname", CollectionURI("tcp", host="hostname", port=DEFAULT_PORT)),
            ("hostname:3004", CollectionURI("tcp", host="hostname", port=3004)),
            ("tcp:hostname", CollectionURI("tcp", host="hostname", port=DEFAULT_PORT)),
            ("tcp:hostname:3004", CollectionURI("tcp", host="hostname", port=3004)),
            ("file:/P/A/T/H", CollectionURI("file", path="/P/A/T/H")),
            ("file:-", CollectionURI("file", path="-")),
        ],
    )
    def test_resolve_forms(self, uri, expected):
        """Test each documented URI form."""
        assert resolve(uri) == expected

    def test_default_port_is_3003(self):
        """Test the default collection port."""
        assert resolve("collector").port == 3003

    def test_file_path_with_colon(self):
        """Test that file paths may contain colons."""
        assert resolve("file:C:/data/out.txt").path == "C:/data/out.txt"

    def test_stdout_flag(self):
        """Test that file:- is recognized as stdout."""
        assert resolve("file:-").is_stdout
        assert not resolve("file:/tmp/x").is_stdout

    def test_str_round_trips(self):
        """Test the fully-qualified string form."""
        assert str(resolve("collector")) == "tcp:collector:3003"
        assert str(resolve("file:/tmp/x")) == "file:/tmp/x"

    @pytest.mark.parametrize(
        "uri",
        ["", "udp:host", "udp:host:3003", "tcp:host:port", "tcp:host:70000", "a:b:c:d", "file:", "tcp::3003"],
    )
    def test_invalid_uris(self, uri):
        """Test that malformed URIs raise UnsupportedScheme."""
        with pytest.raises(UnsupportedScheme):
            resolve(uri)

    def test_unsupported_scheme_is_value_error(self):
        """Test that UnsupportedScheme can be caught as ValueError."""
        with pytest.raises(ValueError):
            resolve("http:host")


class TestFileTransport:
    """Test FileTransport semantics."""

    def test_write_lines(self, tmp_path):
        """Test that each write adds one terminated line."""
        path = tmp_path / "out.txt"
        transport = FileTransport(resolve(f"file:{path}"))
        transport.open()
        transport.write_line("first")
        transport.write_line("second\nthird")
        transport.close()

        assert path.read_text(encoding="utf-8") == "first\nsecond\nthird\n"

    def test_first_open_truncates(self, tmp_path):
        """Test that an existing file is truncated by default."""
        path = tmp_path / "out.txt"
        path.write_text("stale\n", encoding="utf-8")

        transport = FileTransport(resolve(f"file:{path}"))
        transport.open()
        transport.write_line("fresh")
        transport.close()

        assert path.read_text(encoding="utf-8") == "fresh\n"

    def test_append_mode(self, tmp_path):
        """Test that append=True keeps existing content."""
        path = tmp_path / "out.txt"
        path.write_text("kept\n", encoding="utf-8")

        transport = FileTransport(resolve(f"file:{path}"), append=True)
        transport.open()
        transport.write_line("added")
        transport.close()

        assert path.read_text(encoding="utf-8") == "kept\nadded\n"

    def test_reopen_appends(self, tmp_path):
        """Test that a reopen after failure keeps what was written."""
        path = tmp_path / "out.txt"
        transport = FileTransport(resolve(f"file:{path}"))
        transport.open()
        transport.write_line("before")
        transport.close()

        transport.open()
        transport.write_line("after")
        transport.close()

        assert path.read_text(encoding="utf-8") == "before\nafter\n"

    def test_open_missing_directory(self, tmp_path):
        """Test that an unopenable path raises CollectionConnectionError."""
        transport = FileTransport(resolve(f"file:{tmp_path / 'missing' / 'out.txt'}"))

        with pytest.raises(CollectionConnectionError):
            transport.open()

    def test_write_when_closed(self, tmp_path):
        """Test that writing to a closed transport raises TransportError."""
        transport = FileTransport(resolve(f"file:{tmp_path / 'out.txt'}"))

        with pytest.raises(TransportError):
            transport.write_line("x")

    def test_stdout(self, capsys):
        """Test that file:- writes to stdout and close() leaves it open."""
        transport = FileTransport(resolve("file:-"))
        transport.open()
        transport.write_line("hello")
        transport.close()

        assert capsys.readouterr().out == "hello\n"
        assert not sys.stdout.closed
        assert not transport.is_open


class TestTCPTransport:
    """Test TCPTransport with a mocked socket."""

    def test_open_sets_nodelay(self):
        """Test connecting and disabling Nagle."""
        mock_sock = MagicMock()
        with patch("mpstream.transport.socket.create_connection", return_value=mock_sock) as mock_connect:
            transport = TCPTransport(resolve("tcp:collector:3004"))
            transport.open()

        mock_connect.assert_called_once_with(("collector", 3004), timeout=10.0)
        mock_sock.setsockopt.assert_called_once_with(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        assert transport.is_open

    def test_open_refused(self):
        """Test that a refused connection raises CollectionConnectionError."""
        with patch(
            "mpstream.transport.socket.create_connection",
            side_effect=ConnectionRefusedError("refused"),
        ):
            transport = TCPTransport(resolve("collector"))
            with pytest.raises(CollectionConnectionError, match="Cannot connect"):
                transport.open()

    def test_write_line_encodes(self):
        """Test that write_line() sends UTF-8 with a newline."""
        mock_sock = MagicMock()
        with patch("mpstream.transport.socket.create_connection", return_value=mock_sock):
            transport = TCPTransport(resolve("collector"))
            transport.open()
            transport.write_line("a\tb")

        mock_sock.sendall.assert_called_once_with(b"a\tb\n")

    def test_broken_pipe(self):
        """Test that a send failure raises TransportError."""
        mock_sock = MagicMock()
        mock_sock.sendall.side_effect = BrokenPipeError("broken pipe")
        with patch("mpstream.transport.socket.create_connection", return_value=mock_sock):
            transport = TCPTransport(resolve("collector"))
            transport.open()

            with pytest.raises(TransportError):
                transport.write_line("x")

    def test_close_idempotent(self):
        """Test that close() can be called twice."""
        mock_sock = MagicMock()
        with patch("mpstream.transport.socket.create_connection", return_value=mock_sock):
            transport = TCPTransport(resolve("collector"))
            transport.open()

        transport.close()
        transport.close()

        mock_sock.close.assert_called_once()
        assert not transport.is_open


class TestCreateTransport:
    """Test create_transport() dispatch."""

    def test_file_uri(self, tmp_path):
        """Test that file URIs build a FileTransport."""
        transport = create_transport(f"file:{tmp_path / 'x'}", append=True)

        assert isinstance(transport, FileTransport)
        assert transport.append is True

    def test_tcp_uri(self):
        """Test that host names build a TCPTransport."""
        assert isinstance(create_transport("collector:3005"), TCPTransport)
