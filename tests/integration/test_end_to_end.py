"""
Integration tests for complete measurement sessions.

Tests run a MeasurementClient against real transports (standard output,
files and a local TCP collector) and check the resulting stream.
"""

import math
import socket
import threading

import pytest

from mpstream import MeasurementClient

pytestmark = pytest.mark.integration

SIN_FIELDS = ["label:string", "angle:int32", "value:double"]


def parse_stream(text):
    """Split a stream into (header lines, rows) at the first blank line."""
    lines = text.splitlines()
    blank = lines.index("")
    return lines[:blank], [line.split("\t") for line in lines[blank + 1:]]


class LocalCollector:
    """Accepts one TCP connection and records everything received."""

    def __init__(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]
        self.received = b""
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        conn, _ = self.server.accept()
        with conn:
            while True:
                chunk = conn.recv(65536)
                if not chunk:
                    break
                self.received += chunk

    def text(self, timeout=5.0):
        self._thread.join(timeout)
        self.server.close()
        return self.received.decode("utf-8")


class TestStdoutSession:
    """Test a session streaming to file:-."""

    def test_sine_wave_to_stdout(self, capsys):
        """Test header, schema and data rows written to standard output."""
        client = MeasurementClient()
        sin = client.define("sin", SIN_FIELDS)

        with client.session(domain="foo", node_id="n1", app_name="demo", collect_uri="file:-"):
            start_time = client.start_time
            client.inject(sin, "label_0", 0, math.sin(0))
            client.inject(sin, "label_1", 1, math.sin(math.radians(1)))

        header, rows = parse_stream(capsys.readouterr().out)

        assert header == [
            "protocol: 4",
            "content: text",
            "domain: foo",
            f"start-time: {start_time}",
            "sender-id: n1",
            "app-name: demo",
            "schema: 0 _experiment_metadata subject:string key:string value:string",
        ]
        assert rows[0][1:] == ["0", "1", ".", "schema", "1 demo_sin label:string angle:int32 value:double"]
        assert [row[1:4] for row in rows[1:]] == [["1", "1", "label_0"], ["1", "2", "label_1"]]
        assert float(rows[2][5]) == pytest.approx(math.sin(math.radians(1)))
        for row in rows:
            assert float(row[0]) >= 0.0


class TestFileSession:
    """Test sessions writing to files."""

    def test_two_domains_two_files(self, tmp_path):
        """Test that each domain gets its own stream and header."""
        main_path, ops_path = tmp_path / "main.txt", tmp_path / "ops.txt"
        client = MeasurementClient()
        sin = client.define("sin", ["value:double"])
        disk = client.define("disk", ["free:uint64"], domain="ops", add_prefix=False)

        with client.session(
            domain="foo",
            node_id="n1",
            app_name="demo",
            collect_uri=f"file:{main_path}",
            domains={"ops": f"file:{ops_path}"},
        ):
            client.inject(sin, 0.5)
            client.inject(disk, 2 ** 40)
            client.inject_metadata(None, "operator", "alice")

        main_header, main_rows = parse_stream(main_path.read_text(encoding="utf-8"))
        ops_header, ops_rows = parse_stream(ops_path.read_text(encoding="utf-8"))

        assert "domain: foo" in main_header
        assert "domain: ops" in ops_header
        assert main_rows[0][5] == "1 demo_sin value:double"
        assert ops_rows[0][5] == "1 disk free:uint64"
        assert ops_rows[1][3] == str(2 ** 40)
        assert main_rows[-1][3:] == [".", "operator", "alice"]

    def test_append_keeps_previous_run(self, tmp_path):
        """Test that append=True adds a second header block to the file."""
        path = tmp_path / "runs.txt"
        client = MeasurementClient()
        sin = client.define("sin", ["value:double"])
        options = dict(domain="foo", node_id="n1", app_name="demo", collect_uri=f"file:{path}")

        with client.session(**options):
            client.inject(sin, 1.0)
        with client.session(**options, append=True):
            client.inject(sin, 2.0)

        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines.count("protocol: 4") == 2
        assert lines[-1].split("\t")[1:] == ["1", "1", "2.0"]


class TestTCPSession:
    """Test a session against a local TCP collector."""

    def test_stream_over_tcp(self):
        """Test that the whole stream arrives over a socket."""
        collector = LocalCollector()
        client = MeasurementClient()
        sin = client.define("sin", SIN_FIELDS)

        with client.session(
            domain="foo",
            node_id="n1",
            app_name="demo",
            collect_uri=f"tcp:127.0.0.1:{collector.port}",
        ):
            for i in range(10):
                client.inject(sin, f"label_{i}", i, float(i))

        header, rows = parse_stream(collector.text())

        assert header[0] == "protocol: 4"
        assert rows[0][4] == "schema"
        assert [row[2] for row in rows[1:]] == [str(i) for i in range(1, 11)]
