"""
Shared fixtures for mpstream tests.

Provides in-memory transports so channels, domains and clients can be
exercised without sockets or files.
"""

import sys
import threading
import time
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest

from mpstream.channel import ReconnectPolicy, StreamHeader
from mpstream.errors import CollectionConnectionError, TransportError
from mpstream.schema import MeasurementPointRegistry
from mpstream.transport import Transport, resolve


def pytest_configure(config):
    """Register custom markers for test hierarchy."""
    config.addinivalue_line("markers", "integration: end-to-end tests writing through real transports")
    config.addinivalue_line("markers", "stress: concurrency tests with many producer threads")


def wait_until(predicate, timeout=5.0, interval=0.005):
    """Poll predicate until it is true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        time.sleep(interval)


class RecordingTransport(Transport):
    """Transport that keeps every written line in memory."""

    def __init__(self, uri="tcp:collector:3003"):
        super().__init__(resolve(uri))
        self.writes = []
        self.opens = 0
        self.closes = 0
        self._open = False
        self._lock = threading.Lock()

    @property
    def is_open(self):
        return self._open

    def open(self):
        self.opens += 1
        self._open = True

    def write_line(self, text):
        if not self._open:
            raise TransportError(f"{self.uri} is not open")
        with self._lock:
            self.writes.append(text)

    def close(self):
        self.closes += 1
        self._open = False

    @property
    def lines(self):
        """Every physical line written, in order."""
        with self._lock:
            out = []
            for text in self.writes:
                out.extend(text.split("\n"))
            return out

    def data_rows(self, index=None):
        """Tab-separated rows (header lines excluded), optionally for one schema index."""
        rows = [line.split("\t") for line in self.lines if "\t" in line]
        if index is None:
            return rows
        return [row for row in rows if row[1] == str(index)]


class FlakyTransport(RecordingTransport):
    """
    RecordingTransport that fails a number of writes and reopens.

    Args:
        fail_writes: Write calls (1-based) that raise TransportError
        fail_opens: Number of reopen attempts that raise after a failure
        refuse: Make every open() fail, including the first
    """

    def __init__(self, uri="tcp:collector:3003", fail_writes=(), fail_opens=0, refuse=False):
        super().__init__(uri)
        self.fail_writes = set(fail_writes)
        self.remaining_open_failures = fail_opens
        self.refuse = refuse
        self.write_calls = 0

    def open(self):
        if self.refuse or (self.opens > 0 and self.remaining_open_failures > 0):
            if not self.refuse:
                self.remaining_open_failures -= 1
            self.opens += 1
            raise CollectionConnectionError(f"Cannot connect to {self.uri}: refused")
        super().open()

    def write_line(self, text):
        self.write_calls += 1
        if self.write_calls in self.fail_writes:
            raise TransportError(f"Write to {self.uri} failed: broken pipe")
        super().write_line(text)


@pytest.fixture
def header():
    """Protocol header for domain 'foo', app 'demo', node 'n1'."""
    return StreamHeader(domain="foo", start_time=1700000000, sender_id="n1", app_name="demo")


@pytest.fixture
def fast_policy():
    """Reconnect policy with a negligible delay."""
    return ReconnectPolicy(delay=0.01)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def registry():
    return MeasurementPointRegistry()


@pytest.fixture
def recording_factory():
    """
    Transport factory for MeasurementClient that records per URI.

    Returns:
        (factory, transports): transports maps str(uri) to its RecordingTransport
    """
    transports = {}

    def factory(uri, append):
        transport = RecordingTransport(str(uri))
        transports[str(uri)] = transport
        return transport

    return factory, transports
