"""
mpstream - Measurement Channel

One ordered, independently reconnecting delivery path to one collection
endpoint.

State machine:
    DISCONNECTED -> HEADER_PENDING -> CONNECTED
    CONNECTED --write failure--> RECONNECTING -> HEADER_PENDING -> CONNECTED
    any state --close()--> CLOSED

Producers call push(), which only enqueues. A single worker thread per
channel owns the transport: it sends the protocol header, drains the queue in
batches, and reconnects on write failure without dropping or reordering
messages. close() enqueues a sentinel and waits for the worker to drain
everything queued before it; only a close() timeout aborts the drain.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple

from .errors import CollectionConnectionError, TransportError
from .logger import log_channel_closed, log_reconnect
from .schema import EXPERIMENT_METADATA, EXPERIMENT_METADATA_INDEX
from .transport import CollectionURI, Transport, create_transport, resolve

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL = 4
SUPPORTED_PROTOCOLS = (4,)
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_CHANNEL = "default"


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    HEADER_PENDING = "header_pending"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class StreamHeader:
    """Identity sent at the start of every connection."""

    domain: str
    start_time: int
    sender_id: str
    app_name: str
    protocol: int = DEFAULT_PROTOCOL

    def lines(self, schemas: Sequence[str] = ()) -> List[str]:
        """
        Header block for one connection.

        The block ends with a blank line, followed by the schema rows
        announced so far (already formatted as metadata rows on index 0).
        """
        header = [
            f"protocol: {self.protocol}",
            "content: text",
            f"domain: {self.domain}",
            f"start-time: {self.start_time}",
            f"sender-id: {self.sender_id}",
            f"app-name: {self.app_name}",
            "schema: " + EXPERIMENT_METADATA.describe(EXPERIMENT_METADATA_INDEX, self.app_name),
            "",
        ]
        header.extend(schemas)
        return header

    def render(self, schemas: Sequence[str] = ()) -> str:
        """Header text ready for Transport.write_line()."""
        # write_line() supplies the terminator of the last line
        return "\n".join(self.lines(schemas))


@dataclass
class ReconnectPolicy:
    """
    Fixed-delay, unbounded retry policy.

    wait() returns early when the stop event is set so an aborting close() is
    not held up by the backoff delay.
    """

    delay: float = DEFAULT_RECONNECT_DELAY

    def wait(self, stop_event: threading.Event) -> bool:
        """Sleep for the backoff delay. Returns True if stop_event was set."""
        return stop_event.wait(self.delay)


class _Message(NamedTuple):
    text: str
    is_schema: bool


# Marks the end of work in the queue
_SENTINEL = object()


class Channel:
    """
    Measurement channel bound to one collection URI.

    Example:
        header = StreamHeader("foo", 1700000000, "n1", "demo")
        channel = Channel("file:-", header)
        channel.open()
        channel.push("0.000123\\t1\\t1\\tlabel_0\\t0\\t0.0")
        channel.close()
    """

    def __init__(
        self,
        uri,
        header: StreamHeader,
        transport: Optional[Transport] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        append: bool = False,
        name: str = DEFAULT_CHANNEL,
    ):
        """
        Args:
            uri: Collection URI (string or CollectionURI)
            header: Protocol header for this channel's domain
            transport: Transport to use (defaults to create_transport(uri))
            reconnect_policy: Backoff policy (defaults to a fixed 5 s delay)
            append: Append to file sinks instead of truncating them
            name: Channel name used for routing
        """
        self.uri: CollectionURI = resolve(uri)
        self.name = name
        self.header = header
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._transport = transport or create_transport(self.uri, append=append)

        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._accepting = False
        self._closing = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = ChannelState.DISCONNECTED

        # Worker-owned: schema rows delivered on this channel, in order
        self._schemas: List[str] = []

        self.delivered = 0
        self.dropped = 0

    def __repr__(self) -> str:
        return f"Channel({self.name!r}, {self.uri}, {self._state.value})"

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def schemas(self) -> Tuple[str, ...]:
        """Schema rows delivered so far (replayed after every reconnect)."""
        return tuple(self._schemas)

    @property
    def pending(self) -> int:
        """Approximate number of queued messages."""
        return self._queue.qsize()

    def open(self):
        """
        Connect the transport and start the worker thread.

        Raises:
            CollectionConnectionError: If the endpoint cannot be opened
        """
        with self._lock:
            if self._thread is not None:
                return
            self._transport.open()
            self._state = ChannelState.HEADER_PENDING
            self._accepting = True
            self._thread = threading.Thread(
                target=self._run,
                name=f"mpstream-channel-{self.name}",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Channel '{self.name}' connected to {self.uri}")

    def push(self, message: str, is_schema: bool = False) -> bool:
        """
        Enqueue an already-serialized line.

        Never blocks on I/O. Returns False (and drops the message) once the
        channel is closing.
        """
        with self._lock:
            if not self._accepting:
                logger.debug(f"Channel '{self.name}' is not accepting messages, dropped one")
                return False
            self._queue.put(_Message(message, is_schema))
        return True

    def close(self, timeout: Optional[float] = None):
        """
        Stop accepting messages, drain the queue, and close the transport.

        Blocks until the worker has written everything enqueued before this
        call, reconnecting as often as needed. With a timeout, a drain still
        running when it expires is aborted: a reconnect loop in progress gets
        one final attempt and then gives up, and whatever is left is counted
        as dropped. Safe to call more than once.

        Args:
            timeout: Seconds to wait for the drain; None waits indefinitely
        """
        with self._lock:
            thread = self._thread
            if self._accepting:
                self._accepting = False
                self._queue.put(_SENTINEL)

        if thread is None:
            self._transport.close()
            self._state = ChannelState.CLOSED
            return

        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"Channel '{self.name}' did not drain within {timeout}s, aborting")
            self._closing.set()
            thread.join()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self):
        try:
            # Header goes out as soon as the connection is up
            if self._deliver([]):
                while True:
                    batch, done = self._next_batch()
                    if batch and not self._deliver(batch):
                        break
                    if done:
                        break
        except Exception:
            logger.exception(f"Unexpected error in channel '{self.name}' worker")
        finally:
            with self._lock:
                self._accepting = False
            self._abandon_remaining()
            self._transport.close()
            self._state = ChannelState.CLOSED
            log_channel_closed(str(self.uri), self.delivered, self.dropped)

    def _next_batch(self) -> Tuple[List[_Message], bool]:
        """
        Block for the next message, then take whatever else is already queued.

        Returns:
            (batch, done): done is True once the sentinel has been reached;
            the sentinel itself is never part of a batch.
        """
        item = self._queue.get()
        if item is _SENTINEL:
            return [], True

        batch = [item]
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return batch, False
            if item is _SENTINEL:
                return batch, True
            batch.append(item)

    def _deliver(self, batch: List[_Message]) -> bool:
        """
        Write one batch, reconnecting as often as needed.

        Returns:
            bool: False if the batch had to be abandoned because the channel
            was closed while the endpoint was unreachable.
        """
        while True:
            try:
                if self._state is ChannelState.HEADER_PENDING:
                    self._transport.write_line(self.header.render(self._schemas))
                    self._state = ChannelState.CONNECTED
                if batch:
                    self._transport.write_line("\n".join(m.text for m in batch))
            except TransportError as e:
                logger.warning(f"Write to channel '{self.name}' ({self.uri}) failed: {e}")
                if not self._reconnect():
                    self.dropped += len(batch)
                    return False
                continue

            self._schemas.extend(m.text for m in batch if m.is_schema)
            self.delivered += len(batch)
            return True

    def _reconnect(self) -> bool:
        """
        Reopen the transport until it succeeds or the channel is closed.

        Returns:
            bool: True once reconnected (header pending), False if abandoned.
        """
        self._state = ChannelState.RECONNECTING
        self._transport.close()
        logger.info(f"Trying to reconnect to '{self.uri}'")

        attempt = 0
        while True:
            attempt += 1
            self.reconnect_policy.wait(self._closing)
            try:
                self._transport.open()
            except CollectionConnectionError as e:
                log_reconnect(str(self.uri), attempt, e)
                if self._closing.is_set():
                    logger.error(f"Giving up reconnecting to '{self.uri}': close timed out")
                    return False
                continue

            self._state = ChannelState.HEADER_PENDING
            logger.info(f"Reconnected to '{self.uri}' after {attempt} attempt(s)")
            return True

    def _abandon_remaining(self):
        """Count whatever is still queued after the worker stops."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not _SENTINEL:
                self.dropped += 1
