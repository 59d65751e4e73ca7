"""
mpstream - Domain Context

Keeps the state of one collection domain: sender identity, start time,
schema index assignment, sequence counters and the channels the domain
streams to.

Schema indices are assigned per domain in first-use order starting at 1
(0 is the reserved metadata schema) and are shared by every channel of the
domain. The first use of a point synchronously queues its schema row on every
routed channel before any data row for it, so collectors always learn a
schema before they see it referenced.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .channel import (
    DEFAULT_CHANNEL,
    DEFAULT_PROTOCOL,
    Channel,
    ReconnectPolicy,
    StreamHeader,
)
from .errors import ConfigurationError
from .schema import (
    EXPERIMENT_METADATA,
    EXPERIMENT_METADATA_INDEX,
    MeasurementPoint,
    escape_string,
)
from .transport import Transport

logger = logging.getLogger(__name__)

# Subject of metadata rows about the whole experiment
ROOT_SUBJECT = "."


@dataclass
class SchemaBinding:
    """Per-domain state of one measurement point."""

    point: MeasurementPoint
    index: int
    seq_no: int = 0


class DomainContext:
    """
    Binds measurement points to the channels of one collection domain.

    Example:
        ctx = DomainContext("foo", "n1", "demo")
        ctx.add_channel("file:-")
        ctx.open()
        ctx.inject(sin, ("label_0", 0, 0.0))
        ctx.close()
    """

    def __init__(
        self,
        name: str,
        sender_id: str,
        app_name: str,
        start_time: Optional[int] = None,
        protocol: int = DEFAULT_PROTOCOL,
    ):
        """
        Args:
            name: Domain name
            sender_id: Node/sender identity
            app_name: Application name (prefixes table names)
            start_time: Epoch seconds; defaults to now, sub-second part dropped
            protocol: Wire protocol version
        """
        self.name = name
        self.sender_id = sender_id
        self.app_name = app_name
        self.start_time = int(time.time()) if start_time is None else int(start_time)
        self.protocol = protocol

        self._channels: Dict[str, Channel] = {}
        self._bindings: Dict[int, SchemaBinding] = {}
        self._next_index = EXPERIMENT_METADATA_INDEX + 1
        self._meta_seq_no = 0
        self._accepting = False
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"DomainContext({self.name!r}, channels={list(self._channels)})"

    @property
    def header(self) -> StreamHeader:
        return StreamHeader(
            domain=self.name,
            start_time=self.start_time,
            sender_id=self.sender_id,
            app_name=self.app_name,
            protocol=self.protocol,
        )

    @property
    def channels(self) -> Dict[str, Channel]:
        return dict(self._channels)

    def add_channel(
        self,
        uri,
        name: str = DEFAULT_CHANNEL,
        transport: Optional[Transport] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        append: bool = False,
    ) -> Channel:
        """
        Create a channel for this domain (not opened yet).

        Raises:
            ConfigurationError: If a channel with that name already exists
            UnsupportedScheme: If the URI cannot be resolved
        """
        if name in self._channels:
            raise ConfigurationError(f"Channel '{name}' already exists in domain '{self.name}'")
        channel = Channel(
            uri,
            self.header,
            transport=transport,
            reconnect_policy=reconnect_policy,
            append=append,
            name=name,
        )
        self._channels[name] = channel
        return channel

    def open(self):
        """
        Open every channel.

        If one fails, the channels opened so far are closed again and the
        error is re-raised.
        """
        opened = []
        try:
            for channel in self._channels.values():
                channel.open()
                opened.append(channel)
        except Exception:
            for channel in opened:
                channel.close()
            raise
        with self._lock:
            self._accepting = True

    def close(self, timeout: Optional[float] = None):
        """
        Drain and close every channel, then forget all schema bindings.

        Injections racing with close() are ignored rather than binding
        points to a domain that is going away.

        Args:
            timeout: Per-channel drain limit in seconds; None waits for a
                full drain however long reconnecting takes
        """
        with self._lock:
            self._accepting = False
        for channel in self._channels.values():
            channel.close(timeout)
        with self._lock:
            self._bindings.clear()
            self._next_index = EXPERIMENT_METADATA_INDEX + 1
            self._meta_seq_no = 0
        logger.debug(f"Domain '{self.name}' closed")

    def time_stamp(self) -> str:
        """Seconds since the domain start time, microsecond precision."""
        return "%.6f" % (time.time() - self.start_time)

    def route(self, point: MeasurementPoint) -> List[Channel]:
        """
        Channels that receive rows of the given point.

        Explicit routing wins; otherwise the 'default' channel if the domain
        has one, else every channel of the domain.

        Raises:
            ConfigurationError: If an explicitly routed channel does not exist
        """
        if point is EXPERIMENT_METADATA:
            return list(self._channels.values())

        if point.channels:
            routed = []
            for name in point.channels:
                try:
                    routed.append(self._channels[name])
                except KeyError:
                    raise ConfigurationError(
                        f"Measurement point '{point.name}' is routed to unknown channel "
                        f"'{name}' in domain '{self.name}'"
                    ) from None
            return routed

        if DEFAULT_CHANNEL in self._channels:
            return [self._channels[DEFAULT_CHANNEL]]
        return list(self._channels.values())

    def get_or_assign_schema_index(self, point: MeasurementPoint) -> int:
        """
        Return the schema index of a point, announcing it on first use.

        The first reference freezes the point, assigns the next index and
        queues the schema row on every routed channel.
        """
        return self._binding(point).index

    def inject(self, point: MeasurementPoint, values: Sequence[Any]):
        """
        Stamp and send one measurement tuple.

        Raises:
            ArityMismatch: Wrong number of values
            FieldTypeError: A value does not fit its field type
            ConfigurationError: Routing refers to an unknown channel
        """
        fields = point.fields
        encoded = point.validate_and_serialize(values)

        with self._lock:
            if not self._accepting:
                return
            binding = self._binding(point)
            if point.fields != fields:
                # Redefined between encoding and first use; now frozen
                encoded = point.validate_and_serialize(values)
            binding.seq_no += 1
            row = [self.time_stamp(), str(binding.index), str(binding.seq_no)]
            row.extend(encoded)
            self._send("\t".join(row), self.route(point))

    def inject_metadata(
        self,
        point: MeasurementPoint,
        key: str,
        value: Any,
        qualifier: Optional[str] = None,
    ):
        """
        Send a metadata row about the experiment or about one point.

        Args:
            point: EXPERIMENT_METADATA for experiment-wide metadata, else the
                point (or one of its fields, via qualifier) being described
            key: Metadata key
            value: Metadata value
            qualifier: Optional field name narrowing the subject
        """
        with self._lock:
            if not self._accepting:
                return
            if point is EXPERIMENT_METADATA:
                subject = ROOT_SUBJECT
            else:
                self._binding(point)
                subject = ROOT_SUBJECT + point.table_name(self.app_name)
                if qualifier:
                    subject += f".{qualifier}"
            self._send_metadata(subject, key, value, self.route(point))

    def _binding(self, point: MeasurementPoint) -> SchemaBinding:
        with self._lock:
            binding = self._bindings.get(id(point))
            if binding is not None:
                return binding

            channels = self.route(point)
            point.freeze()
            binding = SchemaBinding(point, self._next_index)
            self._bindings[id(point)] = binding
            self._next_index += 1

            description = point.describe(binding.index, self.app_name)
            self._send_metadata(ROOT_SUBJECT, "schema", description, channels, is_schema=True)
            logger.debug(f"Domain '{self.name}' announced schema {description}")
            return binding

    def _send_metadata(
        self,
        subject: str,
        key: str,
        value: Any,
        channels: List[Channel],
        is_schema: bool = False,
    ):
        self._meta_seq_no += 1
        row = [
            self.time_stamp(),
            str(EXPERIMENT_METADATA_INDEX),
            str(self._meta_seq_no),
            escape_string(subject),
            escape_string(key),
            escape_string(value),
        ]
        self._send("\t".join(row), channels, is_schema)

    def _send(self, message: str, channels: List[Channel], is_schema: bool = False):
        for channel in channels:
            channel.push(message, is_schema)
