"""
mpstream - Python Package

Measurement-point instrumentation that streams typed measurements to
collection endpoints over a line-oriented text protocol.

Usage:
    from mpstream import MeasurementClient

    client = MeasurementClient()
    sin = client.define("sin", ["label:string", "angle:int32", "value:double"])

    with client.session(domain="foo", collect_uri="tcp:localhost"):
        client.inject(sin, "label_0", 0, 0.0)
"""

__version__ = "0.1.0"

# Public API
from .benchmark import Benchmark
from .channel import Channel, ChannelState, ReconnectPolicy, StreamHeader
from .client import ClientState, MeasurementClient
from .config import ClientConfig
from .domain import DomainContext
from .errors import (
    ArityMismatch,
    CollectionConnectionError,
    ConfigurationError,
    FieldTypeError,
    LifecycleError,
    MeasurementError,
    MissingParameter,
    SchemaFrozenError,
    TransportError,
    UnsupportedScheme,
)
from .log_handler import MeasurementHandler
from .logger import configure_logging
from .schema import (
    EXPERIMENT_METADATA,
    FieldDef,
    MeasurementPoint,
    MeasurementPointRegistry,
    generate_guid,
)
from .transport import CollectionURI, create_transport, resolve

__all__ = [
    "MeasurementClient",
    "ClientState",
    "ClientConfig",
    "MeasurementPoint",
    "MeasurementPointRegistry",
    "FieldDef",
    "EXPERIMENT_METADATA",
    "generate_guid",
    "Channel",
    "ChannelState",
    "StreamHeader",
    "ReconnectPolicy",
    "DomainContext",
    "CollectionURI",
    "resolve",
    "create_transport",
    "Benchmark",
    "MeasurementHandler",
    "configure_logging",
    "MeasurementError",
    "ConfigurationError",
    "MissingParameter",
    "SchemaFrozenError",
    "ArityMismatch",
    "FieldTypeError",
    "UnsupportedScheme",
    "CollectionConnectionError",
    "TransportError",
    "LifecycleError",
]
