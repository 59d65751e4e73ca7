"""
mpstream - Main Client

MeasurementClient provides the public API for measurement instrumentation.
"""

import logging
import platform
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Union

from . import __version__
from .channel import DEFAULT_CHANNEL, ReconnectPolicy
from .config import ClientConfig
from .domain import DomainContext
from .errors import ConfigurationError, LifecycleError
from .logger import configure_logging
from .schema import (
    EXPERIMENT_METADATA,
    FieldSpec,
    MeasurementPoint,
    MeasurementPointRegistry,
)
from .transport import CollectionURI, Transport, resolve

logger = logging.getLogger(__name__)

PointRef = Union[MeasurementPoint, str]
TransportFactory = Callable[[CollectionURI, bool], Transport]


class ClientState(Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"
    RUNNING = "running"


class MeasurementClient:
    """
    Measurement client for application instrumentation.

    Lifecycle:
        UNINITIALIZED --configure()--> CONFIGURED --start()--> RUNNING
        RUNNING --stop()--> UNINITIALIZED

    Injection is a no-op unless the client is RUNNING. stop() drains every
    channel before closing it, and resets schema freezing and counters so
    the client can be configured and started again.

    Example:
        client = MeasurementClient()
        sin = client.define("sin", ["label:string", "angle:int32", "value:double"])

        with client.session(domain="foo", app_name="demo", collect_uri="file:-"):
            client.inject(sin, "label_0", 0, 0.0)
    """

    def __init__(
        self,
        registry: Optional[MeasurementPointRegistry] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize measurement client.

        Args:
            registry: Measurement point registry (a new one by default)
            transport_factory: Callable (uri, append) -> Transport used for
                every channel; None uses the URI's standard transport
        """
        self.registry = registry or MeasurementPointRegistry()
        self.transport_factory = transport_factory
        self.config: Optional[ClientConfig] = None
        self.start_time: Optional[int] = None

        self._state = ClientState.UNINITIALIZED
        self._domains: Dict[str, DomainContext] = {}
        self._lock = threading.RLock()

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ClientState.RUNNING

    @property
    def domains(self) -> Dict[str, DomainContext]:
        return dict(self._domains)

    def define(
        self,
        name: str,
        fields: Sequence[FieldSpec] = (),
        add_prefix: bool = True,
        domain: Optional[str] = None,
        channels: Optional[Sequence[str]] = None,
    ) -> MeasurementPoint:
        """
        Define a measurement point.

        Example:
            sin = client.define("sin", ["label", "angle:int32", "value:double"])
        """
        return self.registry.define(name, fields, add_prefix=add_prefix, domain=domain, channels=channels)

    def point(self, name: str) -> MeasurementPoint:
        """Look up a defined measurement point by name."""
        return self.registry.get(name)

    def configure(self, config: Optional[ClientConfig] = None, **options) -> ClientConfig:
        """
        Resolve and validate the client configuration.

        Args:
            config: Ready-made ClientConfig (skips resolution)
            **options: Passed to ClientConfig.resolve()

        Returns:
            ClientConfig: The active configuration

        Raises:
            LifecycleError: If the client is running
            ConfigurationError: If the configuration is incomplete or invalid
        """
        with self._lock:
            if self._state is ClientState.RUNNING:
                raise LifecycleError("Cannot configure a running client; call stop() first")

            config = config or ClientConfig.resolve(**options)
            config.validate()

            if config.log_level:
                configure_logging(config.log_level)

            logger.info(
                f"mpstream client {__version__} [protocol v{config.protocol}; "
                f"Python {platform.python_version()}]"
            )
            logger.debug(f"Configuration: {config}")

            self.config = config
            self._state = ClientState.CONFIGURED
            return config

    def start(self):
        """
        Open all channels and begin accepting measurements.

        Raises:
            LifecycleError: If not configured, or already running
            CollectionConnectionError: If a collection endpoint cannot be opened
            UnsupportedScheme: If a collection URI is invalid
        """
        with self._lock:
            if self._state is ClientState.RUNNING:
                raise LifecycleError("Client is already running")
            if self._state is not ClientState.CONFIGURED:
                raise LifecycleError("Client must be configured before start()")

            config = self.config
            self.start_time = int(time.time())

            if config.noop:
                logger.info("No-op mode: measurements will not be collected")
                self._state = ClientState.RUNNING
                return

            domains = self._build_domains(config)
            opened = []
            try:
                for ctx in domains.values():
                    ctx.open()
                    opened.append(ctx)
            except Exception:
                for ctx in opened:
                    ctx.close()
                raise

            self._domains = domains
            self._state = ClientState.RUNNING

    def stop(self):
        """
        Drain and close every channel, then return to UNINITIALIZED.

        Blocks until all outstanding measurements have been written, or
        until config.close_timeout expires for a channel that cannot drain.
        """
        with self._lock:
            domains, self._domains = self._domains, {}
            was_running = self._state is ClientState.RUNNING
            self._state = ClientState.UNINITIALIZED
            timeout = self.config.close_timeout if self.config else None

        for ctx in domains.values():
            ctx.close(timeout)

        self.registry.reset()
        self.config = None
        self.start_time = None
        if was_running:
            logger.info("Measurement collection stopped")

    @contextmanager
    def session(self, config: Optional[ClientConfig] = None, **options):
        """
        Context manager wrapping configure(), start() and stop().

        Yields:
            MeasurementClient: this client, running

        Example:
            with client.session(domain="foo", collect_uri="tcp:localhost") as c:
                c.inject("sin", "label_0", 0, 0.0)
        """
        self.configure(config, **options)
        self.start()
        try:
            yield self
        finally:
            self.stop()

    def inject(self, point: PointRef, *values: Any):
        """
        Inject one measurement.

        Args:
            point: MeasurementPoint or registered name
            *values: One value per field, in field order

        Raises:
            ArityMismatch: Wrong number of values
            FieldTypeError: A value does not fit its field type
            ConfigurationError: Unknown point, domain or channel
        """
        # stop() may clear these concurrently
        config, domains = self.config, self._domains
        if self._state is not ClientState.RUNNING or config is None:
            return

        point = self._resolve_point(point)
        if config.noop:
            point.validate_and_serialize(values)
            return

        ctx = self._domain_for(point, config, domains)
        if ctx is not None:
            ctx.inject(point, values)

    def inject_metadata(
        self,
        point: Optional[PointRef],
        key: str,
        value: Any,
        qualifier: Optional[str] = None,
    ):
        """
        Inject a metadata row.

        Args:
            point: Point being described; None for experiment-wide metadata
            key: Metadata key (e.g. "unit")
            value: Metadata value
            qualifier: Optional field name narrowing the subject
        """
        config, domains = self.config, self._domains
        if self._state is not ClientState.RUNNING or config is None or config.noop:
            return

        point = EXPERIMENT_METADATA if point is None else self._resolve_point(point)
        ctx = self._domain_for(point, config, domains)
        if ctx is not None:
            ctx.inject_metadata(point, key, value, qualifier)

    def _resolve_point(self, point: PointRef) -> MeasurementPoint:
        if isinstance(point, MeasurementPoint):
            return point
        return self.registry.get(point)

    def _domain_for(
        self,
        point: MeasurementPoint,
        config: ClientConfig,
        domains: Dict[str, DomainContext],
    ) -> Optional[DomainContext]:
        if not domains:
            # Stopped concurrently
            return None
        name = point.domain or config.domain
        try:
            return domains[name]
        except KeyError:
            raise ConfigurationError(
                f"Measurement point '{point.name}' is bound to undeclared domain '{name}'"
            ) from None

    def _build_domains(self, config: ClientConfig) -> Dict[str, DomainContext]:
        policy = ReconnectPolicy(delay=config.reconnect_delay)

        def new_context(name: str) -> DomainContext:
            return DomainContext(
                name,
                config.node_id,
                config.app_name,
                start_time=self.start_time,
                protocol=config.protocol,
            )

        def add(ctx: DomainContext, uri: str, channel_name: str):
            resolved = resolve(uri)
            transport = None
            if self.transport_factory is not None:
                transport = self.transport_factory(resolved, config.append)
            ctx.add_channel(
                resolved,
                name=channel_name,
                transport=transport,
                reconnect_policy=policy,
                append=config.append,
            )

        default = new_context(config.domain)
        if config.create_default_channel:
            add(default, config.collect_uri, DEFAULT_CHANNEL)
        for channel_name, uri in config.channels.items():
            add(default, uri, channel_name)

        domains = {default.name: default}
        for domain_name, uri in config.domains.items():
            if domain_name in domains:
                raise ConfigurationError(f"Domain '{domain_name}' is declared twice")
            ctx = new_context(domain_name)
            add(ctx, uri, DEFAULT_CHANNEL)
            domains[domain_name] = ctx

        return domains
