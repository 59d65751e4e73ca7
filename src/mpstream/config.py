"""
mpstream - Configuration

Resolves client configuration from several sources.

Resolution order (first value found wins):
    1. YAML configuration file (config_file option or MPSTREAM_CONFIG)
    2. Explicit call-site option
    3. Deprecated call-site alias (logged as a warning)
    4. Environment variable
    5. Deprecated environment variable (logged as a warning)
    6. Computed default
"""

import logging
import os
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .channel import DEFAULT_PROTOCOL, DEFAULT_RECONNECT_DELAY, SUPPORTED_PROTOCOLS
from .errors import ConfigurationError, MissingParameter, UnsupportedScheme
from .transport import resolve

logger = logging.getLogger(__name__)

ENV_PREFIX = "MPSTREAM_"

TRUE_VALUES = ("true", "1", "yes", "on")

# parameter -> (config file keys, option, deprecated option, env var, deprecated env var)
PARAMETERS: Dict[str, Tuple[Tuple[str, ...], str, Optional[str], str, Optional[str]]] = {
    "domain": (("domain", "experiment"), "domain", "exp_id", "MPSTREAM_DOMAIN", "MPSTREAM_EXP_ID"),
    "node_id": (("node_id", "id"), "node_id", None, "MPSTREAM_ID", None),
    "app_name": (("app_name",), "app_name", None, "MPSTREAM_APP_NAME", None),
    "collect_uri": (("collect", "url"), "collect_uri", "server", "MPSTREAM_COLLECT", "MPSTREAM_SERVER"),
    "protocol": (("protocol",), "protocol", None, "MPSTREAM_PROTOCOL", None),
    "noop": (("noop",), "noop", None, "MPSTREAM_NOOP", None),
    "append": (("append",), "append", None, "MPSTREAM_APPEND", None),
    "reconnect_delay": (("reconnect_delay",), "reconnect_delay", None, "MPSTREAM_RECONNECT_DELAY", None),
    "close_timeout": (("close_timeout",), "close_timeout", None, "MPSTREAM_CLOSE_TIMEOUT", None),
    "log_level": (("log_level",), "log_level", None, "MPSTREAM_LOG_LEVEL", None),
}

# Deprecated spellings accepted in configuration files
DEPRECATED_FILE_KEYS = {"experiment": "domain", "id": "node_id", "url": "collect"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def default_node_id() -> Optional[str]:
    """Local hostname concatenated with the process ID."""
    try:
        hostname = socket.gethostname()
    except OSError:
        return None
    if not hostname:
        return None
    return f"{hostname}-{os.getpid()}"


def default_app_name() -> str:
    """Application name derived from the running script."""
    argv0 = sys.argv[0] if sys.argv and sys.argv[0] else ""
    stem = Path(argv0).stem
    return stem or "python"


def load_config_file(path) -> Dict[str, Any]:
    """
    Load a YAML configuration file.

    Returns:
        dict: Parsed mapping (empty for an empty file)

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping
    """
    config_path = Path(path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

    for key in data:
        if key in DEPRECATED_FILE_KEYS:
            logger.warning(
                f"Configuration key '{key}' in {config_path} is deprecated; "
                f"please use '{DEPRECATED_FILE_KEYS[key]}' instead"
            )
    logger.info(f"Loaded configuration file: {config_path}")
    return data


@dataclass
class ClientConfig:
    """
    Configuration consumed by the measurement client.

    Attributes:
        domain: Collection domain (experiment/run identity)
        node_id: Sender identity
        app_name: Application name, prefixes measurement table names
        collect_uri: URI of the default channel (file:..., tcp:host:port)
        protocol: Wire protocol version
        noop: Keep the API live but perform no I/O
        channels: Extra named channels of the default domain {name: uri}
        domains: Extra domains {name: uri}, one channel each
        create_default_channel: Open a 'default' channel on collect_uri
        append: Append to file sinks instead of truncating them
        reconnect_delay: Seconds between reconnect attempts
        close_timeout: Seconds stop() waits for each channel to drain before
            abandoning what is left (None waits indefinitely)
        log_level: Level for the mpstream logger (None leaves it alone)
    """

    domain: Optional[str]
    node_id: Optional[str]
    app_name: str
    collect_uri: Optional[str]
    protocol: int = DEFAULT_PROTOCOL
    noop: bool = False
    channels: Dict[str, str] = field(default_factory=dict)
    domains: Dict[str, str] = field(default_factory=dict)
    create_default_channel: bool = True
    append: bool = False
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    close_timeout: Optional[float] = None
    log_level: Optional[str] = None

    @classmethod
    def resolve(
        cls,
        config_file=None,
        environ: Optional[Mapping[str, str]] = None,
        **options,
    ) -> "ClientConfig":
        """
        Build a configuration from a config file, options and the environment.

        Args:
            config_file: Path to a YAML file (falls back to MPSTREAM_CONFIG)
            environ: Environment mapping (defaults to os.environ)
            **options: Call-site options (domain, node_id, app_name,
                collect_uri, protocol, noop, channels, domains,
                create_default_channel, append, reconnect_delay, close_timeout,
                log_level)
                plus the deprecated aliases exp_id and server

        Returns:
            ClientConfig: Resolved (not yet validated) configuration

        Raises:
            MissingParameter: If domain, node_id or a needed collect_uri has
                no value in any source (ignored in noop mode)
            ConfigurationError: For unknown options or unreadable files
        """
        env = os.environ if environ is None else environ

        known = {entry[1] for entry in PARAMETERS.values()}
        known.update(entry[2] for entry in PARAMETERS.values() if entry[2])
        known.update({"channels", "domains", "create_default_channel"})
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")

        config_file = config_file or env.get("MPSTREAM_CONFIG")
        file_values = load_config_file(config_file) if config_file else {}

        values = {
            name: cls._resolve_parameter(name, file_values, options, env)
            for name in PARAMETERS
        }

        noop = _parse_bool(values["noop"]) if values["noop"] is not None else False
        create_default_channel = _parse_bool(options.get("create_default_channel", True))

        if values["node_id"] is None:
            values["node_id"] = default_node_id()
            logger.debug(f"Using default node id: {values['node_id']}")
        if values["app_name"] is None:
            values["app_name"] = default_app_name()
            logger.debug(f"Using default app name: {values['app_name']}")

        if not noop:
            if values["domain"] is None:
                raise MissingParameter("domain", "set domain or MPSTREAM_DOMAIN")
            if values["node_id"] is None:
                raise MissingParameter("node_id", "set node_id or MPSTREAM_ID")
            if values["collect_uri"] is None and create_default_channel:
                raise MissingParameter("collect_uri", "set collect_uri or MPSTREAM_COLLECT")

        channels = dict(file_values.get("channels") or {})
        channels.update(options.get("channels") or {})
        domains = dict(file_values.get("domains") or {})
        domains.update(options.get("domains") or {})

        try:
            protocol = int(values["protocol"]) if values["protocol"] is not None else DEFAULT_PROTOCOL
            reconnect_delay = (
                float(values["reconnect_delay"])
                if values["reconnect_delay"] is not None
                else DEFAULT_RECONNECT_DELAY
            )
            close_timeout = (
                float(values["close_timeout"]) if values["close_timeout"] is not None else None
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric configuration value: {e}") from e

        return cls(
            domain=values["domain"],
            node_id=values["node_id"],
            app_name=str(values["app_name"]),
            collect_uri=values["collect_uri"],
            protocol=protocol,
            noop=noop,
            channels={str(k): str(v) for k, v in channels.items()},
            domains={str(k): str(v) for k, v in domains.items()},
            create_default_channel=create_default_channel,
            append=_parse_bool(values["append"]) if values["append"] is not None else False,
            reconnect_delay=reconnect_delay,
            close_timeout=close_timeout,
            log_level=values["log_level"],
        )

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Resolve configuration from the environment only."""
        return cls.resolve()

    @staticmethod
    def _resolve_parameter(
        name: str,
        file_values: Mapping[str, Any],
        options: Mapping[str, Any],
        env: Mapping[str, str],
    ) -> Any:
        file_keys, option, deprecated_option, env_var, deprecated_env = PARAMETERS[name]

        for key in file_keys:
            if file_values.get(key) is not None:
                return file_values[key]

        if options.get(option) is not None:
            return options[option]

        if deprecated_option and options.get(deprecated_option) is not None:
            logger.warning(
                f"Option '{deprecated_option}' is deprecated; please use '{option}' instead"
            )
            return options[deprecated_option]

        if env.get(env_var):
            return env[env_var]

        if deprecated_env and env.get(deprecated_env):
            logger.warning(
                f"Environment variable {deprecated_env} is deprecated; please use {env_var} instead"
            )
            return env[deprecated_env]

        return None

    def validate(self):
        """
        Check the configuration before the client starts.

        Raises:
            ConfigurationError: Unsupported protocol, negative reconnect
                delay or close timeout, or an unparsable collection URI
        """
        if self.protocol not in SUPPORTED_PROTOCOLS:
            raise ConfigurationError(
                f"Unsupported protocol {self.protocol} "
                f"(supported: {', '.join(str(p) for p in SUPPORTED_PROTOCOLS)})"
            )

        if self.reconnect_delay < 0:
            raise ConfigurationError(f"reconnect_delay must be >= 0, got {self.reconnect_delay}")

        if self.close_timeout is not None and self.close_timeout < 0:
            raise ConfigurationError(f"close_timeout must be >= 0, got {self.close_timeout}")

        if self.noop:
            return

        uris = dict(self.channels)
        uris.update({f"domain:{name}": uri for name, uri in self.domains.items()})
        if self.create_default_channel:
            uris["default"] = self.collect_uri
        elif not self.channels:
            raise ConfigurationError(
                "create_default_channel is disabled but no named channels are configured"
            )

        for name, uri in uris.items():
            try:
                resolve(uri)
            except UnsupportedScheme as e:
                raise ConfigurationError(f"Invalid collection URI for '{name}': {e}") from e

    def __str__(self) -> str:
        return (
            f"ClientConfig("
            f"domain={self.domain}, "
            f"node_id={self.node_id}, "
            f"app_name={self.app_name}, "
            f"collect_uri={self.collect_uri}, "
            f"protocol={self.protocol}, "
            f"noop={self.noop}, "
            f"channels={self.channels}, "
            f"domains={self.domains})"
        )
