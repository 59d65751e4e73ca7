"""
mpstream - Exception Taxonomy

Validation and configuration errors are raised synchronously to the caller.
Transport errors are contained by the channel worker and retried; producers
never see them.
"""


class MeasurementError(Exception):
    """Base class for every error raised by mpstream."""
    pass


class ConfigurationError(MeasurementError):
    """
    Invalid or incomplete client configuration.

    Fatal, surfaced at configure time (or at first use for bad routing).
    """
    pass


class MissingParameter(ConfigurationError):
    """A required parameter was not found in any configuration source."""

    def __init__(self, parameter: str, hint: str = ""):
        self.parameter = parameter
        message = f"Missing value for parameter '{parameter}'"
        if hint:
            message += f" ({hint})"
        super().__init__(message)


class SchemaFrozenError(ConfigurationError):
    """A measurement point was modified after it was first used to send data."""
    pass


class ArityMismatch(MeasurementError, ValueError):
    """The number of injected values does not match the measurement point."""
    pass


class FieldTypeError(MeasurementError, TypeError):
    """A value cannot be encoded as the declared field type."""
    pass


class UnsupportedScheme(MeasurementError, ValueError):
    """The collection URI uses an unknown scheme or cannot be parsed."""
    pass


class CollectionConnectionError(MeasurementError, ConnectionError):
    """
    The collection endpoint could not be opened.

    Fatal when raised from Channel.open(); retried inside the reconnect loop.
    """
    pass


class TransportError(MeasurementError, OSError):
    """
    A write to an open transport failed (broken pipe, reset, closed file).

    Always recovered by the channel worker, never propagated to producers.
    """
    pass


class LifecycleError(MeasurementError):
    """A client operation was called in the wrong lifecycle state."""
    pass
