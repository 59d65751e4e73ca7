"""
mpstream - Measurement Point Schemas

Defines the field types understood by the text protocol, the value encoders,
the MeasurementPoint schema descriptor and the registry that holds them.

A measurement point is a data-only descriptor: an ordered list of typed
fields plus routing hints. It becomes frozen the first time it is used to
send data; after that its field list can no longer change.

Example:
    registry = MeasurementPointRegistry()
    sin = registry.define("sin", ["label:string", "angle:int32", "value:double"])
    sin.validate_and_serialize(("label_0", 0, 0.0))
    # ['label_0', '0', '0.0']
"""

import base64
import logging
import math
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import ArityMismatch, ConfigurationError, FieldTypeError, SchemaFrozenError

logger = logging.getLogger(__name__)


FIELD_TYPES = (
    "string",
    "int32",
    "uint32",
    "int64",
    "uint64",
    "double",
    "bool",
    "blob",
    "guid",
)

DEPRECATED_TYPES = {
    "long": "int32",
    "integer": "int32",
    "boolean": "bool",
}

INTEGER_RANGES = {
    "int32": (-(2 ** 31), 2 ** 31 - 1),
    "uint32": (0, 2 ** 32 - 1),
    "int64": (-(2 ** 63), 2 ** 63 - 1),
    "uint64": (0, 2 ** 64 - 1),
    "guid": (0, 2 ** 64 - 1),
}

# Escape order matters: backslash first so the escapes it introduces stay intact
_STRING_ESCAPES = (
    ("\\", "\\\\"),
    ("\r", "\\r"),
    ("\n", "\\n"),
    ("\t", "\\t"),
)

_STRING_UNESCAPES = {
    "\\": "\\",
    "r": "\r",
    "n": "\n",
    "t": "\t",
}


def normalize_type(type_name: str, field_name: str = "?") -> str:
    """Return the canonical field type, mapping deprecated aliases."""
    canonical = str(type_name).strip().lower()
    if canonical in DEPRECATED_TYPES:
        replacement = DEPRECATED_TYPES[canonical]
        logger.warning(
            f"Type '{canonical}' for field '{field_name}' is deprecated, use '{replacement}' instead"
        )
        canonical = replacement
    if canonical not in FIELD_TYPES:
        raise ConfigurationError(
            f"Unknown type '{type_name}' for field '{field_name}' "
            f"(expected one of: {', '.join(FIELD_TYPES)})"
        )
    return canonical


def escape_string(value: Any) -> str:
    """Escape backslash, CR, LF and TAB so a string fits in one tab-separated column."""
    text = "" if value is None else str(value)
    for raw, escaped in _STRING_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def decode_string(token: str) -> str:
    """Reverse escape_string(), as a collector does when reading a column."""
    out = []
    chars = iter(token)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        nxt = next(chars, None)
        if nxt is None:
            out.append("\\")
        else:
            out.append(_STRING_UNESCAPES.get(nxt, "\\" + nxt))
    return "".join(out)


def encode_value(field_type: str, value: Any, field_name: str = "?") -> str:
    """
    Encode one value as its protocol token.

    Args:
        field_type: Canonical field type
        value: Raw application value
        field_name: Used in error messages

    Returns:
        str: Encoded token (never contains TAB or newline)

    Raises:
        FieldTypeError: If the value cannot be represented as field_type
    """
    if field_type == "string":
        return escape_string(value)

    if field_type == "double":
        if value is None:
            return "NaN"
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise FieldTypeError(f"Field '{field_name}' expects a double, got {value!r}") from e
        if math.isnan(number):
            return "NaN"
        return repr(number)

    if field_type == "bool":
        return "True" if value else "False"

    if field_type == "blob":
        if isinstance(value, str):
            value = value.encode("utf-8")
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise FieldTypeError(f"Field '{field_name}' expects bytes, got {type(value).__name__}")
        return base64.b64encode(bytes(value)).decode("ascii")

    # int32, uint32, int64, uint64, guid
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("fractional value")
            number = int(value)
        except (TypeError, ValueError) as e:
            raise FieldTypeError(
                f"Field '{field_name}' expects {field_type}, got {value!r}"
            ) from e
    else:
        number = value

    low, high = INTEGER_RANGES[field_type]
    if not low <= number <= high:
        raise FieldTypeError(f"Field '{field_name}' value {number} out of range for {field_type}")
    return str(number)


def generate_guid() -> int:
    """Generate a random 64-bit GUID suitable for guid fields."""
    return secrets.randbits(64)


@dataclass(frozen=True)
class FieldDef:
    """One typed column of a measurement point."""

    name: str
    type: str = "string"
    options: Dict[str, Any] = field(default_factory=dict, compare=False)

    def describe(self) -> str:
        return f"{self.name}:{self.type}"


FieldSpec = Union[FieldDef, str, Tuple[Any, ...], List[Any]]


def make_field(spec: FieldSpec) -> FieldDef:
    """
    Build a FieldDef from any accepted field notation.

    Accepted:
        FieldDef("angle", "int32")
        "angle:int32"            ("angle" alone means string)
        ("angle", "int32")       or ("angle", "int32", {"unit": "deg"})
    """
    if isinstance(spec, FieldDef):
        return FieldDef(spec.name, normalize_type(spec.type, spec.name), dict(spec.options))

    if isinstance(spec, str):
        name, _, type_name = spec.partition(":")
        name = name.strip()
        if not name:
            raise ConfigurationError(f"Invalid field definition '{spec}'")
        return FieldDef(name, normalize_type(type_name or "string", name))

    if isinstance(spec, (tuple, list)) and 1 <= len(spec) <= 3:
        name = str(spec[0])
        type_name = spec[1] if len(spec) > 1 else "string"
        options = dict(spec[2]) if len(spec) > 2 and spec[2] else {}
        return FieldDef(name, normalize_type(type_name, name), options)

    raise ConfigurationError(f"Invalid field definition {spec!r}")


class MeasurementPoint:
    """
    Schema descriptor for one kind of measurement.

    Attributes:
        name: Measurement point name (e.g. "sin")
        add_prefix: Prefix the wire table name with the application name
        domain: Optional domain binding (None means the client's default domain)
        channels: Explicit channel routing (empty means default routing)
    """

    def __init__(
        self,
        name: str,
        fields: Iterable[FieldSpec] = (),
        add_prefix: bool = True,
        domain: Optional[str] = None,
        channels: Optional[Sequence[str]] = None,
    ):
        if not name:
            raise ConfigurationError("Measurement point name must not be empty")
        self.name = str(name)
        self.add_prefix = add_prefix
        self.domain = domain
        self.channels: Tuple[str, ...] = tuple(channels or ())
        self._fields: List[FieldDef] = [make_field(spec) for spec in fields]
        self._frozen = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        cols = " ".join(f.describe() for f in self._fields)
        return f"MeasurementPoint({self.name!r}: {cols})"

    @property
    def fields(self) -> Tuple[FieldDef, ...]:
        return tuple(self._fields)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def param(self, name: str, type: str = "string", **options) -> "MeasurementPoint":
        """
        Append a field to this measurement point.

        Returns:
            MeasurementPoint: self, so calls can be chained

        Raises:
            SchemaFrozenError: If the point has already been used to send data
        """
        new_field = FieldDef(name, normalize_type(type, name), options)
        with self._lock:
            if self._frozen:
                raise SchemaFrozenError(
                    f"Cannot add field '{name}' to '{self.name}': schema is frozen after first use"
                )
            self._fields.append(new_field)
        return self

    def redefine(self, fields: Iterable[FieldSpec]):
        """Replace the field list (only allowed before first use)."""
        new_fields = [make_field(spec) for spec in fields]
        with self._lock:
            if self._frozen:
                raise SchemaFrozenError(
                    f"Cannot redefine '{self.name}': schema is frozen after first use"
                )
            self._fields = new_fields

    def freeze(self):
        with self._lock:
            self._frozen = True

    def thaw(self):
        with self._lock:
            self._frozen = False

    def table_name(self, app_name: str) -> str:
        """Name of the table this point is stored under by the collector."""
        if self.add_prefix and app_name:
            return f"{app_name}_{self.name}"
        return self.name

    def describe(self, schema_index: int, app_name: str) -> str:
        """
        Schema description as announced on the wire.

        Example:
            "1 demo_sin label:string angle:int32 value:double"
        """
        parts = [str(schema_index), self.table_name(app_name)]
        parts.extend(f.describe() for f in self._fields)
        return " ".join(parts)

    def validate_and_serialize(self, values: Sequence[Any]) -> List[str]:
        """
        Check arity and encode every value according to its field type.

        Sequence number and timestamp are not added here.

        Raises:
            ArityMismatch: If len(values) differs from the number of fields
            FieldTypeError: If a value cannot be encoded
        """
        fields = self._fields
        if len(values) != len(fields):
            raise ArityMismatch(
                f"Size mismatch between the measurement ({len(values)}) "
                f"and the definition of '{self.name}' ({len(fields)})"
            )
        return [encode_value(f.type, value, f.name) for f, value in zip(fields, values)]


EXPERIMENT_METADATA_INDEX = 0

# Reserved schema 0, carries schema announcements and metadata rows
EXPERIMENT_METADATA = MeasurementPoint(
    "_experiment_metadata",
    ["subject:string", "key:string", "value:string"],
    add_prefix=False,
)
EXPERIMENT_METADATA.freeze()


class MeasurementPointRegistry:
    """
    Holds the measurement points known to one client.

    Points keep their identity for the registry's lifetime, so references
    held by application code stay valid across runs.
    """

    def __init__(self):
        self._points: Dict[str, MeasurementPoint] = {}
        self._lock = threading.Lock()

    def define(
        self,
        name: str,
        fields: Iterable[FieldSpec] = (),
        add_prefix: bool = True,
        domain: Optional[str] = None,
        channels: Optional[Sequence[str]] = None,
    ) -> MeasurementPoint:
        """
        Register (or redefine, before first use) a measurement point.

        Raises:
            SchemaFrozenError: If the point has already been used
            ConfigurationError: For invalid names, types, or the reserved name
        """
        if name == EXPERIMENT_METADATA.name:
            raise ConfigurationError(f"'{name}' is reserved for experiment metadata")

        candidate = MeasurementPoint(name, fields, add_prefix, domain, channels)

        with self._lock:
            existing = self._points.get(candidate.name)
            if existing is None:
                self._points[candidate.name] = candidate
                logger.debug(f"Defined measurement point {candidate!r}")
                return candidate

            if existing.frozen:
                raise SchemaFrozenError(
                    f"Cannot redefine '{name}': schema is frozen after first use"
                )

            existing.redefine(candidate.fields)
            existing.add_prefix = candidate.add_prefix
            existing.domain = candidate.domain
            existing.channels = candidate.channels
            return existing

    def get_or_define(
        self,
        name: str,
        fields: Iterable[FieldSpec] = (),
        add_prefix: bool = True,
        domain: Optional[str] = None,
        channels: Optional[Sequence[str]] = None,
    ) -> MeasurementPoint:
        """
        Return the point registered under name, defining it if absent.

        Used by helpers that own a fixed point and may be instantiated many
        times; an existing point is returned as is, frozen or not.
        """
        with self._lock:
            existing = self._points.get(name)
        if existing is not None:
            return existing
        return self.define(name, fields, add_prefix=add_prefix, domain=domain, channels=channels)

    def get(self, name: str) -> MeasurementPoint:
        """
        Look up a measurement point by name.

        Raises:
            ConfigurationError: If the name was never defined
        """
        if name == EXPERIMENT_METADATA.name:
            return EXPERIMENT_METADATA
        try:
            return self._points[name]
        except KeyError:
            raise ConfigurationError(f"Unknown measurement point '{name}'") from None

    def reset(self):
        """Thaw every point so the schemas can change before the next run."""
        with self._lock:
            for point in self._points.values():
                point.thaw()

    def __contains__(self, name: str) -> bool:
        return name in self._points

    def __iter__(self) -> Iterator[MeasurementPoint]:
        return iter(list(self._points.values()))

    def __len__(self) -> int:
        return len(self._points)
