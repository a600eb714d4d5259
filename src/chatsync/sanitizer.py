"""Payload normalization into storage-safe primitives.

Incoming protocol payloads are loosely typed: values may be callables or
sentinel markers left over from the client library, dates, boxed 64-bit
integers (``{"low": .., "high": .., "unsigned": ..}``), or byte arrays that
were serialized as objects (``{"type": "Buffer", "data": [...]}`` or
``{"0": 65, "1": 66}``).  :func:`sanitize` reduces such a payload to the
fixed column shape of an entity kind:

- non-data values are removed at any depth (the key disappears, no placeholder)
- byte arrays become ``bytes`` in BYTEA columns and base64 text inside JSON
- boxed integers become ``int``; timestamp columns are coerced to ``int``
- fields outside the entity's allowlist are removed and reported

The sanitizer never raises: a value that cannot be converted is dropped (or
zeroed for timestamps) and the rest of the record survives.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import enum
import json
import logging
import math
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from chatsync.models import ColumnType, EntityKind, TableSpec, table_for

logger = logging.getLogger(__name__)

_LONG_KEYS = frozenset({"low", "high", "unsigned"})
_UINT32 = 0xFFFFFFFF
_INT64_SIGN = 1 << 63
_INT64_BOUND = 1 << 63
_INT32_BOUND = 1 << 31


class _Drop:
    """Marker returned by the converters for values that must be removed."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "<drop>"


_DROP = _Drop()


@dataclass(frozen=True)
class SanitizedRecord:
    """Result of :func:`sanitize`.

    ``values`` holds only allowlisted fields in storage-ready form.
    ``dropped_fields`` names the unknown fields that were filtered out, and
    ``invalid_fields`` the known fields whose value had to be discarded.
    ``clean`` is False when a JSON field still failed to serialize.
    """

    kind: EntityKind
    values: dict[str, Any]
    dropped_fields: tuple[str, ...] = ()
    invalid_fields: tuple[str, ...] = ()
    clean: bool = True

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)


# ---------------------------------------------------------------------------
# Low-level decoders
# ---------------------------------------------------------------------------


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_non_data(value: Any) -> bool:
    """True for values that carry no data: callables, classes, bare markers."""
    if value is Ellipsis or value is NotImplemented:
        return True
    if type(value) is object or isinstance(value, _Drop):
        return True
    if isinstance(value, type):
        return True
    if isinstance(value, BaseModel) or (
        dataclasses.is_dataclass(value) and not isinstance(value, type)
    ):
        return False
    return callable(value)


def decode_long(value: Any) -> int | None:
    """Decode a boxed 64-bit integer ``{"low", "high", "unsigned"}``.

    Returns None when *value* is not such a box.
    """
    if not isinstance(value, Mapping) or not _LONG_KEYS.issuperset(value.keys()):
        return None
    low = value.get("low")
    high = value.get("high")
    if not (_is_int(low) and _is_int(high)):
        return None
    combined = ((high & _UINT32) << 32) | (low & _UINT32)
    if not value.get("unsigned") and combined & _INT64_SIGN:
        combined -= 1 << 64
    return combined


def _byte_list(values: Any) -> bytes | None:
    if not isinstance(values, list | tuple):
        return None
    if not all(_is_int(b) and 0 <= b <= 255 for b in values):
        return None
    return bytes(values)


def _numeric_keyed_bytes(value: Mapping) -> bytes | None:
    if not value:
        return None
    indexed: dict[int, Any] = {}
    for key, item in value.items():
        if _is_int(key):
            index = key
        elif isinstance(key, str) and key.isdigit():
            index = int(key)
        else:
            return None
        indexed[index] = item
    if set(indexed) != set(range(len(indexed))):
        return None
    return _byte_list([indexed[i] for i in range(len(indexed))])


def decode_byte_object(value: Any) -> bytes | None:
    """Decode a byte array that was serialized as an object.

    Accepts ``{"type": "Buffer", "data": [...]}`` (data may also be a
    numeric-keyed object or base64 text) and bare numeric-keyed objects
    ``{0: 0x41, 1: 0x42}``.  Returns None when *value* is neither.
    """
    if not isinstance(value, Mapping):
        return None
    if value.get("type") == "Buffer" and "data" in value:
        data = value["data"]
        if isinstance(data, str):
            try:
                return base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError):
                return None
        if isinstance(data, Mapping):
            return _numeric_keyed_bytes(data)
        return _byte_list(data)
    return _numeric_keyed_bytes(value)


def to_bytes(value: Any) -> bytes | None:
    """Coerce any supported binary encoding to ``bytes``, else None."""
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return None
    if isinstance(value, list | tuple):
        return _byte_list(value)
    return decode_byte_object(value)


def coerce_timestamp(value: Any) -> int:
    """Coerce a timestamp-like value to ``int``; anything unusable becomes 0.

    Values outside the signed 64-bit range of a BIGINT column are unusable.
    """
    coerced = _timestamp(value)
    return int(coerced) if -_INT64_BOUND <= coerced < _INT64_BOUND else 0


def _timestamp(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if _is_int(value):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, Decimal):
        return int(value) if value.is_finite() else 0
    if isinstance(value, datetime):
        return int(value.timestamp())
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return 0
        return int(parsed) if math.isfinite(parsed) else 0
    decoded = decode_long(value)
    return decoded if decoded is not None else 0


# ---------------------------------------------------------------------------
# JSON normalization
# ---------------------------------------------------------------------------


def _structured(value: Any) -> Any:
    """Reduce models and dataclasses to plain mappings; other values pass through."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    return value


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, bool | str):
        return value
    if _is_int(value):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, enum.Enum):
        return _json_value(value.value)
    if isinstance(value, Decimal):
        return _json_value(float(value)) if value.is_finite() else _DROP
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes | bytearray | memoryview):
        return base64.b64encode(bytes(value)).decode("ascii")
    if is_non_data(value):
        return _DROP

    value = _structured(value)
    if isinstance(value, Mapping):
        long_value = decode_long(value)
        if long_value is not None:
            return long_value
        raw = decode_byte_object(value)
        if raw is not None:
            return base64.b64encode(raw).decode("ascii")
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            converted = _json_value(item)
            if converted is _DROP:
                continue
            cleaned[str(key)] = converted
        return cleaned
    if isinstance(value, list | tuple | set | frozenset):
        items = (_json_value(item) for item in value)
        return [item for item in items if item is not _DROP]
    return _DROP


def to_json_safe(value: Any) -> Any:
    """Return a structure that ``json.dumps`` accepts, or None if nothing survives.

    Non-data values are removed at any depth, bytes become base64 text, dates
    become ISO-8601 strings and boxed integers become ``int``.  Every other
    primitive is preserved unchanged.
    """
    converted = _json_value(value)
    return None if converted is _DROP else converted


def round_trips(value: Any) -> bool:
    """True when *value* serializes to strict JSON and back unchanged."""
    try:
        return json.loads(json.dumps(value, allow_nan=False)) == value
    except (TypeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Column conversion
# ---------------------------------------------------------------------------


def _to_text(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return _DROP
    if _is_int(value) or isinstance(value, float | Decimal | uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return _to_text(value.value)
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    long_value = decode_long(value)
    if long_value is not None:
        return str(long_value)
    return _DROP


def _to_integer(value: Any) -> Any:
    converted = _integer(value)
    if converted is _DROP or not -_INT32_BOUND <= converted < _INT32_BOUND:
        return _DROP
    return converted


def _integer(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if _is_int(value):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return _DROP
    if isinstance(value, enum.Enum):
        return _integer(value.value)
    long_value = decode_long(value)
    return long_value if long_value is not None else _DROP


def _to_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if _is_int(value):
        return value != 0
    return _DROP


def _convert(column_type: ColumnType, value: Any) -> Any:
    if column_type is ColumnType.BIGINT:
        return coerce_timestamp(value)
    if column_type is ColumnType.INTEGER:
        return _to_integer(value)
    if column_type is ColumnType.BOOLEAN:
        return _to_boolean(value)
    if column_type is ColumnType.TEXT:
        return _to_text(value)
    if column_type is ColumnType.BYTEA:
        raw = to_bytes(value)
        return raw if raw is not None else _DROP
    converted = _json_value(value)
    return converted


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    raw = _structured(raw)
    if isinstance(raw, Mapping):
        return raw
    return {}


def sanitize(raw: Any, kind: EntityKind | str | TableSpec) -> SanitizedRecord:
    """Normalize *raw* into the column shape of entity *kind*.

    ``None`` values are treated as absent and removed, so a sanitized patch
    only touches the fields it actually carries.
    """
    spec = kind if isinstance(kind, TableSpec) else table_for(kind)
    source = _as_mapping(raw)

    values: dict[str, Any] = {}
    dropped: list[str] = []
    invalid: list[str] = []
    clean = True

    for key, value in source.items():
        name = str(key)
        column = spec.column_for(name)
        if column is None:
            dropped.append(name)
            continue
        if value is None or is_non_data(value):
            continue
        try:
            converted = _convert(column.type, value)
        except (TypeError, ValueError, OverflowError, RecursionError) as exc:
            logger.warning(
                "Dropping %s.%s: value could not be converted (%s)",
                spec.kind.value,
                name,
                exc,
            )
            invalid.append(name)
            continue
        if converted is _DROP or converted is None:
            invalid.append(name)
            continue
        if column.type is ColumnType.JSONB and not round_trips(converted):
            clean = False
            logger.error(
                "Field %s.%s still fails JSON round-trip after sanitizing",
                spec.kind.value,
                name,
                extra={"entity": spec.kind.value, "field": name},
            )
        values[name] = converted

    if invalid:
        logger.debug(
            "Discarded unconvertible %s fields: %s", spec.kind.value, ", ".join(invalid)
        )

    return SanitizedRecord(
        kind=spec.kind,
        values=values,
        dropped_fields=tuple(dropped),
        invalid_fields=tuple(invalid),
        clean=clean,
    )
