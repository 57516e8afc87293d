"""Structure-preserving codec shared with the worker runtime.

The wire format is the one produced by ``devalue``: a JSON array whose first
entry is the root value and whose containers hold indexes into the same
array. Shared references and cycles survive a round trip, which matters
because task trees point back at their parent suite and file.

Negative indexes encode values JSON cannot express.
"""

import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

UNDEFINED = -1
HOLE = -2
NAN = -3
POSITIVE_INFINITY = -4
NEGATIVE_INFINITY = -5
NEGATIVE_ZERO = -6

MAX_SAFE_INTEGER = 2**53 - 1


class CodecError(ValueError):
    """Raised when a value cannot be encoded or a payload cannot be decoded."""


@dataclass(frozen=True)
class JsRegExp:
    """A JavaScript regular expression, kept verbatim."""

    source: str
    flags: str = ""


def _special_index(value: Any) -> int | None:
    if value is None or not isinstance(value, float):
        return None
    if math.isnan(value):
        return NAN
    if value == math.inf:
        return POSITIVE_INFINITY
    if value == -math.inf:
        return NEGATIVE_INFINITY
    if value == 0 and math.copysign(1.0, value) < 0:
        return NEGATIVE_ZERO
    return None


def _format_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    text = value.astimezone(UTC).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def stringify(value: Any) -> str:
    """Serialize ``value`` into the flattened wire format."""
    entries: list[str] = []
    indexes: dict[Any, int] = {}

    def dump(primitive: Any) -> str:
        return json.dumps(primitive, ensure_ascii=False, allow_nan=False)

    def flatten(thing: Any) -> int:
        special = _special_index(thing)
        if special is not None:
            return special

        if isinstance(thing, (dict, list, tuple, set, frozenset)):
            key: Any = ("ref", id(thing))
        else:
            key = ("val", type(thing), thing)

        if key in indexes:
            return indexes[key]

        index = len(entries)
        indexes[key] = index
        entries.append("")

        if thing is None or isinstance(thing, (str, bool, float)):
            entries[index] = dump(thing)
        elif isinstance(thing, int):
            if abs(thing) > MAX_SAFE_INTEGER:
                entries[index] = f'["BigInt",{dump(str(thing))}]'
            else:
                entries[index] = dump(thing)
        elif isinstance(thing, datetime):
            entries[index] = f'["Date",{dump(_format_date(thing))}]'
        elif isinstance(thing, JsRegExp):
            entries[index] = f'["RegExp",{dump(thing.source)},{dump(thing.flags)}]'
        elif isinstance(thing, (list, tuple)):
            entries[index] = "[" + ",".join(str(flatten(item)) for item in thing) + "]"
        elif isinstance(thing, (set, frozenset)):
            parts = "".join(f",{flatten(item)}" for item in thing)
            entries[index] = f'["Set"{parts}]'
        elif isinstance(thing, dict):
            members: list[str] = []
            for name, item in thing.items():
                if not isinstance(name, str):
                    raise CodecError(f"Object keys must be strings, got {name!r}")
                members.append(f"{dump(name)}:{flatten(item)}")
            entries[index] = "{" + ",".join(members) + "}"
        else:
            raise CodecError(f"Cannot serialize value of type {type(thing).__name__}")

        return index

    root = flatten(value)
    if root < 0:
        return str(root)
    return "[" + ",".join(entries) + "]"


def parse(serialized: str) -> Any:
    """Rebuild a value serialized by :func:`stringify` or the worker runtime."""
    try:
        values = json.loads(serialized)
    except json.JSONDecodeError as exc:
        raise CodecError(f"Invalid payload: {exc}") from exc

    if isinstance(values, int) and not isinstance(values, bool):
        return _hydrate_special(values)
    if not isinstance(values, list) or not values:
        raise CodecError("Invalid payload: expected a non-empty array")

    hydrated: dict[int, Any] = {}

    def hydrate(index: int) -> Any:
        if index < 0:
            return _hydrate_special(index)
        if index in hydrated:
            return hydrated[index]
        if index >= len(values):
            raise CodecError(f"Invalid payload: dangling index {index}")

        value = values[index]
        if isinstance(value, dict):
            obj: dict[str, Any] = {}
            hydrated[index] = obj
            for name, ref in value.items():
                obj[name] = hydrate(ref)
            return obj

        if not isinstance(value, list):
            hydrated[index] = value
            return value

        if value and isinstance(value[0], str):
            return _hydrate_tagged(index, value, hydrated, hydrate)

        array: list[Any] = []
        hydrated[index] = array
        for ref in value:
            array.append(None if ref == HOLE else hydrate(ref))
        return array

    return hydrate(0)


def _hydrate_special(index: int) -> Any:
    match index:
        case -1:
            return None
        case -3:
            return math.nan
        case -4:
            return math.inf
        case -5:
            return -math.inf
        case -6:
            return -0.0
    raise CodecError(f"Invalid payload: unexpected index {index}")


def _hydrate_tagged(
    index: int,
    value: list[Any],
    hydrated: dict[int, Any],
    hydrate: Callable[[int], Any],
) -> Any:
    tag = value[0]
    result: Any
    match tag:
        case "Date":
            text = value[1]
            result = datetime.fromisoformat(text) if text else None
            hydrated[index] = result
        case "RegExp":
            result = JsRegExp(value[1], value[2] if len(value) > 2 else "")
            hydrated[index] = result
        case "BigInt":
            result = int(value[1])
            hydrated[index] = result
        case "Object":
            result = value[1]
            hydrated[index] = result
        case "Set":
            items: list[Any] = []
            hydrated[index] = items
            items.extend(hydrate(ref) for ref in value[1:])
            try:
                result = set(items)
            except TypeError:
                result = items
            hydrated[index] = result
        case "Map" | "null":
            obj: dict[Any, Any] = {}
            hydrated[index] = obj
            pairs = value[1:]
            for pos in range(0, len(pairs), 2):
                name = hydrate(pairs[pos]) if tag == "Map" else pairs[pos]
                obj[name] = hydrate(pairs[pos + 1])
            result = obj
        case _:
            raise CodecError(f"Invalid payload: unknown type tag {tag!r}")
    return result
