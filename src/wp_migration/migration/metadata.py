"""Loosely-typed source metadata.

Legacy meta values arrive as strings that may hold PHP-serialized data.
They are decoded into a small tagged union (``Scalar | MetaList | MetaMap``)
by a strict reader that only understands plain data: null, bool, int,
float, string and array. Any payload that carries objects, custom
serialization, references or enums, or that fails strict parsing, is kept
verbatim as an opaque ``Scalar`` string and never materialized.
"""

import math
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Union

_SERIALIZED_HINT = re.compile(r"^(?:N;|[bidsaOCrRE]:)")
MAX_DEPTH = 64


@dataclass(frozen=True)
class Scalar:
    value: str | int | float | bool | None

    def to_python(self) -> Any:
        return self.value


@dataclass(frozen=True)
class MetaList:
    items: tuple["MetaValue", ...] = ()

    def to_python(self) -> list[Any]:
        return [item.to_python() for item in self.items]


@dataclass(frozen=True)
class MetaMap:
    entries: tuple[tuple[str | int, "MetaValue"], ...] = ()

    def get(self, key: str | int) -> "MetaValue | None":
        for entry_key, value in self.entries:
            if entry_key == key:
                return value
        return None

    def to_python(self) -> dict[str | int, Any]:
        return {key: value.to_python() for key, value in self.entries}


MetaValue = Union[Scalar, MetaList, MetaMap]


class _Refused(Exception):
    """Payload contains a type that must not be materialized."""


class _Malformed(Exception):
    """Payload is not valid serialized data."""


class _Reader:
    """Strict reader for PHP's serialize() format over raw bytes."""

    def __init__(self, data: bytes, max_depth: int = MAX_DEPTH):
        self.data = data
        self.pos = 0
        self.depth = 0
        self.max_depth = max_depth

    def _expect(self, token: bytes) -> None:
        end = self.pos + len(token)
        if self.data[self.pos : end] != token:
            raise _Malformed(f"expected {token!r} at {self.pos}")
        self.pos = end

    def _read_until(self, terminator: bytes) -> bytes:
        end = self.data.find(terminator, self.pos)
        if end == -1:
            raise _Malformed(f"missing {terminator!r}")
        chunk = self.data[self.pos : end]
        self.pos = end + len(terminator)
        return chunk

    def _read_int(self, terminator: bytes) -> int:
        raw = self._read_until(terminator)
        if not re.fullmatch(rb"[+-]?\d+", raw):
            raise _Malformed(f"bad integer {raw!r}")
        return int(raw)

    def read_value(self) -> MetaValue:
        if self.pos >= len(self.data):
            raise _Malformed("unexpected end of data")

        tag = self.data[self.pos : self.pos + 1]

        if tag in (b"O", b"C", b"r", b"R", b"E"):
            raise _Refused(tag.decode())

        if tag == b"N":
            self._expect(b"N;")
            return Scalar(None)

        self._expect(tag + b":")

        if tag == b"b":
            raw = self._read_until(b";")
            if raw not in (b"0", b"1"):
                raise _Malformed(f"bad bool {raw!r}")
            return Scalar(raw == b"1")

        if tag == b"i":
            return Scalar(self._read_int(b";"))

        if tag == b"d":
            raw = self._read_until(b";").decode("ascii", errors="strict")
            special = {"INF": math.inf, "-INF": -math.inf, "NAN": math.nan}
            if raw in special:
                return Scalar(special[raw])
            try:
                return Scalar(float(raw))
            except ValueError as e:
                raise _Malformed(f"bad float {raw!r}") from e

        if tag == b"s":
            return Scalar(self._read_string())

        if tag == b"a":
            return self._read_array()

        raise _Malformed(f"unknown tag {tag!r}")

    def _read_string(self) -> str:
        length = self._read_int(b":")
        if length < 0:
            raise _Malformed("negative string length")
        self._expect(b'"')
        raw = self.data[self.pos : self.pos + length]
        if len(raw) != length:
            raise _Malformed("string shorter than declared")
        self.pos += length
        self._expect(b'";')
        return raw.decode("utf-8", errors="replace")

    def _read_array(self) -> MetaValue:
        count = self._read_int(b":")
        if count < 0:
            raise _Malformed("negative array size")
        self._expect(b"{")
        self.depth += 1
        if self.depth > self.max_depth:
            raise _Malformed("arrays nested too deeply")

        entries: list[tuple[str | int, MetaValue]] = []
        for _ in range(count):
            key = self.read_value()
            if not isinstance(key, Scalar) or not isinstance(key.value, (int, str)) or isinstance(
                key.value, bool
            ):
                raise _Malformed("array keys must be int or string")
            entries.append((key.value, self.read_value()))
        self.depth -= 1

        self._expect(b"}")

        if all(key == index for index, (key, _) in enumerate(entries)):
            return MetaList(tuple(value for _, value in entries))
        return MetaMap(tuple(entries))


def looks_serialized(raw: str) -> bool:
    """Cheap check for PHP-serialized data (same shape test as WordPress)."""
    data = raw.strip()
    if len(data) < 2:
        return False
    if data == "N;":
        return True
    if not _SERIALIZED_HINT.match(data):
        return False
    return data.endswith(";") or data.endswith("}")


def decode_meta_value(raw: str | bytes | int | float | None) -> MetaValue:
    """Decode one raw meta value into the tagged union.

    Plain strings stay strings. Serialized plain data is decoded. Anything
    that refers to objects or fails strict parsing is returned as an opaque
    ``Scalar`` holding the raw text.
    """
    if raw is None:
        return Scalar(None)
    if isinstance(raw, (int, float)):
        return Scalar(raw)

    text_value = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw

    if not looks_serialized(text_value):
        return Scalar(text_value)

    reader = _Reader(text_value.strip().encode("utf-8"))
    try:
        value = reader.read_value()
    except (_Refused, _Malformed):
        return Scalar(text_value)

    if reader.pos != len(reader.data):
        return Scalar(text_value)
    return value


def merge_meta_rows(rows: Iterable[tuple[str, Any]]) -> dict[str, MetaValue]:
    """Group ``(key, raw_value)`` rows; a key seen more than once becomes a MetaList.

    Insertion order of first occurrence is preserved.
    """
    grouped: dict[str, list[MetaValue]] = {}
    for key, raw in rows:
        grouped.setdefault(key, []).append(decode_meta_value(raw))

    return {
        key: values[0] if len(values) == 1 else MetaList(tuple(values))
        for key, values in grouped.items()
    }


def first_scalar(value: MetaValue | None) -> Scalar | None:
    """The value itself when scalar, else the first scalar of a list."""
    if isinstance(value, Scalar):
        return value
    if isinstance(value, MetaList):
        for item in value.items:
            if isinstance(item, Scalar):
                return item
    return None


def as_int(value: MetaValue | None) -> int | None:
    """Positive integer held by ``value`` (directly or as first list item), else None."""
    scalar = first_scalar(value)
    if scalar is None or isinstance(scalar.value, bool):
        return None
    if isinstance(scalar.value, int):
        return scalar.value if scalar.value > 0 else None
    if isinstance(scalar.value, str) and scalar.value.strip().isdigit():
        number = int(scalar.value.strip())
        return number if number > 0 else None
    return None


def iter_strings(value: MetaValue) -> Iterator[str]:
    """Yield every string scalar nested in ``value``."""
    if isinstance(value, Scalar):
        if isinstance(value.value, str):
            yield value.value
    elif isinstance(value, MetaList):
        for item in value.items:
            yield from iter_strings(item)
    elif isinstance(value, MetaMap):
        for _, item in value.entries:
            yield from iter_strings(item)


def meta_to_python(meta: dict[str, MetaValue]) -> dict[str, Any]:
    """Plain-Python (JSON-friendly) view of a metadata bag."""
    return {key: value.to_python() for key, value in meta.items()}
