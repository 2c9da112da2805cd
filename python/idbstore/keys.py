# -*- encoding: utf-8 -*-
"""
idbstore.keys - key validation, key ranges and the ordered key codec.

Valid keys follow IndexedDB:
- numbers: float (not NaN) and int within +-2**53, the range a float holds
  exactly (bool is rejected)
- datetime.datetime (naive values are taken as UTC)
- str
- binary (bytes, bytearray, memoryview)
- arrays (list/tuple) of valid keys

Cross-type order is number < date < string < binary < array.

encode_key() maps a key to bytes whose memcmp order equals key order, so a
store can sort keys with a plain BLOB index. Strings are compared by UTF-8
bytes, which is code-point order; lone surrogates are encoded with
surrogatepass so every Python str is a valid key.

Keys coming back out of a store are normalized: integral numbers become int,
other numbers float, binary becomes bytes, dates become aware UTC datetimes
and arrays become tuples (hashable, so they can key a dict).
"""

from __future__ import annotations

import datetime
import math
import struct
from dataclasses import dataclass
from typing import Any, Optional

from .errors import DataError

_TAG_NUMBER = 0x10
_TAG_DATE = 0x20
_TAG_STRING = 0x30
_TAG_BINARY = 0x40
_TAG_ARRAY = 0x50
_END = 0x00
_ESCAPE = 0xFF

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
_MAX_SAFE_INT = 2**53


def _type_rank(key: Any) -> int:
    if isinstance(key, datetime.datetime):
        return _TAG_DATE
    if isinstance(key, (int, float)):
        return _TAG_NUMBER
    if isinstance(key, str):
        return _TAG_STRING
    if isinstance(key, bytes):
        return _TAG_BINARY
    return _TAG_ARRAY


def normalize_key(key: Any) -> Any:
    """
    Validate key and return its canonical Python form.

    Raises:
        DataError: if key is not a valid key
    """
    if isinstance(key, bool) or key is None:
        raise DataError(f"Invalid key: {key!r}")
    if isinstance(key, datetime.datetime):
        if key.tzinfo is None:
            key = key.replace(tzinfo=datetime.timezone.utc)
        return key.astimezone(datetime.timezone.utc)
    if isinstance(key, int):
        if abs(key) > _MAX_SAFE_INT:
            raise DataError(f"Invalid key: {key} is outside the exact float range")
        return key
    if isinstance(key, float):
        if math.isnan(key):
            raise DataError("Invalid key: NaN")
        if key.is_integer() and abs(key) <= _MAX_SAFE_INT:
            return int(key)
        return key
    if isinstance(key, str):
        return key
    if isinstance(key, (bytes, bytearray, memoryview)):
        return bytes(key)
    if isinstance(key, (list, tuple)):
        return tuple(normalize_key(item) for item in key)
    raise DataError(f"Invalid key type: {type(key).__name__}")


def compare_keys(a: Any, b: Any) -> int:
    """Return -1, 0 or 1 comparing two keys in IndexedDB order."""
    ea = encode_key(a)
    eb = encode_key(b)
    return (ea > eb) - (ea < eb)


# =============================================================================
# CODEC
# =============================================================================


def _encode_float(value: float) -> bytes:
    if value == 0:
        value = 0.0  # fold -0.0
    raw = bytearray(struct.pack(">d", float(value)))
    if raw[0] & 0x80:
        return bytes(b ^ 0xFF for b in raw)
    raw[0] ^= 0x80
    return bytes(raw)


def _decode_float(raw: bytes) -> float:
    data = bytearray(raw)
    if data[0] & 0x80:
        data[0] ^= 0x80
    else:
        data = bytearray(b ^ 0xFF for b in data)
    return struct.unpack(">d", bytes(data))[0]


def _escape(data: bytes) -> bytes:
    return data.replace(b"\x00", b"\x00\xff") + b"\x00\x00"


def _encode_into(key: Any, out: bytearray) -> None:
    rank = _type_rank(key)
    out.append(rank)
    if rank == _TAG_NUMBER:
        out += _encode_float(key)
    elif rank == _TAG_DATE:
        millis = (key - _EPOCH) / datetime.timedelta(milliseconds=1)
        out += _encode_float(millis)
    elif rank == _TAG_STRING:
        out += _escape(key.encode("utf-8", "surrogatepass"))
    elif rank == _TAG_BINARY:
        out += _escape(key)
    else:
        for item in key:
            _encode_into(item, out)
        out.append(_END)


def encode_key(key: Any) -> bytes:
    """
    Encode a key to order-preserving bytes.

    Raises:
        DataError: if key is not a valid key
    """
    out = bytearray()
    _encode_into(normalize_key(key), out)
    return bytes(out)


def _unescape(data: bytes, pos: int) -> tuple[bytes, int]:
    out = bytearray()
    while True:
        byte = data[pos]
        if byte != 0x00:
            out.append(byte)
            pos += 1
            continue
        marker = data[pos + 1]
        pos += 2
        if marker == _ESCAPE:
            out.append(0x00)
        else:
            return bytes(out), pos


def _decode_number(value: float) -> Any:
    if value.is_integer() and abs(value) <= _MAX_SAFE_INT:
        return int(value)
    return value


def _decode_from(data: bytes, pos: int) -> tuple[Any, int]:
    tag = data[pos]
    pos += 1
    if tag == _TAG_NUMBER:
        return _decode_number(_decode_float(data[pos : pos + 8])), pos + 8
    if tag == _TAG_DATE:
        millis = _decode_float(data[pos : pos + 8])
        return _EPOCH + datetime.timedelta(milliseconds=millis), pos + 8
    if tag == _TAG_STRING:
        raw, pos = _unescape(data, pos)
        return raw.decode("utf-8", "surrogatepass"), pos
    if tag == _TAG_BINARY:
        return _unescape(data, pos)
    if tag == _TAG_ARRAY:
        items = []
        while data[pos] != _END:
            item, pos = _decode_from(data, pos)
            items.append(item)
        return tuple(items), pos + 1
    raise DataError(f"Corrupt key encoding: unknown tag 0x{tag:02x}")


def decode_key(data: bytes) -> Any:
    """Decode bytes produced by encode_key()."""
    key, pos = _decode_from(bytes(data), 0)
    if pos != len(data):
        raise DataError("Corrupt key encoding: trailing bytes")
    return key


# =============================================================================
# KEY RANGES
# =============================================================================


@dataclass(frozen=True)
class KeyRange:
    """
    Interval of keys, equivalent to IDBKeyRange.

    A None bound is unbounded on that side.
    """

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False

    def __post_init__(self):
        if self.lower is None and self.upper is None:
            raise DataError("Key range needs at least one bound")
        if self.lower is not None:
            object.__setattr__(self, "lower", normalize_key(self.lower))
        if self.upper is not None:
            object.__setattr__(self, "upper", normalize_key(self.upper))
        if self.lower is not None and self.upper is not None:
            order = compare_keys(self.lower, self.upper)
            if order > 0 or (order == 0 and (self.lower_open or self.upper_open)):
                raise DataError(
                    f"Empty key range: {self.lower!r} .. {self.upper!r}"
                )

    @classmethod
    def only(cls, key: Any) -> "KeyRange":
        return cls(key, key)

    @classmethod
    def bound(
        cls, lower: Any, upper: Any, lower_open: bool = False, upper_open: bool = False
    ) -> "KeyRange":
        return cls(lower, upper, lower_open, upper_open)

    @classmethod
    def lower_bound(cls, lower: Any, open: bool = False) -> "KeyRange":
        return cls(lower=lower, lower_open=open)

    @classmethod
    def upper_bound(cls, upper: Any, open: bool = False) -> "KeyRange":
        return cls(upper=upper, upper_open=open)

    @property
    def is_single(self) -> bool:
        """True for ranges built by only()."""
        return (
            self.lower is not None
            and self.upper is not None
            and not self.lower_open
            and not self.upper_open
            and compare_keys(self.lower, self.upper) == 0
        )

    def encoded_bounds(self) -> tuple[Optional[bytes], Optional[bytes]]:
        lower = encode_key(self.lower) if self.lower is not None else None
        upper = encode_key(self.upper) if self.upper is not None else None
        return lower, upper

    def includes(self, key: Any) -> bool:
        """True if key falls inside the range."""
        encoded = encode_key(key)
        lower, upper = self.encoded_bounds()
        if lower is not None:
            if encoded < lower or (self.lower_open and encoded == lower):
                return False
        if upper is not None:
            if encoded > upper or (self.upper_open and encoded == upper):
                return False
        return True
