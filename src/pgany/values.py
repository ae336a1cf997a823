"""
Value encoder for DataRow fields.

Each value in a DataRow is preceded by its own 4-byte length. Integers are sent
as raw big-endian binary of their width. Text is sent as UTF-8 followed by a NUL
terminator, and the terminator is counted in the declared length.
"""

import struct
from dataclasses import dataclass
from typing import Union

from .errors import EncodingError

NULL_LENGTH = -1

INT16_RANGE = (-2**15, 2**15 - 1)
INT32_RANGE = (-2**31, 2**31 - 1)
INT64_RANGE = (-2**63, 2**63 - 1)

_INT_FORMATS = {2: '!h', 4: '!i', 8: '!q'}


@dataclass(frozen=True)
class IntValue:
    value: int
    width: int = 4

    def __post_init__(self):
        if self.width not in _INT_FORMATS:
            raise EncodingError(f"Unsupported integer width: {self.width}")


@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class FloatValue:
    value: float


@dataclass(frozen=True)
class NullValue:
    pass


Value = Union[IntValue, TextValue, BoolValue, FloatValue, NullValue]

NULL = NullValue()


def to_value(obj) -> Value:
    """Classify a native Python scalar into a wire value"""
    if isinstance(obj, (IntValue, TextValue, BoolValue, FloatValue, NullValue)):
        return obj
    if obj is None:
        return NULL
    # bool is an int subclass, check it first
    if isinstance(obj, bool):
        return BoolValue(obj)
    if isinstance(obj, int):
        if INT32_RANGE[0] <= obj <= INT32_RANGE[1]:
            return IntValue(obj, 4)
        if INT64_RANGE[0] <= obj <= INT64_RANGE[1]:
            return IntValue(obj, 8)
        raise EncodingError(f"Integer out of range for int64: {obj}")
    if isinstance(obj, str):
        return TextValue(obj)
    if isinstance(obj, float):
        return FloatValue(obj)
    raise EncodingError(f"Unsupported value type: {type(obj).__name__}")


def value_bytes(value: Value) -> bytes:
    """Wire bytes of a value without its length prefix"""
    if isinstance(value, TextValue):
        return value.value.encode('utf-8') + b'\x00'
    if isinstance(value, IntValue):
        try:
            return struct.pack(_INT_FORMATS[value.width], value.value)
        except struct.error as e:
            raise EncodingError(f"{value.value} does not fit in {value.width} bytes") from e
    if isinstance(value, BoolValue):
        return b'\x01' if value.value else b'\x00'
    if isinstance(value, FloatValue):
        return struct.pack('!d', value.value)
    if isinstance(value, NullValue):
        return b''
    raise EncodingError(f"Not a wire value: {value!r}")


def encode_value(value) -> bytes:
    """
    Encode one DataRow field: 4-byte length followed by the value bytes.

    NULL is encoded as length -1 with no bytes.
    """
    value = to_value(value)
    if isinstance(value, NullValue):
        return struct.pack('!i', NULL_LENGTH)
    data = value_bytes(value)
    return struct.pack('!i', len(data)) + data
