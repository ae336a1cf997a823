"""
Frame codec for the PostgreSQL v3 wire protocol.

Every message after the startup packet is framed as:
[1 byte: type] [4 bytes: length (includes itself)] [N bytes: payload]

Payloads are built from typed fields so each message builder states its layout
explicitly. All integers are big-endian (network byte order).
Reference: https://www.postgresql.org/docs/current/protocol-message-formats.html
"""

import asyncio
import struct
from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import EncodingError, ProtocolViolation, ShortReadError

logger = structlog.get_logger()

LENGTH_SIZE = 4


@dataclass(frozen=True)
class Byte1:
    """Single byte, given as an int or a one-byte bytes object"""
    value: object

    def encode(self) -> bytes:
        if isinstance(self.value, (bytes, bytearray)):
            if len(self.value) != 1:
                raise EncodingError(f"Byte1 field needs exactly one byte, got {len(self.value)}")
            return bytes(self.value)
        return _pack('!B', self.value)


@dataclass(frozen=True)
class Int16:
    value: int

    def encode(self) -> bytes:
        return _pack('!h', self.value)


@dataclass(frozen=True)
class Int32:
    value: int

    def encode(self) -> bytes:
        return _pack('!i', self.value)


@dataclass(frozen=True)
class CString:
    """UTF-8 string followed by a NUL terminator"""
    value: str

    def encode(self) -> bytes:
        data = self.value.encode('utf-8')
        if b'\x00' in data:
            raise EncodingError("String field may not contain NUL bytes")
        return data + b'\x00'


@dataclass(frozen=True)
class Raw:
    """Bytes copied verbatim; no length prefix or terminator is added"""
    value: bytes

    def encode(self) -> bytes:
        return bytes(self.value)


def _pack(fmt: str, value) -> bytes:
    try:
        return struct.pack(fmt, value)
    except struct.error as e:
        raise EncodingError(f"Cannot pack {value!r} as {fmt}: {e}") from e


def encode_payload(*fields) -> bytes:
    """Concatenate the encodings of ``fields`` in order"""
    return b''.join(field.encode() for field in fields)


def encode_message(tag: bytes, *fields) -> bytes:
    """
    Build a complete server message.

    Args:
        tag: Message type (single byte, e.g. b'Z')
        fields: Typed payload fields, encoded in order

    Returns:
        tag + int32(len(payload) + 4) + payload
    """
    if len(tag) != 1:
        raise EncodingError(f"Message tag must be one byte, got {tag!r}")
    payload = encode_payload(*fields)
    return tag + struct.pack('!i', len(payload) + LENGTH_SIZE) + payload


async def send(writer: asyncio.StreamWriter, data: bytes) -> int:
    """Write already-encoded bytes and drain. Returns the number of bytes written."""
    writer.write(data)
    await writer.drain()
    logger.debug("Bytes written", head=data[:1], length=len(data))
    return len(data)


async def write_message(writer: asyncio.StreamWriter, tag: bytes, *fields) -> int:
    """Encode one message, write it and drain. Returns the number of bytes written."""
    return await send(writer, encode_message(tag, *fields))


async def read_exactly(reader: asyncio.StreamReader, n: int) -> bytes:
    """Read exactly ``n`` bytes or raise ShortReadError"""
    if n < 0:
        raise ProtocolViolation(f"Negative read length: {n}")
    if n == 0:
        return b''
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise ShortReadError(len(e.partial), n) from e


async def read_int32(reader: asyncio.StreamReader) -> int:
    """Read a signed 4-byte big-endian integer"""
    data = await read_exactly(reader, 4)
    return struct.unpack('!i', data)[0]


async def read_byte(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Read one message tag byte. Returns None when the stream ends cleanly."""
    data = await reader.read(1)
    if not data:
        return None
    return data


async def read_frame_body(reader: asyncio.StreamReader) -> bytes:
    """Read a length field followed by exactly ``length - 4`` payload bytes"""
    length = await read_int32(reader)
    if length < LENGTH_SIZE:
        raise ProtocolViolation(f"Invalid message length: {length}")
    return await read_exactly(reader, length - LENGTH_SIZE)
