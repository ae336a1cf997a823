"""
Pytest configuration for pgany tests

Unit tests drive PGWireProtocol through an in-memory asyncio.StreamReader and a
recording writer. E2E tests start a real PGWireServer on a loopback port and talk
to it with the raw protocol client below.

The client-side decoders here follow the PostgreSQL message formats directly, so
they double as an independent check of what the server encodes.
"""

import asyncio
import struct
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
import structlog

logger = structlog.get_logger()

PROTOCOL_VERSION = 196608
SSL_REQUEST_CODE = 80877103


# ========== Client -> server frames ==========

def startup_packet(params: Optional[Dict[str, str]] = None, version: int = PROTOCOL_VERSION) -> bytes:
    """StartupMessage: length, version, key\\0value\\0 ... \\0"""
    body = struct.pack('!I', version)
    for key, value in (params or {}).items():
        body += key.encode('utf-8') + b'\x00' + value.encode('utf-8') + b'\x00'
    body += b'\x00'
    return struct.pack('!I', len(body) + 4) + body


def ssl_request() -> bytes:
    return struct.pack('!II', 8, SSL_REQUEST_CODE)


def query_message(sql: str, terminator: bool = True) -> bytes:
    body = sql.encode('utf-8') + (b'\x00' if terminator else b'')
    return b'Q' + struct.pack('!I', len(body) + 4) + body


def terminate_message() -> bytes:
    return b'X' + struct.pack('!I', 4)


# ========== Server -> client decoding ==========

def split_messages(data: bytes) -> List[Tuple[bytes, bytes]]:
    """Split a server byte stream into (tag, payload) pairs, checking every length"""
    messages = []
    offset = 0
    while offset < len(data):
        tag = data[offset:offset + 1]
        length = struct.unpack('!i', data[offset + 1:offset + 5])[0]
        assert length >= 4, f"bad length {length} for {tag!r}"
        end = offset + 1 + length
        assert end <= len(data), f"truncated {tag!r}: declared {length}, have {len(data) - offset - 1}"
        messages.append((tag, data[offset + 5:end]))
        offset = end
    return messages


def parse_row_description(payload: bytes) -> List[Dict]:
    count = struct.unpack('!h', payload[:2])[0]
    offset = 2
    fields = []
    for _ in range(count):
        end = payload.index(b'\x00', offset)
        name = payload[offset:end].decode('utf-8')
        offset = end + 1
        table_oid, attr, type_oid, type_size, type_mod, fmt = struct.unpack(
            '!ihihih', payload[offset:offset + 18])
        offset += 18
        fields.append({
            'name': name,
            'table_oid': table_oid,
            'attr_number': attr,
            'type_oid': type_oid,
            'type_size': type_size,
            'type_modifier': type_mod,
            'format_code': fmt,
        })
    assert offset == len(payload)
    return fields


def parse_data_row(payload: bytes) -> List[Optional[bytes]]:
    count = struct.unpack('!h', payload[:2])[0]
    offset = 2
    values = []
    for _ in range(count):
        length = struct.unpack('!i', payload[offset:offset + 4])[0]
        offset += 4
        if length == -1:
            values.append(None)
            continue
        values.append(payload[offset:offset + length])
        offset += length
    assert offset == len(payload)
    return values


def parse_error_response(payload: bytes) -> Dict[str, str]:
    fields = {}
    offset = 0
    while payload[offset:offset + 1] != b'\x00':
        code = payload[offset:offset + 1].decode('ascii')
        end = payload.index(b'\x00', offset + 1)
        fields[code] = payload[offset + 1:end].decode('utf-8')
        offset = end + 1
    assert offset == len(payload) - 1
    return fields


def decode_value(raw: Optional[bytes]):
    """Decode a DataRow value the way the server encodes it"""
    if raw is None:
        return None
    if raw.endswith(b'\x00'):
        return raw[:-1].decode('utf-8')
    if len(raw) == 4:
        return struct.unpack('!i', raw)[0]
    if len(raw) == 8:
        return struct.unpack('!q', raw)[0]
    if len(raw) == 2:
        return struct.unpack('!h', raw)[0]
    return raw


def decode_result(messages: List[Tuple[bytes, bytes]]) -> Dict:
    """Collect RowDescription / DataRow / CommandComplete into a result dict"""
    columns: List[str] = []
    rows = []
    tag = None
    for msg_type, payload in messages:
        if msg_type == b'T':
            columns = [field['name'] for field in parse_row_description(payload)]
        elif msg_type == b'D':
            values = [decode_value(raw) for raw in parse_data_row(payload)]
            rows.append(dict(zip(columns, values)))
        elif msg_type == b'C':
            tag = payload.rstrip(b'\x00').decode('utf-8')
    return {'columns': columns, 'rows': rows, 'tag': tag}


# ========== In-memory transport ==========

class RecordingWriter:
    """Stands in for asyncio.StreamWriter and records every byte written"""

    def __init__(self, fail_after: Optional[int] = None):
        self.buffer = bytearray()
        self.writes = 0
        self.fail_after = fail_after
        self.closed = False

    def write(self, data: bytes):
        if self.fail_after is not None and self.writes >= self.fail_after:
            raise ConnectionResetError("Connection reset by peer")
        self.writes += 1
        self.buffer.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def is_closing(self):
        return self.closed

    def get_extra_info(self, name, default=None):
        if name == 'peername':
            return ('127.0.0.1', 54321)
        return default

    @property
    def messages(self) -> List[Tuple[bytes, bytes]]:
        return split_messages(bytes(self.buffer))


def make_reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture(autouse=True)
def reset_structlog():
    """configure_logging() binds the current stderr; undo it after each test"""
    yield
    structlog.reset_defaults()


# ========== Live server ==========

@pytest_asyncio.fixture
async def pgwire_server():
    """PGWireServer on an ephemeral loopback port with the default static backend"""
    from pgany.server import PGWireServer

    server = PGWireServer("tcp://127.0.0.1:0")
    await server.start()
    host, port = server.sockets[0].getsockname()[:2]
    logger.info("PGWire server ready for testing", host=host, port=port)
    try:
        yield server, host, port
    finally:
        await server.stop()


class RawClient:
    """Minimal PostgreSQL client speaking the wire protocol directly"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def connect(cls, host: str, port: int) -> "RawClient":
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer)

    async def send(self, data: bytes):
        self.writer.write(data)
        await self.writer.drain()

    async def read_message(self) -> Tuple[bytes, bytes]:
        header = await asyncio.wait_for(self.reader.readexactly(5), timeout=5)
        length = struct.unpack('!i', header[1:])[0]
        payload = await asyncio.wait_for(self.reader.readexactly(length - 4), timeout=5)
        return header[:1], payload

    async def read_until_ready(self) -> List[Tuple[bytes, bytes]]:
        messages = []
        while True:
            message = await self.read_message()
            messages.append(message)
            if message[0] == b'Z':
                return messages

    async def startup(self, params: Optional[Dict[str, str]] = None, ssl: bool = False):
        if ssl:
            await self.send(ssl_request())
            answer = await asyncio.wait_for(self.reader.readexactly(1), timeout=5)
            assert answer == b'N'
        await self.send(startup_packet(params or {'user': 'test_user'}))
        return await self.read_until_ready()

    async def query(self, sql: str) -> List[Tuple[bytes, bytes]]:
        await self.send(query_message(sql))
        return await self.read_until_ready()

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
