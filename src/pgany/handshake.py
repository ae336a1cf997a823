"""
Startup handshake for the PostgreSQL v3 protocol.

The first client packet has no type byte:
[4 bytes: length] [4 bytes: protocol version] [key\\0value\\0 ... \\0]

A client may first send an SSLRequest (same framing, special version code).
We answer with a single 'N' (no SSL) and wait for the real StartupMessage on
the same connection.
"""

import asyncio
import struct
from typing import Dict

import structlog

from .codec import read_exactly, read_int32, send
from .errors import ProtocolViolation, UnsupportedProtocolVersion

logger = structlog.get_logger()

# PostgreSQL protocol constants
PROTOCOL_VERSION = 196608  # 0x00030000, protocol 3.0
SSL_REQUEST_CODE = 80877103  # 0x04d2162f

SSL_NOT_SUPPORTED = b'N'

MIN_STARTUP_LENGTH = 8  # length field + protocol version
MAX_STARTUP_LENGTH = 10000


def parse_startup_params(data: bytes) -> Dict[str, str]:
    """
    Parse key/value pairs from the startup payload (after the version field).

    Format: key\\0value\\0key\\0value\\0\\0. Parsing stops at the empty string that
    terminates the list, or at a trailing unterminated fragment.
    """
    params = {}
    strings = data.split(b'\x00')
    # last element is whatever followed the final NUL; it was never terminated
    strings = strings[:-1]
    for i in range(0, len(strings) - 1, 2):
        key = strings[i]
        if not key:
            break
        params[key.decode('utf-8', 'replace')] = strings[i + 1].decode('utf-8', 'replace')
    return params


class StartupHandshake:
    """Pre-authentication negotiation for one connection"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 connection_id: str = ''):
        self.reader = reader
        self.writer = writer
        self.connection_id = connection_id
        self.startup_params: Dict[str, str] = {}
        self.ssl_requests = 0

    async def step(self) -> bool:
        """
        Consume one startup packet.

        Returns:
            True once a StartupMessage has been accepted, False after an SSL
            request was refused (call again for the real startup).
        """
        length = await read_int32(self.reader)
        if length < MIN_STARTUP_LENGTH or length > MAX_STARTUP_LENGTH:
            raise ProtocolViolation(f"Invalid startup packet length: {length}")
        payload = await read_exactly(self.reader, length - 4)

        version = struct.unpack('!I', payload[:4])[0]

        if version == SSL_REQUEST_CODE:
            self.ssl_requests += 1
            await send(self.writer, SSL_NOT_SUPPORTED)
            logger.debug("SSL request refused", connection_id=self.connection_id)
            return False

        if version == PROTOCOL_VERSION:
            self.startup_params = parse_startup_params(payload[4:])
            logger.debug("Startup message parsed",
                         connection_id=self.connection_id,
                         params=self.startup_params)
            return True

        raise UnsupportedProtocolVersion(version)

    async def run(self) -> Dict[str, str]:
        """Run until a StartupMessage is accepted; returns the startup parameters"""
        while not await self.step():
            pass
        return self.startup_params
