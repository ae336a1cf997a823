"""
PostgreSQL wire protocol server.

Accepts connections on a TCP or Unix socket and runs one PGWireProtocol
session task per client. Sessions are independent; the accept loop never
waits on them.

Usage:
    from pgany.server import PGWireServer
    from pgany.executor import StaticExecutor

    server = PGWireServer("tcp://127.0.0.1:5432", StaticExecutor())
    await server.serve_forever()

Then connect from any PostgreSQL client:
    psql "host=127.0.0.1 port=5432 sslmode=prefer"
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

import structlog

from .errors import ConfigurationError
from .executor import QueryExecutor, StaticExecutor
from .protocol import PGWireProtocol

logger = structlog.get_logger()

DEFAULT_BIND_ADDRESS = "tcp://127.0.0.1:5432"
DEFAULT_PORT = 5432
SHUTDOWN_GRACE_PERIOD = 5.0


@dataclass(frozen=True)
class BindAddress:
    scheme: str
    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None

    def __str__(self):
        if self.scheme == 'unix':
            return f"unix://{self.path}"
        return f"tcp://{self.host}:{self.port}"


def parse_bind_address(addr: str) -> BindAddress:
    """
    Parse a listen address.

    Supported forms:
        tcp://host:port   (port defaults to 5432)
        unix:///path/to/socket
    """
    parsed = urlparse(addr)
    if parsed.scheme == 'tcp':
        try:
            port = parsed.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid port in bind address {addr!r}") from e
        if not parsed.hostname:
            raise ConfigurationError(f"Missing host in bind address {addr!r}")
        return BindAddress('tcp', host=parsed.hostname,
                           port=DEFAULT_PORT if port is None else port)
    if parsed.scheme == 'unix':
        path = parsed.path or parsed.netloc
        if not path:
            raise ConfigurationError(f"Missing socket path in bind address {addr!r}")
        return BindAddress('unix', path=path)
    raise ConfigurationError(f"Invalid network protocol: {parsed.scheme or addr!r}")


class PGWireServer:
    """Listener that hands each accepted connection to its own session task"""

    def __init__(self, bind_address: str = DEFAULT_BIND_ADDRESS,
                 executor: Optional[QueryExecutor] = None):
        self.bind_address = parse_bind_address(bind_address)
        self.executor = executor if executor is not None else StaticExecutor()
        self.server: Optional[asyncio.AbstractServer] = None
        self._connection_ids = itertools.count(1)
        self._sessions: Dict[asyncio.Task, PGWireProtocol] = {}

    @property
    def sockets(self) -> List:
        if self.server is None:
            return []
        return list(self.server.sockets)

    async def start(self):
        if self.bind_address.scheme == 'unix':
            self.server = await asyncio.start_unix_server(
                self.handle_client, path=self.bind_address.path)
        else:
            self.server = await asyncio.start_server(
                self.handle_client, self.bind_address.host, self.bind_address.port)
        logger.info("PGWire server listening",
                    address=str(self.bind_address),
                    sockets=[str(sock.getsockname()) for sock in self.server.sockets])

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        connection_id = f"conn_{next(self._connection_ids)}"
        session = PGWireProtocol(reader, writer, self.executor, connection_id)
        task = asyncio.current_task()
        self._sessions[task] = session
        try:
            await session.handle()
        finally:
            self._sessions.pop(task, None)

    async def serve_forever(self):
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    async def stop(self, grace_period: float = SHUTDOWN_GRACE_PERIOD):
        """
        Stop accepting, then end every open session.

        Each client socket is closed so its session sees end of stream and
        finishes normally. Sessions still busy after grace_period (a query
        stuck in the backend) are cancelled.
        """
        server, self.server = self.server, None
        if server is not None:
            server.close()
        sessions = dict(self._sessions)
        for session in sessions.values():
            session.writer.close()
        if sessions:
            _, pending = await asyncio.wait(list(sessions), timeout=grace_period)
            for task in pending:
                logger.warning("Cancelling session after shutdown grace period",
                               connection_id=sessions[task].connection_id)
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        # wait_closed() also waits for open client connections
        if server is not None:
            await server.wait_closed()
        await self.executor.shutdown()
        logger.info("PGWire server stopped", sessions_closed=len(sessions))
