"""
PostgreSQL Wire Protocol session handling.

One PGWireProtocol instance owns one client connection:

1. Startup handshake (SSL refusal, StartupMessage)
2. AuthenticationOk (trust, no credential check)
3. Simple query loop: ReadyForQuery -> Query -> RowDescription / DataRow* /
   CommandComplete, until the client sends Terminate or closes the stream

Sessions share no state, so any error here ends only this connection.
"""

import asyncio
from collections.abc import Mapping
from typing import Dict, List, Optional

import structlog

from .codec import read_byte, read_frame_body, send
from .errors import (
    EncodingError,
    ExecutionError,
    ProtocolError,
    ProtocolViolation,
    ShortReadError,
    UnexpectedMessage,
)
from .executor import QueryExecutor, ResultSet, as_result_set
from .handshake import StartupHandshake
from .messages import (
    STATUS_IDLE,
    authentication_ok,
    command_complete,
    data_row,
    empty_query_response,
    error_response,
    ready_for_query,
    row_description,
)

logger = structlog.get_logger()

# Client message types
MSG_QUERY = b'Q'
MSG_TERMINATE = b'X'

SQLSTATE_DATA_EXCEPTION = "22000"


def _preview(query: str, limit: int = 100) -> str:
    return query[:limit] + "..." if len(query) > limit else query


class PGWireProtocol:
    """
    PostgreSQL Wire Protocol Handler

    Manages the protocol conversation for a single client connection and
    delegates query execution to a QueryExecutor.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 executor: QueryExecutor, connection_id: str):
        self.reader = reader
        self.writer = writer
        self.shared_executor = executor
        self.executor = executor.session()
        self.connection_id = connection_id

        # Session state
        self.handshake_complete = False
        self.startup_params: Dict[str, str] = {}
        self.transaction_status = STATUS_IDLE
        self.query_count = 0

    async def handle(self):
        """
        Run the session to completion.

        Every error is handled and logged here; the connection is always closed.
        """
        peer = self.writer.get_extra_info('peername')
        logger.info("Client connected", connection_id=self.connection_id, client=peer)
        try:
            await self.run()
        except ShortReadError as e:
            logger.info("Client disconnected mid-message",
                        connection_id=self.connection_id,
                        bytes_read=e.received, expected=e.expected,
                        handshake_complete=self.handshake_complete)
        except ProtocolError as e:
            logger.error("Protocol error",
                         connection_id=self.connection_id,
                         error=str(e), error_type=type(e).__name__)
            await self.send_fatal(e)
        except (ConnectionError, OSError) as e:
            logger.error("Transport error",
                         connection_id=self.connection_id, error=str(e))
        except Exception:
            logger.exception("Session failed", connection_id=self.connection_id)
        finally:
            await self.close()
            logger.info("Client disconnected",
                        connection_id=self.connection_id,
                        queries=self.query_count)

    async def run(self):
        """Handshake, authenticate, then serve queries until the client leaves"""
        handshake = StartupHandshake(self.reader, self.writer, self.connection_id)
        self.startup_params = await handshake.run()
        self.handshake_complete = True

        await send(self.writer, authentication_ok())
        logger.info("Startup sequence completed",
                    connection_id=self.connection_id,
                    user=self.startup_params.get('user'),
                    database=self.startup_params.get('database'),
                    ssl_requests=handshake.ssl_requests)

        await self.message_loop()

    async def message_loop(self):
        while True:
            await send(self.writer, ready_for_query(self.transaction_status))
            query = await self.read_query()
            if query is None:
                break
            await self.handle_query(query)

    async def read_query(self) -> Optional[str]:
        """
        Read the next client message.

        Returns:
            The query text, or None when the client terminated or closed the stream
        """
        tag = await read_byte(self.reader)
        if tag is None:
            logger.info("Client closed stream", connection_id=self.connection_id)
            return None
        if tag == MSG_TERMINATE:
            logger.info("Client terminated connection", connection_id=self.connection_id)
            return None
        if tag != MSG_QUERY:
            raise UnexpectedMessage(tag)

        body = await read_frame_body(self.reader)
        # clients terminate the query string; the frame length already bounds it
        if body.endswith(b'\x00'):
            body = body[:-1]
        try:
            return body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolViolation(f"Query is not valid UTF-8: {e}") from e

    async def handle_query(self, query: str):
        self.query_count += 1
        logger.debug("Received query",
                     connection_id=self.connection_id,
                     query=_preview(query))

        if not query.strip():
            await send(self.writer, empty_query_response())
            return

        try:
            result = await self.execute(query)
            messages = self.encode_result(result)
        except ExecutionError as e:
            logger.warning("Query execution failed",
                           connection_id=self.connection_id,
                           query=_preview(query), error=e.message, sqlstate=e.sqlstate)
            await send(self.writer, error_response("ERROR", e.sqlstate, e.message, e.detail))
            return
        except EncodingError as e:
            logger.error("Result encoding failed",
                         connection_id=self.connection_id,
                         query=_preview(query), error=str(e))
            await send(self.writer, error_response("ERROR", SQLSTATE_DATA_EXCEPTION, str(e)))
            return

        for message in messages:
            await send(self.writer, message)

        logger.debug("Query result sent",
                     connection_id=self.connection_id,
                     command_tag=result.tag,
                     row_count=len(result),
                     column_count=len(result.columns))

    async def execute(self, query: str) -> ResultSet:
        try:
            result = await self.executor.execute(query)
        except ExecutionError:
            raise
        except Exception as e:
            logger.exception("Executor raised unexpectedly", connection_id=self.connection_id)
            raise ExecutionError(str(e) or type(e).__name__) from e
        return as_result_set(result)

    def encode_result(self, result: ResultSet) -> List[bytes]:
        """
        Encode a result as RowDescription, DataRows and CommandComplete.

        Columns come from the first row; later rows are read in that order.
        """
        messages = []
        for row in result.rows:
            if not isinstance(row, Mapping):
                raise EncodingError(f"Expected rows as mappings of column to value, "
                                    f"got {type(row).__name__}")
        if result.rows:
            columns = result.columns
            messages.append(row_description(columns))
            for row in result.rows:
                try:
                    values = [row[column] for column in columns]
                except KeyError as e:
                    raise EncodingError(f"Row is missing column {e.args[0]!r}") from e
                messages.append(data_row(values))
        messages.append(command_complete(result.tag))
        return messages

    async def send_fatal(self, error: ProtocolError):
        """Tell the client why the connection is being dropped, if it is still there"""
        try:
            await send(self.writer, error_response("FATAL", error.sqlstate, str(error)))
        except (ConnectionError, OSError) as e:
            logger.debug("Could not deliver fatal error",
                         connection_id=self.connection_id, error=str(e))

    async def close(self):
        if self.executor is not self.shared_executor:
            # a query may still be running in the worker; do not wait for it
            await self.executor.shutdown(wait=False)
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error while closing connection",
                         connection_id=self.connection_id, error=str(e))
