"""
Query execution backends.

The protocol layer only knows the QueryExecutor interface: it hands over the
query text and receives a ResultSet, or an ExecutionError to report to the
client. Backends that are plain blocking functions run on a thread pool so the
event loop keeps serving other connections.
"""

import asyncio
import concurrent.futures
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from .errors import EncodingError, ExecutionError

logger = structlog.get_logger()

Row = Mapping[str, Any]


class ResultSet:
    """Rows produced by one query; every row shares the first row's columns"""

    def __init__(self, rows: Optional[Sequence[Row]] = None, command_tag: Optional[str] = None):
        self.rows = list(rows or [])
        self.command_tag = command_tag

    @property
    def columns(self) -> List[str]:
        if not self.rows:
            return []
        return list(self.rows[0].keys())

    @property
    def tag(self) -> str:
        """Completion tag for CommandComplete"""
        if self.command_tag:
            return self.command_tag
        return f"SELECT {len(self.rows)}"

    def __len__(self):
        return len(self.rows)

    def __repr__(self):
        return f"ResultSet(columns={self.columns!r}, rows={len(self.rows)}, tag={self.tag!r})"


class QueryExecutor:
    """Interface for query backends"""

    async def execute(self, query: str) -> ResultSet:
        raise NotImplementedError

    def session(self) -> "QueryExecutor":
        """
        Executor for one connection.

        Backends that hold per-connection resources return a fresh instance;
        the session shuts it down when the connection closes.
        """
        return self

    async def shutdown(self, wait: bool = True):
        pass


def as_result_set(result: Union[ResultSet, Sequence[Row], None]) -> ResultSet:
    """Accept a ResultSet, a sequence of row mappings or None"""
    if isinstance(result, ResultSet):
        return result
    if result is None:
        return ResultSet()
    if isinstance(result, (str, bytes, Mapping)):
        raise EncodingError(f"Expected a sequence of rows, got {type(result).__name__}")
    try:
        return ResultSet(result)
    except TypeError as e:
        raise EncodingError(f"Expected a sequence of rows, got {type(result).__name__}") from e


class FunctionExecutor(QueryExecutor):
    """
    Adapt a blocking ``func(query) -> rows`` callable.

    The callable may return a ResultSet, a list of row mappings or None.
    It signals failure by raising; anything other than ExecutionError is
    wrapped so the client gets an error response.

    The server calls session() for every connection, so each client gets its
    own worker thread and a slow query only holds up its own connection.
    """

    def __init__(self, func: Callable[[str], Any], max_workers: int = 4):
        self.func = func
        self.thread_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="pgany_executor"
        )

    def session(self) -> "FunctionExecutor":
        return FunctionExecutor(self.func, max_workers=1)

    async def execute(self, query: str) -> ResultSet:
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self.thread_pool, self.func, query)
        except ExecutionError:
            raise
        except Exception as e:
            logger.warning("Backend raised", error=str(e), error_type=type(e).__name__)
            raise ExecutionError(str(e) or type(e).__name__) from e
        return as_result_set(result)

    async def shutdown(self, wait: bool = True):
        self.thread_pool.shutdown(wait=wait)
        logger.debug("Executor shutdown completed", wait=wait)


DEFAULT_ROWS: List[Dict[str, Any]] = [
    {"a": 1, "b": "B1", "c": "C1"},
    {"a": 2, "b": "B2", "c": "C2"},
]


class StaticExecutor(QueryExecutor):
    """Answers every query with the same rows"""

    def __init__(self, rows: Optional[Sequence[Row]] = None, command_tag: Optional[str] = None):
        self.rows = list(DEFAULT_ROWS if rows is None else rows)
        self.command_tag = command_tag

    async def execute(self, query: str) -> ResultSet:
        return ResultSet(self.rows, self.command_tag)
