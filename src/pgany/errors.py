"""
Error hierarchy for the pgany wire protocol server.

Protocol errors are fatal to the connection that raised them. Execution errors
are reported to the client and the session carries on.
"""

from typing import Optional


class PGAnyError(Exception):
    """Base class for all pgany errors"""


class ProtocolError(PGAnyError):
    """Framing problem on the wire; the connection cannot continue"""

    sqlstate = "08P01"  # protocol_violation


class ShortReadError(ProtocolError):
    """Stream ended before a declared number of bytes arrived"""

    def __init__(self, received: int, expected: int):
        self.received = received
        self.expected = expected
        super().__init__(f"Buffer underflow, only read {received} bytes (expected {expected})")


class ProtocolViolation(ProtocolError):
    """Malformed frame: bad length, bad encoding"""


class UnsupportedProtocolVersion(ProtocolError):
    """Startup magic is neither a normal startup nor an SSL request"""

    sqlstate = "0A000"  # feature_not_supported

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unknown protocol version: {version}")


class UnexpectedMessage(ProtocolError):
    """Client sent a message type the simple query loop does not accept"""

    def __init__(self, tag: bytes):
        self.tag = tag
        super().__init__(f"Expected 'Q', but got {tag!r}")


class EncodingError(PGAnyError):
    """A result value or message cannot be represented on the wire"""


class ExecutionError(PGAnyError):
    """Query execution failed in the backend"""

    def __init__(self, message: str, sqlstate: str = "XX000", detail: Optional[str] = None):
        self.message = message
        self.sqlstate = sqlstate
        self.detail = detail
        super().__init__(message)


class ConfigurationError(PGAnyError, ValueError):
    """Invalid command line or environment configuration"""
