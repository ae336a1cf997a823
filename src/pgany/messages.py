"""
Server -> client message builders.

Implements the subset of the PostgreSQL v3 protocol needed for startup and the
simple query protocol. Each builder returns the complete framed message.
"""

from typing import Iterable, List, Optional, Sequence

from .codec import Byte1, CString, Int16, Int32, Raw, encode_message
from .errors import EncodingError
from .values import encode_value

# Response message types
MSG_AUTHENTICATION = b'R'
MSG_READY_FOR_QUERY = b'Z'
MSG_ROW_DESCRIPTION = b'T'
MSG_DATA_ROW = b'D'
MSG_COMMAND_COMPLETE = b'C'
MSG_ERROR_RESPONSE = b'E'
MSG_EMPTY_QUERY_RESPONSE = b'I'

# Transaction status
STATUS_IDLE = b'I'

AUTH_OK = 0

MAX_FIELD_COUNT = 65535

# RowDescription placeholders; no type introspection is done
TABLE_OID = 0
COLUMN_ATTR_NUMBER = 0
TYPE_OID = 0
TYPE_SIZE = -1
TYPE_MODIFIER = 0
FORMAT_CODE = 0


def _check_field_count(count: int):
    if count > MAX_FIELD_COUNT:
        raise EncodingError(f"Invalid field count: {count}")


def authentication_ok() -> bytes:
    return encode_message(MSG_AUTHENTICATION, Int32(AUTH_OK))


def ready_for_query(status: bytes = STATUS_IDLE) -> bytes:
    return encode_message(MSG_READY_FOR_QUERY, Byte1(status))


def row_description(columns: Sequence[str]) -> bytes:
    """
    Build RowDescription for the given column names.

    Each column has:
    - name (null-terminated string)
    - table_oid (4 bytes)
    - column_attr_number (2 bytes)
    - type_oid (4 bytes)
    - type_size (2 bytes)
    - type_modifier (4 bytes)
    - format_code (2 bytes)
    """
    _check_field_count(len(columns))
    fields: List = [Int16(len(columns))]
    for name in columns:
        fields.extend([
            CString(str(name)),
            Int32(TABLE_OID),
            Int16(COLUMN_ATTR_NUMBER),
            Int32(TYPE_OID),
            Int16(TYPE_SIZE),
            Int32(TYPE_MODIFIER),
            Int16(FORMAT_CODE),
        ])
    return encode_message(MSG_ROW_DESCRIPTION, *fields)


def data_row(values: Iterable) -> bytes:
    """Build DataRow: [2 bytes: column count] then per column [4 bytes: length] [value]"""
    encoded = [encode_value(value) for value in values]
    _check_field_count(len(encoded))
    return encode_message(MSG_DATA_ROW, Int16(len(encoded)), Raw(b''.join(encoded)))


def command_complete(tag: str) -> bytes:
    return encode_message(MSG_COMMAND_COMPLETE, CString(tag))


def error_response(severity: str, code: str, message: str,
                   detail: Optional[str] = None) -> bytes:
    """
    Build ErrorResponse.

    Fields: S severity, V non-localized severity, C SQLSTATE, M message,
    D detail (optional), then a terminating NUL.
    """
    fields = [
        Byte1(b'S'), CString(severity),
        Byte1(b'V'), CString(severity),
        Byte1(b'C'), CString(code),
        Byte1(b'M'), CString(_scrub(message)),
    ]
    if detail:
        fields.extend([Byte1(b'D'), CString(_scrub(detail))])
    fields.append(Byte1(0))
    return encode_message(MSG_ERROR_RESPONSE, *fields)


def empty_query_response() -> bytes:
    return encode_message(MSG_EMPTY_QUERY_RESPONSE)


def _scrub(text: str) -> str:
    # a NUL would end the field early
    return text.replace('\x00', '')
