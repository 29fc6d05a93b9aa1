"""
PostgreSQL v3 Wire Protocol Codec (client side)

Encodes frontend messages and decodes backend messages.
Message formats: https://www.postgresql.org/docs/current/protocol-message-formats.html

Frontend messages are addressed by FrontendMessage and encoded from keyword
payloads; backend messages decode into small dataclasses whose `kind`
identifies which BackendMessage they are, so callers can match replies with
isinstance checks.
"""

import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Dict, List, Optional, Sequence, Tuple

from .errors import ProtocolError
from .models import TypeField

# PostgreSQL protocol constants
SSL_REQUEST_CODE = 80877103
PROTOCOL_VERSION = 0x00030000  # PostgreSQL protocol version 3.0

# Frontend message types
MSG_PASSWORD = b'p'  # also SASLInitialResponse and SASLResponse
MSG_QUERY = b'Q'
MSG_PARSE = b'P'
MSG_DESCRIBE = b'D'
MSG_CLOSE = b'C'
MSG_FLUSH = b'H'
MSG_SYNC = b'S'
MSG_TERMINATE = b'X'

# Backend message types
MSG_AUTHENTICATION = b'R'
MSG_PARAMETER_STATUS = b'S'
MSG_BACKEND_KEY_DATA = b'K'
MSG_READY_FOR_QUERY = b'Z'
MSG_ERROR_RESPONSE = b'E'
MSG_NOTICE_RESPONSE = b'N'
MSG_NOTIFICATION_RESPONSE = b'A'
MSG_ROW_DESCRIPTION = b'T'
MSG_DATA_ROW = b'D'
MSG_COMMAND_COMPLETE = b'C'
MSG_EMPTY_QUERY_RESPONSE = b'I'
MSG_PARSE_COMPLETE = b'1'
MSG_CLOSE_COMPLETE = b'3'
MSG_PARAMETER_DESCRIPTION = b't'
MSG_NO_DATA = b'n'

# Authentication request codes
AUTH_OK = 0
AUTH_CLEARTEXT_PASSWORD = 3
AUTH_MD5_PASSWORD = 5
AUTH_SASL = 10
AUTH_SASL_CONTINUE = 11
AUTH_SASL_FINAL = 12

# DataRow length marking SQL NULL
NULL_LENGTH = -1


class PreparedObjectType(str, Enum):
    STATEMENT = 'S'
    PORTAL = 'P'


class FrontendMessage(str, Enum):
    STARTUP = "startupMessage"
    SSL_REQUEST = "sslRequest"
    PASSWORD = "passwordMessage"
    SASL_INITIAL_RESPONSE = "SASLInitialResponse"
    SASL_RESPONSE = "SASLResponse"
    QUERY = "query"
    PARSE = "parse"
    DESCRIBE = "describe"
    CLOSE = "close"
    FLUSH = "flush"
    SYNC = "sync"
    TERMINATE = "terminate"


class BackendMessage(str, Enum):
    AUTHENTICATION_OK = "authenticationOk"
    AUTHENTICATION_CLEARTEXT_PASSWORD = "authenticationCleartextPassword"
    AUTHENTICATION_MD5_PASSWORD = "authenticationMD5Password"
    AUTHENTICATION_SASL = "authenticationSASL"
    AUTHENTICATION_SASL_CONTINUE = "authenticationSASLContinue"
    AUTHENTICATION_SASL_FINAL = "authenticationSASLFinal"
    PARAMETER_STATUS = "parameterStatus"
    BACKEND_KEY_DATA = "backendKeyData"
    READY_FOR_QUERY = "readyForQuery"
    ERROR_RESPONSE = "errorResponse"
    NOTICE_RESPONSE = "noticeResponse"
    NOTIFICATION_RESPONSE = "notificationResponse"
    ROW_DESCRIPTION = "rowDescription"
    DATA_ROW = "dataRow"
    COMMAND_COMPLETE = "commandComplete"
    EMPTY_QUERY_RESPONSE = "emptyQueryResponse"
    PARSE_COMPLETE = "parseComplete"
    CLOSE_COMPLETE = "closeComplete"
    PARAMETER_DESCRIPTION = "parameterDescription"
    NO_DATA = "noData"


# Messages the server may send at any time, independent of the current command
ASYNCHRONOUS_MESSAGES = frozenset({
    BackendMessage.NOTICE_RESPONSE,
    BackendMessage.NOTIFICATION_RESPONSE,
    BackendMessage.PARAMETER_STATUS,
})


# binary serialization (writing)


def _cstring(value: str) -> bytes:
    return value.encode('utf-8') + b'\x00'


def _frame(message_type: bytes, payload: bytes = b'') -> bytes:
    # length includes the length field itself
    return message_type + struct.pack('!I', len(payload) + 4) + payload


def encode_startup(params: Dict[str, str]) -> bytes:
    payload = struct.pack('!I', PROTOCOL_VERSION)
    for name, value in params.items():
        payload += _cstring(name) + _cstring(value)
    # zero byte terminates the name/value pairs
    payload += b'\x00'
    return struct.pack('!I', len(payload) + 4) + payload


def encode_ssl_request() -> bytes:
    return struct.pack('!II', 8, SSL_REQUEST_CODE)


def encode_password(password: str) -> bytes:
    return _frame(MSG_PASSWORD, _cstring(password))


def encode_sasl_initial_response(mechanism: str, response: bytes) -> bytes:
    payload = _cstring(mechanism) + struct.pack('!i', len(response)) + response
    return _frame(MSG_PASSWORD, payload)


def encode_sasl_response(response: bytes) -> bytes:
    return _frame(MSG_PASSWORD, response)


def encode_query(query: str) -> bytes:
    return _frame(MSG_QUERY, _cstring(query))


def encode_parse(name: str, query: str, data_types: Sequence[int] = ()) -> bytes:
    payload = _cstring(name) + _cstring(query) + struct.pack('!H', len(data_types))
    for oid in data_types:
        payload += struct.pack('!I', oid)
    return _frame(MSG_PARSE, payload)


def encode_describe(name: str, target: PreparedObjectType = PreparedObjectType.STATEMENT) -> bytes:
    return _frame(MSG_DESCRIBE, PreparedObjectType(target).value.encode('ascii') + _cstring(name))


def encode_close(name: str, target: PreparedObjectType = PreparedObjectType.STATEMENT) -> bytes:
    return _frame(MSG_CLOSE, PreparedObjectType(target).value.encode('ascii') + _cstring(name))


def encode_flush() -> bytes:
    return _frame(MSG_FLUSH)


def encode_sync() -> bytes:
    return _frame(MSG_SYNC)


def encode_terminate() -> bytes:
    return _frame(MSG_TERMINATE)


FRONTEND_ENCODERS: Dict[FrontendMessage, Callable[..., bytes]] = {
    FrontendMessage.STARTUP: encode_startup,
    FrontendMessage.SSL_REQUEST: encode_ssl_request,
    FrontendMessage.PASSWORD: encode_password,
    FrontendMessage.SASL_INITIAL_RESPONSE: encode_sasl_initial_response,
    FrontendMessage.SASL_RESPONSE: encode_sasl_response,
    FrontendMessage.QUERY: encode_query,
    FrontendMessage.PARSE: encode_parse,
    FrontendMessage.DESCRIBE: encode_describe,
    FrontendMessage.CLOSE: encode_close,
    FrontendMessage.FLUSH: encode_flush,
    FrontendMessage.SYNC: encode_sync,
    FrontendMessage.TERMINATE: encode_terminate,
}


def encode(message: FrontendMessage, **payload) -> bytes:
    try:
        encoder = FRONTEND_ENCODERS[FrontendMessage(message)]
    except (KeyError, ValueError):
        raise ProtocolError(f"Unknown frontend message: {message}")
    return encoder(**payload)


# binary deserialization (reading)


class MessageReader:
    """Cursor over one message body"""

    def __init__(self, body: bytes):
        self.body = body
        self.pos = 0

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        if self.pos + size > len(self.body):
            raise ProtocolError("Truncated message body")
        (value,) = struct.unpack_from(fmt, self.body, self.pos)
        self.pos += size
        return value

    def read_u8(self) -> int:
        return self._unpack('!B')

    def read_i16(self) -> int:
        return self._unpack('!h')

    def read_i32(self) -> int:
        return self._unpack('!i')

    def read_u32(self) -> int:
        return self._unpack('!I')

    def read_bytes(self, count: int) -> bytes:
        if count < 0 or self.pos + count > len(self.body):
            raise ProtocolError("Truncated message body")
        value = self.body[self.pos:self.pos + count]
        self.pos += count
        return value

    def read_remaining(self) -> bytes:
        value = self.body[self.pos:]
        self.pos = len(self.body)
        return value

    def read_cstring(self) -> str:
        end = self.body.find(b'\x00', self.pos)
        if end == -1:
            raise ProtocolError("Missing string terminator")
        value = self.body[self.pos:end].decode('utf-8')
        self.pos = end + 1
        return value


@dataclass
class ServerMessage:
    kind: ClassVar[BackendMessage]


@dataclass
class AuthenticationOk(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_OK


@dataclass
class AuthenticationCleartextPassword(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_CLEARTEXT_PASSWORD


@dataclass
class AuthenticationMD5Password(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_MD5_PASSWORD
    salt: bytes = b''


@dataclass
class AuthenticationSASL(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_SASL
    mechanisms: List[str] = field(default_factory=list)


@dataclass
class AuthenticationSASLContinue(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_SASL_CONTINUE
    data: bytes = b''


@dataclass
class AuthenticationSASLFinal(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.AUTHENTICATION_SASL_FINAL
    data: bytes = b''


@dataclass
class ParameterStatus(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.PARAMETER_STATUS
    name: str = ''
    value: str = ''


@dataclass
class BackendKeyData(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.BACKEND_KEY_DATA
    process_id: int = 0
    secret_key: int = 0


@dataclass
class ReadyForQuery(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.READY_FOR_QUERY
    trx_status: str = 'I'


@dataclass
class ErrorResponse(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.ERROR_RESPONSE
    fields: Dict[str, str] = field(default_factory=dict)


@dataclass
class NoticeResponse(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.NOTICE_RESPONSE
    fields: Dict[str, str] = field(default_factory=dict)


@dataclass
class NotificationResponse(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.NOTIFICATION_RESPONSE
    process_id: int = 0
    channel: str = ''
    payload: str = ''


@dataclass
class RowDescription(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.ROW_DESCRIPTION
    fields: List[TypeField] = field(default_factory=list)


@dataclass
class DataRow(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.DATA_ROW
    columns: List[Optional[bytes]] = field(default_factory=list)


@dataclass
class CommandComplete(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.COMMAND_COMPLETE
    command_tag: str = ''


@dataclass
class EmptyQueryResponse(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.EMPTY_QUERY_RESPONSE


@dataclass
class ParseComplete(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.PARSE_COMPLETE


@dataclass
class CloseComplete(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.CLOSE_COMPLETE


@dataclass
class ParameterDescription(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.PARAMETER_DESCRIPTION
    params: List[int] = field(default_factory=list)


@dataclass
class NoData(ServerMessage):
    kind: ClassVar[BackendMessage] = BackendMessage.NO_DATA


def read_error_fields(reader: MessageReader) -> Dict[str, str]:
    # https://www.postgresql.org/docs/current/protocol-error-fields.html
    fields: Dict[str, str] = {}
    while (field_type := reader.read_u8()) != 0:
        fields[chr(field_type)] = reader.read_cstring()
    return fields


def _decode_authentication(reader: MessageReader) -> ServerMessage:
    auth_type = reader.read_i32()

    if auth_type == AUTH_OK:
        return AuthenticationOk()
    elif auth_type == AUTH_CLEARTEXT_PASSWORD:
        return AuthenticationCleartextPassword()
    elif auth_type == AUTH_MD5_PASSWORD:
        return AuthenticationMD5Password(salt=reader.read_bytes(4))
    elif auth_type == AUTH_SASL:
        mechanisms = []
        while (mechanism := reader.read_cstring()) != '':
            mechanisms.append(mechanism)
        return AuthenticationSASL(mechanisms=mechanisms)
    elif auth_type == AUTH_SASL_CONTINUE:
        return AuthenticationSASLContinue(data=reader.read_remaining())
    elif auth_type == AUTH_SASL_FINAL:
        return AuthenticationSASLFinal(data=reader.read_remaining())

    raise ProtocolError(f"Unsupported authentication request type {auth_type}")


def _decode_row_description(reader: MessageReader) -> RowDescription:
    fields = []
    for _ in range(reader.read_i16()):
        fields.append(TypeField(
            name=reader.read_cstring(),
            table_oid=reader.read_u32(),
            column_attr_number=reader.read_i16(),
            type_oid=reader.read_u32(),
            type_size=reader.read_i16(),  # pg_type.typlen
            type_modifier=reader.read_i32(),  # pg_attribute.atttypmod
            format_code=reader.read_i16(),  # 0 for text, 1 for binary
        ))
    return RowDescription(fields=fields)


def _decode_data_row(reader: MessageReader) -> DataRow:
    columns: List[Optional[bytes]] = []
    for _ in range(reader.read_i16()):
        length = reader.read_i32()
        columns.append(None if length == NULL_LENGTH else reader.read_bytes(length))
    return DataRow(columns=columns)


def _decode_parameter_description(reader: MessageReader) -> ParameterDescription:
    return ParameterDescription(params=[reader.read_u32() for _ in range(reader.read_i16())])


BACKEND_DECODERS: Dict[bytes, Callable[[MessageReader], ServerMessage]] = {
    MSG_AUTHENTICATION: _decode_authentication,
    MSG_PARAMETER_STATUS: lambda r: ParameterStatus(name=r.read_cstring(), value=r.read_cstring()),
    MSG_BACKEND_KEY_DATA: lambda r: BackendKeyData(process_id=r.read_i32(), secret_key=r.read_i32()),
    MSG_READY_FOR_QUERY: lambda r: ReadyForQuery(trx_status=chr(r.read_u8())),
    MSG_ERROR_RESPONSE: lambda r: ErrorResponse(fields=read_error_fields(r)),
    MSG_NOTICE_RESPONSE: lambda r: NoticeResponse(fields=read_error_fields(r)),
    MSG_NOTIFICATION_RESPONSE: lambda r: NotificationResponse(
        process_id=r.read_i32(), channel=r.read_cstring(), payload=r.read_cstring()),
    MSG_ROW_DESCRIPTION: _decode_row_description,
    MSG_DATA_ROW: _decode_data_row,
    MSG_COMMAND_COMPLETE: lambda r: CommandComplete(command_tag=r.read_cstring()),
    MSG_EMPTY_QUERY_RESPONSE: lambda r: EmptyQueryResponse(),
    MSG_PARSE_COMPLETE: lambda r: ParseComplete(),
    MSG_CLOSE_COMPLETE: lambda r: CloseComplete(),
    MSG_PARAMETER_DESCRIPTION: _decode_parameter_description,
    MSG_NO_DATA: lambda r: NoData(),
}


def read_header(header: bytes) -> Tuple[bytes, int]:
    """Split a 5-byte message header into type byte and body length"""
    if len(header) != 5:
        raise ProtocolError(f"Invalid message header length: {len(header)}")
    msg_type, length = struct.unpack('!cI', header)
    if length < 4:
        raise ProtocolError(f"Invalid message length {length} for type {msg_type!r}")
    return msg_type, length - 4


def decode(msg_type: bytes, body: bytes) -> ServerMessage:
    decoder = BACKEND_DECODERS.get(msg_type)
    if decoder is None:
        raise ProtocolError(f"Unsupported backend message type {msg_type!r}")
    return decoder(MessageReader(body))
