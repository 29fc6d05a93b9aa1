"""
Exception hierarchy for the wire protocol client.

Server-reported problems during query introspection are converted into
ParseError values by the introspection pipeline; the exceptions below are
reserved for protocol violations, authentication failures and catalog
anomalies.
"""

from typing import Dict, Iterable, Optional

from .models import ParseError


class PGWireError(Exception):
    """Base class for all errors raised by pgwire_introspect"""


class ProtocolError(PGWireError):
    """Malformed, truncated or unsupported wire protocol data"""


class UnexpectedMessageError(ProtocolError):
    """The server sent a message kind the current protocol phase does not allow"""

    def __init__(self, expected: Iterable[str], received: str):
        self.expected = tuple(expected)
        self.received = received
        super().__init__(
            f"Unexpected message {received}, expected one of: {', '.join(self.expected)}"
        )


class ServerError(PGWireError):
    """ErrorResponse received where the caller did not expect one"""

    def __init__(self, fields: Dict[str, str]):
        self.fields = dict(fields)
        super().__init__(self.message)

    @property
    def severity(self) -> Optional[str]:
        return self.fields.get('S')

    @property
    def code(self) -> Optional[str]:
        """SQLSTATE code"""
        return self.fields.get('C')

    @property
    def message(self) -> str:
        return self.fields.get('M', 'unknown server error')

    def to_parse_error(self) -> ParseError:
        return ParseError.from_fields(self.fields)


class AuthenticationError(PGWireError):
    """Authentication handshake failed"""


class CatalogIntegrityError(PGWireError):
    """System catalog returned rows that contradict the type model"""
