"""
Asynchronous Message Channel

Ordered, half-duplex message exchange with a PostgreSQL server. Callers send
frontend messages and await the next backend message, naming the kinds the
current protocol phase allows. Anything else is a protocol failure, except
error responses (raised as ServerError) and asynchronous notices.
"""

import asyncio
from typing import Optional

import structlog

from . import wire
from .config import ConnectionOptions
from .errors import ProtocolError, ServerError, UnexpectedMessageError
from .wire import BackendMessage, FrontendMessage, ServerMessage

logger = structlog.get_logger()


class BaseChannel:
    """
    Message matching shared by every channel.

    Subclasses provide transport: `connect`, `send` and `_read_message`.
    """

    async def connect(self, options: ConnectionOptions) -> None:
        raise NotImplementedError

    async def send(self, message: FrontendMessage, **payload) -> None:
        raise NotImplementedError

    async def _read_message(self) -> ServerMessage:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def reply(self, *expected: BackendMessage) -> ServerMessage:
        """
        Wait for the next message of one of the expected kinds.

        Returns:
            The decoded message; its `kind` says which expected kind matched

        Raises:
            ServerError: An unexpected ErrorResponse arrived
            UnexpectedMessageError: Any other message kind arrived
        """
        while True:
            message = await self._read_message()

            if message.kind in expected:
                return message

            if isinstance(message, wire.ErrorResponse):
                raise ServerError(message.fields)

            if message.kind in wire.ASYNCHRONOUS_MESSAGES:
                logger.debug("Skipping asynchronous message",
                             kind=message.kind.value,
                             message=message)
                continue

            raise UnexpectedMessageError([kind.value for kind in expected], message.kind.value)


class MessageChannel(BaseChannel):
    """Channel over an asyncio stream connection"""

    def __init__(self):
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

    @property
    def connected(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    async def connect(self, options: ConnectionOptions) -> None:
        self.reader, self.writer = await asyncio.open_connection(options.host, options.port)
        logger.debug("Connected", host=options.host, port=options.port)

        if options.tls_enabled:
            await self._negotiate_ssl(options.host, options.ssl_context())

    async def _negotiate_ssl(self, host: str, ssl_context) -> None:
        self.writer.write(wire.encode_ssl_request())
        await self.writer.drain()

        try:
            answer = await self.reader.readexactly(1)
        except asyncio.IncompleteReadError:
            raise ConnectionAbortedError("Connection closed during SSL negotiation")

        if answer != b'S':
            raise ProtocolError("Server does not support SSL connections")

        await self.writer.start_tls(ssl_context, server_hostname=host)
        logger.debug("SSL connection established", host=host)

    async def send(self, message: FrontendMessage, **payload) -> None:
        if self.writer is None:
            raise ConnectionAbortedError("Channel is not connected")
        data = wire.encode(message, **payload)
        self.writer.write(data)
        await self.writer.drain()

    async def _read_message(self) -> ServerMessage:
        if self.reader is None:
            raise ConnectionAbortedError("Channel is not connected")
        try:
            header = await self.reader.readexactly(5)
            msg_type, body_length = wire.read_header(header)
            body = await self.reader.readexactly(body_length) if body_length > 0 else b''
        except asyncio.IncompleteReadError as e:
            raise ConnectionAbortedError(
                f"Connection closed by server ({len(e.partial)} of {e.expected} bytes read)"
            )
        return wire.decode(msg_type, body)

    async def close(self) -> None:
        if self.writer is None:
            return
        try:
            if not self.writer.is_closing():
                await self.send(FrontendMessage.TERMINATE)
        except (ConnectionError, OSError) as e:
            logger.debug("Terminate not delivered", error=str(e))
        finally:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self.reader = None
            self.writer = None
