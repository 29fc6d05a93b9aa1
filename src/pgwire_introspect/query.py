"""
Simple Query Runner

Runs a plain Query message and collects every row as text. Binary formats
are never requested, so each value is decoded as UTF-8 text; SQL NULL is
returned as None.
"""

from typing import List, Optional

import structlog

from .channel import BaseChannel
from .errors import ServerError, UnexpectedMessageError
from .wire import BackendMessage, CommandComplete, FrontendMessage, ReadyForQuery

logger = structlog.get_logger()

Row = List[Optional[str]]

# everything a simple query cycle can send before its ReadyForQuery
_QUERY_CYCLE_MESSAGES = (
    BackendMessage.ROW_DESCRIPTION,
    BackendMessage.DATA_ROW,
    BackendMessage.COMMAND_COMPLETE,
    BackendMessage.EMPTY_QUERY_RESPONSE,
    BackendMessage.ERROR_RESPONSE,
    BackendMessage.READY_FOR_QUERY,
)


async def _discard_until_ready(channel: BaseChannel) -> None:
    while not isinstance(await channel.reply(*_QUERY_CYCLE_MESSAGES), ReadyForQuery):
        pass


async def run_query(query: str, channel: BaseChannel) -> List[Row]:
    """
    Execute `query` with the simple query protocol.

    Raises:
        ServerError: The server rejected the query. The trailing ReadyForQuery
            has been consumed, so the connection is idle when this propagates.

    Other failures while reading the result (undecodable rows, unexpected
    messages) also drain the cycle to ReadyForQuery before propagating.
    Transport errors propagate as they are.
    """
    result_rows: List[Row] = []

    await channel.send(FrontendMessage.QUERY, query=query)
    logger.debug("Sent query", query=query)

    try:
        description = await channel.reply(BackendMessage.ROW_DESCRIPTION)
        logger.debug("Received row description",
                     columns=[f.name for f in description.fields])

        while True:
            result = await channel.reply(BackendMessage.DATA_ROW, BackendMessage.COMMAND_COMPLETE)
            if isinstance(result, CommandComplete):
                break
            row = [None if value is None else value.decode('utf-8') for value in result.columns]
            result_rows.append(row)
            logger.debug("Received row data", row=row)
    except OSError:
        raise
    except UnexpectedMessageError as e:
        # a premature ReadyForQuery already closed the cycle
        if e.received != BackendMessage.READY_FOR_QUERY:
            await _discard_until_ready(channel)
        raise
    except Exception as e:
        if isinstance(e, ServerError):
            logger.debug("Query failed", query=query, code=e.code, error=e.message)
        else:
            logger.debug("Query result unreadable", query=query, error=str(e), error_type=type(e).__name__)
        # the simple query cycle always ends with ReadyForQuery
        await _discard_until_ready(channel)
        raise

    await channel.reply(BackendMessage.READY_FOR_QUERY)
    return result_rows
