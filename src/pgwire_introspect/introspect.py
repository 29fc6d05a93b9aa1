"""
Query probing over the extended query protocol

get_type_data: Parse + Describe + Close + Flush, yielding the parameter and
result column type descriptors the server infers for a query.

explain_query: re-prepares the statement and runs EXPLAIN EXECUTE with NULL
arguments, surfacing planner and permission errors without executing the
query. NULL is accepted for every parameter type at this stage (even domains
declared NOT NULL).

Server errors are returned as ParseError values. Both operations leave the
connection idle (ReadyForQuery received) on every return path.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Union

import structlog

from .channel import BaseChannel
from .errors import ServerError
from .models import ParseError, RawTypeData, TypeData
from .query import run_query
from .sql import escape_identifier, statement_name
from .wire import (
    BackendMessage,
    ErrorResponse,
    FrontendMessage,
    ParameterDescription,
    PreparedObjectType,
    RowDescription,
)

logger = structlog.get_logger()

EXPLAIN_ERROR_CODE = "_ERROR"


async def get_type_data(query: str, channel: BaseChannel) -> RawTypeData:
    """
    Return the raw type data reported by the Describe message.

    Args:
        query: SQL text, placeholders must be PostgreSQL numeric ($1, $2, ...)
        channel: Authenticated channel in idle state
    """
    name = statement_name(query)

    # Send all the messages needed and then flush
    await channel.send(FrontendMessage.PARSE, name=name, query=query, data_types=[])
    await channel.send(FrontendMessage.DESCRIBE, name=name, target=PreparedObjectType.STATEMENT)
    await channel.send(FrontendMessage.CLOSE, name=name, target=PreparedObjectType.STATEMENT)
    await channel.send(FrontendMessage.FLUSH)

    try:
        parse_result = await channel.reply(BackendMessage.ERROR_RESPONSE, BackendMessage.PARSE_COMPLETE)
    finally:
        # the server discards everything after an error until Sync
        await channel.send(FrontendMessage.SYNC)

    if isinstance(parse_result, ErrorResponse):
        await channel.reply(BackendMessage.READY_FOR_QUERY)
        error = ParseError.from_fields(parse_result.fields)
        logger.debug("Parse failed", statement=name, error_code=error.error_code, error=error.message)
        return error

    try:
        params_result = await channel.reply(BackendMessage.PARAMETER_DESCRIPTION, BackendMessage.NO_DATA)
        params = params_result.params if isinstance(params_result, ParameterDescription) else []

        fields_result = await channel.reply(BackendMessage.ROW_DESCRIPTION, BackendMessage.NO_DATA)
        fields = fields_result.fields if isinstance(fields_result, RowDescription) else []

        await channel.reply(BackendMessage.CLOSE_COMPLETE)
    except ServerError as e:
        await channel.reply(BackendMessage.READY_FOR_QUERY)
        logger.debug("Describe failed", statement=name, error=e.message)
        return e.to_parse_error()

    await channel.reply(BackendMessage.READY_FOR_QUERY)

    logger.debug("Described statement",
                 statement=name,
                 params=params,
                 fields=[f.name for f in fields])
    return TypeData(params=list(params), fields=list(fields))


@dataclass
class _PreparedStatement:
    name: str
    # set once the server rejected a command; it then ignores all until Sync
    error_latched: bool = False


@asynccontextmanager
async def _prepared_statement(channel: BaseChannel, name: str) -> AsyncIterator[_PreparedStatement]:
    """Release the statement and resynchronise the connection on exit"""
    statement = _PreparedStatement(name)
    try:
        yield statement
    finally:
        await channel.send(FrontendMessage.CLOSE, name=name, target=PreparedObjectType.STATEMENT)
        await channel.send(FrontendMessage.FLUSH)
        await channel.send(FrontendMessage.SYNC)
        if not statement.error_latched:
            await channel.reply(BackendMessage.CLOSE_COMPLETE)
        await channel.reply(BackendMessage.READY_FOR_QUERY)


def explain_statement_sql(name: str, param_count: int) -> str:
    params = ', '.join('null' for _ in range(param_count))
    return f"explain execute {escape_identifier(name)}{f' ({params})' if params else ''};"


async def explain_query(query: str, type_data: RawTypeData,
                        channel: BaseChannel) -> Union[List[str], ParseError]:
    """
    Check that EXPLAIN EXECUTE of the prepared statement works.

    Args:
        query: SQL text, placeholders must be PostgreSQL numeric ($1, $2, ...)
        type_data: Result of get_type_data for the same query
        channel: Authenticated channel in idle state

    Returns:
        Plan lines, or the ParseError describing why the query cannot run
    """
    if isinstance(type_data, ParseError):
        return type_data

    name = statement_name(query)

    async with _prepared_statement(channel, name) as statement:
        await channel.send(FrontendMessage.PARSE, name=name, query=query, data_types=[])
        await channel.send(FrontendMessage.FLUSH)

        parse_result = await channel.reply(BackendMessage.ERROR_RESPONSE, BackendMessage.PARSE_COMPLETE)
        if isinstance(parse_result, ErrorResponse):
            statement.error_latched = True
            return ParseError.from_fields(parse_result.fields)

        try:
            explain = await run_query(explain_statement_sql(name, len(type_data.params)), channel)
        except Exception as e:
            # most likely a permission failure, e.g. permission denied for table
            logger.error("Error occurred whilst testing query",
                         statement=name, error=str(e), error_type=type(e).__name__)
            return ParseError(error_code=EXPLAIN_ERROR_CODE, message=str(e))

        return [row[0] for row in explain]
