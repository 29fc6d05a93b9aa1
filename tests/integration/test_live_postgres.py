"""
Live PostgreSQL tests

Run against the server described by the PG* environment variables, e.g.

    PGHOST=localhost PGUSER=postgres PGPASSWORD=postgres pytest -m integration
"""

import uuid

import pytest
import pytest_asyncio

from pgwire_introspect.auth import negotiate, startup
from pgwire_introspect.channel import MessageChannel
from pgwire_introspect.errors import ServerError
from pgwire_introspect.inference import infer_query_types
from pgwire_introspect.introspect import get_type_data
from pgwire_introspect.models import ArrayType, EnumType, ParseError, QueryTypes, ScalarType, TypeData
from pgwire_introspect.query import run_query
from pgwire_introspect.wire import BackendMessage, FrontendMessage, ReadyForQuery

pytestmark = pytest.mark.integration


async def execute(channel, sql):
    """Run statements that return no rows"""
    await channel.send(FrontendMessage.QUERY, query=sql)
    while True:
        reply = await channel.reply(BackendMessage.COMMAND_COMPLETE, BackendMessage.EMPTY_QUERY_RESPONSE,
                                    BackendMessage.READY_FOR_QUERY)
        if isinstance(reply, ReadyForQuery):
            return


@pytest_asyncio.fixture
async def channel(pg_options):
    """Authenticated connection, terminated after each test"""
    connection = MessageChannel()
    await startup(pg_options, connection)
    yield connection
    await connection.close()


@pytest_asyncio.fixture
async def users_table(channel):
    """Temporary users table with a commented column and an enum"""
    suffix = uuid.uuid4().hex[:8]
    table, mood = f"users_{suffix}", f"mood_{suffix}"
    await execute(channel, f"CREATE TYPE {mood} AS ENUM ('sad', 'ok', 'happy')")
    await execute(channel, f"CREATE TABLE {table} (id int4 PRIMARY KEY, name text, mood {mood}, moods {mood}[])")
    await execute(channel, f"COMMENT ON COLUMN {table}.name IS 'Display name'")
    yield table, mood
    await execute(channel, f"DROP TABLE {table}; DROP TYPE {mood}")


@pytest.mark.asyncio
async def test_authentication(pg_options):
    channel = MessageChannel()
    try:
        outcome = await negotiate(pg_options, channel)
        assert outcome.succeeded, outcome.reason
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_wrong_password_fails(pg_options):
    if pg_options.password is None:
        pytest.skip("Server does not require a password")

    channel = MessageChannel()
    try:
        outcome = await negotiate(pg_options.with_overrides(password=pg_options.password + "-wrong"), channel)
    finally:
        await channel.close()

    assert not outcome.succeeded
    assert outcome.reason


@pytest.mark.asyncio
async def test_run_query(channel):
    assert await run_query("SELECT 1, NULL::text, 'x'", channel) == [['1', None, 'x']]


@pytest.mark.asyncio
async def test_run_query_error_leaves_connection_usable(channel):
    with pytest.raises(ServerError) as exc_info:
        await run_query("SELECT * FROM table_that_does_not_exist", channel)
    assert exc_info.value.code == '42P01'

    assert await run_query("SELECT 2", channel) == [['2']]


@pytest.mark.asyncio
async def test_probe_syntax_error(channel):
    result = await get_type_data("SELEC 1", channel)

    assert isinstance(result, ParseError)
    assert 'syntax error' in result.message
    assert isinstance(await get_type_data("SELECT 1", channel), TypeData)


@pytest.mark.asyncio
async def test_infer_users_lookup(channel, users_table):
    table, mood = users_table

    result = await infer_query_types(f"SELECT id, name, mood, moods FROM {table} WHERE id = $1", [], channel)

    assert isinstance(result, QueryTypes)
    assert result.param_metadata.params == [ScalarType('int4')]

    mood_type = EnumType(name=mood, enum_values=('sad', 'ok', 'happy'))
    id_type, name_type, mood_column, moods_column = result.return_types
    assert (id_type.type, id_type.column_name, id_type.nullable) == (ScalarType('int4'), 'id', False)
    assert (name_type.type, name_type.nullable, name_type.comment) == (ScalarType('text'), True, 'Display name')
    assert mood_column.type == mood_type
    assert moods_column.type == ArrayType(name=f"_{mood}", element_type=mood_type)


@pytest.mark.asyncio
async def test_infer_computed_column(channel):
    result = await infer_query_types("SELECT count(*) AS total FROM pg_type", [], channel)

    [total] = result.return_types
    assert total.type == ScalarType('int8')
    assert total.column_name is None
    assert total.nullable is None


@pytest.mark.asyncio
async def test_infer_parse_error_then_recover(channel):
    assert isinstance(await infer_query_types("SELEC id FROM users", [], channel), ParseError)
    assert isinstance(await infer_query_types("SELECT $1::int4", [], channel), QueryTypes)
