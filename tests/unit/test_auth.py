"""
Unit tests for the authentication handshake.

SCRAM exchanges are played against scramp's server implementation, so the
client proof and the server signature are verified for real.
"""

import base64

import pytest
from scramp import ScramException, ScramMechanism

from pgwire_introspect.auth import (
    APPLICATION_NAME,
    AuthStatus,
    negotiate,
    startup,
)
from pgwire_introspect.config import ConnectionOptions
from pgwire_introspect.credentials import md5_password_hash
from pgwire_introspect.wire import (
    AuthenticationCleartextPassword,
    AuthenticationMD5Password,
    AuthenticationOk,
    AuthenticationSASL,
    AuthenticationSASLContinue,
    AuthenticationSASLFinal,
    BackendKeyData,
    FrontendMessage,
    ParameterStatus,
    ReadyForQuery,
)
from tests.fakes import FakeChannel, error_response

OPTIONS = ConnectionOptions(host='db', port=5432, user='alice', database='app', password='secret')
NO_PASSWORD = ConnectionOptions(host='db', port=5432, user='alice', database='app')

SESSION_START = [
    ParameterStatus(name='server_version', value='16.2'),
    BackendKeyData(process_id=4242, secret_key=7),
    ParameterStatus(name='client_encoding', value='UTF8'),
    ReadyForQuery(),
]


class ScramServer:
    """Responder playing the PostgreSQL side of SCRAM-SHA-256"""

    def __init__(self, password: str, mechanisms=('SCRAM-SHA-256',), forge_signature: bool = False,
                 session_start=SESSION_START):
        mechanism = ScramMechanism()
        auth_info = mechanism.make_auth_info(password, iteration_count=4096)
        self.server = mechanism.make_server(lambda username: auth_info)
        self.mechanisms = list(mechanisms)
        self.forge_signature = forge_signature
        self.session_start = list(session_start)

    def __call__(self, message, payload):
        if message == FrontendMessage.STARTUP:
            return [AuthenticationSASL(mechanisms=self.mechanisms)]

        if message == FrontendMessage.SASL_INITIAL_RESPONSE:
            assert payload['mechanism'] == 'SCRAM-SHA-256'
            self.server.set_client_first(payload['response'].decode())
            return [AuthenticationSASLContinue(data=self.server.get_server_first().encode())]

        if message == FrontendMessage.SASL_RESPONSE:
            try:
                self.server.set_client_final(payload['response'].decode())
            except ScramException:
                return [error_response('password authentication failed for user "alice"',
                                       routine='auth_failed', code='28P01')]
            server_final = self.server.get_server_final()
            if self.forge_signature:
                server_final = 'v=' + base64.b64encode(b'\x00' * 32).decode()
            return [AuthenticationSASLFinal(data=server_final.encode()), AuthenticationOk(),
                    *self.session_start]
        return []


@pytest.mark.unit
class TestStartupMessage:

    @pytest.mark.asyncio
    async def test_connects_and_sends_startup_parameters(self):
        channel = FakeChannel([ReadyForQuery()])

        await negotiate(OPTIONS, channel)

        assert channel.connected_with is OPTIONS
        message, payload = channel.sent[0]
        assert message == FrontendMessage.STARTUP
        assert payload['params'] == {
            'user': 'alice',
            'database': 'app',
            'client_encoding': "'utf-8'",
            'application_name': APPLICATION_NAME,
        }

    @pytest.mark.asyncio
    async def test_database_defaults_to_user(self):
        channel = FakeChannel([ReadyForQuery()])
        await negotiate(ConnectionOptions(user='bob'), channel)
        assert channel.sent[0][1]['params']['database'] == 'bob'


@pytest.mark.unit
class TestNoAuthentication:

    @pytest.mark.asyncio
    async def test_ready_for_query_first(self):
        outcome = await negotiate(NO_PASSWORD, FakeChannel([ReadyForQuery()]))
        assert outcome.status == AuthStatus.NO_AUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_trust_authentication(self):
        channel = FakeChannel([AuthenticationOk(), *SESSION_START])
        outcome = await negotiate(NO_PASSWORD, channel)
        assert outcome.status == AuthStatus.NO_AUTH_REQUIRED
        assert channel.idle


@pytest.mark.unit
class TestPasswordAuthentication:

    @pytest.mark.asyncio
    async def test_cleartext(self):
        channel = FakeChannel([AuthenticationCleartextPassword(), AuthenticationOk(), *SESSION_START])

        outcome = await negotiate(OPTIONS, channel)

        assert outcome.status == AuthStatus.COMPLETED
        assert channel.sent[1] == (FrontendMessage.PASSWORD, {'password': 'secret'})
        assert channel.idle

    @pytest.mark.asyncio
    async def test_md5_sends_hashed_password(self):
        salt = b'\x01\x02\x03\x04'
        channel = FakeChannel([AuthenticationMD5Password(salt=salt), AuthenticationOk(), *SESSION_START])

        outcome = await negotiate(OPTIONS, channel)

        assert outcome.status == AuthStatus.COMPLETED
        message, payload = channel.sent[1]
        assert message == FrontendMessage.PASSWORD
        assert payload['password'] == md5_password_hash('alice', 'secret', salt)
        assert payload['password'] == 'md598a0412b9c31436fc53776e863350083'

    @pytest.mark.asyncio
    async def test_missing_password(self):
        channel = FakeChannel([AuthenticationMD5Password(salt=b'abcd')])

        outcome = await negotiate(NO_PASSWORD, channel)

        assert outcome.status == AuthStatus.FAILED
        assert 'password required' in outcome.reason
        assert channel.sent_kinds == [FrontendMessage.STARTUP]

    @pytest.mark.asyncio
    async def test_wrong_password_reported_by_server(self):
        channel = FakeChannel([
            AuthenticationCleartextPassword(),
            error_response('password authentication failed for user "alice"', code='28P01'),
        ])

        outcome = await negotiate(OPTIONS, channel)

        assert outcome.status == AuthStatus.FAILED
        assert 'password authentication failed' in outcome.reason

    @pytest.mark.asyncio
    async def test_unexpected_message(self):
        outcome = await negotiate(OPTIONS, FakeChannel([BackendKeyData(process_id=1, secret_key=2)]))
        assert outcome.status == AuthStatus.FAILED
        assert 'Unexpected message' in outcome.reason


@pytest.mark.unit
class TestSCRAMAuthentication:

    @pytest.mark.asyncio
    async def test_successful_exchange(self):
        channel = FakeChannel(responder=ScramServer('secret'))

        outcome = await negotiate(OPTIONS, channel)

        assert outcome.status == AuthStatus.COMPLETED
        assert channel.sent_kinds == [
            FrontendMessage.STARTUP,
            FrontendMessage.SASL_INITIAL_RESPONSE,
            FrontendMessage.SASL_RESPONSE,
        ]
        assert channel.idle

    @pytest.mark.asyncio
    async def test_ready_for_query_directly_after_authentication_ok(self):
        channel = FakeChannel(responder=ScramServer('secret', session_start=[ReadyForQuery()]))
        outcome = await negotiate(OPTIONS, channel)
        assert outcome.status == AuthStatus.COMPLETED
        assert channel.idle

    @pytest.mark.asyncio
    async def test_plus_variant_offered_alongside(self):
        server = ScramServer('secret', mechanisms=('SCRAM-SHA-256-PLUS', 'SCRAM-SHA-256'))
        outcome = await negotiate(OPTIONS, FakeChannel(responder=server))
        assert outcome.status == AuthStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsupported_mechanisms(self):
        channel = FakeChannel(responder=ScramServer('secret', mechanisms=('SCRAM-SHA-256-PLUS',)))

        outcome = await negotiate(OPTIONS, channel)

        assert outcome.status == AuthStatus.FAILED
        assert 'Only mechanism SCRAM-SHA-256' in outcome.reason
        assert channel.sent_kinds == [FrontendMessage.STARTUP]

    @pytest.mark.asyncio
    async def test_wrong_password(self):
        channel = FakeChannel(responder=ScramServer('another-secret'))
        outcome = await negotiate(OPTIONS, channel)
        assert outcome.status == AuthStatus.FAILED
        assert 'password authentication failed' in outcome.reason

    @pytest.mark.asyncio
    async def test_forged_server_signature(self):
        channel = FakeChannel(responder=ScramServer('secret', forge_signature=True))
        outcome = await negotiate(OPTIONS, channel)
        assert outcome.status == AuthStatus.FAILED
        assert 'signature does not match' in outcome.reason


@pytest.mark.unit
class TestStartup:

    @pytest.mark.asyncio
    async def test_returns_outcome_on_success(self):
        outcome = await startup(OPTIONS, FakeChannel([ReadyForQuery()]))
        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_failure_terminates_process(self):
        with pytest.raises(SystemExit) as excinfo:
            await startup(NO_PASSWORD, FakeChannel([AuthenticationCleartextPassword()]))
        assert excinfo.value.code == 1

    @pytest.mark.asyncio
    async def test_connection_loss_terminates_process(self):
        with pytest.raises(SystemExit):
            await startup(OPTIONS, FakeChannel([AuthenticationCleartextPassword()]))
