"""
Authentication Negotiator

Drives the startup handshake for trust, cleartext, MD5 and SCRAM-SHA-256
authentication. A failed handshake is fatal: there is no reconnect or retry,
re-authentication is the caller's responsibility.

Handshake:
1. StartupMessage (user, database, client_encoding, application_name)
2. Authentication request from the server (or ReadyForQuery for trust)
3. Mechanism specific exchange
4. AuthenticationOk, then ParameterStatus / BackendKeyData until ReadyForQuery
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from . import sasl
from .channel import BaseChannel
from .config import ConnectionOptions
from .credentials import md5_password_hash
from .errors import AuthenticationError, PGWireError
from .wire import (
    AuthenticationMD5Password,
    AuthenticationOk,
    AuthenticationSASL,
    BackendMessage,
    FrontendMessage,
    ReadyForQuery,
)

logger = structlog.get_logger()

APPLICATION_NAME = "pgwire_introspect"
CLIENT_ENCODING = "'utf-8'"


class AuthStatus(str, Enum):
    NO_AUTH_REQUIRED = "no_auth_required"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthOutcome:
    status: AuthStatus
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != AuthStatus.FAILED


async def _await_ready_for_query(channel: BaseChannel) -> None:
    """Drain ParameterStatus and BackendKeyData, in any order, until ReadyForQuery"""
    while True:
        result = await channel.reply(
            BackendMessage.PARAMETER_STATUS,
            BackendMessage.BACKEND_KEY_DATA,
            BackendMessage.READY_FOR_QUERY,
        )
        if isinstance(result, ReadyForQuery):
            return
        logger.debug("Session parameter received", message=result)


async def _authenticate_sasl(mechanisms, password: str, channel: BaseChannel) -> None:
    if sasl.SASL_SCRAM_SHA_256 not in mechanisms:
        raise AuthenticationError(
            "SASL: Only mechanism SCRAM-SHA-256 is currently supported "
            f"(server offered: {', '.join(mechanisms) or 'none'})"
        )

    client_nonce, initial_response = sasl.create_initial_response()
    session = sasl.SASLSession(client_nonce=client_nonce)

    await channel.send(
        FrontendMessage.SASL_INITIAL_RESPONSE,
        mechanism=sasl.SASL_SCRAM_SHA_256,
        response=initial_response,
    )

    sasl_continue = await channel.reply(BackendMessage.AUTHENTICATION_SASL_CONTINUE)
    session.server_challenge = sasl_continue.data

    continue_response, session.expected_server_signature = sasl.create_continue_response(
        password, session.client_nonce, session.server_challenge,
    )
    await channel.send(FrontendMessage.SASL_RESPONSE, response=continue_response)

    sasl_final = await channel.reply(BackendMessage.AUTHENTICATION_SASL_FINAL)
    await channel.reply(BackendMessage.AUTHENTICATION_OK)
    await _await_ready_for_query(channel)

    sasl.verify_final_message(sasl_final.data, session.expected_server_signature)


async def negotiate(options: ConnectionOptions, channel: BaseChannel) -> AuthOutcome:
    """
    Connect the channel and run the authentication handshake.

    Returns:
        AuthOutcome; failures are reported as AuthStatus.FAILED with a reason
    """
    try:
        await channel.connect(options)
        await channel.send(FrontendMessage.STARTUP, params={
            'user': options.user,
            'database': options.db_name,
            'client_encoding': CLIENT_ENCODING,
            'application_name': APPLICATION_NAME,
        })

        result = await channel.reply(
            BackendMessage.READY_FOR_QUERY,
            BackendMessage.AUTHENTICATION_OK,
            BackendMessage.AUTHENTICATION_CLEARTEXT_PASSWORD,
            BackendMessage.AUTHENTICATION_MD5_PASSWORD,
            BackendMessage.AUTHENTICATION_SASL,
        )

        if isinstance(result, ReadyForQuery):
            return AuthOutcome(AuthStatus.NO_AUTH_REQUIRED)

        if isinstance(result, AuthenticationOk):
            # trust authentication
            await _await_ready_for_query(channel)
            return AuthOutcome(AuthStatus.NO_AUTH_REQUIRED)

        if not options.password:
            raise AuthenticationError("password required for hash auth")

        if isinstance(result, AuthenticationSASL):
            logger.debug("Handling SASL authentication", mechanisms=result.mechanisms)
            await _authenticate_sasl(result.mechanisms, options.password, channel)
            return AuthOutcome(AuthStatus.COMPLETED)

        password = options.password
        if isinstance(result, AuthenticationMD5Password):
            logger.debug("Handling salted MD5 authentication")
            password = md5_password_hash(options.user, password, result.salt)

        # cleartext and md5 share the password message
        await channel.send(FrontendMessage.PASSWORD, password=password)
        await channel.reply(BackendMessage.AUTHENTICATION_OK)
        await _await_ready_for_query(channel)
        return AuthOutcome(AuthStatus.COMPLETED)

    except (PGWireError, OSError) as e:
        return AuthOutcome(AuthStatus.FAILED, reason=str(e) or type(e).__name__)


async def startup(options: ConnectionOptions, channel: BaseChannel) -> AuthOutcome:
    """
    Authenticate or terminate the process.

    Raises:
        SystemExit: The handshake failed
    """
    outcome = await negotiate(options, channel)
    if not outcome.succeeded:
        logger.error("Connection failed",
                     host=options.host,
                     port=options.port,
                     user=options.user,
                     reason=outcome.reason)
        raise SystemExit(1)

    logger.info("Authenticated",
                host=options.host,
                database=options.db_name,
                user=options.user,
                status=outcome.status.value)
    return outcome
