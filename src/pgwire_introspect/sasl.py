"""
SCRAM-SHA-256 client helper

Thin stateless layer over scramp's ScramClient. PostgreSQL takes the user
name from the startup message, so the SCRAM user name is always "*".
Channel binding (SCRAM-SHA-256-PLUS) is not used.
"""

import hmac
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from scramp import ScramClient, ScramException

from .errors import AuthenticationError

SASL_SCRAM_SHA_256 = "SCRAM-SHA-256"
SCRAM_USERNAME = "*"


@dataclass
class SASLSession:
    """State of one SCRAM exchange, discarded once the server is verified"""

    client_nonce: str
    server_challenge: Optional[bytes] = None
    expected_server_signature: Optional[str] = None


def create_initial_response() -> Tuple[str, bytes]:
    """
    Build the client-first message.

    Returns:
        (client nonce, client-first message bytes)
    """
    client = ScramClient([SASL_SCRAM_SHA_256], SCRAM_USERNAME, "")
    client_first = client.get_client_first()
    # newer scramp releases wrap the nonce in a Nonce object
    return str(client.c_nonce), client_first.encode('utf-8')


def create_continue_response(password: str, client_nonce: str,
                             server_data: bytes) -> Tuple[bytes, str]:
    """
    Answer the server-first challenge.

    Returns:
        (client-final message bytes, expected server signature)

    Raises:
        AuthenticationError: Malformed challenge or nonce mismatch
    """
    client = ScramClient([SASL_SCRAM_SHA_256], SCRAM_USERNAME, password, c_nonce=client_nonce)
    client.get_client_first()
    try:
        client.set_server_first(server_data.decode('utf-8'))
        client_final = client.get_client_final()
    except (ScramException, UnicodeDecodeError) as e:
        raise AuthenticationError(f"SASL: invalid server challenge: {e}")
    signature = client.server_signature
    if isinstance(signature, bytes):
        signature = signature.decode('ascii')
    return client_final.encode('utf-8'), signature


def _parse_attributes(message: str) -> Dict[str, str]:
    attributes = {}
    for part in message.split(','):
        key, sep, value = part.partition('=')
        if sep:
            attributes[key] = value
    return attributes


def verify_final_message(server_data: bytes, expected_signature: str) -> None:
    """
    Check the server-final message against the signature computed locally.

    Raises:
        AuthenticationError: The server reported an error or its signature differs
    """
    try:
        attributes = _parse_attributes(server_data.decode('utf-8'))
    except UnicodeDecodeError:
        raise AuthenticationError("SASL: server final message is not valid UTF-8")

    if 'e' in attributes:
        raise AuthenticationError(f"SASL: server reported error: {attributes['e']}")

    signature = attributes.get('v')
    if signature is None:
        raise AuthenticationError("SASL: server final message has no signature")

    if not hmac.compare_digest(signature.encode('ascii', 'replace'),
                               expected_signature.encode('ascii')):
        raise AuthenticationError("SASL: server signature does not match")
