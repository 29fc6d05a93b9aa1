"""
Generated SQL helpers: identifier quoting and prepared statement naming.
"""

import hashlib
import re

_IDENTIFIER_SPECIALS = re.compile('["\x00]')


def escape_identifier(identifier: str) -> str:
    """
    Quote an identifier for interpolation into SQL text.

    Embedded double quotes are doubled. NUL characters, which PostgreSQL
    text cannot carry, are replaced by a doubled quote as well (libpq
    PQescapeIdentifier behaviour).
    """
    return '"' + _IDENTIFIER_SPECIALS.sub('""', identifier) + '"'


def statement_name(query: str) -> str:
    """Deterministic prepared statement name: hex MD5 digest of the query text"""
    return hashlib.md5(query.encode('utf-8')).hexdigest()
