"""
Connection configuration.

Options follow the libpq environment variable conventions so the same
settings drive psql and this library.
"""

import os
from dataclasses import dataclass, replace
from ssl import SSLContext, create_default_context
from typing import Mapping, Optional, Union

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5432
DEFAULT_USER = "postgres"

# PGSSLMODE values that require an encrypted connection
_TLS_SSLMODES = {"require", "verify-ca", "verify-full"}


@dataclass(frozen=True)
class ConnectionOptions:
    """Immutable input to the authentication handshake"""

    host: str = DEFAULT_HOST  # PGHOST
    port: int = DEFAULT_PORT  # PGPORT
    user: str = DEFAULT_USER  # PGUSER
    database: Optional[str] = None  # PGDATABASE, defaults to user
    password: Optional[str] = None  # PGPASSWORD
    ssl: Union[bool, SSLContext, None] = None  # PGSSLMODE

    @property
    def db_name(self) -> str:
        return self.database or self.user

    @property
    def tls_enabled(self) -> bool:
        return bool(self.ssl)

    def ssl_context(self) -> Optional[SSLContext]:
        if isinstance(self.ssl, SSLContext):
            return self.ssl
        if self.ssl:
            return create_default_context()
        return None

    def with_overrides(self, **overrides) -> 'ConnectionOptions':
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'ConnectionOptions':
        """
        Build options from PG* environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Explicit values taking precedence over the environment

        Raises:
            ValueError: PGPORT is not a valid port number
        """
        env = os.environ if environ is None else environ

        port_value = env.get("PGPORT", str(DEFAULT_PORT))
        try:
            port = int(port_value)
        except ValueError:
            raise ValueError(f"Invalid PGPORT: {port_value!r}")
        if not 0 < port < 65536:
            raise ValueError(f"Invalid PGPORT: {port_value!r}")

        user = env.get("PGUSER", DEFAULT_USER)
        options = cls(
            host=env.get("PGHOST", DEFAULT_HOST),
            port=port,
            user=user,
            database=env.get("PGDATABASE") or user,
            password=env.get("PGPASSWORD") or None,
            ssl=env.get("PGSSLMODE", "").lower() in _TLS_SSLMODES,
        )
        return options.with_overrides(**overrides)
