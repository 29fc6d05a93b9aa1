"""
Pytest configuration for pgwire_introspect tests

Unit tests use tests.fakes.FakeChannel. Integration tests need a real
PostgreSQL server reachable through the PG* environment variables and are
skipped when none answers.
"""

import socket
import time

import pytest
import structlog

from pgwire_introspect.config import ConnectionOptions

logger = structlog.get_logger()


def wait_for_port(host: str, port: int, timeout: float = 5) -> bool:
    """Wait for a port to become available"""
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(0.1)
    return False


@pytest.fixture(scope="session")
def pg_options() -> ConnectionOptions:
    """Connection options for the live server, skipping when it is unreachable"""
    options = ConnectionOptions.from_env()
    if not wait_for_port(options.host, options.port, timeout=2):
        pytest.skip(f"PostgreSQL not reachable at {options.host}:{options.port}")
    logger.info("Using live PostgreSQL", host=options.host, port=options.port, user=options.user)
    return options
