"""
PostgreSQL Wire Protocol Type Introspection

Authenticates against a PostgreSQL server over the v3 wire protocol and
infers parameter and result-column types of raw SQL queries through
parse/describe probing, EXPLAIN validation and system catalog lookups.
"""

__version__ = "0.1.0"
__author__ = "pgwire-introspect developers"

__all__ = ["__version__", "__author__"]
