"""PostgreSQL wire-protocol client with a connection pool, COPY, LISTEN/NOTIFY and text-format parsers."""

__version__ = "0.1.0"