"""Bulk contact verification, import and broadcast engine."""

__version__ = "0.4.0"
