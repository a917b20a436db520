"""Transports the engine can call (optional dependencies)."""

from contextlib import suppress

with suppress(ImportError):
    from tagsync.transports.http import HttpTransport, parse_retry_after

__all__ = ["HttpTransport", "parse_retry_after"]
