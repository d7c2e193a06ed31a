"""
Error types shared by the store clients, the delivery router and the API.
"""

from __future__ import annotations


class PersistenceError(RuntimeError):
    """The document store was unreachable, rejected a write or timed out."""


class MalformedPayloadError(ValueError):
    """An inbound payload is missing fields or has the wrong shape."""
