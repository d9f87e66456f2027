"""Error type shared across the proxy."""

from __future__ import annotations


class ProxyError(Exception):
    """A proxy failure carrying a human-readable message.

    Any object may be given as the cause; its string form becomes the message,
    so lower-level exceptions can be wrapped with ``ProxyError(exc)``.
    """

    def __init__(self, cause: object) -> None:
        self.message = str(cause)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message