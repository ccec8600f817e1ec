from __future__ import annotations


class TransportError(Exception):
    """A delivery attempt failed (network error or non-2xx answer)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class CaptureDropped(Exception):
    """An event was discarded before it reached the buffer."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
