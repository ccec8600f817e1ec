from __future__ import annotations


class AnalyticsError(Exception):
    """Base for errors surfaced to API callers as ``{"error", "message"}``."""

    status_code = 500
    error = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AnalyticsError):
    status_code = 400
    error = "validation_error"


class NotFoundError(AnalyticsError):
    status_code = 404
    error = "not_found"


class StorageError(AnalyticsError):
    status_code = 500
    error = "storage_error"
