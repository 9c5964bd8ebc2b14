"""Error taxonomy shared by the streaming proxy, search and browsing routes."""

from __future__ import annotations

from typing import ClassVar


class PrismError(Exception):
    """Base class for errors that terminate a request with a JSON error body."""

    status_code: ClassVar[int] = 500
    error: ClassVar[str] = "Internal Server Error"
    default_message: ClassVar[str] = "An unexpected error occurred"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class AccessDenied(PrismError):
    status_code = 403
    error = "Access Denied"
    default_message = "You do not have permission to access this bucket"


class NotFound(PrismError):
    status_code = 404
    error = "Not Found"
    default_message = "Object not found"


class BadRequest(PrismError):
    status_code = 400
    error = "Bad Request"
    default_message = "Invalid request"


class UpstreamError(PrismError):
    """Any storage failure that is not a missing object or bucket."""

    status_code = 500
    default_message = "Storage request failed"


def check_bucket_access(bucket: str, allowed_buckets: frozenset[str] | None) -> None:
    """Raise ``AccessDenied`` unless *bucket* is exposed by the allow-list.

    ``None`` means every bucket is allowed.
    """
    if allowed_buckets is not None and bucket not in allowed_buckets:
        raise AccessDenied
