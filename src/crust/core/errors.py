"""Error hierarchy for crust.

Service-level errors carry an HTTP-style status code and a short code so the
(external) request layer can render them without knowing the domain.
"""

from __future__ import annotations


class CrustError(Exception):
    """Base exception for domain errors."""

    def __init__(self, status_code: int, code: str, text: str):
        self.status_code = status_code
        self.code = code
        self.text = text
        super().__init__(text)


class NotFoundError(CrustError):
    """Resource not found (404)."""

    def __init__(self, resource_type: str, identifier: str):
        super().__init__(
            status_code=404,
            code="NotFound",
            text=f"{resource_type} with identifier '{identifier}' not found",
        )


class ConflictError(CrustError):
    """Resource already exists (409)."""

    def __init__(self, resource_type: str, identifier: str):
        super().__init__(
            status_code=409,
            code="Conflict",
            text=f"{resource_type} with identifier '{identifier}' already exists",
        )


class BadRequestError(CrustError):
    """Invalid request (400)."""

    def __init__(self, text: str):
        super().__init__(status_code=400, code="BadRequest", text=text)


class AuthoritativeStoreError(CrustError):
    """The source of truth failed to read or write.

    Surfaced to the caller of read/write paths; swallowed per step inside
    post-order aggregation.
    """

    def __init__(self, text: str):
        super().__init__(status_code=503, code="StoreUnavailable", text=text)


class CacheUnavailable(Exception):
    """A cache operation failed or timed out.

    Raised and caught inside KeyValueCache only.
    """

    def __init__(self, operation: str, key: str, reason: str):
        self.operation = operation
        self.key = key
        self.reason = reason
        super().__init__(f"cache {operation} failed for {key!r}: {reason}")
