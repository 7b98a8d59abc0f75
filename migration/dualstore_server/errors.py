"""
Error taxonomy for DualStore.

This module defines all exception types raised by the server:
- DualStoreError: Base exception
- ConfigError: Bad or missing mode/secret configuration
- NotFoundError: Missing conflict or outbox row
- ValidationError: Bad resolution value, malformed payload
- TransientStoreError: Network/timeout failures (retryable)
- TerminalStoreError: Permanent rejection by a store (not retryable)
- CacheUnavailableError: Cache backend unreachable (never surfaced)
- UnauthorizedError: Missing or wrong bearer token on internal endpoints

Invariants:
    - All errors inherit from DualStoreError
    - Errors include context for debugging
    - Store drivers raise only TransientStoreError or TerminalStoreError
"""

from __future__ import annotations

from typing import Any


class DualStoreError(Exception):
    """Base exception for all DualStore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DUALSTORE_ERROR"
        self.details = details or {}


class ConfigError(DualStoreError):
    """Configuration value is missing or invalid.

    Raised (or logged, for fail-closed settings) when:
    - BACKEND_MODE or WRITE_MODE holds an unknown value
    - The outbox flush secret is not configured
    """

    def __init__(
        self,
        message: str,
        setting: str | None = None,
        value: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFIG_ERROR",
            details={"setting": setting, "value": value},
        )
        self.setting = setting
        self.value = value


class NotFoundError(DualStoreError):
    """Requested conflict or outbox entry does not exist (or is closed)."""

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        identifier: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"kind": kind, "id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class ValidationError(DualStoreError):
    """Input failed validation.

    Raised when:
    - A resolution is outside {server-wins, client-wins, merge}
    - A write payload is not a JSON object
    - An operation name is unknown
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        value: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "value": value},
        )
        self.field_name = field_name
        self.value = value


class StoreError(DualStoreError):
    """Base class for record store failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        store: str | None = None,
        code: str = "STORE_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"store": store})
        self.store = store


class TransientStoreError(StoreError):
    """Store call failed in a way that may succeed on retry.

    Raised when:
    - The store is unreachable or busy
    - A call exceeded its timeout
    """

    retryable = True

    def __init__(self, message: str, store: str | None = None) -> None:
        super().__init__(message, store=store, code="TRANSIENT_STORE_ERROR")


class TerminalStoreError(StoreError):
    """Store permanently rejected the operation (constraint, bad data)."""

    def __init__(self, message: str, store: str | None = None) -> None:
        super().__init__(message, store=store, code="TERMINAL_STORE_ERROR")


class CacheUnavailableError(DualStoreError):
    """Cache backend is unreachable.

    Never surfaced to callers: the cache layer catches it and degrades to
    calling the loader directly.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CACHE_UNAVAILABLE")


class UnauthorizedError(DualStoreError):
    """Caller did not present a valid bearer token.

    The HTTP layer renders every instance identically, whether or not a
    secret is configured.
    """

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, code="UNAUTHORIZED")
