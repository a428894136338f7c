"""
Error types for FHIR DB Server.

This module defines the exception hierarchy used across the engine:
- FhirStoreError: Base exception
- ConflictError: Version mismatch on a conditional write
- OversizeError: Serialized resource exceeds the size cap
- BackendError: Document or blob backend failure
- UnknownResourceTypeError: Type name not present in the registry
- InvalidContinuationTokenError: Page token could not be decoded

Not-found is never an exception: lookups return None.

Invariants:
    - All errors inherit from FhirStoreError
    - Errors carry a stable code for programmatic handling
    - Backend errors never escape a write; they become outcome values
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FhirStoreError(Exception):
    """Base exception for all FHIR DB Server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FHIR_STORE_ERROR"
        self.details = details or {}


class ConflictError(FhirStoreError):
    """Stored version does not match the expected version.

    Recoverable: the caller may re-read the resource and retry
    with the fresh versionId.
    """

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        current_version: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="VERSION_CONFLICT",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "current_version": current_version,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.current_version = current_version


class OversizeError(FhirStoreError):
    """Serialized resource is larger than the configured cap."""

    def __init__(self, message: str, size: int, limit: int) -> None:
        super().__init__(
            message,
            code="RESOURCE_TOO_LARGE",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class BackendError(FhirStoreError):
    """A storage backend operation failed."""

    def __init__(self, message: str, code: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, code=code or "BACKEND_ERROR", details=details)


class DocumentStoreError(BackendError):
    """Document backend failure (includes rejected query text)."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="DOCUMENT_STORE_ERROR", **details)


class BlobStoreError(BackendError):
    """Blob backend failure."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="BLOB_STORE_ERROR", **details)


class UnknownResourceTypeError(FhirStoreError):
    """Resource type name is not registered."""

    def __init__(self, type_name: str) -> None:
        super().__init__(
            f"Unknown resource type '{type_name}'",
            code="UNKNOWN_RESOURCE_TYPE",
            details={"type_name": type_name},
        )
        self.type_name = type_name


class InvalidContinuationTokenError(FhirStoreError):
    """Continuation token is not valid URL-safe base64."""

    def __init__(self, token: str) -> None:
        super().__init__(
            "Invalid continuation token",
            code="INVALID_CONTINUATION_TOKEN",
            details={"token": token},
        )
        self.token = token
