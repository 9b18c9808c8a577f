"""
Error types for SketchLab Server.

This module defines the exceptions raised by the stores, the sync layer
and the request service:
- SketchLabError: Base exception
- DuplicateClientError: Identity is already active or already joined
- UnknownClientError: Request from an identity that never joined
- NotFoundError: Blob or note absent
- InvalidIdentifierError: Malformed project, note or file identifier
- InvalidPayloadError: Note fields of the wrong shape or type
- StorageFailureError: Underlying SQLite call failed
- DuplicateBlobError: File identity already stored in some tier

Invariants:
    - All errors inherit from SketchLabError
    - Every error carries a stable code for the HTTP error payload
    - Messages never include payload bytes
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SketchLabError(Exception):
    """Base exception for all SketchLab Server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "SKETCHLAB_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error payload in the shape returned to HTTP callers."""
        return {
            "status": "error",
            "message": self.message,
            "error_code": self.code,
        }


class DuplicateClientError(SketchLabError):
    """Client identity is already active.

    Raised when:
    - A channel registers with an identity that is already connected
    - A client joins a project twice without disconnecting
    """

    code = "DUPLICATE_CLIENT"

    def __init__(self, client_id: str) -> None:
        super().__init__(
            f"Client already registered: {client_id}",
            details={"client_id": client_id},
        )
        self.client_id = client_id


class UnknownClientError(SketchLabError):
    """Request names a client identity that is not registered."""

    code = "UNKNOWN_CLIENT"

    def __init__(self, client_id: str) -> None:
        super().__init__(
            f"Unknown client: {client_id}",
            details={"client_id": client_id},
        )
        self.client_id = client_id


class NotFoundError(SketchLabError):
    """Blob or document entry does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str, scope: Optional[str] = None) -> None:
        where = f" in project {scope}" if scope else ""
        super().__init__(
            f"{kind} not found: {identifier}{where}",
            details={"kind": kind, "id": identifier, "scope": scope},
        )
        self.kind = kind
        self.identifier = identifier
        self.scope = scope


class InvalidIdentifierError(SketchLabError):
    """Identifier is malformed.

    Raised for empty, oversized or otherwise unusable project names,
    note ids, file ids and client ids.
    """

    code = "INVALID_IDENTIFIER"

    def __init__(self, kind: str, value: Any, reason: str) -> None:
        super().__init__(
            f"Invalid {kind} {value!r}: {reason}",
            details={"kind": kind, "reason": reason},
        )
        self.kind = kind
        self.value = value


class InvalidPayloadError(SketchLabError):
    """A request field has the wrong shape or type.

    Identifiers are checked by InvalidIdentifierError; this covers the
    note body, such as a non-string noteText or a notePos without numeric
    coordinates. Only the value's type is reported.
    """

    code = "INVALID_PAYLOAD"

    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(
            f"Invalid {field} ({type(value).__name__}): {reason}",
            details={"field": field, "reason": reason},
        )
        self.field = field
        self.value = value


class StorageFailureError(SketchLabError):
    """The persistence layer failed.

    Wraps the underlying exception (available as __cause__). The message
    is generic on purpose; the cause is logged, not sent to clients.
    """

    code = "STORAGE_FAILURE"

    def __init__(self, operation: str, scope: Optional[str] = None) -> None:
        super().__init__(
            f"Failed to {operation}",
            details={"operation": operation, "scope": scope},
        )
        self.operation = operation
        self.scope = scope


class DuplicateBlobError(SketchLabError):
    """File identity is already stored; tiers are write-once."""

    code = "DUPLICATE_BLOB"

    def __init__(self, file_id: str, scope: str) -> None:
        super().__init__(
            f"File already exists: {file_id} in project {scope}",
            details={"file_id": file_id, "scope": scope},
        )
        self.file_id = file_id
        self.scope = scope
