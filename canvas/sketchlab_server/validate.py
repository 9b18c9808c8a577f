"""
Identifier validation for SketchLab Server.

Project scopes end up in SQLite file names, so they are restricted to a
safe character set. Note and file identifiers are stored as column values
and only need to be non-empty, bounded and free of control characters.

Invariants:
    - Validation never rewrites an identifier; it accepts or raises
    - All failures raise InvalidIdentifierError
"""

from __future__ import annotations

import re
from typing import Any

from .errors import InvalidIdentifierError

MAX_SCOPE_LENGTH = 64
MAX_ID_LENGTH = 256

_SCOPE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_scope(scope: Any) -> str:
    """Validate a project scope name.

    Args:
        scope: Candidate project name

    Returns:
        The scope unchanged

    Raises:
        InvalidIdentifierError: If the scope is not a safe file-name token
    """
    if not isinstance(scope, str) or not scope:
        raise InvalidIdentifierError("project", scope, "must be a non-empty string")
    if len(scope) > MAX_SCOPE_LENGTH:
        raise InvalidIdentifierError("project", scope, f"longer than {MAX_SCOPE_LENGTH}")
    if not _SCOPE_RE.match(scope):
        raise InvalidIdentifierError("project", scope, "only letters, digits, '-' and '_'")
    return scope


def validate_identifier(value: Any, kind: str) -> str:
    """Validate a note, file or client identifier.

    Args:
        value: Candidate identifier
        kind: Label used in the error message ("note", "file", ...)

    Returns:
        The identifier unchanged

    Raises:
        InvalidIdentifierError: If the identifier is malformed
    """
    if not isinstance(value, str) or not value:
        raise InvalidIdentifierError(kind, value, "must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise InvalidIdentifierError(kind, value, f"longer than {MAX_ID_LENGTH}")
    if value != value.strip():
        raise InvalidIdentifierError(kind, value, "leading or trailing whitespace")
    if any(ord(c) < 32 or ord(c) == 127 for c in value):
        raise InvalidIdentifierError(kind, value, "control characters")
    return value
