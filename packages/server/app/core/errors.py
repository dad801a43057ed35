"""
PostgREST-style error responses.

Clients classify failures by HTTP status first and by ``code`` second, so the
status chosen here is part of the wire contract:

- 400  malformed filter / payload, or a write the domain rules refuse (KL codes)
- 401  no actor could be identified
- 403  access policy rejected the read or write (code 42501)
- 404  unknown table or procedure
- 409  uniqueness or foreign key violation (codes 23505, 23503)
"""

from __future__ import annotations

from fastapi import HTTPException

PERMISSION_DENIED = "42501"
UNIQUE_VIOLATION = "23505"
NOT_NULL_VIOLATION = "23502"
UNDEFINED_COLUMN = "42703"
UNDEFINED_TABLE = "42P01"
UNDEFINED_FUNCTION = "42883"
INVALID_TEXT_REPRESENTATION = "22P02"
FOREIGN_KEY_VIOLATION = "23503"
MISSING_FILTER = "21000"
IMMUTABLE_COLUMN = "KL001"
INVALID_TRANSITION = "KL002"
MEMBER_LIMIT_REACHED = "KL003"
STILL_SHARED = "KL004"


def store_error(
    status_code: int, code: str, message: str, details: str | None = None
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "message": message, "details": details},
    )


def permission_denied(table: str, action: str) -> HTTPException:
    return store_error(
        403,
        PERMISSION_DENIED,
        f"permission denied for {action} on table {table}",
    )
