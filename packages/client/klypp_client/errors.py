"""
Error taxonomy for the membership core.

Every failure a public operation can report is one of these classes. Each
carries a stable ``code``, whether the *same actor* may succeed by calling the
operation again (``retriable``), and a ``context`` dict with the entity ids
and the step that failed.
"""

from __future__ import annotations

from typing import Any


class KlyppError(Exception):
    code = "error"
    retriable = False
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Actionable text for the person who triggered the operation."""
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "context": {k: str(v) for k, v in self.context.items()},
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, context={self.context!r})"


# ---------------------------------------------------------------------------
# Store-level failures (raised by RelationalStore implementations)
# ---------------------------------------------------------------------------


class StoreError(KlyppError):
    code = "store_error"
    default_message = "The server rejected the request"


class PermissionDenied(StoreError):
    code = "permission_denied"
    default_message = "You do not have permission to do that"


class TransientIOError(StoreError):
    """Network failure or timeout on one remote call. Safe to retry that call."""
    code = "transient_io"
    retriable = True
    default_message = "The server could not be reached, please try again"


class DuplicateKey(StoreError):
    code = "duplicate_key"
    default_message = "That record already exists"


class ProcedureUnavailable(StoreError):
    code = "procedure_unavailable"
    default_message = "The server procedure is not available"


# ---------------------------------------------------------------------------
# Domain failures
# ---------------------------------------------------------------------------


class NotFound(KlyppError):
    code = "not_found"
    default_message = "Not found"


class AmbiguousIdentifier(KlyppError):
    code = "ambiguous_identifier"
    default_message = "More than one user matches that name, please be more specific"


class AlreadyMember(KlyppError):
    code = "already_member"
    default_message = "That user is already a member or has a pending invitation"


class NotShared(KlyppError):
    code = "not_shared"
    default_message = "This subscription is not shared, enable sharing before inviting members"


class StillShared(KlyppError):
    code = "still_shared"
    default_message = "Remove every member before turning sharing off"


class MemberLimitReached(KlyppError):
    code = "member_limit_reached"
    default_message = "This subscription has reached its member limit"


class InvalidTransition(KlyppError):
    code = "invalid_transition"
    default_message = "That invitation can no longer be changed"


class IncompleteCascade(KlyppError):
    """Some membership rows survived every delete attempt; the subscription is intact."""
    code = "incomplete_cascade"
    retriable = True
    default_message = "Some members could not be removed, the subscription was kept. Try deleting again"


class DeleteFailed(KlyppError):
    """All dependent rows are gone but the subscription row itself was not deleted."""
    code = "delete_failed"
    retriable = True
    default_message = "The subscription could not be deleted. Try again"
