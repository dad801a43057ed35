from enum import Enum
from typing import Optional

from pydantic import BaseModel


class RenewalFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    LEFT = "left"


class MembershipDecision(str, Enum):
    """An invitee's answer to a pending invitation."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    INVITE = "invite"
    INFO = "info"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Valid membership status transitions. A rejected invitation is removed
# rather than stored, so REJECTED only ever appears as a transition target.
MEMBERSHIP_TRANSITIONS: dict[MembershipStatus, list[MembershipStatus]] = {
    MembershipStatus.PENDING: [MembershipStatus.ACCEPTED, MembershipStatus.REJECTED],
    MembershipStatus.ACCEPTED: [MembershipStatus.LEFT],
    MembershipStatus.REJECTED: [],
    MembershipStatus.LEFT: [],
}

# Statuses that occupy a seat against a subscription's max_members.
SEAT_HOLDING_STATUSES = (MembershipStatus.PENDING, MembershipStatus.ACCEPTED)


def check_transition(current: MembershipStatus | str, target: MembershipStatus | str) -> None:
    """Raise ValueError unless current -> target is in MEMBERSHIP_TRANSITIONS."""
    current = MembershipStatus(current)
    target = MembershipStatus(target)
    if target not in MEMBERSHIP_TRANSITIONS[current]:
        raise ValueError(
            f"Membership cannot move from '{current.value}' to '{target.value}'"
        )


class ErrorBody(BaseModel):
    """PostgREST-style error envelope returned by the backend.

    Proxies and older servers may send only part of it, so every field is optional.
    """
    code: Optional[str] = None
    message: Optional[str] = None
    details: Optional[str] = None
