# SQLModel definitions, imported here so the metadata is populated.
from .base import CreatedAtMixin, TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .subscription import Subscription  # noqa: F401
from .membership import SubscriptionMember  # noqa: F401
from .notification import Notification  # noqa: F401
from .outbox import NotificationOutbox  # noqa: F401

# Tables reachable through the REST surface, by table name.
TABLES = {
    "users": User,
    "subscriptions": Subscription,
    "subscription_members": SubscriptionMember,
    "notifications": Notification,
}
