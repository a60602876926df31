from .users import User
from .subscriptions import Subscription
from .stores import Store
from .listing_jobs import ListingJob
from .webhook_configs import WebhookConfig
from .webhook_logs import WebhookLog
from .scheduler_jobs import SchedulerJob
from .payments import Payment
from .orders import Order

__all__ = [
    "User",
    "Subscription",
    "Store",
    "ListingJob",
    "WebhookConfig",
    "WebhookLog",
    "SchedulerJob",
    "Payment",
    "Order",
]
