"""Background workers."""
from .catalog_sync_worker import start_catalog_sync_worker
from .checkout_timeout_worker import start_checkout_timeout_worker
from .notification_retry_worker import start_notification_retry_worker

__all__ = [
    "start_catalog_sync_worker",
    "start_checkout_timeout_worker",
    "start_notification_retry_worker",
]
