"""Notification queue: enqueue API, delivery worker and retry policy."""

from .alerts import DELIVERY_FAILED, raise_admin_alert
from .backoff import BackoffPolicy
from .service import NotificationService
from .worker import DeliveryWorker, WorkerPassResult

__all__ = [
    "NotificationService",
    "DeliveryWorker",
    "WorkerPassResult",
    "BackoffPolicy",
    "raise_admin_alert",
    "DELIVERY_FAILED",
]
