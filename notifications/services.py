import logging

from django.db import transaction

from common.utils import to_json_compatible
from notifications.models import Notification

logger = logging.getLogger(__name__)


def notify_low_stock(item_code, item_name, current_stock, minimum_threshold):
    return Notification.objects.create(
        type=Notification.Type.LOW_STOCK,
        title="Low Stock Alert",
        message=(
            f'Item "{item_name}" is running low on stock. '
            f"Current: {current_stock}, Minimum: {minimum_threshold}"
        ),
        priority=Notification.Priority.HIGH,
        data=to_json_compatible(
            {
                "item_code": item_code,
                "item_name": item_name,
                "current_stock": current_stock,
                "minimum_threshold": minimum_threshold,
            }
        ),
        related_entity_type="inventory_item",
        related_entity_id=str(item_code),
    )


def notify_purchase_completed(purchase_request_id, title):
    return Notification.objects.create(
        type=Notification.Type.PURCHASE_COMPLETED,
        title="Purchase Request Completed",
        message=f"{title} has been completed and received into stock.",
        priority=Notification.Priority.MEDIUM,
        data={"purchase_request_id": str(purchase_request_id)},
        related_entity_type="purchase_request",
        related_entity_id=str(purchase_request_id),
    )


def dispatch_on_commit(trigger, **kwargs):
    """Run ``trigger(**kwargs)`` once the surrounding transaction commits.

    Triggers are best-effort: a failure is logged and never reaches the caller,
    and a rolled-back transaction never fires its triggers.
    """

    def _run():
        try:
            trigger(**kwargs)
        except Exception:
            logger.exception(
                "notification_trigger_failed",
                extra={"trigger": getattr(trigger, "__name__", repr(trigger)), "details": to_json_compatible(kwargs)},
            )

    transaction.on_commit(_run)
