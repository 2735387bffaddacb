"""Derive a maintenance schedule's status from its material and purchase requests."""

from django.db import transaction
from django.utils import timezone

from inventory.models import MaterialRequest, PurchaseRequest
from maintenance.models import MaintenanceSchedule
from maintenance.services import get_schedule, update_schedule_status

# A material request is done once its stock has been issued.
MATERIAL_DONE_STATUSES = frozenset(
    {
        MaterialRequest.Status.AWAITING_DELIVERY,
        MaterialRequest.Status.APPROVED,
        MaterialRequest.Status.DELIVERED,
        MaterialRequest.Status.FULFILLED,
    }
)

# A purchase request is done once its goods have been received into stock.
PURCHASE_DONE_STATUSES = frozenset(
    {
        PurchaseRequest.Status.COMPLETED,
        PurchaseRequest.Status.RECEIVED,
        PurchaseRequest.Status.ARRIVED_IN_STOCK,
        PurchaseRequest.Status.DELIVERED,
    }
)

CASCADE_RANK = {
    MaintenanceSchedule.Status.REQUESTED: 0,
    MaintenanceSchedule.Status.PARTIALLY_STARTED: 1,
    MaintenanceSchedule.Status.STARTED: 2,
}

STARTED_STATUSES = (MaintenanceSchedule.Status.PARTIALLY_STARTED, MaintenanceSchedule.Status.STARTED)


def compute_schedule_status(material_statuses, purchase_statuses, current_status):
    """Return the status a schedule should have given its request statuses.

    Paused and completed schedules belong to the maintenance workflow and are
    returned unchanged, as is any result that would move the schedule backward.
    """
    if current_status not in CASCADE_RANK:
        return current_status

    material_statuses = list(material_statuses)
    purchase_statuses = list(purchase_statuses)
    if not all(status in MATERIAL_DONE_STATUSES for status in material_statuses):
        return current_status

    if all(status in PURCHASE_DONE_STATUSES for status in purchase_statuses):
        target = MaintenanceSchedule.Status.STARTED
    else:
        target = MaintenanceSchedule.Status.PARTIALLY_STARTED

    if CASCADE_RANK[target] < CASCADE_RANK[current_status]:
        return current_status
    return target


def refresh_schedule_status(schedule_id):
    """Recompute and store the schedule status; safe to call repeatedly."""
    with transaction.atomic():
        schedule = get_schedule(schedule_id, for_update=True)
        material_statuses = MaterialRequest.objects.filter(maintenance_schedule_id=schedule.id).values_list("status", flat=True)
        purchase_statuses = PurchaseRequest.objects.filter(maintenance_schedule_id=schedule.id).values_list("status", flat=True)

        new_status = compute_schedule_status(material_statuses, purchase_statuses, schedule.status)
        needs_start_time = new_status in STARTED_STATUSES and schedule.started_at is None
        if new_status == schedule.status and not needs_start_time:
            return schedule

        return update_schedule_status(
            schedule,
            status=new_status,
            started_at=timezone.now() if needs_start_time else None,
        )
