"""Lookup/update contract the fulfillment pipeline uses to reach maintenance schedules."""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError

from common.exceptions import NotFoundError
from maintenance.models import MaintenanceSchedule

logger = logging.getLogger(__name__)


def get_schedule(schedule_id, *, for_update=False):
    queryset = MaintenanceSchedule.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    try:
        schedule = queryset.filter(id=schedule_id).first()
    except (DjangoValidationError, ValueError):
        schedule = None
    if schedule is None:
        raise NotFoundError(
            f"Maintenance schedule {schedule_id} was not found.",
            {"maintenance_schedule_id": str(schedule_id)},
        )
    return schedule


def update_schedule_status(schedule, *, status, started_at=None):
    previous_status = schedule.status
    schedule.status = status
    update_fields = ["status", "updated_at"]
    if started_at is not None and schedule.started_at is None:
        schedule.started_at = started_at
        update_fields.append("started_at")
    schedule.save(update_fields=update_fields)

    if previous_status != status:
        logger.info(
            "schedule_status_changed",
            extra={"schedule_id": str(schedule.id), "from_status": previous_status, "to_status": status},
        )
    return schedule
