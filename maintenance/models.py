import uuid

from django.db import models


class MaintenanceSchedule(models.Model):
    class Status(models.TextChoices):
        REQUESTED = "requested", "Requested"
        STARTED = "started", "Started"
        PARTIALLY_STARTED = "partially_started", "Partially started"
        PAUSED = "paused", "Paused"
        COMPLETED = "completed", "Completed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    description = models.TextField(blank=True)
    asset_reference = models.CharField(max_length=128, blank=True)
    status = models.CharField(max_length=32, choices=Status, default=Status.REQUESTED)
    scheduled_for = models.DateField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="schedule_status_created_idx"),
            models.Index(fields=["asset_reference"], name="schedule_asset_idx"),
        ]

    def __str__(self):
        return f"{self.asset_reference or self.id} ({self.status})"
