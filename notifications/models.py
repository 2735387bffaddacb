import uuid

from django.db import models


class Notification(models.Model):
    class Type(models.TextChoices):
        LOW_STOCK = "low_stock", "Low stock"
        PURCHASE_COMPLETED = "purchase_completed", "Purchase completed"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    type = models.CharField(max_length=32, choices=Type)
    title = models.CharField(max_length=255)
    message = models.TextField()
    priority = models.CharField(max_length=16, choices=Priority, default=Priority.MEDIUM)
    data = models.JSONField(default=dict, blank=True)
    related_entity_type = models.CharField(max_length=64, blank=True)
    related_entity_id = models.CharField(max_length=64, blank=True)
    is_read = models.BooleanField(default=False)
    read_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["type", "created_at"], name="notification_type_created_idx"),
            models.Index(fields=["is_read", "created_at"], name="notification_unread_idx"),
            models.Index(fields=["related_entity_type", "related_entity_id"], name="notification_entity_idx"),
        ]
