from rest_framework import serializers

from maintenance.models import MaintenanceSchedule


class MaintenanceScheduleSerializer(serializers.ModelSerializer):
    class Meta:
        model = MaintenanceSchedule
        fields = [
            "id",
            "description",
            "asset_reference",
            "status",
            "scheduled_for",
            "started_at",
            "completed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
