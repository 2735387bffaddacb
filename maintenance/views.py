from rest_framework import viewsets
from rest_framework.permissions import IsAuthenticated

from common.permissions import RoleCapabilityPermission
from maintenance.models import MaintenanceSchedule
from maintenance.serializers import MaintenanceScheduleSerializer


class MaintenanceScheduleViewSet(viewsets.ReadOnlyModelViewSet):
    """Schedules are owned by the maintenance workflow; this surface only exposes derived status."""

    queryset = MaintenanceSchedule.objects.all()
    serializer_class = MaintenanceScheduleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "maintenance.view", "retrieve": "maintenance.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs
