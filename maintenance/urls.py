from rest_framework.routers import DefaultRouter

from maintenance.views import MaintenanceScheduleViewSet

router = DefaultRouter()
router.register(r"maintenance-schedules", MaintenanceScheduleViewSet, basename="maintenance-schedule")

urlpatterns = router.urls
