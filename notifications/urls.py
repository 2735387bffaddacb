from django.urls import path
from rest_framework.routers import DefaultRouter

from notifications.views import NotificationMarkReadView, NotificationViewSet

router = DefaultRouter()
router.register(r"notifications", NotificationViewSet, basename="notification")

urlpatterns = [
    path("notifications/mark-read/", NotificationMarkReadView.as_view(), name="notification-mark-read"),
] + router.urls
