from datetime import timedelta

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import NotFoundError
from maintenance.models import MaintenanceSchedule
from maintenance.services import get_schedule, update_schedule_status


class ScheduleServiceTests(TestCase):
    def setUp(self):
        self.schedule = MaintenanceSchedule.objects.create(asset_reference="PUMP-3", description="Seal replacement")

    def test_get_schedule_returns_existing_and_rejects_unknown(self):
        self.assertEqual(get_schedule(self.schedule.id), self.schedule)
        self.assertEqual(get_schedule(str(self.schedule.id), for_update=True), self.schedule)

        for missing in ("00000000-0000-0000-0000-000000000000", "not-a-uuid"):
            with self.assertRaises(NotFoundError) as ctx:
                get_schedule(missing)
            self.assertEqual(ctx.exception.details["maintenance_schedule_id"], missing)

    def test_update_status_sets_start_time_only_once(self):
        first_start = timezone.now()

        with self.assertLogs("maintenance.services", level="INFO") as cm:
            update_schedule_status(self.schedule, status=MaintenanceSchedule.Status.PARTIALLY_STARTED, started_at=first_start)
        self.assertTrue(any("schedule_status_changed" in line for line in cm.output))

        update_schedule_status(
            self.schedule,
            status=MaintenanceSchedule.Status.STARTED,
            started_at=first_start + timedelta(hours=2),
        )

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.status, MaintenanceSchedule.Status.STARTED)
        self.assertEqual(self.schedule.started_at, first_start)


class ScheduleApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.technician = get_user_model().objects.create_user(
            username="tech-maint",
            password="pass1234",
            role="technician",
        )
        self.requested = MaintenanceSchedule.objects.create(asset_reference="POLE-1")
        self.started = MaintenanceSchedule.objects.create(
            asset_reference="POLE-2",
            status=MaintenanceSchedule.Status.STARTED,
        )

    def test_list_filters_by_status(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.get("/api/v1/maintenance-schedules/", {"status": "started"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.json()["results"]], [str(self.started.id)])

    def test_schedules_are_read_only(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.patch(
            f"/api/v1/maintenance-schedules/{self.requested.id}/",
            {"status": "completed"},
            format="json",
        )

        self.assertEqual(response.status_code, 405)
        self.requested.refresh_from_db()
        self.assertEqual(self.requested.status, MaintenanceSchedule.Status.REQUESTED)

    def test_requires_authentication(self):
        response = self.client.get(f"/api/v1/maintenance-schedules/{self.requested.id}/")

        self.assertEqual(response.status_code, 401)
