from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Category, InventoryItem
from inventory.services import create_inventory_item
from maintenance.models import MaintenanceSchedule

DEMO_USERS = (
    ("admin", "admin", "admin1234", True),
    ("stores", "inventory_manager", "stores1234", False),
    ("buyer", "purchase_manager", "buyer1234", False),
    ("tech", "technician", "tech1234", False),
)

DEMO_ITEMS = (
    ("LED-100W", "LED street lamp 100W", "Lighting", "pieces", "12", "5", "85.00"),
    ("CABLE-4MM", "Copper cable 4mm", "Electrical", "meters", "250", "100", "2.40"),
    ("PAINT-GRN", "Park bench paint, green", "Finishes", "liters", "8", "10", "14.50"),
    ("BOLT-M12", "Galvanised bolt M12", "Fixings", "boxes", "3", "2", None),
)


class Command(BaseCommand):
    help = "Seed demo users, inventory items and maintenance schedules for local development."

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        admin_user = None
        for username, role, password, is_admin in DEMO_USERS:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "is_staff": is_admin,
                    "is_superuser": is_admin,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])
            if is_admin:
                admin_user = user

        for code, name, category_name, unit, stock, threshold, unit_cost in DEMO_ITEMS:
            category, _ = Category.objects.get_or_create(name=category_name)
            if InventoryItem.objects.filter(code=code).exists():
                continue
            create_inventory_item(
                code=code,
                name=name,
                category=category,
                unit_of_measure=unit,
                minimum_threshold=Decimal(threshold),
                unit_cost=Decimal(unit_cost) if unit_cost else None,
                initial_stock=Decimal(stock),
                user=admin_user,
            )

        for asset_reference, description in (
            ("POLE-0042", "Replace lamp head and rewire"),
            ("PARK-CENTRAL-07", "Repaint benches"),
        ):
            MaintenanceSchedule.objects.get_or_create(
                asset_reference=asset_reference,
                defaults={"description": description},
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded."))
        self.stdout.write("Demo credentials:")
        for username, role, password, _ in DEMO_USERS:
            self.stdout.write(f"  {role}: {username} / {password}")
