from django.core.management.base import BaseCommand, CommandError

from inventory.ledger import verify_ledger


class Command(BaseCommand):
    help = "Replay inventory transactions and report items whose stock does not balance."

    def add_arguments(self, parser):
        parser.add_argument("--item-code", dest="item_code", help="Only check this item.")

    def handle(self, *args, **options):
        breaks = verify_ledger(options.get("item_code"))
        for entry in breaks:
            self.stdout.write(self.style.ERROR(f"{entry.item_code} (txn {entry.transaction_id}): {entry.problem}"))

        if breaks:
            raise CommandError(f"Ledger verification failed with {len(breaks)} problem(s).")
        self.stdout.write(self.style.SUCCESS("Ledger balanced."))
