from django.core.management.base import BaseCommand

from custody.apps.ledger.models import Deposit


class Command(BaseCommand):
    help = "Delete deposits flagged as test data. Real deposits are never touched."

    def add_arguments(self, parser):
        parser.add_argument("--chain", dest="chain", type=int, help="Only purge this chain.")
        parser.add_argument(
            "--dry-run", action="store_true", help="Report what would be deleted without deleting."
        )

    def handle(self, *args, **options):
        qs = Deposit.objects.filter(is_test_data=True)
        if options["chain"] is not None:
            qs = qs.filter(chain_id=options["chain"])

        count = qs.count()
        if options["dry_run"]:
            self.stdout.write(f"{count} test deposit(s) would be deleted.")
            return

        qs.delete()
        self.stdout.write(self.style.SUCCESS(f"Deleted {count} test deposit(s)."))
