from decimal import Decimal

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from custody.apps.ledger.models import ReserveLedger
from custody.apps.ledger.units import from_minor, to_minor


class Command(BaseCommand):
    help = "Create a reserve row for each supported chain that does not have one yet."

    def add_arguments(self, parser):
        parser.add_argument(
            "--amount",
            dest="amount",
            default=None,
            help="Initial reserve in USDT (defaults to INITIAL_RESERVE_USDT).",
        )
        parser.add_argument(
            "--chain",
            dest="chains",
            type=int,
            action="append",
            help="Chain id to seed; repeatable. Defaults to every supported chain.",
        )

    def handle(self, *args, **options):
        raw_amount = options["amount"] or settings.INITIAL_RESERVE_USDT
        try:
            amount = to_minor(Decimal(str(raw_amount)))
        except (ValueError, ArithmeticError):
            raise CommandError(f"Invalid reserve amount: {raw_amount}")
        if amount < 0:
            raise CommandError("Reserve amount cannot be negative.")

        chains = options["chains"] or sorted(settings.SUPPORTED_CHAINS)
        unknown = [c for c in chains if c not in settings.SUPPORTED_CHAINS]
        if unknown:
            raise CommandError(f"Unsupported chain(s): {', '.join(map(str, unknown))}")

        for chain_id in chains:
            reserve, created = ReserveLedger.objects.get_or_create(
                chain_id=chain_id,
                defaults={"total_reserve": amount, "notes": "Seeded by seed_reserves"},
            )
            name = settings.SUPPORTED_CHAINS[chain_id]["name"]
            if created:
                self.stdout.write(
                    self.style.SUCCESS(f"Seeded {name} ({chain_id}) with {from_minor(amount)} USDT.")
                )
            else:
                self.stdout.write(
                    f"{name} ({chain_id}) already has a reserve of "
                    f"{from_minor(reserve.total_reserve)} USDT; left unchanged."
                )
