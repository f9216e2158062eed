from django.conf import settings
from django.core.management.base import BaseCommand

from custody.apps.audit.models import RedemptionLog
from custody.apps.ledger.models import ReserveLedger
from custody.apps.ledger.units import from_minor


class Command(BaseCommand):
    help = "Show each chain's reserve and the most recent redemption attempts."

    def add_arguments(self, parser):
        parser.add_argument(
            "--recent", dest="recent", type=int, default=10, help="Number of redemptions to list."
        )

    def handle(self, *args, **options):
        reserves = {r.chain_id: r for r in ReserveLedger.objects.all()}
        self.stdout.write("Reserves:")
        for chain_id, chain in sorted(settings.SUPPORTED_CHAINS.items()):
            reserve = reserves.get(chain_id)
            if reserve is None:
                self.stdout.write(self.style.WARNING(f"  {chain['name']} ({chain_id}): not configured"))
                continue
            self.stdout.write(
                f"  {chain['name']} ({chain_id}): {from_minor(reserve.total_reserve)} USDT "
                f"(updated {reserve.last_updated:%Y-%m-%d %H:%M:%S})"
            )

        recent = RedemptionLog.objects.order_by("-created_at")[: options["recent"]]
        self.stdout.write("Recent redemptions:")
        for log in recent:
            kind = "dry-run" if log.dry_run else log.status
            self.stdout.write(
                f"  {log.created_at:%Y-%m-%d %H:%M:%S} {log.id} chain={log.chain_id} "
                f"user={log.user_address} amount={from_minor(log.amount)} {kind} tx={log.tx_id or '-'}"
            )
