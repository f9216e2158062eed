import json

from django.core.management.base import BaseCommand, CommandError

from custody.apps.ledger.errors import CustodyError
from custody.apps.ledger.services.settlement import default_settlement_service


class Command(BaseCommand):
    help = "Resolve a pending or ambiguous redemption: release its funds or confirm its transfer."

    def add_arguments(self, parser):
        parser.add_argument("redemption_id", help="RedemptionLog id.")
        action = parser.add_mutually_exclusive_group(required=True)
        action.add_argument(
            "--release", action="store_true", help="The transfer never happened; credit the funds back."
        )
        action.add_argument("--confirm", dest="tx_id", help="The transfer landed with this tx hash.")
        parser.add_argument("--reason", default="", help="Note stored with a release.")
        parser.add_argument("--block", dest="block_number", type=int, help="Block number for --confirm.")

    def handle(self, *args, **options):
        service = default_settlement_service()
        try:
            if options["release"]:
                record = service.release_redemption(options["redemption_id"], reason=options["reason"])
            else:
                record = service.confirm_redemption(
                    options["redemption_id"],
                    options["tx_id"],
                    block_number=options["block_number"],
                )
        except CustodyError as e:
            raise CommandError(json.dumps(e.to_dict()))

        self.stdout.write(self.style.SUCCESS(f"Redemption {record.id} is now {record.status}."))
