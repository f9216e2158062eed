from __future__ import annotations

import logging

from celery import shared_task
from django.utils import timezone

from custody.apps.audit.models import RedemptionLog
from custody.apps.ledger.errors import CustodyError
from custody.apps.ledger.records import AMBIGUOUS, SETTLED
from custody.apps.ledger.services.settlement import default_settlement_service

logger = logging.getLogger(__name__)


def _lookup(executor, log: RedemptionLog):
    try:
        return executor.check_transaction(log.chain_id, log.tx_id)
    except Exception as e:
        logger.warning(f"Receipt lookup for redemption {log.id} ({log.tx_id}) failed: {e}")
        return None


@shared_task(queue="custody", bind=True, time_limit=120)
def reconcile_redemption_receipts(self, limit: int = 100) -> dict:
    """
    Fill in receipts for live redemptions and resolve ambiguous ones.

    Settled redemptions without a confirmation get their block number, gas and
    on-chain status. Ambiguous redemptions with a known tx hash are confirmed
    when the transaction succeeded and released when it reverted.
    """
    service = default_settlement_service()
    executor = service.executor
    summary = {"confirmed": 0, "reverted": 0, "resolved": 0, "released": 0, "unknown": 0}

    unconfirmed = (
        RedemptionLog.objects.filter(status=SETTLED, dry_run=False, confirmed_at__isnull=True)
        .exclude(tx_id__isnull=True)
        .order_by("created_at")[:limit]
    )
    for log in unconfirmed:
        receipt = _lookup(executor, log)
        if receipt is None:
            summary["unknown"] += 1
            continue
        RedemptionLog.objects.filter(pk=log.pk).update(
            block_number=receipt["block_number"],
            gas_used=receipt["gas_used"],
            on_chain_success=receipt["success"],
            confirmed_at=timezone.now(),
            updated_at=timezone.now(),
        )
        if receipt["success"]:
            summary["confirmed"] += 1
        else:
            summary["reverted"] += 1
            logger.error(
                f"Settled redemption {log.id} reverted on chain {log.chain_id} "
                f"(tx: {log.tx_id}); needs operator review"
            )

    ambiguous = (
        RedemptionLog.objects.filter(status=AMBIGUOUS, dry_run=False)
        .exclude(tx_id__isnull=True)
        .order_by("created_at")[:limit]
    )
    for log in ambiguous:
        receipt = _lookup(executor, log)
        if receipt is None:
            summary["unknown"] += 1
            continue
        try:
            if receipt["success"]:
                service.confirm_redemption(
                    str(log.id),
                    log.tx_id,
                    block_number=receipt["block_number"],
                    gas_used=receipt["gas_used"],
                )
                summary["resolved"] += 1
            else:
                service.release_redemption(str(log.id), reason=f"Transaction {log.tx_id} reverted on chain")
                summary["released"] += 1
        except CustodyError as e:
            logger.warning(f"Could not resolve redemption {log.id}: {e.message}")

    logger.info(f"Reconciled redemption receipts: {summary}")
    return summary
