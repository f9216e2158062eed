"""
PostgreSQL-backed LedgerStore built on the Django ORM.

A unit of work is one ``transaction.atomic()`` block. Rows are locked with
``select_for_update`` as they are read, and callers read the reserve row
before the deposits so every redemption takes its locks in the same order.
"""

import logging
from contextlib import contextmanager

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from custody.apps.audit.models import RedemptionLog
from ..models import Deposit, ReserveLedger
from ..records import DepositDebit, DepositRecord, RedemptionRecord, ReserveRecord
from .base import DuplicateKeyError, LedgerSession, LedgerStore

logger = logging.getLogger(__name__)


def _deposit_record(row: Deposit) -> DepositRecord:
    return DepositRecord(
        id=str(row.id),
        user_address=row.user_address,
        chain_id=row.chain_id,
        source_tx_hash=row.source_tx_hash,
        amount=row.amount,
        current_balance=row.current_balance,
        created_at=row.created_at,
        token_type=row.token_type,
        accumulated_yield=row.accumulated_yield,
        is_test_data=row.is_test_data,
        last_redeemed_at=row.last_redeemed_at,
        last_redeemed_amount=row.last_redeemed_amount,
        last_redeemed_tx_hash=row.last_redeemed_tx_hash,
    )


def _reserve_record(row: ReserveLedger) -> ReserveRecord:
    return ReserveRecord(
        chain_id=row.chain_id,
        total_reserve=row.total_reserve,
        notes=row.notes,
        last_updated=row.last_updated,
    )


def _redemption_record(row: RedemptionLog) -> RedemptionRecord:
    return RedemptionRecord(
        id=str(row.id),
        user_address=row.user_address,
        chain_id=row.chain_id,
        amount=row.amount,
        created_at=row.created_at,
        status=row.status,
        idempotency_key=row.idempotency_key,
        token_type=row.token_type,
        reserve_before=row.reserve_before,
        reserve_after=row.reserve_after,
        balance_after=row.balance_after,
        debits=[DepositDebit.from_json(d) for d in row.debits or []],
        dry_run=row.dry_run,
        tx_id=row.tx_id,
        on_chain_success=row.on_chain_success,
        transfer_error=row.transfer_error,
        error_kind=row.error_kind,
        rolled_back=row.rolled_back,
        block_number=row.block_number,
        gas_used=row.gas_used,
        confirmed_at=row.confirmed_at,
    )


def _redemption_fields(record: RedemptionRecord) -> dict:
    return {
        "user_address": record.user_address,
        "chain_id": record.chain_id,
        "amount": record.amount,
        "created_at": record.created_at,
        "status": record.status,
        "idempotency_key": record.idempotency_key,
        "token_type": record.token_type,
        "reserve_before": record.reserve_before,
        "reserve_after": record.reserve_after,
        "balance_after": record.balance_after,
        "debits": [d.to_json() for d in record.debits],
        "dry_run": record.dry_run,
        "tx_id": record.tx_id,
        "on_chain_success": record.on_chain_success,
        "transfer_error": record.transfer_error,
        "error_kind": record.error_kind,
        "rolled_back": record.rolled_back,
        "block_number": record.block_number,
        "gas_used": record.gas_used,
        "confirmed_at": record.confirmed_at,
    }


class DjangoLedgerStore(LedgerStore):
    def redemption_chain(self, redemption_id):
        try:
            return (
                RedemptionLog.objects.filter(pk=redemption_id)
                .values_list("chain_id", flat=True)
                .first()
            )
        except (ValidationError, ValueError):
            return None

    @contextmanager
    def transaction(self, chain_id: int):
        with transaction.atomic():
            yield DjangoLedgerSession()


class DjangoLedgerSession(LedgerSession):
    def get_reserve(self, chain_id, for_update=True):
        qs = ReserveLedger.objects.filter(chain_id=chain_id)
        if for_update:
            qs = qs.select_for_update()
        row = qs.first()
        return _reserve_record(row) if row else None

    def save_reserve(self, reserve):
        ReserveLedger.objects.filter(chain_id=reserve.chain_id).update(
            total_reserve=reserve.total_reserve,
            notes=reserve.notes,
            last_updated=reserve.last_updated,
        )

    def list_deposits(self, user_address, chain_id, for_update=True, include_test_data=False):
        qs = Deposit.objects.filter(user_address=user_address, chain_id=chain_id)
        if not include_test_data:
            qs = qs.filter(is_test_data=False)
        if for_update:
            qs = qs.select_for_update()
        return [_deposit_record(row) for row in qs.order_by("created_at", "id")]

    def get_deposit(self, deposit_id, for_update=True):
        qs = Deposit.objects.filter(pk=deposit_id)
        if for_update:
            qs = qs.select_for_update()
        row = qs.first()
        return _deposit_record(row) if row else None

    def find_deposit_by_tx(self, chain_id, source_tx_hash):
        row = Deposit.objects.filter(chain_id=chain_id, source_tx_hash=source_tx_hash).first()
        return _deposit_record(row) if row else None

    def insert_deposit(self, deposit):
        try:
            # Savepoint so a collision leaves the outer transaction usable
            with transaction.atomic():
                Deposit.objects.create(
                    id=deposit.id,
                    user_address=deposit.user_address,
                    chain_id=deposit.chain_id,
                    source_tx_hash=deposit.source_tx_hash,
                    token_type=deposit.token_type,
                    amount=deposit.amount,
                    current_balance=deposit.current_balance,
                    accumulated_yield=deposit.accumulated_yield,
                    is_test_data=deposit.is_test_data,
                    created_at=deposit.created_at,
                )
        except IntegrityError as exc:
            logger.warning(f"Deposit insert collided on chain {deposit.chain_id}: {exc}")
            raise DuplicateKeyError(str(exc)) from exc

    def save_deposit(self, deposit):
        Deposit.objects.filter(pk=deposit.id).update(
            current_balance=deposit.current_balance,
            accumulated_yield=deposit.accumulated_yield,
            last_redeemed_at=deposit.last_redeemed_at,
            last_redeemed_amount=deposit.last_redeemed_amount,
            last_redeemed_tx_hash=deposit.last_redeemed_tx_hash,
            updated_at=timezone.now(),
        )

    def get_redemption(self, redemption_id, for_update=True):
        qs = RedemptionLog.objects.filter(pk=redemption_id)
        if for_update:
            qs = qs.select_for_update()
        row = qs.first()
        return _redemption_record(row) if row else None

    def list_redemptions(self, user_address, chain_id, limit=None):
        qs = RedemptionLog.objects.filter(user_address=user_address, chain_id=chain_id).order_by("-created_at")
        if limit is not None:
            qs = qs[:limit]
        return [_redemption_record(row) for row in qs]

    def find_redemption_by_key(self, idempotency_key):
        row = RedemptionLog.objects.filter(idempotency_key=idempotency_key).first()
        return _redemption_record(row) if row else None

    def insert_redemption(self, record):
        try:
            with transaction.atomic():
                RedemptionLog.objects.create(id=record.id, **_redemption_fields(record))
        except IntegrityError as exc:
            raise DuplicateKeyError(str(exc)) from exc

    def save_redemption(self, record):
        RedemptionLog.objects.filter(pk=record.id).update(
            updated_at=timezone.now(), **_redemption_fields(record)
        )
