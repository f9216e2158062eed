"""Proportional draw-down of a redemption across a user's deposits."""

from datetime import datetime
from typing import List

from ..records import DepositDebit, DepositRecord


def spendable_balance(deposits: List[DepositRecord]) -> int:
    return sum(max(d.current_balance, 0) for d in deposits)


def debit_deposits(deposits: List[DepositRecord], amount: int, now: datetime) -> List[DepositDebit]:
    """
    Drain ``amount`` from ``deposits`` oldest first, mutating them in place.

    Each deposit gives ``min(remaining, current_balance)`` and is stamped with
    the amount taken. The returned debits record what was taken and the stamps
    that were overwritten, so the draw can be reversed exactly.
    """
    remaining = amount
    debits: List[DepositDebit] = []
    for deposit in sorted(deposits, key=lambda d: (d.created_at, d.id)):
        if remaining <= 0:
            break
        if deposit.current_balance <= 0:
            continue
        take = min(remaining, deposit.current_balance)
        debits.append(
            DepositDebit(
                deposit_id=deposit.id,
                amount=take,
                previous_redeemed_at=deposit.last_redeemed_at,
                previous_redeemed_amount=deposit.last_redeemed_amount,
                previous_redeemed_tx_hash=deposit.last_redeemed_tx_hash,
            )
        )
        deposit.current_balance -= take
        deposit.last_redeemed_amount = take
        deposit.last_redeemed_at = now
        deposit.last_redeemed_tx_hash = None
        remaining -= take

    if remaining != 0:
        raise ValueError(f"Deposits short by {remaining} units for a debit of {amount}")
    return debits


def restore_deposit(deposit: DepositRecord, debit: DepositDebit, stamped_at: datetime) -> None:
    """
    Reverse one debit produced by ``debit_deposits`` at ``stamped_at``.

    The redemption stamps are only rolled back if no later redemption has
    stamped the deposit since.
    """
    deposit.current_balance += debit.amount
    if deposit.last_redeemed_at != stamped_at:
        return
    deposit.last_redeemed_at = debit.previous_redeemed_at
    deposit.last_redeemed_amount = debit.previous_redeemed_amount
    deposit.last_redeemed_tx_hash = debit.previous_redeemed_tx_hash
