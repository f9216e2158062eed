"""
test_allocation.py - Oldest-first draw-down and its exact reversal
"""

from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from custody.apps.ledger.records import DepositRecord
from custody.apps.ledger.services.allocation import debit_deposits, restore_deposit, spendable_balance

T0 = datetime(2024, 1, 1, tzinfo=dt_timezone.utc)


def make_deposits(*balances):
    return [
        DepositRecord(
            id=f"d{i}",
            user_address="0xabc",
            chain_id=1,
            source_tx_hash=f"0x{i:064x}",
            amount=balance,
            current_balance=balance,
            created_at=T0 + timedelta(seconds=i),
        )
        for i, balance in enumerate(balances)
    ]


class TestDebitDeposits:
    def test_proportional_debit_in_creation_order(self):
        """[10, 5, 20] redeeming 12 takes 10 then 2 and leaves the third alone."""
        deposits = make_deposits(10, 5, 20)
        now = T0 + timedelta(days=1)

        debits = debit_deposits(deposits, 12, now)

        assert [(d.deposit_id, d.amount) for d in debits] == [("d0", 10), ("d1", 2)]
        assert [d.current_balance for d in deposits] == [0, 3, 20]
        assert sum(d.amount for d in debits) == 12
        assert deposits[0].last_redeemed_amount == 10
        assert deposits[1].last_redeemed_amount == 2
        assert deposits[1].last_redeemed_at == now
        assert deposits[2].last_redeemed_at is None

    def test_order_follows_created_at_not_list_order(self):
        deposits = list(reversed(make_deposits(10, 5, 20)))
        debits = debit_deposits(deposits, 12, T0)
        assert [d.deposit_id for d in debits] == ["d0", "d1"]

    def test_drained_deposits_are_skipped(self):
        deposits = make_deposits(0, 5, 20)
        debits = debit_deposits(deposits, 6, T0)
        assert [(d.deposit_id, d.amount) for d in debits] == [("d1", 5), ("d2", 1)]

    def test_short_deposits_raise(self):
        with pytest.raises(ValueError):
            debit_deposits(make_deposits(1, 2), 4, T0)

    def test_spendable_balance(self):
        assert spendable_balance(make_deposits(10, 5, 20)) == 35
        assert spendable_balance([]) == 0


class TestRestoreDeposit:
    def test_restore_reverses_amount_and_stamps(self):
        deposits = make_deposits(10)
        deposits[0].last_redeemed_at = T0
        deposits[0].last_redeemed_amount = 1
        deposits[0].last_redeemed_tx_hash = "0xold"
        now = T0 + timedelta(hours=1)

        [debit] = debit_deposits(deposits, 4, now)
        assert deposits[0].last_redeemed_tx_hash is None
        restore_deposit(deposits[0], debit, now)

        assert deposits[0].current_balance == 10
        assert deposits[0].last_redeemed_at == T0
        assert deposits[0].last_redeemed_amount == 1
        assert deposits[0].last_redeemed_tx_hash == "0xold"

    def test_restore_keeps_newer_stamps(self):
        deposits = make_deposits(10)
        first = T0 + timedelta(hours=1)
        [debit] = debit_deposits(deposits, 4, first)
        later = T0 + timedelta(hours=2)
        debit_deposits(deposits, 1, later)

        restore_deposit(deposits[0], debit, first)

        assert deposits[0].current_balance == 9
        assert deposits[0].last_redeemed_at == later
        assert deposits[0].last_redeemed_amount == 1
