"""
Plain records exchanged between the ledger services and a LedgerStore.

Stores hand out copies; a change only persists once it is saved back through
the session that loaded it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.utils.dateparse import parse_datetime

# RedemptionRecord.status values
PENDING = "pending"
SETTLED = "settled"
FAILED = "failed"
AMBIGUOUS = "ambiguous"
RELEASED = "released"

TERMINAL_STATUSES = {SETTLED, FAILED, RELEASED}


@dataclass
class DepositRecord:
    id: str
    user_address: str
    chain_id: int
    source_tx_hash: str
    amount: int
    current_balance: int
    created_at: datetime
    token_type: str = "USDT"
    accumulated_yield: int = 0
    is_test_data: bool = False
    last_redeemed_at: Optional[datetime] = None
    last_redeemed_amount: Optional[int] = None
    last_redeemed_tx_hash: Optional[str] = None


@dataclass
class ReserveRecord:
    chain_id: int
    total_reserve: int
    notes: str = ""
    last_updated: Optional[datetime] = None


@dataclass
class DepositDebit:
    """Amount drawn from one deposit, plus the stamps it replaced."""

    deposit_id: str
    amount: int
    previous_redeemed_at: Optional[datetime] = None
    previous_redeemed_amount: Optional[int] = None
    previous_redeemed_tx_hash: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "deposit_id": self.deposit_id,
            "amount": self.amount,
            "previous_redeemed_at": (
                self.previous_redeemed_at.isoformat() if self.previous_redeemed_at else None
            ),
            "previous_redeemed_amount": self.previous_redeemed_amount,
            "previous_redeemed_tx_hash": self.previous_redeemed_tx_hash,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "DepositDebit":
        previous_at = data.get("previous_redeemed_at")
        return cls(
            deposit_id=str(data["deposit_id"]),
            amount=int(data["amount"]),
            previous_redeemed_at=parse_datetime(previous_at) if previous_at else None,
            previous_redeemed_amount=data.get("previous_redeemed_amount"),
            previous_redeemed_tx_hash=data.get("previous_redeemed_tx_hash"),
        )


@dataclass
class RedemptionRecord:
    id: str
    user_address: str
    chain_id: int
    amount: int
    created_at: datetime
    status: str = PENDING
    idempotency_key: Optional[str] = None
    token_type: str = "USDT"
    reserve_before: Optional[int] = None
    reserve_after: Optional[int] = None
    balance_after: Optional[int] = None
    debits: List[DepositDebit] = field(default_factory=list)
    dry_run: bool = False
    tx_id: Optional[str] = None
    on_chain_success: bool = False
    transfer_error: Optional[str] = None
    error_kind: Optional[str] = None
    rolled_back: bool = False
    block_number: Optional[int] = None
    gas_used: Optional[str] = None
    confirmed_at: Optional[datetime] = None
