"""Read-only ledger queries: balances with history, deposit lookup, reserve status."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from django.conf import settings

from ..errors import DepositNotFound
from ..payloads import normalize_chain, normalize_tx_hash, normalize_user
from ..records import DepositRecord, RedemptionRecord
from ..stores import LedgerStore
from ..units import from_minor
from .allocation import spendable_balance

HISTORY_LIMIT = 50


def _usdt(units: Optional[int]) -> Optional[str]:
    return None if units is None else str(from_minor(units))


def _timestamp(value) -> Optional[str]:
    return value.isoformat() if value else None


def deposit_to_dict(deposit: DepositRecord) -> Dict[str, Any]:
    return {
        "id": deposit.id,
        "userAddress": deposit.user_address,
        "chainId": deposit.chain_id,
        "sourceTxHash": deposit.source_tx_hash,
        "tokenType": deposit.token_type,
        "amount": _usdt(deposit.amount),
        "currentBalance": _usdt(deposit.current_balance),
        "isTestData": deposit.is_test_data,
        "lastRedeemedAt": _timestamp(deposit.last_redeemed_at),
        "lastRedeemedAmount": _usdt(deposit.last_redeemed_amount),
        "lastRedeemedTxHash": deposit.last_redeemed_tx_hash,
        "createdAt": _timestamp(deposit.created_at),
    }


def redemption_to_dict(record: RedemptionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "amount": _usdt(record.amount),
        "status": record.status,
        "dryRun": record.dry_run,
        "txId": record.tx_id,
        "errorKind": record.error_kind,
        "rolledBack": record.rolled_back,
        "blockNumber": record.block_number,
        "createdAt": _timestamp(record.created_at),
    }


@dataclass(frozen=True)
class BalanceSummary:
    user_address: str
    chain_id: int
    spendable: int
    total_deposited: int
    deposit_count: int
    deposits: Tuple[DepositRecord, ...] = ()
    redemptions: Tuple[RedemptionRecord, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "userAddress": self.user_address,
            "chainId": self.chain_id,
            "balance": str(from_minor(self.spendable)),
            "totalDeposited": str(from_minor(self.total_deposited)),
            "depositCount": self.deposit_count,
            "deposits": [deposit_to_dict(d) for d in self.deposits],
            "redemptions": [redemption_to_dict(r) for r in self.redemptions],
        }


def get_balance(
    store: LedgerStore,
    user,
    chain_id,
    supported_chains: Optional[Iterable[int]] = None,
    history_limit: int = HISTORY_LIMIT,
) -> BalanceSummary:
    """Balance excluding test deposits, plus the user's recent redemptions; no rows are locked."""
    if supported_chains is None:
        supported_chains = settings.SUPPORTED_CHAINS.keys()
    chain = normalize_chain(chain_id, supported_chains)
    user_address = normalize_user(user)

    with store.transaction(chain) as session:
        deposits = session.list_deposits(user_address, chain, for_update=False)
        redemptions = session.list_redemptions(user_address, chain, limit=history_limit)

    return BalanceSummary(
        user_address=user_address,
        chain_id=chain,
        spendable=spendable_balance(deposits),
        total_deposited=sum(d.amount for d in deposits),
        deposit_count=len(deposits),
        deposits=tuple(deposits),
        redemptions=tuple(redemptions),
    )


def find_deposit(
    store: LedgerStore,
    source_tx_hash,
    chain_id=None,
    supported_chains: Optional[Iterable[int]] = None,
) -> DepositRecord:
    """
    Look a deposit up by its funding transaction.

    Without ``chain_id`` every supported chain is searched in chain id order.
    Test deposits are included.
    """
    if supported_chains is None:
        supported_chains = settings.SUPPORTED_CHAINS.keys()
    tx_hash = normalize_tx_hash(source_tx_hash)
    if chain_id is None:
        chains = sorted(supported_chains)
    else:
        chains = [normalize_chain(chain_id, supported_chains)]

    for chain in chains:
        with store.transaction(chain) as session:
            deposit = session.find_deposit_by_tx(chain, tx_hash)
        if deposit is not None:
            return deposit
    raise DepositNotFound(f"No deposit recorded for transaction {tx_hash}", {"sourceTxHash": tx_hash})


def reserve_status(store: LedgerStore, supported_chains: Optional[Dict[int, dict]] = None) -> Dict[str, Any]:
    """Every supported chain's reserve; unconfigured chains report ``None``."""
    if supported_chains is None:
        supported_chains = settings.SUPPORTED_CHAINS
    chains = {}
    total = 0
    for chain_id in sorted(supported_chains):
        with store.transaction(chain_id) as session:
            reserve = session.get_reserve(chain_id, for_update=False)
        if reserve is not None:
            total += reserve.total_reserve
        chains[str(chain_id)] = {
            "name": supported_chains[chain_id].get("name"),
            "configured": reserve is not None,
            "totalReserve": _usdt(reserve.total_reserve) if reserve else None,
            "lastUpdated": _timestamp(reserve.last_updated) if reserve else None,
        }
    return {"success": True, "totalReserve": _usdt(total), "chainReserves": chains}
