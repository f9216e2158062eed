"""Deposit Crediting: record an inbound USDT deposit exactly once."""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from django.conf import settings
from django.utils import timezone

from ..errors import DuplicateTransaction
from ..payloads import DepositCreditRequest
from ..records import DepositRecord
from ..stores import DuplicateKeyError, LedgerStore
from ..units import from_minor
from .allocation import spendable_balance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditResult:
    deposit_id: str
    amount: int
    updated_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "depositId": self.deposit_id,
            "amount": str(from_minor(self.amount)),
            "updatedTotal": str(from_minor(self.updated_total)),
        }


class DepositCreditService:
    def __init__(
        self,
        store: LedgerStore,
        supported_chains: Optional[Iterable[int]] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock=None,
    ):
        self.store = store
        if supported_chains is None:
            supported_chains = settings.SUPPORTED_CHAINS.keys()
        self.supported_chains = set(supported_chains)
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.DEPOSIT_SAVE_MAX_ATTEMPTS)
        self.backoff = backoff if backoff is not None else settings.DEPOSIT_SAVE_BACKOFF_SECONDS
        self.sleep = sleep
        self.clock = clock or timezone.now

    def credit(self, user, chain_id, amount, source_tx_hash, is_test_data=False) -> CreditResult:
        request = DepositCreditRequest.build(
            user,
            chain_id,
            amount,
            source_tx_hash,
            self.supported_chains,
            is_test_data=is_test_data,
        )
        return self.apply(request)

    def apply(self, request: DepositCreditRequest) -> CreditResult:
        """
        Insert the deposit, retrying a bounded number of times.

        The unique (chain_id, source_tx_hash) constraint is the only guard
        against double crediting. A collision is retried only when the
        conflicting row cannot be found afterwards, which happens when a
        concurrent insert was rolled back.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._insert(request)
            except DuplicateKeyError:
                existing = self._find(request)
                if existing is not None:
                    logger.warning(
                        f"Deposit {request.source_tx_hash} on chain {request.chain_id} "
                        f"already credited as {existing.id}"
                    )
                    raise DuplicateTransaction(
                        "This transaction has already been credited",
                        {
                            "sourceTxHash": request.source_tx_hash,
                            "chainId": request.chain_id,
                            "depositId": existing.id,
                        },
                    )
                if attempt == self.max_attempts:
                    break
                delay = self.backoff * 2 ** (attempt - 1)
                logger.info(
                    f"Deposit {request.source_tx_hash} collided with an uncommitted insert; "
                    f"retrying in {delay:.3f}s (attempt {attempt}/{self.max_attempts})"
                )
                self.sleep(delay)

        raise DuplicateTransaction(
            "This transaction is already being credited",
            {"sourceTxHash": request.source_tx_hash, "chainId": request.chain_id},
        )

    def _insert(self, request: DepositCreditRequest) -> CreditResult:
        deposit = DepositRecord(
            id=str(uuid.uuid4()),
            user_address=request.user_address,
            chain_id=request.chain_id,
            source_tx_hash=request.source_tx_hash,
            amount=request.amount,
            current_balance=request.amount,
            created_at=self.clock(),
            is_test_data=request.is_test_data,
        )
        with self.store.transaction(request.chain_id) as session:
            session.insert_deposit(deposit)
            deposits = session.list_deposits(
                request.user_address,
                request.chain_id,
                for_update=False,
                include_test_data=request.is_test_data,
            )
            total = spendable_balance(deposits)

        logger.info(
            f"Credited {from_minor(request.amount)} USDT to {request.user_address} on chain "
            f"{request.chain_id} (tx: {request.source_tx_hash}, total: {from_minor(total)})"
        )
        return CreditResult(deposit_id=deposit.id, amount=request.amount, updated_total=total)

    def _find(self, request: DepositCreditRequest) -> Optional[DepositRecord]:
        with self.store.transaction(request.chain_id) as session:
            return session.find_deposit_by_tx(request.chain_id, request.source_tx_hash)


def default_credit_service() -> DepositCreditService:
    from ..stores import DjangoLedgerStore

    return DepositCreditService(store=DjangoLedgerStore())
