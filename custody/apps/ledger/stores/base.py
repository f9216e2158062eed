"""
Storage interface for the ledger.

The settlement and crediting services only talk to a LedgerStore, so the same
logic runs against PostgreSQL (DjangoLedgerStore) and against the in-memory
store used by the property and concurrency tests.
"""

import abc
from contextlib import AbstractContextManager
from typing import List, Optional

from ..records import DepositRecord, RedemptionRecord, ReserveRecord


class DuplicateKeyError(Exception):
    """An insert collided with a uniqueness constraint."""


class LedgerSession(abc.ABC):
    """Reads and writes inside one store transaction."""

    @abc.abstractmethod
    def get_reserve(self, chain_id: int, for_update: bool = True) -> Optional[ReserveRecord]:
        """Load the chain's reserve, locking it when ``for_update`` is set."""

    @abc.abstractmethod
    def save_reserve(self, reserve: ReserveRecord) -> None:
        ...

    @abc.abstractmethod
    def list_deposits(
        self,
        user_address: str,
        chain_id: int,
        for_update: bool = True,
        include_test_data: bool = False,
    ) -> List[DepositRecord]:
        """Deposits ordered by (created_at, id)."""

    @abc.abstractmethod
    def get_deposit(self, deposit_id: str, for_update: bool = True) -> Optional[DepositRecord]:
        ...

    @abc.abstractmethod
    def find_deposit_by_tx(self, chain_id: int, source_tx_hash: str) -> Optional[DepositRecord]:
        ...

    @abc.abstractmethod
    def insert_deposit(self, deposit: DepositRecord) -> None:
        """Raises DuplicateKeyError if (chain_id, source_tx_hash) exists."""

    @abc.abstractmethod
    def save_deposit(self, deposit: DepositRecord) -> None:
        ...

    @abc.abstractmethod
    def get_redemption(self, redemption_id: str, for_update: bool = True) -> Optional[RedemptionRecord]:
        ...

    @abc.abstractmethod
    def list_redemptions(
        self, user_address: str, chain_id: int, limit: Optional[int] = None
    ) -> List[RedemptionRecord]:
        """Redemptions for one user, newest first."""

    @abc.abstractmethod
    def find_redemption_by_key(self, idempotency_key: str) -> Optional[RedemptionRecord]:
        ...

    @abc.abstractmethod
    def insert_redemption(self, record: RedemptionRecord) -> None:
        """Raises DuplicateKeyError if the idempotency key is taken."""

    @abc.abstractmethod
    def save_redemption(self, record: RedemptionRecord) -> None:
        ...


class LedgerStore(abc.ABC):
    @abc.abstractmethod
    def redemption_chain(self, redemption_id: str) -> Optional[int]:
        """Chain of an existing redemption, read outside any transaction."""

    @abc.abstractmethod
    def transaction(self, chain_id: int) -> AbstractContextManager:
        """
        Open a unit of work scoped to one chain, yielding a LedgerSession.

        Writes commit when the block exits normally and are discarded if it
        raises.
        """
