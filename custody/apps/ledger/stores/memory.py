"""
Thread-safe in-memory LedgerStore.

Each chain gets its own lock, held for the whole unit of work, so concurrent
redemptions on one chain serialize exactly as they do behind the reserve row
lock in PostgreSQL. Writes are buffered per session and applied on commit.
"""

import copy
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Set, Tuple

from ..records import DepositRecord, RedemptionRecord, ReserveRecord
from .base import DuplicateKeyError, LedgerSession, LedgerStore


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self._reserves: Dict[int, ReserveRecord] = {}
        self._deposits: Dict[str, DepositRecord] = {}
        self._redemptions: Dict[str, RedemptionRecord] = {}
        self._deposit_keys: Set[Tuple[int, str]] = set()
        self._idempotency_keys: Dict[str, str] = {}
        self._chain_locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, chain_id: int) -> threading.Lock:
        with self._guard:
            lock = self._chain_locks.get(chain_id)
            if lock is None:
                lock = self._chain_locks[chain_id] = threading.Lock()
            return lock

    @contextmanager
    def transaction(self, chain_id: int):
        with self._lock_for(chain_id):
            session = _MemorySession(self)
            try:
                yield session
            except BaseException:
                session.rollback()
                raise
            session.commit()

    def redemption_chain(self, redemption_id):
        with self._guard:
            record = self._redemptions.get(redemption_id)
            return record.chain_id if record else None

    # Read-only views for tests and tooling

    def get_reserve(self, chain_id: int) -> Optional[ReserveRecord]:
        with self._guard:
            return copy.deepcopy(self._reserves.get(chain_id))

    def get_deposit(self, deposit_id: str) -> Optional[DepositRecord]:
        with self._guard:
            return copy.deepcopy(self._deposits.get(deposit_id))

    def deposits(self) -> List[DepositRecord]:
        with self._guard:
            return sorted(
                copy.deepcopy(list(self._deposits.values())),
                key=lambda d: (d.created_at, d.id),
            )

    def redemptions(self) -> List[RedemptionRecord]:
        with self._guard:
            return sorted(
                copy.deepcopy(list(self._redemptions.values())),
                key=lambda r: r.created_at,
            )


class _MemorySession(LedgerSession):
    def __init__(self, store: InMemoryLedgerStore):
        self._store = store
        self._reserves: Dict[int, ReserveRecord] = {}
        self._deposits: Dict[str, DepositRecord] = {}
        self._redemptions: Dict[str, RedemptionRecord] = {}
        self._claimed_deposit_keys: Set[Tuple[int, str]] = set()
        self._claimed_idempotency_keys: Set[str] = set()

    # -- lifecycle --------------------------------------------------------

    def commit(self) -> None:
        store = self._store
        with store._guard:
            store._reserves.update(self._reserves)
            store._deposits.update(self._deposits)
            store._redemptions.update(self._redemptions)

    def rollback(self) -> None:
        store = self._store
        with store._guard:
            store._deposit_keys -= self._claimed_deposit_keys
            for key in self._claimed_idempotency_keys:
                store._idempotency_keys.pop(key, None)

    # -- reserves ---------------------------------------------------------

    def get_reserve(self, chain_id, for_update=True):
        if chain_id in self._reserves:
            return copy.deepcopy(self._reserves[chain_id])
        with self._store._guard:
            return copy.deepcopy(self._store._reserves.get(chain_id))

    def save_reserve(self, reserve):
        if reserve.total_reserve < 0:
            raise ValueError(f"Reserve for chain {reserve.chain_id} cannot go negative")
        self._reserves[reserve.chain_id] = copy.deepcopy(reserve)

    # -- deposits ---------------------------------------------------------

    def _all_deposits(self) -> Dict[str, DepositRecord]:
        with self._store._guard:
            merged = dict(self._store._deposits)
        merged.update(self._deposits)
        return merged

    def list_deposits(self, user_address, chain_id, for_update=True, include_test_data=False):
        rows = [
            d
            for d in self._all_deposits().values()
            if d.user_address == user_address
            and d.chain_id == chain_id
            and (include_test_data or not d.is_test_data)
        ]
        rows.sort(key=lambda d: (d.created_at, d.id))
        return copy.deepcopy(rows)

    def get_deposit(self, deposit_id, for_update=True):
        return copy.deepcopy(self._all_deposits().get(deposit_id))

    def find_deposit_by_tx(self, chain_id, source_tx_hash):
        for deposit in self._all_deposits().values():
            if deposit.chain_id == chain_id and deposit.source_tx_hash == source_tx_hash:
                return copy.deepcopy(deposit)
        return None

    def insert_deposit(self, deposit):
        key = (deposit.chain_id, deposit.source_tx_hash)
        with self._store._guard:
            if key in self._store._deposit_keys or deposit.id in self._store._deposits:
                raise DuplicateKeyError(f"Deposit {key} already exists")
            self._store._deposit_keys.add(key)
        self._claimed_deposit_keys.add(key)
        self._deposits[deposit.id] = copy.deepcopy(deposit)

    def save_deposit(self, deposit):
        if deposit.current_balance < 0:
            raise ValueError(f"Deposit {deposit.id} balance cannot go negative")
        self._deposits[deposit.id] = copy.deepcopy(deposit)

    # -- redemptions ------------------------------------------------------

    def get_redemption(self, redemption_id, for_update=True):
        if redemption_id in self._redemptions:
            return copy.deepcopy(self._redemptions[redemption_id])
        with self._store._guard:
            return copy.deepcopy(self._store._redemptions.get(redemption_id))

    def list_redemptions(self, user_address, chain_id, limit=None):
        with self._store._guard:
            merged = dict(self._store._redemptions)
        merged.update(self._redemptions)
        rows = [r for r in merged.values() if r.user_address == user_address and r.chain_id == chain_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return copy.deepcopy(rows[:limit] if limit is not None else rows)

    def find_redemption_by_key(self, idempotency_key):
        for record in self._redemptions.values():
            if record.idempotency_key == idempotency_key:
                return copy.deepcopy(record)
        with self._store._guard:
            redemption_id = self._store._idempotency_keys.get(idempotency_key)
            record = self._store._redemptions.get(redemption_id) if redemption_id else None
            return copy.deepcopy(record)

    def insert_redemption(self, record):
        key = record.idempotency_key
        if key is not None:
            with self._store._guard:
                if key in self._store._idempotency_keys:
                    raise DuplicateKeyError(f"Idempotency key {key} already used")
                self._store._idempotency_keys[key] = record.id
            self._claimed_idempotency_keys.add(key)
        self._redemptions[record.id] = copy.deepcopy(record)

    def save_redemption(self, record):
        self._redemptions[record.id] = copy.deepcopy(record)
