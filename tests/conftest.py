"""
conftest.py - Shared pytest fixtures for the custody tests

Provides:
- An in-memory ledger store with a ticking clock so deposit order is stable
- Scriptable transfer executors
- Helpers to seed reserves and credit deposits
"""

import itertools
import secrets
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from custody.apps.ledger.records import ReserveRecord
from custody.apps.ledger.services.crediting import DepositCreditService
from custody.apps.ledger.services.settlement import SettlementService
from custody.apps.ledger.stores import InMemoryLedgerStore
from custody.apps.ledger.units import to_minor
from custody.apps.tokens.executor import (
    TransferError,
    TransferExecutor,
    TransferRequest,
    TransferResult,
)

CHAINS = {1, 8453}
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"


def tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


class TickingClock:
    """Returns strictly increasing aware datetimes, one millisecond apart."""

    def __init__(self, start=None):
        self._start = start or datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
        self._ticks = itertools.count()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._start + timedelta(milliseconds=next(self._ticks))


class ScriptedExecutor(TransferExecutor):
    """Executor whose live transfers succeed or fail as configured."""

    def __init__(self, error=None, block_number=None):
        self.error = error
        self.block_number = block_number
        self.requests = []
        self._lock = threading.Lock()

    def transfer(self, request: TransferRequest) -> TransferResult:
        with self._lock:
            self.requests.append(request)
        if self.error is not None:
            raise self.error
        return TransferResult(
            success=True,
            tx_id=tx_hash(),
            block_number=self.block_number,
            gas_used="52000" if self.block_number else None,
        )

    def fail_with(self, kind, message="boom", ambiguous=False, tx_id=None):
        self.error = TransferError(kind, message, ambiguous=ambiguous, tx_id=tx_id)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def settlement(store, executor, clock):
    return SettlementService(store, executor, supported_chains=CHAINS, clock=clock)


@pytest.fixture
def crediting(store, clock):
    return DepositCreditService(store, supported_chains=CHAINS, max_attempts=3, backoff=0, clock=clock)


def seed_reserve(store, chain_id, amount):
    with store.transaction(chain_id) as session:
        session.save_reserve(ReserveRecord(chain_id=chain_id, total_reserve=to_minor(Decimal(str(amount)))))


def fund(crediting, user, chain_id, *amounts):
    """Credit one deposit per amount, oldest first; returns the deposit ids."""
    return [crediting.credit(user, chain_id, amount, tx_hash()).deposit_id for amount in amounts]


def reserve_units(store, chain_id):
    reserve = store.get_reserve(chain_id)
    return reserve.total_reserve if reserve else None


def balances(store, user, chain_id):
    return [d.current_balance for d in store.deposits() if d.user_address == user and d.chain_id == chain_id]
