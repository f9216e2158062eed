"""
Settlement Core: redeem a user's deposits for an on-chain USDT transfer.

A live redemption runs in three phases so no row lock is held while the
chain is being talked to:

1. Reserve phase, one store transaction. The chain's reserve row is locked
   first, then the user's deposits. Balances are checked, the reserve and the
   deposits are debited, and a ``pending`` RedemptionLog entry is written.
   That entry holds the per-deposit debits and claims the idempotency key.
2. Transfer phase, no transaction open. The Transfer Executor is called.
3. Finalize phase, one store transaction. On success the deposits are
   stamped with the tx id and the log is ``settled``. On a definite failure
   every debit is credited back and the log is ``failed``. On an ambiguous
   failure the debits stay in place and the log is ``ambiguous`` until an
   operator calls ``release_redemption`` or ``confirm_redemption``.

Simulated redemptions never touch the reserve or the deposits. They still
write one ``settled`` log entry with ``dry_run`` set.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from django.conf import settings
from django.utils import timezone

from custody.apps.tokens.executor import (
    UNKNOWN,
    TransferExecutor,
    TransferRequest,
    TransferResult,
)

from ..errors import (
    CustodyError,
    InsufficientBalance,
    InsufficientReserve,
    InternalError,
    InvalidRedemptionState,
    InvalidRequest,
    NoFunds,
    RedemptionInProgress,
    RedemptionNotFound,
    ReserveNotConfigured,
    TransferFailed,
)
from ..payloads import RedemptionRequest, normalize_tx_hash
from ..records import (
    AMBIGUOUS,
    FAILED,
    PENDING,
    RELEASED,
    SETTLED,
    RedemptionRecord,
)
from ..stores import DuplicateKeyError, LedgerSession, LedgerStore
from ..units import from_minor
from .allocation import debit_deposits, restore_deposit, spendable_balance

logger = logging.getLogger(__name__)

RESOLVABLE_STATUSES = {PENDING, AMBIGUOUS}


def _usdt(units: Optional[int]) -> Optional[str]:
    return None if units is None else str(from_minor(units))


@dataclass(frozen=True)
class RedemptionResult:
    redemption_id: str
    tx_id: Optional[str]
    new_balance: int
    reserve_before: Optional[int]
    reserve_after: Optional[int]
    block_number: Optional[int] = None
    gas_used: Optional[str] = None
    simulated: bool = False
    replayed: bool = False

    @classmethod
    def from_record(cls, record: RedemptionRecord, replayed: bool = False) -> "RedemptionResult":
        return cls(
            redemption_id=record.id,
            tx_id=record.tx_id,
            new_balance=record.balance_after or 0,
            reserve_before=record.reserve_before,
            reserve_after=record.reserve_after,
            block_number=record.block_number,
            gas_used=record.gas_used,
            simulated=record.dry_run,
            replayed=replayed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "redemptionId": self.redemption_id,
            "txId": self.tx_id,
            "newBalance": _usdt(self.new_balance),
            "reserveBefore": _usdt(self.reserve_before),
            "reserveAfter": _usdt(self.reserve_after),
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "simulated": self.simulated,
            "replayed": self.replayed,
        }


class SettlementService:
    def __init__(
        self,
        store: LedgerStore,
        executor: TransferExecutor,
        supported_chains: Optional[Iterable[int]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        simulate_only: bool = False,
        debug_errors: bool = False,
        pending_timeout: Optional[timedelta] = None,
    ):
        self.store = store
        self.executor = executor
        if supported_chains is None:
            supported_chains = settings.SUPPORTED_CHAINS.keys()
        self.supported_chains = set(supported_chains)
        self.clock = clock or timezone.now
        self.simulate_only = simulate_only
        self.debug_errors = debug_errors
        if pending_timeout is None:
            pending_timeout = timedelta(seconds=settings.REDEMPTION_PENDING_TIMEOUT_SECONDS)
        # A pending record younger than this may still have a transfer in flight
        self.pending_timeout = pending_timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def redeem(
        self,
        user,
        chain_id,
        amount,
        simulate=False,
        idempotency_key=None,
        token_type=None,
    ) -> RedemptionResult:
        request = RedemptionRequest.build(
            user,
            chain_id,
            amount,
            self.supported_chains,
            simulate=simulate,
            token_type=token_type,
            idempotency_key=idempotency_key,
        )
        return self.settle(request)

    def settle(self, request: RedemptionRequest) -> RedemptionResult:
        """Run a validated redemption request."""
        if self.simulate_only and not request.simulate:
            request = dataclasses.replace(request, simulate=True)
        try:
            if request.simulate:
                return self._simulate(request)
            return self._settle_live(request)
        except CustodyError:
            raise
        except Exception as exc:
            logger.exception(
                f"Unexpected error redeeming {request.amount} units for {request.user_address} "
                f"on chain {request.chain_id}"
            )
            details = {"error": repr(exc)} if self.debug_errors else None
            raise InternalError("Redemption failed due to an internal error", details) from exc

    def release_redemption(self, redemption_id: str, reason: str = "") -> RedemptionRecord:
        """
        Resolve a stale pending or an ambiguous redemption whose transfer never happened.

        Every debit is credited back to the deposits and the reserve. Pending
        records are refused until they are older than ``pending_timeout``.
        """
        chain_id = self._redemption_chain(redemption_id)
        with self.store.transaction(chain_id) as session:
            session.get_reserve(chain_id)
            record = self._resolvable(session, redemption_id)
            self._compensate(session, record)
            record.status = RELEASED
            if reason:
                record.transfer_error = reason
            session.save_redemption(record)

        logger.warning(f"Redemption {redemption_id} released by operator: {reason or 'no reason given'}")
        return record

    def confirm_redemption(
        self,
        redemption_id: str,
        tx_id: str,
        block_number: Optional[int] = None,
        gas_used: Optional[str] = None,
    ) -> RedemptionRecord:
        """Resolve a stale pending or an ambiguous redemption whose transfer did land."""
        tx_id = normalize_tx_hash(tx_id)
        chain_id = self._redemption_chain(redemption_id)
        with self.store.transaction(chain_id) as session:
            session.get_reserve(chain_id)
            record = self._resolvable(session, redemption_id)
            self._mark_settled(session, record, tx_id)
            record.block_number = block_number
            record.gas_used = gas_used
            record.on_chain_success = True
            record.confirmed_at = self.clock()
            session.save_redemption(record)

        logger.info(f"Redemption {redemption_id} confirmed by operator (tx: {tx_id})")
        return record

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _simulate(self, request: RedemptionRequest) -> RedemptionResult:
        now = self.clock()
        with self.store.transaction(request.chain_id) as session:
            reserve = session.get_reserve(request.chain_id, for_update=False)
            if request.idempotency_key:
                existing = session.find_redemption_by_key(request.idempotency_key)
                if existing:
                    return self._replay(existing, request)

            # Preview only: balances are read and never debited
            deposits = session.list_deposits(request.user_address, request.chain_id, for_update=False)
            available = spendable_balance(deposits)
            self._check_balance(request, deposits, available)

            transfer = self.executor.execute(
                TransferRequest(
                    destination=request.user_address,
                    amount=from_minor(request.amount),
                    chain_id=request.chain_id,
                    simulate=True,
                )
            )
            reserve_total = reserve.total_reserve if reserve else None
            record = RedemptionRecord(
                id=str(uuid.uuid4()),
                user_address=request.user_address,
                chain_id=request.chain_id,
                amount=request.amount,
                created_at=now,
                status=SETTLED,
                idempotency_key=request.idempotency_key,
                token_type=request.token_type,
                reserve_before=reserve_total,
                reserve_after=reserve_total,
                balance_after=available,
                dry_run=True,
                tx_id=transfer.tx_id,
            )
            self._insert_log(session, record)

        logger.info(
            f"Simulated redemption {record.id}: {from_minor(request.amount)} USDT for "
            f"{request.user_address} on chain {request.chain_id}"
        )
        return RedemptionResult.from_record(record)

    # ------------------------------------------------------------------
    # Live redemption
    # ------------------------------------------------------------------

    def _settle_live(self, request: RedemptionRequest) -> RedemptionResult:
        reserved = self._reserve_phase(request)
        if isinstance(reserved, RedemptionResult):
            return reserved

        transfer = self._transfer_phase(reserved)
        return self._finalize_phase(reserved, transfer)

    def _reserve_phase(self, request: RedemptionRequest):
        now = self.clock()
        with self.store.transaction(request.chain_id) as session:
            # Reserve row first: every writer on this chain locks in this order
            reserve = session.get_reserve(request.chain_id)
            if request.idempotency_key:
                existing = session.find_redemption_by_key(request.idempotency_key)
                if existing:
                    return self._replay(existing, request)

            deposits = session.list_deposits(request.user_address, request.chain_id)
            available = spendable_balance(deposits)
            self._check_balance(request, deposits, available)

            if reserve is None:
                raise ReserveNotConfigured(
                    f"No reserve configured for chain {request.chain_id}",
                    {"chainId": request.chain_id},
                )
            if reserve.total_reserve < request.amount:
                raise InsufficientReserve(
                    "Redemption exceeds the chain's reserve",
                    {
                        "requested": _usdt(request.amount),
                        "reserve": _usdt(reserve.total_reserve),
                        "shortfall": _usdt(request.amount - reserve.total_reserve),
                    },
                )

            reserve_before = reserve.total_reserve
            reserve.total_reserve -= request.amount
            reserve.last_updated = now
            session.save_reserve(reserve)

            debits = debit_deposits(deposits, request.amount, now)
            by_id = {d.id: d for d in deposits}
            for debit in debits:
                session.save_deposit(by_id[debit.deposit_id])

            record = RedemptionRecord(
                id=str(uuid.uuid4()),
                user_address=request.user_address,
                chain_id=request.chain_id,
                amount=request.amount,
                created_at=now,
                status=PENDING,
                idempotency_key=request.idempotency_key,
                token_type=request.token_type,
                reserve_before=reserve_before,
                reserve_after=reserve.total_reserve,
                balance_after=available - request.amount,
                debits=debits,
            )
            self._insert_log(session, record)

        logger.info(
            f"Redemption {record.id}: reserved {from_minor(request.amount)} USDT on chain "
            f"{request.chain_id} across {len(debits)} deposit(s) "
            f"(reserve {from_minor(reserve_before)} -> {from_minor(record.reserve_after)})"
        )
        return record

    def _transfer_phase(self, record: RedemptionRecord) -> TransferResult:
        logger.info(f"Redemption {record.id}: submitting transfer to {record.user_address}")
        try:
            return self.executor.execute(
                TransferRequest(
                    destination=record.user_address,
                    amount=from_minor(record.amount),
                    chain_id=record.chain_id,
                    simulate=False,
                )
            )
        except Exception as exc:
            # The executor contract is to return failures; an escape here
            # leaves the broadcast state unknown.
            logger.exception(f"Redemption {record.id}: executor raised")
            return TransferResult(success=False, error_kind=UNKNOWN, message=str(exc), ambiguous=True)

    def _finalize_phase(self, reserved: RedemptionRecord, transfer: TransferResult) -> RedemptionResult:
        with self.store.transaction(reserved.chain_id) as session:
            session.get_reserve(reserved.chain_id)
            record = session.get_redemption(reserved.id)
            if record is None or record.status != PENDING:
                status = record.status if record else "missing"
                logger.error(
                    f"Redemption {reserved.id} was resolved to '{status}' while its transfer "
                    f"was in flight (transfer success={transfer.success}, tx={transfer.tx_id})"
                )
                raise InvalidRedemptionState(
                    "Redemption was resolved while its transfer was in flight",
                    {"redemptionId": reserved.id, "status": status, "txId": transfer.tx_id},
                )

            if transfer.success:
                self._mark_settled(session, record, transfer.tx_id)
                record.block_number = transfer.block_number
                record.gas_used = transfer.gas_used
                if transfer.block_number is not None:
                    record.on_chain_success = True
                    record.confirmed_at = self.clock()
            elif transfer.ambiguous:
                record.status = AMBIGUOUS
                record.tx_id = transfer.tx_id
                record.error_kind = transfer.error_kind
                record.transfer_error = transfer.message
            else:
                self._compensate(session, record)
                record.status = FAILED
                record.tx_id = transfer.tx_id
                record.error_kind = transfer.error_kind
                record.transfer_error = transfer.message
            session.save_redemption(record)

        if transfer.success:
            logger.info(f"Redemption {record.id} settled (tx: {record.tx_id})")
            return RedemptionResult.from_record(record)

        details = {
            "redemptionId": record.id,
            "errorKind": transfer.error_kind,
            "txId": transfer.tx_id,
        }
        if transfer.ambiguous:
            logger.error(
                f"Redemption {record.id} is ambiguous ({transfer.error_kind}); funds stay "
                f"reserved until an operator resolves it"
            )
            raise TransferFailed(
                "Transfer outcome is unknown; the redemption is held for reconciliation",
                details,
                ambiguous=True,
            )
        logger.warning(f"Redemption {record.id} failed ({transfer.error_kind}) and was rolled back")
        raise TransferFailed(transfer.message or "Transfer failed", details)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_balance(request: RedemptionRequest, deposits, available: int) -> None:
        # Drained deposits still count: their owner gets a shortfall, not NoFunds
        if not deposits:
            raise NoFunds(
                f"No redeemable deposits for {request.user_address} on chain {request.chain_id}",
                {"userAddress": request.user_address, "chainId": request.chain_id},
            )
        if request.amount > available:
            raise InsufficientBalance(
                "Redemption exceeds the available balance",
                {
                    "requested": _usdt(request.amount),
                    "available": _usdt(available),
                    "shortfall": _usdt(request.amount - available),
                },
            )

    @staticmethod
    def _insert_log(session: LedgerSession, record: RedemptionRecord) -> None:
        try:
            session.insert_redemption(record)
        except DuplicateKeyError as exc:
            raise RedemptionInProgress(
                "A redemption with this idempotency key is already in progress",
                {"idempotencyKey": record.idempotency_key},
            ) from exc

    def _replay(self, existing: RedemptionRecord, request: RedemptionRequest) -> RedemptionResult:
        same_request = (
            existing.user_address == request.user_address
            and existing.chain_id == request.chain_id
            and existing.amount == request.amount
            and existing.dry_run == request.simulate
        )
        if not same_request:
            raise InvalidRequest(
                "idempotencyKey was already used for a different redemption",
                {"idempotencyKey": request.idempotency_key, "redemptionId": existing.id},
            )
        if existing.status == PENDING:
            raise RedemptionInProgress(
                "A redemption with this idempotency key is already in progress",
                {"idempotencyKey": request.idempotency_key, "redemptionId": existing.id},
            )
        if existing.status == SETTLED:
            logger.info(f"Replaying settled redemption {existing.id} for key {request.idempotency_key}")
            return RedemptionResult.from_record(existing, replayed=True)
        raise TransferFailed(
            f"Redemption {existing.id} did not settle",
            {
                "redemptionId": existing.id,
                "status": existing.status,
                "errorKind": existing.error_kind,
                "txId": existing.tx_id,
            },
            ambiguous=existing.status == AMBIGUOUS,
        )

    def _redemption_chain(self, redemption_id: str) -> int:
        chain_id = self.store.redemption_chain(redemption_id)
        if chain_id is None:
            raise RedemptionNotFound(f"Redemption {redemption_id} not found", {"redemptionId": redemption_id})
        return chain_id

    def _resolvable(self, session: LedgerSession, redemption_id: str) -> RedemptionRecord:
        record = session.get_redemption(redemption_id)
        if record is None:
            raise RedemptionNotFound(f"Redemption {redemption_id} not found", {"redemptionId": redemption_id})
        if record.dry_run or record.status not in RESOLVABLE_STATUSES:
            raise InvalidRedemptionState(
                f"Redemption {redemption_id} is {record.status} and cannot be resolved",
                {"redemptionId": redemption_id, "status": record.status},
            )
        if record.status == PENDING:
            age = self.clock() - record.created_at
            if age < self.pending_timeout:
                raise InvalidRedemptionState(
                    f"Redemption {redemption_id} is still pending and its transfer may be in flight",
                    {
                        "redemptionId": redemption_id,
                        "status": record.status,
                        "retryAfterSeconds": int((self.pending_timeout - age).total_seconds()) + 1,
                    },
                )
        return record

    def _mark_settled(self, session: LedgerSession, record: RedemptionRecord, tx_id: Optional[str]) -> None:
        for debit in record.debits:
            deposit = session.get_deposit(debit.deposit_id)
            if deposit is None or deposit.last_redeemed_at != record.created_at:
                continue
            deposit.last_redeemed_tx_hash = tx_id
            session.save_deposit(deposit)
        record.status = SETTLED
        record.tx_id = tx_id

    def _compensate(self, session: LedgerSession, record: RedemptionRecord) -> None:
        """Credit a redemption's debits back to its deposits and reserve."""
        reserve = session.get_reserve(record.chain_id)
        if reserve is None:
            raise ReserveNotConfigured(
                f"No reserve configured for chain {record.chain_id}",
                {"chainId": record.chain_id},
            )
        reserve.total_reserve += record.amount
        reserve.last_updated = self.clock()
        session.save_reserve(reserve)

        for debit in record.debits:
            deposit = session.get_deposit(debit.deposit_id)
            if deposit is None:
                logger.warning(f"Redemption {record.id}: deposit {debit.deposit_id} vanished before rollback")
                continue
            restore_deposit(deposit, debit, record.created_at)
            session.save_deposit(deposit)
        record.rolled_back = True
        logger.info(
            f"Redemption {record.id}: returned {from_minor(record.amount)} USDT to the reserve "
            f"and {len(record.debits)} deposit(s)"
        )


def default_settlement_service() -> SettlementService:
    """SettlementService wired to the database and the configured executor."""
    from custody.apps.tokens.executor import get_executor

    from ..stores import DjangoLedgerStore

    return SettlementService(
        store=DjangoLedgerStore(),
        executor=get_executor(),
        supported_chains=settings.SUPPORTED_CHAINS.keys(),
        simulate_only=settings.TRANSFER_SIMULATE_ONLY,
        debug_errors=settings.CUSTODY_DEBUG_ERRORS,
        pending_timeout=timedelta(seconds=settings.REDEMPTION_PENDING_TIMEOUT_SECONDS),
    )
