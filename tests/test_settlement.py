"""
test_settlement.py - Redemption flow against the in-memory store

Covers the happy path, every rejection in the error taxonomy, simulation,
rollback of definite failures, ambiguous holds and their resolution, and
idempotent replays.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from custody.apps.ledger.errors import (
    InsufficientBalance,
    InsufficientReserve,
    InternalError,
    InvalidAmount,
    InvalidRedemptionState,
    InvalidRequest,
    InvalidUser,
    NoFunds,
    RedemptionInProgress,
    RedemptionNotFound,
    ReserveNotConfigured,
    TransferFailed,
    UnsupportedChain,
)
from custody.apps.ledger.records import AMBIGUOUS, FAILED, PENDING, RELEASED, SETTLED
from custody.apps.ledger.payloads import RedemptionRequest
from custody.apps.ledger.services.balances import get_balance
from custody.apps.ledger.services.settlement import SettlementService
from custody.apps.ledger.units import to_minor
from custody.apps.tokens.executor import (
    INSUFFICIENT_TREASURY_FUNDS,
    TIMEOUT,
    SimulatedTransferExecutor,
)

from conftest import (
    ALICE,
    BOB,
    CHAINS,
    TickingClock,
    balances,
    fund,
    reserve_units,
    seed_reserve,
    tx_hash,
)


class TestEndToEnd:
    def test_base_chain_redemption(self, store, settlement, crediting):
        """100 USDT deposit on 8453, reserve 100000, redeem 25."""
        seed_reserve(store, 8453, 100000)
        fund(crediting, ALICE, 8453, 100)

        result = settlement.redeem(ALICE, 8453, 25)
        body = result.to_dict()

        assert body["success"] is True
        assert Decimal(body["newBalance"]) == 75
        assert Decimal(body["reserveBefore"]) == 100000
        assert Decimal(body["reserveAfter"]) == 99975
        assert body["txId"].startswith("0x")
        assert body["simulated"] is False

        [log] = store.redemptions()
        assert log.status == SETTLED
        assert log.amount == to_minor(25)
        assert log.reserve_before == to_minor(100000)
        assert log.reserve_after == to_minor(99975)
        assert log.tx_id == result.tx_id
        assert log.dry_run is False

        [deposit] = store.deposits()
        assert deposit.current_balance == to_minor(75)
        assert deposit.last_redeemed_amount == to_minor(25)
        assert deposit.last_redeemed_tx_hash == result.tx_id
        assert reserve_units(store, 8453) == to_minor(99975)

    def test_executor_receives_transfer_request(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)

        settlement.redeem(ALICE, 1, "12.5")

        [request] = executor.requests
        assert request.destination == ALICE
        assert request.amount == Decimal("12.5")
        assert request.chain_id == 1
        assert request.simulate is False

    def test_confirmed_receipt_is_recorded(self, store, executor, clock, crediting):
        executor.block_number = 1234
        service = SettlementService(store, executor, supported_chains=CHAINS, clock=clock)
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)

        result = service.redeem(ALICE, 1, 10)

        assert result.block_number == 1234
        [log] = store.redemptions()
        assert log.on_chain_success is True
        assert log.confirmed_at is not None


class TestValidation:
    def test_amount_is_checked_before_chain_and_user(self, settlement):
        with pytest.raises(InvalidAmount):
            settlement.redeem("not-an-address", 999, 0)

    def test_chain_is_checked_before_user(self, settlement):
        with pytest.raises(UnsupportedChain) as exc:
            settlement.redeem("not-an-address", 999, 1)
        assert exc.value.details["supportedChains"] == [1, 8453]

    def test_invalid_user(self, settlement):
        with pytest.raises(InvalidUser):
            settlement.redeem("0x1234", 1, 1)

    @pytest.mark.parametrize("amount", [-5, "abc", float("nan"), float("inf"), True, None, "1.0000001"])
    def test_invalid_amounts(self, settlement, amount):
        with pytest.raises(InvalidAmount):
            settlement.redeem(ALICE, 1, amount)


class TestRejections:
    def test_no_funds(self, store, settlement):
        seed_reserve(store, 1, 1000)
        with pytest.raises(NoFunds):
            settlement.redeem(ALICE, 1, 1)
        assert store.redemptions() == []

    def test_insufficient_balance_reports_shortfall(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 30)

        with pytest.raises(InsufficientBalance) as exc:
            settlement.redeem(ALICE, 1, "30.01")

        assert exc.value.details == {"requested": "30.01", "available": "30", "shortfall": "0.01"}
        assert balances(store, ALICE, 1) == [to_minor(30)]

    def test_drained_deposits_report_a_shortfall(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 10)
        settlement.redeem(ALICE, 1, 10)

        with pytest.raises(InsufficientBalance) as exc:
            settlement.redeem(ALICE, 1, 5)

        assert exc.value.details == {"requested": "5", "available": "0", "shortfall": "5"}
        assert reserve_units(store, 1) == to_minor(990)

    def test_reserve_not_configured(self, store, settlement, crediting):
        fund(crediting, ALICE, 1, 30)
        with pytest.raises(ReserveNotConfigured):
            settlement.redeem(ALICE, 1, 10)
        assert store.get_reserve(1) is None
        assert balances(store, ALICE, 1) == [to_minor(30)]

    def test_insufficient_reserve(self, store, settlement, crediting):
        seed_reserve(store, 1, 5)
        fund(crediting, ALICE, 1, 30)

        with pytest.raises(InsufficientReserve) as exc:
            settlement.redeem(ALICE, 1, 10)

        assert exc.value.details == {"requested": "10", "reserve": "5", "shortfall": "5"}
        assert reserve_units(store, 1) == to_minor(5)
        assert balances(store, ALICE, 1) == [to_minor(30)]

    def test_deposits_on_other_chains_do_not_count(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 8453, 100)
        with pytest.raises(NoFunds):
            settlement.redeem(ALICE, 1, 1)

    def test_test_data_is_not_spendable(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        crediting.credit(ALICE, 1, 100, tx_hash(), is_test_data=True)
        with pytest.raises(NoFunds):
            settlement.redeem(ALICE, 1, 1)


class TestBoundary:
    def test_exact_balance_drains_every_deposit(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 10, 5, 20)

        result = settlement.redeem(ALICE, 1, 35)

        assert result.new_balance == 0
        assert balances(store, ALICE, 1) == [0, 0, 0]

    def test_one_cent_over_fails(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 10, 5, 20)

        with pytest.raises(InsufficientBalance) as exc:
            settlement.redeem(ALICE, 1, "35.01")
        assert exc.value.details["shortfall"] == "0.01"


class TestSimulation:
    def test_simulation_touches_nothing_but_the_log(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 40)

        result = settlement.redeem(ALICE, 1, 25, simulate=True)

        assert result.simulated is True
        assert result.block_number is None
        assert result.new_balance == to_minor(40)
        assert result.reserve_before == result.reserve_after == to_minor(1000)
        assert executor.requests == []
        assert reserve_units(store, 1) == to_minor(1000)
        assert balances(store, ALICE, 1) == [to_minor(40)]

        [log] = store.redemptions()
        assert log.dry_run is True
        assert log.on_chain_success is False
        assert log.debits == []

    def test_simulation_skips_reserve_checks(self, store, settlement, crediting):
        fund(crediting, ALICE, 1, 40)
        result = settlement.redeem(ALICE, 1, 25, simulate=True)
        assert result.reserve_before is None

    def test_simulation_still_checks_balance(self, store, settlement, crediting):
        fund(crediting, ALICE, 1, 10)
        with pytest.raises(InsufficientBalance):
            settlement.redeem(ALICE, 1, 25, simulate=True)

    def test_simulate_only_service_never_sends(self, store, clock, crediting):
        executor = SimulatedTransferExecutor()
        service = SettlementService(store, executor, supported_chains=CHAINS, clock=clock, simulate_only=True)
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 40)

        result = service.redeem(ALICE, 1, 25)

        assert result.simulated is True
        assert reserve_units(store, 1) == to_minor(1000)


class TestFailures:
    def test_definite_failure_rolls_everything_back(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        ids = fund(crediting, ALICE, 1, 10, 5, 20)
        executor.fail_with(INSUFFICIENT_TREASURY_FUNDS, "treasury empty")

        with pytest.raises(TransferFailed) as exc:
            settlement.redeem(ALICE, 1, 12)

        assert exc.value.ambiguous is False
        assert exc.value.details["errorKind"] == INSUFFICIENT_TREASURY_FUNDS
        assert reserve_units(store, 1) == to_minor(1000)
        assert balances(store, ALICE, 1) == [to_minor(10), to_minor(5), to_minor(20)]
        for deposit_id in ids:
            assert store.get_deposit(deposit_id).last_redeemed_at is None

        [log] = store.redemptions()
        assert log.status == FAILED
        assert log.rolled_back is True
        assert log.error_kind == INSUFFICIENT_TREASURY_FUNDS

    def test_rollback_restores_earlier_redemption_stamps(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        [deposit_id] = fund(crediting, ALICE, 1, 100)
        first = settlement.redeem(ALICE, 1, 10)

        executor.fail_with(INSUFFICIENT_TREASURY_FUNDS)
        with pytest.raises(TransferFailed):
            settlement.redeem(ALICE, 1, 20)

        deposit = store.get_deposit(deposit_id)
        assert deposit.current_balance == to_minor(90)
        assert deposit.last_redeemed_amount == to_minor(10)
        assert deposit.last_redeemed_tx_hash == first.tx_id

    def test_timeout_after_submission_holds_funds(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        pending_tx = tx_hash()
        executor.fail_with(TIMEOUT, "timed out", ambiguous=True, tx_id=pending_tx)

        with pytest.raises(TransferFailed) as exc:
            settlement.redeem(ALICE, 1, 20)

        assert exc.value.ambiguous is True
        assert exc.value.details["ambiguous"] is True
        assert reserve_units(store, 1) == to_minor(980)
        assert balances(store, ALICE, 1) == [to_minor(30)]
        [log] = store.redemptions()
        assert log.status == AMBIGUOUS
        assert log.tx_id == pending_tx

    def test_release_returns_held_funds(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        executor.fail_with(TIMEOUT, ambiguous=True)
        with pytest.raises(TransferFailed):
            settlement.redeem(ALICE, 1, 20)
        [log] = store.redemptions()

        record = settlement.release_redemption(log.id, reason="never broadcast")

        assert record.status == RELEASED
        assert record.rolled_back is True
        assert reserve_units(store, 1) == to_minor(1000)
        assert balances(store, ALICE, 1) == [to_minor(50)]

    def test_confirm_settles_held_funds(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        [deposit_id] = fund(crediting, ALICE, 1, 50)
        executor.fail_with(TIMEOUT, ambiguous=True)
        with pytest.raises(TransferFailed):
            settlement.redeem(ALICE, 1, 20)
        [log] = store.redemptions()
        landed = tx_hash()

        record = settlement.confirm_redemption(log.id, landed, block_number=77)

        assert record.status == SETTLED
        assert record.tx_id == landed
        assert record.on_chain_success is True
        assert reserve_units(store, 1) == to_minor(980)
        assert store.get_deposit(deposit_id).last_redeemed_tx_hash == landed

    def test_settled_redemptions_cannot_be_released(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        result = settlement.redeem(ALICE, 1, 20)

        with pytest.raises(InvalidRedemptionState):
            settlement.release_redemption(result.redemption_id)

    def test_unknown_redemption(self, settlement):
        with pytest.raises(RedemptionNotFound):
            settlement.release_redemption("does-not-exist")

    def test_executor_crash_is_treated_as_ambiguous(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        executor.error = RuntimeError("socket closed")

        with pytest.raises(TransferFailed) as exc:
            settlement.redeem(ALICE, 1, 20)

        assert exc.value.ambiguous is True
        assert store.redemptions()[0].status == AMBIGUOUS

    def test_unexpected_errors_become_internal_errors(self, store, clock, executor, crediting):
        service = SettlementService(store, executor, supported_chains=CHAINS, clock=lambda: 1 / 0)
        with pytest.raises(InternalError) as exc:
            service.redeem(ALICE, 1, 1)
        assert "error" not in exc.value.details

        debug = SettlementService(store, executor, supported_chains=CHAINS, clock=lambda: 1 / 0, debug_errors=True)
        with pytest.raises(InternalError) as exc:
            debug.redeem(ALICE, 1, 1)
        assert "ZeroDivisionError" in exc.value.details["error"]


class TestIdempotency:
    def test_settled_key_replays_without_second_transfer(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)

        first = settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")
        again = settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")

        assert again.replayed is True
        assert again.tx_id == first.tx_id
        assert again.new_balance == first.new_balance
        assert len(executor.requests) == 1
        assert reserve_units(store, 1) == to_minor(980)
        assert len(store.redemptions()) == 1

    def test_key_reuse_with_other_parameters_is_rejected(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")

        with pytest.raises(InvalidRequest):
            settlement.redeem(ALICE, 1, 21, idempotency_key="order-1")

    def test_failed_key_replays_the_failure(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        executor.fail_with(INSUFFICIENT_TREASURY_FUNDS)
        with pytest.raises(TransferFailed):
            settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")

        executor.error = None
        with pytest.raises(TransferFailed) as exc:
            settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")
        assert exc.value.details["status"] == FAILED
        assert len(executor.requests) == 1

    def test_pending_key_reports_in_progress(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        seen = []

        class Reentrant(type(executor)):
            def transfer(self, request):
                with pytest.raises(RedemptionInProgress):
                    settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")
                seen.append(store.redemptions()[0].status)
                return super().transfer(request)

        settlement.executor = Reentrant()
        settlement.redeem(ALICE, 1, 20, idempotency_key="order-1")

        assert seen == [PENDING]

    def test_keys_are_global_across_users(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        fund(crediting, BOB, 1, 50)
        settlement.redeem(ALICE, 1, 20, idempotency_key="shared")

        with pytest.raises(InvalidRequest):
            settlement.redeem(BOB, 1, 20, idempotency_key="shared")


class TestInFlightResolution:
    def test_release_is_refused_while_the_transfer_runs(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 100)
        refusals = []

        class ImpatientOperator(type(executor)):
            def transfer(self, request):
                [log] = store.redemptions()
                with pytest.raises(InvalidRedemptionState) as exc:
                    settlement.release_redemption(log.id, reason="looks stuck")
                refusals.append(exc.value)
                return super().transfer(request)

        settlement.executor = ImpatientOperator()
        result = settlement.redeem(ALICE, 1, 40)

        [refusal] = refusals
        assert refusal.details["status"] == PENDING
        assert refusal.details["retryAfterSeconds"] > 0
        assert result.new_balance == to_minor(60)
        assert balances(store, ALICE, 1) == [to_minor(60)]
        assert reserve_units(store, 1) == to_minor(960)
        assert store.redemptions()[0].status == SETTLED

    def test_confirm_is_refused_while_the_transfer_runs(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 100)

        class ImpatientOperator(type(executor)):
            def transfer(self, request):
                [log] = store.redemptions()
                with pytest.raises(InvalidRedemptionState):
                    settlement.confirm_redemption(log.id, tx_hash())
                return super().transfer(request)

        settlement.executor = ImpatientOperator()
        result = settlement.redeem(ALICE, 1, 40)

        assert store.redemptions()[0].tx_id == result.tx_id

    def test_stale_pending_redemption_can_be_released(self, store, settlement, crediting, executor):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 50)
        # Worker died after reserving: the record never leaves pending
        record = settlement._reserve_phase(RedemptionRequest.build(ALICE, 1, 20, CHAINS))
        assert reserve_units(store, 1) == to_minor(980)

        later = SettlementService(
            store,
            executor,
            supported_chains=CHAINS,
            clock=TickingClock(start=record.created_at + timedelta(minutes=10)),
            pending_timeout=timedelta(minutes=5),
        )
        released = later.release_redemption(record.id, reason="worker crashed")

        assert released.status == RELEASED
        assert reserve_units(store, 1) == to_minor(1000)
        assert balances(store, ALICE, 1) == [to_minor(50)]


class TestBalanceHistory:
    def test_deposits_and_redemptions_newest_first(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 10, 5)
        first = settlement.redeem(ALICE, 1, 3)
        second = settlement.redeem(ALICE, 1, 4, simulate=True)
        fund(crediting, BOB, 1, 7)
        settlement.redeem(BOB, 1, 1)

        summary = get_balance(store, ALICE, 1, supported_chains=CHAINS)

        assert [r.id for r in summary.redemptions] == [second.redemption_id, first.redemption_id]
        assert [d.current_balance for d in summary.deposits] == [to_minor(7), to_minor(5)]
        body = summary.to_dict()
        assert body["balance"] == "12"
        assert body["redemptions"][0]["dryRun"] is True
        assert body["redemptions"][1]["status"] == SETTLED

    def test_history_is_limited(self, store, settlement, crediting):
        seed_reserve(store, 1, 1000)
        fund(crediting, ALICE, 1, 10)
        for _ in range(3):
            settlement.redeem(ALICE, 1, 1)

        summary = get_balance(store, ALICE, 1, supported_chains=CHAINS, history_limit=2)

        assert len(summary.redemptions) == 2
