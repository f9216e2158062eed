"""
Transfer Executor: moves USDT from the treasury to a redeeming user.

``execute`` never raises for transfer problems. It returns a TransferResult
that is either a success (with the transaction id and whatever confirmation
data is known) or a failure carrying one of the ERROR_KINDS. A failure is
``ambiguous`` when the transaction may have been broadcast anyway.
"""

import abc
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

INSUFFICIENT_TREASURY_FUNDS = "InsufficientTreasuryFunds"
GAS_ESTIMATION_FAILED = "GasEstimationFailed"
NONCE_EXPIRED = "NonceExpired"
USER_REJECTED = "UserRejected"
TIMEOUT = "Timeout"
UNKNOWN = "Unknown"

ERROR_KINDS = (
    INSUFFICIENT_TREASURY_FUNDS,
    GAS_ESTIMATION_FAILED,
    NONCE_EXPIRED,
    USER_REJECTED,
    TIMEOUT,
    UNKNOWN,
)


class TransferError(Exception):
    """Raised inside executors; converted to a failed TransferResult."""

    def __init__(self, kind: str, message: str, ambiguous: bool = False, tx_id: Optional[str] = None):
        super().__init__(message)
        self.kind = kind if kind in ERROR_KINDS else UNKNOWN
        self.message = message
        self.ambiguous = ambiguous
        self.tx_id = tx_id


@dataclass(frozen=True)
class TransferRequest:
    destination: str
    amount: Decimal
    chain_id: int
    simulate: bool = False


@dataclass(frozen=True)
class TransferResult:
    success: bool
    tx_id: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[str] = None
    simulated: bool = False
    error_kind: Optional[str] = None
    message: Optional[str] = None
    ambiguous: bool = False

    @classmethod
    def failure(cls, error: TransferError) -> "TransferResult":
        return cls(
            success=False,
            tx_id=error.tx_id,
            error_kind=error.kind,
            message=error.message,
            ambiguous=error.ambiguous,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "txId": self.tx_id,
                "blockNumber": self.block_number,
                "gasUsed": self.gas_used,
                "simulated": self.simulated,
            }
        return {"success": False, "errorKind": self.error_kind, "message": self.message}


def simulated_tx_id() -> str:
    """A 32-byte hex id whose "0x51" prefix marks it as never broadcast."""
    return "0x51" + secrets.token_hex(31)


class TransferExecutor(abc.ABC):
    def execute(self, request: TransferRequest) -> TransferResult:
        if request.simulate:
            tx_id = simulated_tx_id()
            logger.info(
                f"Simulated transfer of {request.amount} USDT to {request.destination} "
                f"on chain {request.chain_id} (tx: {tx_id})"
            )
            return TransferResult(success=True, tx_id=tx_id, simulated=True)

        try:
            return self.transfer(request)
        except TransferError as e:
            logger.error(
                f"Transfer of {request.amount} USDT on chain {request.chain_id} failed "
                f"({e.kind}, ambiguous={e.ambiguous}): {e.message}"
            )
            return TransferResult.failure(e)

    @abc.abstractmethod
    def transfer(self, request: TransferRequest) -> TransferResult:
        """Perform a live transfer or raise TransferError."""

    def check_transaction(self, chain_id: int, tx_id: str) -> Optional[Dict[str, Any]]:
        """Receipt summary for ``tx_id``, or None while it is still pending."""
        return None


class SimulatedTransferExecutor(TransferExecutor):
    """Executor that never touches a chain: every transfer is simulated."""

    def execute(self, request: TransferRequest) -> TransferResult:
        if not request.simulate:
            request = TransferRequest(
                destination=request.destination,
                amount=request.amount,
                chain_id=request.chain_id,
                simulate=True,
            )
        return super().execute(request)

    def transfer(self, request: TransferRequest) -> TransferResult:
        raise TransferError(UNKNOWN, "Simulated executor cannot perform live transfers")


def get_executor() -> TransferExecutor:
    """Executor configured for this process."""
    from django.conf import settings

    if settings.TRANSFER_SIMULATE_ONLY:
        return SimulatedTransferExecutor()

    from .web3_executor import Web3TransferExecutor

    return Web3TransferExecutor()
