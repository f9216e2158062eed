"""Live Transfer Executor sending USDT from the treasury with web3.py."""

import logging
from typing import Any, Dict, Optional

from django.conf import settings

from .clients import ChainClientCache, clients as default_clients
from .executor import (
    INSUFFICIENT_TREASURY_FUNDS,
    UNKNOWN,
    TransferError,
    TransferExecutor,
    TransferRequest,
    TransferResult,
)
from .services.base_contract import classify_error

logger = logging.getLogger(__name__)


class Web3TransferExecutor(TransferExecutor):
    def __init__(
        self,
        clients: Optional[ChainClientCache] = None,
        treasury_address: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: Optional[float] = None,
        receipt_timeout: Optional[float] = None,
        gas_multiplier: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.clients = clients or default_clients
        self.treasury_address = treasury_address or settings.TREASURY_ADDRESS
        self.private_key = private_key or settings.TREASURY_PRIVATE_KEY
        self.timeout = timeout if timeout is not None else settings.TRANSFER_TIMEOUT_SECONDS
        self.receipt_timeout = (
            receipt_timeout if receipt_timeout is not None else settings.TRANSFER_RECEIPT_TIMEOUT_SECONDS
        )
        self.gas_multiplier = gas_multiplier or settings.TRANSFER_GAS_MULTIPLIER
        self.max_retries = max_retries or settings.TRANSFER_MAX_RETRIES

    def transfer(self, request: TransferRequest) -> TransferResult:
        if not self.treasury_address or not self.private_key:
            raise TransferError(UNKNOWN, "Treasury wallet is not configured")

        try:
            client = self.clients.get_client(request.chain_id)
            treasury_balance = client.get_balance(self.treasury_address)
        except Exception as e:
            # Nothing has been signed yet, so any failure here is definite
            raise classify_error(e) from e

        if treasury_balance < request.amount:
            raise TransferError(
                INSUFFICIENT_TREASURY_FUNDS,
                f"Treasury holds {treasury_balance} USDT on chain {request.chain_id}, "
                f"{request.amount} requested",
            )

        try:
            result = client.transfer(
                from_address=self.treasury_address,
                to_address=request.destination,
                amount=request.amount,
                private_key=self.private_key,
                gas_multiplier=self.gas_multiplier,
                max_retries=self.max_retries,
                timeout=self.timeout,
                receipt_timeout=self.receipt_timeout,
            )
        except TransferError:
            raise
        except Exception as e:
            raise classify_error(e) from e
        return TransferResult(
            success=True,
            tx_id=result["tx_hash"],
            block_number=result.get("block_number"),
            gas_used=result.get("gas_used"),
        )

    def check_transaction(self, chain_id: int, tx_id: str) -> Optional[Dict[str, Any]]:
        return self.clients.get_client(chain_id).get_transaction_status(tx_id)
