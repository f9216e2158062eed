"""
Base Web3 Contract Service
Provides common functionality for interacting with token contracts on one chain
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted

from ..executor import (
    GAS_ESTIMATION_FAILED,
    INSUFFICIENT_TREASURY_FUNDS,
    NONCE_EXPIRED,
    TIMEOUT,
    UNKNOWN,
    USER_REJECTED,
    TransferError,
)

logger = logging.getLogger(__name__)

NONCE_MARKERS = ("nonce", "replacement transaction underpriced")


def classify_error(exc: Exception, submitted: bool = False, tx_id: Optional[str] = None) -> TransferError:
    """
    Map a web3 / transport exception onto a TransferError.

    ``submitted`` is set once the signed transaction has been handed to the
    node; transport failures after that point are ambiguous.
    """
    if isinstance(exc, TransferError):
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()

    if isinstance(exc, (requests.exceptions.Timeout, TimeExhausted)):
        return TransferError(TIMEOUT, message, ambiguous=submitted, tx_id=tx_id)
    if isinstance(exc, requests.exceptions.ConnectionError):
        return TransferError(UNKNOWN, message, ambiguous=submitted, tx_id=tx_id)
    if submitted and "already known" in lowered:
        return TransferError(UNKNOWN, message, ambiguous=True, tx_id=tx_id)
    if isinstance(exc, ContractLogicError):
        return TransferError(GAS_ESTIMATION_FAILED, message, tx_id=tx_id)
    if "insufficient funds" in lowered:
        return TransferError(INSUFFICIENT_TREASURY_FUNDS, message, tx_id=tx_id)
    if any(marker in lowered for marker in NONCE_MARKERS):
        return TransferError(NONCE_EXPIRED, message, tx_id=tx_id)
    if "user rejected" in lowered or "user denied" in lowered:
        return TransferError(USER_REJECTED, message, tx_id=tx_id)
    return TransferError(UNKNOWN, message, tx_id=tx_id)


class BaseContractService:
    """Base class for Web3 contract interactions"""

    def __init__(
        self,
        chain_id: int,
        contract_address: str,
        abi_path: str,
        provider_url: str,
        decimals: int = 18,
        request_timeout: float = 15,
    ):
        """
        Initialize the contract service

        Args:
            chain_id: Chain the contract is deployed on
            contract_address: The deployed contract address
            abi_path: Path to the contract ABI JSON file
            provider_url: JSON-RPC endpoint for the chain
            decimals: Token decimals used for unit conversion
            request_timeout: Seconds allowed for each JSON-RPC request
        """
        self.chain_id = chain_id
        self.provider_url = provider_url
        self.decimals = decimals
        self.web3 = Web3(
            Web3.HTTPProvider(self.provider_url, request_kwargs={"timeout": request_timeout})
        )

        if not self.web3.is_connected():
            raise ConnectionError(f"Failed to connect to Web3 provider for chain {chain_id}")

        # Load ABI
        with open(abi_path, "r") as f:
            abi = json.load(f)

        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract: Contract = self.web3.eth.contract(address=self.contract_address, abi=abi)

        logger.info(f"Initialized contract at {self.contract_address} on chain {chain_id}")

    def to_units(self, amount: Decimal) -> int:
        """Convert a token amount to integer base units"""
        return int(Decimal(amount).scaleb(self.decimals))

    def from_units(self, amount: int) -> Decimal:
        """Convert integer base units to a token amount"""
        return Decimal(amount).scaleb(-self.decimals)

    def checksum_address(self, address: str) -> str:
        return Web3.to_checksum_address(address)

    def get_account_from_private_key(self, private_key: str):
        return self.web3.eth.account.from_key(private_key)

    def build_and_send_transaction(
        self,
        function,
        from_address: str,
        private_key: str,
        gas_multiplier: float = 1.2,
        max_retries: int = 3,
        timeout: float = 15,
        receipt_timeout: float = 0,
    ) -> Dict[str, Any]:
        """
        Build, sign, and send a transaction with nonce retry logic

        Args:
            function: Contract function to call
            from_address: Sender address
            private_key: Sender's private key
            gas_multiplier: Multiplier for gas estimation (1.2 = 20% buffer)
            max_retries: Attempts allowed for nonce conflicts
            timeout: Seconds allowed before the transaction is handed to the node
            receipt_timeout: Seconds to wait for a receipt; 0 returns right after sending

        Returns:
            Dict with tx_hash, and block_number / gas_used when a receipt arrived

        Raises:
            TransferError: with ``ambiguous`` set if the transaction may be on chain
        """
        deadline = time.monotonic() + timeout
        account = self.get_account_from_private_key(private_key)
        from_address = self.checksum_address(from_address)

        for attempt in range(1, max_retries + 1):
            tx_hash = None
            submitted = False
            try:
                nonce = self.web3.eth.get_transaction_count(from_address, "pending")

                try:
                    estimated_gas = function.estimate_gas({"from": from_address})
                except Exception as e:
                    error = classify_error(e)
                    if error.kind == UNKNOWN:
                        error = TransferError(GAS_ESTIMATION_FAILED, str(e))
                    raise error
                gas_limit = int(estimated_gas * gas_multiplier)

                transaction = function.build_transaction({
                    "from": from_address,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "gasPrice": self.web3.eth.gas_price,
                    "chainId": self.chain_id,
                })
                signed_txn = account.sign_transaction(transaction)
                tx_hash = Web3.to_hex(signed_txn.hash)

                if time.monotonic() > deadline:
                    raise TransferError(TIMEOUT, f"Submission not started within {timeout}s")

                submitted = True
                self.web3.eth.send_raw_transaction(signed_txn.raw_transaction)
                logger.info(f"Transaction sent: {tx_hash}")
            except Exception as e:
                error = classify_error(e, submitted=submitted, tx_id=tx_hash)
                if error.kind == NONCE_EXPIRED and attempt < max_retries:
                    logger.warning(f"Nonce conflict detected, retrying... (attempt {attempt + 1}/{max_retries})")
                    time.sleep(1)
                    continue
                if error is e:
                    raise
                raise error from e

            result = {"tx_hash": tx_hash, "block_number": None, "gas_used": None}
            if receipt_timeout > 0:
                result.update(self._wait_for_receipt(tx_hash, receipt_timeout))
            return result

        raise TransferError(NONCE_EXPIRED, f"Transaction failed after {max_retries} attempts")

    def _wait_for_receipt(self, tx_hash: str, receipt_timeout: float) -> Dict[str, Any]:
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=receipt_timeout)
        except (TimeExhausted, requests.exceptions.RequestException) as e:
            # Sent but not confirmed yet; reconciliation fills the receipt in later
            logger.info(f"No receipt for {tx_hash} after {receipt_timeout}s: {e}")
            return {}
        if receipt["status"] == 0:
            raise TransferError(UNKNOWN, "Transaction reverted on-chain", tx_id=tx_hash)

        logger.info(f"Transaction confirmed in block {receipt['blockNumber']}")
        return {"block_number": receipt["blockNumber"], "gas_used": str(receipt["gasUsed"])}

    def call_read_function(self, function_name: str, *args) -> Any:
        """
        Call a read-only contract function

        Args:
            function_name: Name of the function to call
            *args: Arguments to pass to the function
        """
        try:
            function = getattr(self.contract.functions, function_name)
            return function(*args).call()
        except Exception as e:
            logger.error(f"Error calling {function_name}: {e}")
            raise

    def get_transaction_receipt(self, tx_hash: str):
        return self.web3.eth.get_transaction_receipt(tx_hash)

    def get_block_number(self) -> int:
        return self.web3.eth.block_number
