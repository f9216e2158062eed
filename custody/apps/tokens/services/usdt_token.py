"""
USDT (ERC20) Contract Service
Handles treasury transfers and balance queries on one chain
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from web3.exceptions import TransactionNotFound

from .base_contract import BaseContractService

logger = logging.getLogger(__name__)


class USDTTokenService(BaseContractService):
    """Service for interacting with the USDT contract of one supported chain"""

    def __init__(self, chain_id: int, request_timeout: Optional[float] = None):
        chain = settings.SUPPORTED_CHAINS[chain_id]
        super().__init__(
            chain_id=chain_id,
            contract_address=chain["usdt_address"],
            abi_path=settings.USDT_ABI_PATH,
            provider_url=chain["rpc_url"],
            decimals=chain.get("decimals", 6),
            request_timeout=(
                request_timeout if request_timeout is not None else settings.TRANSFER_TIMEOUT_SECONDS
            ),
        )
        self.chain_name = chain.get("name", str(chain_id))

    # ============================================================
    # READ-ONLY FUNCTIONS
    # ============================================================

    def get_balance(self, address: str) -> Decimal:
        """
        Get USDT balance of an address

        Args:
            address: Wallet address

        Returns:
            Balance in USDT (Decimal)
        """
        address = self.checksum_address(address)
        return self.from_units(self.call_read_function("balanceOf", address))

    def get_token_info(self) -> Dict[str, Any]:
        return {
            "symbol": self.call_read_function("symbol"),
            "decimals": self.call_read_function("decimals"),
        }

    def get_transaction_status(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """
        Receipt summary for a submitted transfer

        Returns:
            None while the transaction is unknown or unmined, otherwise a dict
            with success, block_number and gas_used
        """
        try:
            receipt = self.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return {
            "success": receipt["status"] == 1,
            "block_number": receipt["blockNumber"],
            "gas_used": str(receipt["gasUsed"]),
        }

    # ============================================================
    # WRITE FUNCTIONS (Treasury)
    # ============================================================

    def transfer(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        private_key: str,
        **send_options,
    ) -> Dict[str, Any]:
        """
        Transfer USDT from the treasury to a recipient

        Args:
            from_address: Treasury address
            to_address: Recipient address
            amount: Amount of USDT to transfer
            private_key: Treasury private key
            **send_options: Forwarded to build_and_send_transaction

        Returns:
            Transaction details
        """
        to_address = self.checksum_address(to_address)
        amount_units = self.to_units(amount)

        logger.info(f"Transferring {amount} USDT to {to_address} on {self.chain_name}")

        function = self.contract.functions.transfer(to_address, amount_units)
        result = self.build_and_send_transaction(
            function=function,
            from_address=from_address,
            private_key=private_key,
            **send_options,
        )

        logger.info(f"Transferred {amount} USDT on {self.chain_name} (tx: {result['tx_hash']})")
        return result
