"""
Typed request records, validated once at the service boundary.

``from_payload`` accepts the JSON body shapes used by the HTTP views; the
``build`` constructors accept plain Python values. Both raise the typed
errors from ``custody.apps.ledger.errors``.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from web3 import Web3

from .errors import InvalidAmount, InvalidRequest, InvalidUser, UnsupportedChain
from .units import to_minor

SUPPORTED_TOKENS = {"USDT"}
TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")
IDEMPOTENCY_KEY_MAX = 64


def normalize_user(user: Any) -> str:
    if not isinstance(user, str) or not Web3.is_address(user.strip()):
        raise InvalidUser("userAddress must be a valid 0x-prefixed address", {"userAddress": user})
    return user.strip().lower()


def normalize_chain(chain_id: Any, supported_chains: Iterable[int]) -> int:
    if isinstance(chain_id, bool) or not isinstance(chain_id, int):
        raise UnsupportedChain("chainId must be an integer", {"chainId": chain_id})
    supported = sorted(supported_chains)
    if chain_id not in supported:
        raise UnsupportedChain(
            f"Chain {chain_id} is not supported",
            {"chainId": chain_id, "supportedChains": supported},
        )
    return chain_id


def normalize_amount(amount: Any, field: str = "amount") -> int:
    try:
        units = to_minor(amount)
    except ValueError as exc:
        raise InvalidAmount(f"{field} must be a finite number with at most 6 decimals", {field: str(amount)}) from exc
    if units <= 0:
        raise InvalidAmount(f"{field} must be greater than zero", {field: str(amount)})
    return units


def normalize_tx_hash(tx_hash: Any) -> str:
    value = tx_hash.strip().lower() if isinstance(tx_hash, str) else None
    if not value or not TX_HASH_RE.match(value):
        raise InvalidRequest("sourceTxHash must be a 0x-prefixed 32-byte hex string", {"sourceTxHash": tx_hash})
    return value


def normalize_token(token_type: Any) -> str:
    if token_type is None:
        return "USDT"
    if not isinstance(token_type, str) or token_type.strip().upper() not in SUPPORTED_TOKENS:
        raise InvalidRequest("tokenType must be USDT", {"tokenType": token_type})
    return token_type.strip().upper()


def normalize_idempotency_key(key: Any) -> Optional[str]:
    if key is None:
        return None
    if not isinstance(key, str) or not key.strip() or len(key.strip()) > IDEMPOTENCY_KEY_MAX:
        raise InvalidRequest(
            f"idempotencyKey must be a non-empty string of at most {IDEMPOTENCY_KEY_MAX} characters",
            {"idempotencyKey": key},
        )
    return key.strip()


def _require_bool(value: Any, field: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidRequest(f"{field} must be a boolean", {field: value})
    return value


@dataclass(frozen=True)
class RedemptionRequest:
    user_address: str
    chain_id: int
    amount: int  # micro-USDT
    simulate: bool = False
    token_type: str = "USDT"
    idempotency_key: Optional[str] = None

    @classmethod
    def build(
        cls,
        user,
        chain_id,
        amount,
        supported_chains: Iterable[int],
        simulate=False,
        token_type=None,
        idempotency_key=None,
    ) -> "RedemptionRequest":
        # Order matches the documented precedence: amount, chain, user
        units = normalize_amount(amount, "redeemAmount")
        chain = normalize_chain(chain_id, supported_chains)
        user_address = normalize_user(user)
        return cls(
            user_address=user_address,
            chain_id=chain,
            amount=units,
            simulate=_require_bool(simulate, "simulate"),
            token_type=normalize_token(token_type),
            idempotency_key=normalize_idempotency_key(idempotency_key),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], supported_chains: Iterable[int]) -> "RedemptionRequest":
        if not isinstance(payload, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return cls.build(
            payload.get("userAddress"),
            payload.get("chainId"),
            payload.get("redeemAmount"),
            supported_chains,
            simulate=payload.get("simulate"),
            token_type=payload.get("tokenType"),
            idempotency_key=payload.get("idempotencyKey"),
        )


@dataclass(frozen=True)
class DepositCreditRequest:
    user_address: str
    chain_id: int
    amount: int  # micro-USDT
    source_tx_hash: str
    is_test_data: bool = False

    @classmethod
    def build(
        cls,
        user,
        chain_id,
        amount,
        source_tx_hash,
        supported_chains: Iterable[int],
        is_test_data=False,
    ) -> "DepositCreditRequest":
        units = normalize_amount(amount, "amount")
        chain = normalize_chain(chain_id, supported_chains)
        user_address = normalize_user(user)
        return cls(
            user_address=user_address,
            chain_id=chain,
            amount=units,
            source_tx_hash=normalize_tx_hash(source_tx_hash),
            is_test_data=_require_bool(is_test_data, "isTestData"),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], supported_chains: Iterable[int]) -> "DepositCreditRequest":
        if not isinstance(payload, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return cls.build(
            payload.get("userAddress"),
            payload.get("chainId"),
            payload.get("amount"),
            payload.get("sourceTxHash"),
            supported_chains,
            is_test_data=payload.get("isTestData"),
        )
