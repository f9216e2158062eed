"""
Typed errors surfaced by the ledger services.

Every error carries a machine-readable ``kind``, a human-readable message and
optional structured details, and maps onto an HTTP status for the JSON views.
"""

from typing import Any, Dict, Optional


class CustodyError(Exception):
    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "errorKind": self.kind,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


# Input validation (client-fixable)

class InvalidRequest(CustodyError):
    kind = "InvalidRequest"
    status_code = 400


class InvalidAmount(CustodyError):
    kind = "InvalidAmount"
    status_code = 400


class InvalidUser(CustodyError):
    kind = "InvalidUser"
    status_code = 400


class UnsupportedChain(CustodyError):
    kind = "UnsupportedChain"
    status_code = 400


# Business rules (client-fixable by changing the request)

class NoFunds(CustodyError):
    kind = "NoFunds"
    status_code = 404


class InsufficientBalance(CustodyError):
    kind = "InsufficientBalance"
    status_code = 400


class InsufficientReserve(CustodyError):
    kind = "InsufficientReserve"
    status_code = 400


class DuplicateTransaction(CustodyError):
    kind = "DuplicateTransaction"
    status_code = 409


class RedemptionInProgress(CustodyError):
    kind = "RedemptionInProgress"
    status_code = 409


class DepositNotFound(CustodyError):
    kind = "DepositNotFound"
    status_code = 404


class RedemptionNotFound(CustodyError):
    kind = "RedemptionNotFound"
    status_code = 404


class InvalidRedemptionState(CustodyError):
    kind = "InvalidRedemptionState"
    status_code = 409


# Configuration (operator-fixable)

class ReserveNotConfigured(CustodyError):
    kind = "ReserveNotConfigured"
    status_code = 503


# External system

class TransferFailed(CustodyError):
    kind = "TransferFailed"
    status_code = 503

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        ambiguous: bool = False,
    ):
        details = dict(details or {})
        details["ambiguous"] = ambiguous
        super().__init__(message, details)
        self.ambiguous = ambiguous


class InternalError(CustodyError):
    kind = "InternalError"
    status_code = 500
