"""
Error Taxonomy Module

Typed errors raised by the wallet core. Every error carries a machine-readable
kind and a human-readable message so the service layer can render it without
inspecting internal state.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of failure a caller can distinguish"""
    INVALID_AMOUNT = "invalid_amount"
    INVALID_TRANSACTION_TYPE = "invalid_transaction_type"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INTERNAL_FAILURE = "internal_failure"


class WalletError(Exception):
    """Base class for all errors surfaced by the wallet core"""

    kind: ErrorKind = ErrorKind.INTERNAL_FAILURE
    recoverable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for rendering"""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class InvalidAmountError(WalletError):
    """Amount is not a finite, strictly positive number, or would round the balance"""
    kind = ErrorKind.INVALID_AMOUNT
    recoverable = True


class InvalidTransactionTypeError(WalletError):
    """Transaction type is not DEPOSIT or WITHDRAWAL"""
    kind = ErrorKind.INVALID_TRANSACTION_TYPE
    recoverable = True


class AccountNotFoundError(WalletError):
    """Referenced account does not exist"""
    kind = ErrorKind.ACCOUNT_NOT_FOUND
    recoverable = True

    def __init__(self, account_id: str):
        super().__init__("Account not found", {"account_id": account_id})
        self.account_id = account_id


class InsufficientFundsError(WalletError):
    """Withdrawal exceeds the current balance"""
    kind = ErrorKind.INSUFFICIENT_FUNDS
    recoverable = True

    def __init__(self, account_id: str, balance, amount):
        super().__init__(
            "Insufficient funds",
            {"account_id": account_id, "balance": balance, "amount": amount}
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class InternalFailureError(WalletError):
    """Storage unavailable, lock timeout, or any unexpected condition"""
    kind = ErrorKind.INTERNAL_FAILURE
