"""
Error Taxonomy Module

Typed errors raised inside the ledger core and the structured failure payload
handed back to callers. Every error carries a kind, a human message and an
optional context dictionary (limit/used/available for limit errors).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Failure kinds reported to callers"""
    NOT_FOUND = "NotFound"
    INVALID_AMOUNT = "InvalidAmount"
    INACTIVE_ACCOUNT = "InactiveAccount"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    SAME_ACCOUNT = "SameAccount"
    CURRENCY_MISMATCH = "CurrencyMismatch"
    DAILY_LIMIT_EXCEEDED = "DailyLimitExceeded"
    MONTHLY_LIMIT_EXCEEDED = "MonthlyLimitExceeded"
    CONVERSION_UNAVAILABLE = "ConversionUnavailable"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    FORBIDDEN = "Forbidden"
    DUPLICATE_ACCOUNT = "DuplicateAccount"
    INVALID_STATE = "InvalidState"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class OperationFailure:
    """Structured failure returned to callers instead of an exception"""
    kind: ErrorKind
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }


class LedgerError(Exception):
    """Base class for all ledger core errors"""

    kind: ErrorKind = ErrorKind.PERSISTENCE_FAILURE

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_failure(self) -> OperationFailure:
        return OperationFailure(self.kind, self.message, dict(self.context))


class NotFound(LedgerError):
    """Account or user does not exist"""
    kind = ErrorKind.NOT_FOUND


class InvalidAmount(LedgerError):
    """Amount is non-numeric, non-finite or not positive"""
    kind = ErrorKind.INVALID_AMOUNT


class InactiveAccount(LedgerError):
    """Account is not active or not internal"""
    kind = ErrorKind.INACTIVE_ACCOUNT


class InsufficientFunds(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class SameAccount(LedgerError):
    kind = ErrorKind.SAME_ACCOUNT


class CurrencyMismatch(LedgerError):
    kind = ErrorKind.CURRENCY_MISMATCH


class LimitExceeded(LedgerError):
    """Base for rolling transfer limit violations"""

    def __init__(self, message: str, limit: Decimal, used: Decimal, available: Decimal, **context: Any):
        super().__init__(message, limit=limit, used=used, available=available, **context)
        self.limit = limit
        self.used = used
        self.available = available


class DailyLimitExceeded(LimitExceeded):
    kind = ErrorKind.DAILY_LIMIT_EXCEEDED


class MonthlyLimitExceeded(LimitExceeded):
    kind = ErrorKind.MONTHLY_LIMIT_EXCEEDED


class ConversionUnavailable(LedgerError):
    """Neither live nor static rates cover the currency pair"""
    kind = ErrorKind.CONVERSION_UNAVAILABLE


class PersistenceFailure(LedgerError):
    """Atomic unit could not commit"""
    kind = ErrorKind.PERSISTENCE_FAILURE


class Forbidden(LedgerError):
    """Requesting user does not own the account"""
    kind = ErrorKind.FORBIDDEN


class DuplicateAccount(LedgerError):
    kind = ErrorKind.DUPLICATE_ACCOUNT


class InvalidState(LedgerError):
    """Illegal transaction status transition"""
    kind = ErrorKind.INVALID_STATE


class StorageError(Exception):
    """Raised by storage backends; mapped to PersistenceFailure by callers"""


class RateProviderError(Exception):
    """Live exchange rate could not be obtained"""

    def __init__(self, message: str, base_currency: Optional[str] = None):
        super().__init__(message)
        self.base_currency = base_currency
