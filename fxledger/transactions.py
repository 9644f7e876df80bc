"""
Transaction Records Module

Ledger transaction records and the operation requests that produce them.
A transaction is created PENDING and moved to exactly one terminal state
(completed, failed, cancelled) by the unit of work that mutates balances.
Once terminal it is immutable.

Operation requests form a tagged union (Deposit | Withdrawal |
SameCurrencyTransfer | CrossCurrencyTransfer); each variant validates its own
required fields when constructed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from enum import Enum

from .currency import Currency, ZERO, parse_amount, quantize_amount
from .errors import InvalidState, SameAccount
from .storage import StorageRecord


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"            # Money enters an account
    WITHDRAWAL = "withdrawal"      # Money leaves an account
    TRANSFER = "transfer"          # Same-currency transfer, one row for both legs
    RECEIVE = "receive"            # Incoming credit booked on its own
    TRANSFER_OUT = "transfer_out"  # Debit leg of a cross-currency transfer
    TRANSFER_IN = "transfer_in"    # Credit leg of a cross-currency transfer


class TransactionStatus(Enum):
    """Transaction lifecycle"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED
})

_NEEDS_SOURCE = {
    TransactionType.WITHDRAWAL, TransactionType.TRANSFER,
    TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN,
}
_NEEDS_DESTINATION = {
    TransactionType.DEPOSIT, TransactionType.TRANSFER, TransactionType.RECEIVE,
    TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN,
}
_NO_SOURCE = {TransactionType.DEPOSIT}
_NO_DESTINATION = {TransactionType.WITHDRAWAL}


@dataclass
class Transaction(StorageRecord):
    """
    A single ledger-affecting event.

    Account shape depends on the type: a deposit only has a destination, a
    withdrawal only a source, transfers (including both legs of a
    cross-currency transfer) reference both accounts.
    """
    transaction_type: TransactionType
    amount: Decimal
    currency: Currency
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    status: TransactionStatus = TransactionStatus.PENDING
    reference: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    user_id: Optional[int] = None

    def __post_init__(self):
        self.currency = Currency.from_code(self.currency)
        self.amount = quantize_amount(Decimal(str(self.amount)))

        if self.amount <= ZERO:
            raise ValueError("Transaction amount must be positive")

        kind = self.transaction_type.value
        if self.transaction_type in _NEEDS_SOURCE and self.source_account_id is None:
            raise ValueError(f"A {kind} transaction requires a source account")
        if self.transaction_type in _NEEDS_DESTINATION and self.destination_account_id is None:
            raise ValueError(f"A {kind} transaction requires a destination account")
        if self.transaction_type in _NO_SOURCE and self.source_account_id is not None:
            raise ValueError(f"A {kind} transaction cannot have a source account")
        if self.transaction_type in _NO_DESTINATION and self.destination_account_id is not None:
            raise ValueError(f"A {kind} transaction cannot have a destination account")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def ledger_account_id(self) -> Optional[int]:
        """Account whose balance this row books"""
        if self.transaction_type in (TransactionType.TRANSFER_IN, TransactionType.DEPOSIT,
                                     TransactionType.RECEIVE):
            return self.destination_account_id
        return self.source_account_id

    def _transition(self, status: TransactionStatus, at: Optional[datetime]) -> None:
        if self.is_terminal:
            raise InvalidState(
                f"Transaction {self.id} is already {self.status.value}",
                transaction_id=self.id, status=self.status.value
            )
        now = at or datetime.now(timezone.utc)
        self.status = status
        self.processed_at = now
        self.updated_at = now

    def complete(self, at: Optional[datetime] = None) -> None:
        self._transition(TransactionStatus.COMPLETED, at)

    def fail(self, reason: str, at: Optional[datetime] = None) -> None:
        self._transition(TransactionStatus.FAILED, at)
        self.failure_reason = reason

    def cancel(self, at: Optional[datetime] = None) -> None:
        self._transition(TransactionStatus.CANCELLED, at)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['status'] = TransactionStatus(data['status'])
        data['currency'] = Currency.from_code(data['currency'])
        data['amount'] = Decimal(str(data['amount']))
        if isinstance(data.get('processed_at'), str):
            data['processed_at'] = datetime.fromisoformat(data['processed_at'])
        return super().from_dict(data)


# Operation requests

@dataclass(frozen=True)
class Deposit:
    """Credit an internal account"""
    account_id: int
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    initiated_by: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'amount', parse_amount(self.amount))


@dataclass(frozen=True)
class Withdrawal:
    """Debit an internal account"""
    account_id: int
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    initiated_by: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'amount', parse_amount(self.amount))


@dataclass(frozen=True)
class SameCurrencyTransfer:
    """Move money between two accounts holding the same currency"""
    source_account_id: int
    destination_account_id: int
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    initiated_by: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'amount', parse_amount(self.amount))
        if self.source_account_id == self.destination_account_id:
            raise SameAccount(
                "Cannot transfer to the same account",
                account_id=self.source_account_id
            )


@dataclass(frozen=True)
class CrossCurrencyTransfer:
    """Move money from a user's account to an account in another currency"""
    user_id: int
    source_account_id: int
    destination_account_id: int
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'amount', parse_amount(self.amount))
        if self.source_account_id == self.destination_account_id:
            raise SameAccount(
                "Cannot transfer to the same account",
                account_id=self.source_account_id
            )

    @property
    def initiated_by(self) -> int:
        return self.user_id


OperationRequest = Union[Deposit, Withdrawal, SameCurrencyTransfer, CrossCurrencyTransfer]
