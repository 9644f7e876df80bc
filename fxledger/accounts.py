"""
Account Module

Per-user, per-currency ledger balances with rolling transfer limits.
Balances and limit counters are only mutated by the transfer engine; account
provisioning creates the rows and administrators change status and limits.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .currency import Currency, ZERO, quantize_amount, to_decimal
from .storage import StorageRecord


class AccountType(Enum):
    """Account categories; each maps to an account number prefix"""
    STANDARD = "standard"
    SAVINGS = "savings"
    INTERNAL = "internal"
    BUSINESS = "business"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    CLOSED = "closed"


_MONEY_FIELDS = (
    'balance', 'daily_transfer_limit', 'monthly_transfer_limit',
    'daily_transfer_total', 'monthly_transfer_total',
)
_DATE_FIELDS = ('last_transfer_date', 'last_month_reset')


@dataclass
class Account(StorageRecord):
    """
    Ledger account holding one currency.

    All money fields are Decimals with 2 fractional digits. ``balance`` can
    never be negative; a debit that would break this is rejected before any
    write happens.
    """
    account_number: str
    user_id: int
    currency: Currency
    account_type: AccountType = AccountType.INTERNAL
    name: Optional[str] = None
    balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    is_internal: bool = True
    daily_transfer_limit: Decimal = Decimal("10000.00")
    monthly_transfer_limit: Decimal = Decimal("50000.00")
    daily_transfer_total: Decimal = ZERO
    monthly_transfer_total: Decimal = ZERO
    last_transfer_date: Optional[datetime] = None
    last_month_reset: Optional[datetime] = None

    def __post_init__(self):
        self.currency = Currency.from_code(self.currency)
        for name in _MONEY_FIELDS:
            setattr(self, name, quantize_amount(to_decimal(getattr(self, name))))

        if self.balance < ZERO:
            raise ValueError(f"Account balance cannot be negative: {self.balance}")
        if self.daily_transfer_limit < ZERO or self.monthly_transfer_limit < ZERO:
            raise ValueError("Transfer limits cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def can_transact(self) -> bool:
        """Internal active accounts are eligible for ledger operations"""
        return self.is_internal and self.is_active

    def credit(self, amount: Decimal) -> None:
        self.balance = quantize_amount(self.balance + amount)

    def debit(self, amount: Decimal) -> None:
        """Decrease the balance; callers check funds first, this is the last guard"""
        new_balance = quantize_amount(self.balance - amount)
        if new_balance < ZERO:
            raise ValueError(
                f"Debit of {amount} would make account {self.id} balance negative"
            )
        self.balance = new_balance

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['currency'] = Currency.from_code(data['currency'])
        data['account_type'] = AccountType(data.get('account_type', AccountType.INTERNAL.value))
        data['status'] = AccountStatus(data.get('status', AccountStatus.ACTIVE.value))
        for name in _MONEY_FIELDS:
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in _DATE_FIELDS:
            if isinstance(data.get(name), str):
                data[name] = datetime.fromisoformat(data[name])
        return super().from_dict(data)
