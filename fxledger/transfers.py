"""
Transfer Engine Module

Deposits, withdrawals, same-currency transfers and cross-currency transfers.
Each operation runs as one atomic unit on the ledger: every balance write and
transaction row of the unit commits together or not at all. Callers get an
OperationResult back; domain errors never escape as exceptions.

Operation lifecycle:
    INITIATED -> VALIDATED -> FUNDS_RESERVED -> LEDGER_UPDATED -> COMMITTED
    any state -> FAILED (all writes of the unit rolled back)
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .accounts import Account
from .audit import ActivityLog, ActivityType
from .config import LedgerConfig, get_config
from .currency import Currency, quantize_amount
from .errors import (
    CurrencyMismatch, Forbidden, InactiveAccount, InsufficientFunds, InvalidAmount,
    LedgerError, OperationFailure, PersistenceFailure,
)
from .exchange import CurrencyConversionService
from .ledger import LedgerStore
from .limits import LimitPolicy
from .logging_config import get_logger, log_action
from .transactions import (
    CrossCurrencyTransfer, Deposit, OperationRequest, SameCurrencyTransfer,
    Transaction, TransactionStatus, TransactionType, Withdrawal,
)
from .users import UserDirectory


class OperationState(Enum):
    """States of a ledger operation"""
    INITIATED = "initiated"
    VALIDATED = "validated"
    FUNDS_RESERVED = "funds_reserved"
    LEDGER_UPDATED = "ledger_updated"
    COMMITTED = "committed"
    FAILED = "failed"


REFERENCE_PREFIXES = {
    "deposit": "DEP-",
    "withdrawal": "WD-",
    "transfer": "TRF-",
    "currency_transfer": "FX-",
}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of a ledger operation.

    ``state`` is COMMITTED or FAILED. For failures ``reached_state`` is the
    last state the operation got to before it was rolled back.
    """
    operation: str
    state: OperationState
    payload: Dict[str, Any] = field(default_factory=dict)
    failure: Optional[OperationFailure] = None
    reached_state: Optional[OperationState] = None

    @property
    def success(self) -> bool:
        return self.state == OperationState.COMMITTED

    @classmethod
    def ok(cls, operation: str, **payload: Any) -> 'OperationResult':
        return cls(operation, OperationState.COMMITTED, payload, None, OperationState.COMMITTED)

    @classmethod
    def failed(cls, operation: str, error: LedgerError,
               reached_state: OperationState = OperationState.INITIATED) -> 'OperationResult':
        return cls(operation, OperationState.FAILED, {}, error.to_failure(), reached_state)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "operation": self.operation,
            "state": self.state.value,
            "success": self.success,
        }
        if self.success:
            result["data"] = _plain(self.payload)
        else:
            result["error"] = self.failure.to_dict()
            result["reached_state"] = self.reached_state.value if self.reached_state else None
        return result


@dataclass
class _Attempt:
    """Progress of one operation; read after a rollback to report the failure"""
    operation: str
    request: OperationRequest
    state: OperationState = OperationState.INITIATED
    # (type, currency, source_id, destination_id) once the accounts are known
    failure_row: Optional[Tuple[TransactionType, Currency, Optional[int], Optional[int]]] = None


class TransferEngine:
    """
    Moves money between ledger accounts.

    Administrative deposits and withdrawals are not subject to transfer
    limits; user transfers are, in the source account's currency.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        limit_policy: Optional[LimitPolicy] = None,
        conversion: Optional[CurrencyConversionService] = None,
        users: Optional[UserDirectory] = None,
        activity_log: Optional[ActivityLog] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.ledger = ledger
        self.config = config or get_config()
        self.limit_policy = limit_policy or LimitPolicy()
        self.conversion = conversion or CurrencyConversionService(config=self.config)
        self.users = users
        self.activity_log = activity_log
        self.logger = get_logger("fxledger.transfers")

    # Public operations

    def deposit(self, account_id: int, amount: Any, description: Optional[str] = None,
                reference: Optional[str] = None, initiated_by: Optional[int] = None) -> OperationResult:
        """Credit an internal active account"""
        return self._submit("deposit", lambda: Deposit(
            account_id, amount, description, reference, initiated_by
        ))

    def withdraw(self, account_id: int, amount: Any, description: Optional[str] = None,
                 reference: Optional[str] = None, initiated_by: Optional[int] = None) -> OperationResult:
        """Debit an internal active account that holds at least ``amount``"""
        return self._submit("withdrawal", lambda: Withdrawal(
            account_id, amount, description, reference, initiated_by
        ))

    def transfer_same_currency(self, source_id: int, destination_id: int, amount: Any,
                               description: Optional[str] = None, reference: Optional[str] = None,
                               initiated_by: Optional[int] = None) -> OperationResult:
        """Move money between two accounts of the same currency"""
        return self._submit("transfer", lambda: SameCurrencyTransfer(
            source_id, destination_id, amount, description, reference, initiated_by
        ))

    def transfer_cross_currency(self, user_id: int, source_id: int, destination_id: int,
                                amount: Any, description: Optional[str] = None,
                                reference: Optional[str] = None) -> OperationResult:
        """Move money from one of the user's accounts to an account in another currency"""
        return self._submit("currency_transfer", lambda: CrossCurrencyTransfer(
            user_id, source_id, destination_id, amount, description, reference
        ))

    def execute(self, request: OperationRequest) -> OperationResult:
        """Run an already validated operation request"""
        if isinstance(request, Deposit):
            return self._run("deposit", request, self._deposit_unit)
        if isinstance(request, Withdrawal):
            return self._run("withdrawal", request, self._withdrawal_unit)
        if isinstance(request, SameCurrencyTransfer):
            return self._run("transfer", request, self._transfer_unit)
        if isinstance(request, CrossCurrencyTransfer):
            return self._run_cross_currency(request)
        raise TypeError(f"Unsupported operation request: {type(request).__name__}")

    def account_statement(self, account_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """
        Newest-first statement of an account.

        Each entry carries its direction (incoming/outgoing) and the account
        number of the counterparty, when there is one.

        Raises:
            NotFound: If the account does not exist
        """
        account = self.ledger.require_account(account_id)
        numbers: Dict[int, Optional[str]] = {}

        def number_of(other_id: Optional[int]) -> Optional[str]:
            if other_id is None:
                return None
            if other_id not in numbers:
                other = self.ledger.get_account(other_id)
                numbers[other_id] = other.account_number if other else None
            return numbers[other_id]

        entries = []
        for transaction in self.ledger.get_account_transactions(account_id, limit, offset):
            incoming = (
                transaction.transaction_type in (
                    TransactionType.DEPOSIT, TransactionType.RECEIVE, TransactionType.TRANSFER_IN
                )
                or (transaction.transaction_type == TransactionType.TRANSFER
                    and transaction.destination_account_id == account_id)
            )
            counterparty_id = (
                transaction.source_account_id if incoming else transaction.destination_account_id
            )
            if counterparty_id == account_id:
                counterparty_id = None
            entries.append({
                "transaction_id": transaction.id,
                "transaction_type": transaction.transaction_type.value,
                "direction": "incoming" if incoming else "outgoing",
                "amount": transaction.amount,
                "currency": transaction.currency.code,
                "status": transaction.status.value,
                "reference": transaction.reference,
                "description": transaction.description,
                "counterparty_account_number": number_of(counterparty_id),
                "metadata": transaction.metadata,
                "created_at": transaction.created_at,
            })

        return {
            "account_id": account.id,
            "account_number": account.account_number,
            "currency": account.currency.code,
            "balance": account.balance,
            "limit": limit,
            "offset": offset,
            "entries": entries,
        }

    # Unit runners

    def _submit(self, operation: str, build: Callable[[], OperationRequest]) -> OperationResult:
        try:
            request = build()
        except LedgerError as e:
            self._log_rejection(operation, None, e, OperationState.INITIATED)
            return OperationResult.failed(operation, e)
        return self.execute(request)

    def _run(self, operation: str, request: OperationRequest,
             unit: Callable[[_Attempt], Dict[str, Any]]) -> OperationResult:
        attempt = _Attempt(operation, request)
        try:
            with self.ledger.atomic():
                payload = unit(attempt)
        except LedgerError as e:
            return self._reject(attempt, e)
        except Exception as e:
            self.logger.error(f"{operation} aborted by an unexpected error: {e}", exc_info=True)
            return self._reject(attempt, PersistenceFailure(f"{operation} could not be committed: {e}"))

        attempt.state = OperationState.COMMITTED
        self._log_success(attempt, payload)
        return OperationResult.ok(operation, **payload)

    def _reject(self, attempt: _Attempt, error: LedgerError) -> OperationResult:
        self._log_rejection(attempt.operation, attempt.request, error, attempt.state)
        if attempt.failure_row and self.config.record_failed_transactions:
            self._record_failed_transaction(attempt, error)
        self._record_activity(
            ActivityType.OPERATION_FAILED, "operation", attempt.operation,
            {"kind": error.kind, "message": error.message, "reached_state": attempt.state},
            getattr(attempt.request, "initiated_by", None),
        )
        return OperationResult.failed(attempt.operation, error, attempt.state)

    def _record_failed_transaction(self, attempt: _Attempt, error: LedgerError) -> None:
        """Keep a FAILED row for a rejected operation, outside the rolled-back unit"""
        transaction_type, currency, source_id, destination_id = attempt.failure_row
        request = attempt.request
        try:
            with self.ledger.atomic():
                transaction = self._new_transaction(
                    transaction_type, request.amount, currency, source_id, destination_id,
                    request.reference or self._reference(attempt.operation),
                    request.description, request.initiated_by,
                )
                transaction.fail(error.message)
                self.ledger.insert_transaction(transaction)
        except Exception as e:
            self.logger.error(f"Could not record failed {attempt.operation}: {e}", exc_info=True)

    # Units of work

    def _require_transactable(self, account: Account, label: str) -> None:
        if not account.is_internal:
            raise InactiveAccount(f"{label} {account.id} is not an internal account", account_id=account.id)
        if not account.is_active:
            raise InactiveAccount(
                f"{label} {account.id} is {account.status.value}",
                account_id=account.id, status=account.status.value
            )

    @staticmethod
    def _require_funds(account: Account, amount: Decimal) -> None:
        if account.balance < amount:
            raise InsufficientFunds(
                f"Insufficient funds: balance {account.balance}, requested {amount}",
                account_id=account.id, balance=account.balance, requested=amount
            )

    def _deposit_unit(self, attempt: _Attempt) -> Dict[str, Any]:
        request = attempt.request
        account = self.ledger.lock_account(request.account_id)
        attempt.failure_row = (TransactionType.DEPOSIT, account.currency, None, account.id)
        self._require_transactable(account, "Account")
        attempt.state = OperationState.VALIDATED

        transaction = self._open_transaction(
            attempt, TransactionType.DEPOSIT, request.amount, account.currency,
            None, account.id, request.description or "Administrative deposit"
        )
        account.credit(request.amount)
        self.ledger.save_account(account)
        self._complete(transaction)
        attempt.state = OperationState.LEDGER_UPDATED

        return {
            "transaction_ids": [transaction.id],
            "reference": transaction.reference,
            "amount": request.amount,
            "currency": account.currency.code,
            "balances": {account.id: account.balance},
        }

    def _withdrawal_unit(self, attempt: _Attempt) -> Dict[str, Any]:
        request = attempt.request
        account = self.ledger.lock_account(request.account_id)
        attempt.failure_row = (TransactionType.WITHDRAWAL, account.currency, account.id, None)
        self._require_transactable(account, "Account")
        attempt.state = OperationState.VALIDATED

        self._require_funds(account, request.amount)
        attempt.state = OperationState.FUNDS_RESERVED

        transaction = self._open_transaction(
            attempt, TransactionType.WITHDRAWAL, request.amount, account.currency,
            account.id, None, request.description or "Administrative withdrawal"
        )
        account.debit(request.amount)
        self.ledger.save_account(account)
        self._complete(transaction)
        attempt.state = OperationState.LEDGER_UPDATED

        return {
            "transaction_ids": [transaction.id],
            "reference": transaction.reference,
            "amount": request.amount,
            "currency": account.currency.code,
            "balances": {account.id: account.balance},
        }

    def _transfer_unit(self, attempt: _Attempt) -> Dict[str, Any]:
        request = attempt.request
        locked = self.ledger.lock_accounts([request.source_account_id, request.destination_account_id])
        source = locked[request.source_account_id]
        destination = locked[request.destination_account_id]
        attempt.failure_row = (TransactionType.TRANSFER, source.currency, source.id, destination.id)

        self._require_transactable(source, "Source account")
        self._require_transactable(destination, "Destination account")
        if source.currency != destination.currency:
            raise CurrencyMismatch(
                f"Cannot transfer {source.currency.code} to a {destination.currency.code} account; "
                f"use a currency transfer",
                source_currency=source.currency.code, destination_currency=destination.currency.code
            )
        attempt.state = OperationState.VALIDATED

        self._require_funds(source, request.amount)
        self.limit_policy.ensure_within_limits(source, request.amount)
        attempt.state = OperationState.FUNDS_RESERVED

        transaction = self._open_transaction(
            attempt, TransactionType.TRANSFER, request.amount, source.currency,
            source.id, destination.id, request.description or "Transfer"
        )
        source.debit(request.amount)
        destination.credit(request.amount)
        self.limit_policy.apply_transfer_usage(source, request.amount)
        self.ledger.save_account(source)
        self.ledger.save_account(destination)
        self._complete(transaction)
        attempt.state = OperationState.LEDGER_UPDATED

        return {
            "transaction_ids": [transaction.id],
            "reference": transaction.reference,
            "amount": request.amount,
            "currency": source.currency.code,
            "balances": {source.id: source.balance, destination.id: destination.balance},
        }

    def _run_cross_currency(self, request: CrossCurrencyTransfer) -> OperationResult:
        """
        Ownership, account state and the exchange rate are resolved before
        the unit opens so no HTTP call happens while rows are locked. The
        unit re-reads both rows under lock and checks them again.
        """
        attempt = _Attempt("currency_transfer", request)
        try:
            if self.users is not None:
                self.users.require_user(request.user_id)
            source = self.ledger.require_account(request.source_account_id, "Source account")
            self._require_owner(source, request.user_id)
            destination = self.ledger.require_account(request.destination_account_id, "Destination account")
            self._require_transactable(source, "Source account")
            self._require_transactable(destination, "Destination account")
            rate = self.conversion.get_rate(source.currency, destination.currency)
        except LedgerError as e:
            return self._reject(attempt, e)

        return self._run(
            "currency_transfer", request,
            lambda unit_attempt: self._cross_currency_unit(unit_attempt, rate)
        )

    def _require_owner(self, account: Account, user_id: int) -> None:
        if account.user_id != user_id:
            raise Forbidden(
                f"Account {account.id} does not belong to user {user_id}",
                account_id=account.id, user_id=user_id
            )

    def _cross_currency_unit(self, attempt: _Attempt, rate: Decimal) -> Dict[str, Any]:
        request = attempt.request
        locked = self.ledger.lock_accounts([request.source_account_id, request.destination_account_id])
        source = locked[request.source_account_id]
        destination = locked[request.destination_account_id]
        attempt.failure_row = (TransactionType.TRANSFER_OUT, source.currency, source.id, destination.id)

        self._require_owner(source, request.user_id)
        self._require_transactable(source, "Source account")
        self._require_transactable(destination, "Destination account")
        attempt.state = OperationState.VALIDATED

        self._require_funds(source, request.amount)
        self.limit_policy.ensure_within_limits(source, request.amount)
        attempt.state = OperationState.FUNDS_RESERVED

        converted = quantize_amount(request.amount * rate)
        if converted <= 0:
            raise InvalidAmount(
                f"{request.amount} {source.currency.code} converts to less than one cent "
                f"of {destination.currency.code}",
                amount=request.amount, exchange_rate=rate
            )
        reference = request.reference or self._reference(attempt.operation)
        description = request.description or (
            f"Currency transfer {source.currency.code} -> {destination.currency.code}"
        )

        outgoing = self._open_transaction(
            attempt, TransactionType.TRANSFER_OUT, request.amount, source.currency,
            source.id, destination.id, description, reference,
            {"exchange_rate": str(rate), "converted_amount": str(converted),
             "to_currency": destination.currency.code},
        )
        incoming = self._open_transaction(
            attempt, TransactionType.TRANSFER_IN, converted, destination.currency,
            source.id, destination.id, description, reference,
            {"exchange_rate": str(rate), "original_amount": str(request.amount),
             "from_currency": source.currency.code},
        )

        source.debit(request.amount)
        destination.credit(converted)
        self.limit_policy.apply_transfer_usage(source, request.amount)
        self.ledger.save_account(source)
        self.ledger.save_account(destination)
        self._complete(outgoing)
        self._complete(incoming)
        attempt.state = OperationState.LEDGER_UPDATED

        return {
            "transaction_ids": [outgoing.id, incoming.id],
            "reference": reference,
            "amount": request.amount,
            "currency": source.currency.code,
            "exchange_rate": rate,
            "converted_amount": converted,
            "destination_currency": destination.currency.code,
            "balances": {source.id: source.balance, destination.id: destination.balance},
        }

    # Transaction rows

    @staticmethod
    def _reference(operation: str) -> str:
        prefix = REFERENCE_PREFIXES.get(operation, "TX-")
        return f"{prefix}{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"

    def _new_transaction(self, transaction_type: TransactionType, amount: Decimal, currency: Currency,
                         source_id: Optional[int], destination_id: Optional[int], reference: str,
                         description: Optional[str], user_id: Optional[int],
                         metadata: Optional[Dict[str, Any]] = None) -> Transaction:
        now = datetime.now(timezone.utc)
        return Transaction(
            id=self.ledger.next_transaction_id(),
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            amount=amount,
            currency=currency,
            source_account_id=source_id,
            destination_account_id=destination_id,
            status=TransactionStatus.PENDING,
            reference=reference,
            description=description,
            metadata=metadata or {},
            user_id=user_id,
        )

    def _open_transaction(self, attempt: _Attempt, transaction_type: TransactionType, amount: Decimal,
                          currency: Currency, source_id: Optional[int], destination_id: Optional[int],
                          description: str, reference: Optional[str] = None,
                          metadata: Optional[Dict[str, Any]] = None) -> Transaction:
        """Insert a PENDING row; the unit completes it before committing"""
        request = attempt.request
        transaction = self._new_transaction(
            transaction_type, amount, currency, source_id, destination_id,
            reference or request.reference or self._reference(attempt.operation),
            description, request.initiated_by, metadata,
        )
        return self.ledger.insert_transaction(transaction)

    def _complete(self, transaction: Transaction) -> None:
        transaction.complete()
        self.ledger.save_transaction(transaction)

    # Logging

    def _log_success(self, attempt: _Attempt, payload: Dict[str, Any]) -> None:
        request = attempt.request
        transaction_ids: List[int] = payload["transaction_ids"]
        log_action(
            self.logger, "info", f"{attempt.operation} committed",
            user_id=request.initiated_by, action=attempt.operation,
            resource=f"transaction:{transaction_ids[0]}",
            extra=_plain({k: v for k, v in payload.items() if k != "balances"})
        )
        activity_types = {
            "deposit": ActivityType.DEPOSIT,
            "withdrawal": ActivityType.WITHDRAWAL,
            "transfer": ActivityType.TRANSFER,
            "currency_transfer": ActivityType.CURRENCY_TRANSFER,
        }
        self._record_activity(
            activity_types[attempt.operation], "transaction", transaction_ids[0],
            payload, request.initiated_by,
        )

    def _log_rejection(self, operation: str, request: Optional[OperationRequest],
                       error: LedgerError, state: OperationState) -> None:
        log_action(
            self.logger, "warning", f"{operation} rejected: {error.message}",
            user_id=getattr(request, "initiated_by", None), action=operation,
            extra={"kind": error.kind.value, "reached_state": state.value,
                   "context": _plain(error.context)}
        )

    def _record_activity(self, activity_type: ActivityType, entity_type: str, entity_id: Any,
                         details: Dict[str, Any], user_id: Optional[int]) -> None:
        if self.activity_log:
            self.activity_log.record(activity_type, entity_type, entity_id, details, user_id=user_id)
