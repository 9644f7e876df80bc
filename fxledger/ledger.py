"""
Ledger Store Module

Durable record of accounts and transactions on top of a storage backend.
Owns balance fields and transfer-usage counters at rest, allocates integer
ids, enforces account number uniqueness and the currency constraint, and
exposes row locking for the transfer engine.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from .accounts import Account
from .currency import Currency, to_decimal
from .errors import NotFound, PersistenceFailure
from .storage import StorageInterface
from .transactions import Transaction, TransactionStatus, TransactionType


FX_LEGS = (TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN)


@dataclass
class TransactionSearch:
    """
    Filters for the administrative transaction search. Every field is
    optional; set fields are combined with AND.

    Dates are whole UTC days and both ends are inclusive. ``account_number``
    matches either side of a transaction; ``user_id`` matches transactions on
    any account the user owns.
    """
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_type: Optional[Union[TransactionType, str]] = None
    currency: Optional[Union[Currency, str]] = None
    status: Optional[Union[TransactionStatus, str]] = None
    min_amount: Optional[Any] = None
    max_amount: Optional[Any] = None
    account_number: Optional[str] = None
    user_id: Optional[int] = None

    def exact_filters(self) -> Dict[str, str]:
        """Equality filters the storage backend can apply itself"""
        filters = {}
        if self.transaction_type is not None:
            filters["transaction_type"] = TransactionType(self.transaction_type).value
        if self.currency is not None:
            filters["currency"] = Currency.from_code(self.currency).code
        if self.status is not None:
            filters["status"] = TransactionStatus(self.status).value
        return filters

    def matches(self, transaction: Transaction) -> bool:
        created = transaction.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        day = created.astimezone(timezone.utc).date()
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        if self.min_amount is not None and transaction.amount < to_decimal(self.min_amount):
            return False
        if self.max_amount is not None and transaction.amount > to_decimal(self.max_amount):
            return False
        return True


class LedgerStore:
    """
    Account and transaction persistence.

    Write methods are expected to run inside ``storage.atomic()``; they work
    outside one as well, each write then committing on its own.
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts_table: str = "accounts",
        transactions_table: str = "transactions"
    ):
        self.storage = storage
        self.accounts_table = accounts_table
        self.transactions_table = transactions_table

    def atomic(self):
        """Open an atomic unit on the underlying storage"""
        return self.storage.atomic()

    # Accounts

    def get_account(self, account_id: int) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def require_account(self, account_id: int, label: str = "Account") -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFound(f"{label} {account_id} not found", account_id=account_id)
        return account

    def lock_account(self, account_id: int, label: str = "Account") -> Account:
        """Load an account with a row lock held until the unit ends"""
        data = self.storage.load_for_update(self.accounts_table, account_id)
        if not data:
            raise NotFound(f"{label} {account_id} not found", account_id=account_id)
        return Account.from_dict(data)

    def lock_accounts(self, account_ids: Iterable[int]) -> dict:
        """
        Lock several accounts in ascending id order so two transfers over the
        same pair of accounts cannot deadlock.
        """
        return {account_id: self.lock_account(account_id) for account_id in sorted(set(account_ids))}

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        found = self.storage.find(self.accounts_table, {"account_number": account_number})
        if found:
            return Account.from_dict(found[0])
        return None

    def account_number_exists(self, account_number: str) -> bool:
        return bool(self.storage.find(self.accounts_table, {"account_number": account_number}))

    def get_user_accounts(self, user_id: int) -> List[Account]:
        found = self.storage.find(self.accounts_table, {"user_id": user_id})
        return [Account.from_dict(data) for data in found]

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def count_accounts(self) -> int:
        return self.storage.count(self.accounts_table)

    def next_account_id(self) -> int:
        return self.storage.next_id(self.accounts_table)

    def insert_account(self, account: Account) -> Account:
        """Persist a new account; account numbers are unique across the ledger"""
        if not isinstance(account.currency, Currency):
            raise PersistenceFailure(f"Unsupported currency {account.currency!r}")
        if self.account_number_exists(account.account_number):
            raise PersistenceFailure(
                f"Account number {account.account_number} already exists",
                account_number=account.account_number
            )
        self.storage.save(self.accounts_table, account.id, account.to_dict())
        return account

    def save_account(self, account: Account) -> Account:
        if not isinstance(account.currency, Currency):
            raise PersistenceFailure(f"Unsupported currency {account.currency!r}")
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.accounts_table, account.id, account.to_dict())
        return account

    # Transactions

    def next_transaction_id(self) -> int:
        return self.storage.next_id(self.transactions_table)

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
        return transaction

    def save_transaction(self, transaction: Transaction) -> Transaction:
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
        return transaction

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find_transactions_by_reference(self, reference: str) -> List[Transaction]:
        found = self.storage.find(self.transactions_table, {"reference": reference})
        return [Transaction.from_dict(data) for data in found]

    def get_account_transactions(
        self,
        account_id: int,
        limit: int = 50,
        offset: int = 0
    ) -> List[Transaction]:
        """Transactions touching an account, newest first"""
        outgoing = self.storage.find(self.transactions_table, {"source_account_id": account_id})
        incoming = self.storage.find(self.transactions_table, {"destination_account_id": account_id})

        by_id = {}
        for data in outgoing + incoming:
            transaction = Transaction.from_dict(data)
            # Each leg of a cross-currency transfer books a single account
            if transaction.transaction_type in FX_LEGS and transaction.ledger_account_id != account_id:
                continue
            by_id[transaction.id] = transaction

        transactions = sorted(by_id.values(), key=lambda t: (t.created_at, t.id), reverse=True)
        return transactions[offset:offset + limit]

    def count_transactions(self) -> int:
        return self.storage.count(self.transactions_table)

    def _search_account_ids(self, search: TransactionSearch) -> Optional[Set[int]]:
        """Accounts a search is restricted to, None when it is not restricted"""
        account_ids = None
        if search.account_number is not None:
            account = self.get_account_by_number(search.account_number)
            account_ids = {account.id} if account else set()
        if search.user_id is not None:
            owned = {account.id for account in self.get_user_accounts(search.user_id)}
            account_ids = owned if account_ids is None else account_ids & owned
        return account_ids

    def search_transactions(
        self,
        filters: Optional[TransactionSearch] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Transaction], int]:
        """
        Administrative transaction search, newest first.

        Args:
            filters: Search filters, all transactions when omitted
            page: 1-based page number
            limit: Page size

        Returns:
            Tuple of (transactions on the requested page, total matches)

        Raises:
            ValueError: On a page or limit below 1, or an unknown type,
                status or currency
            InvalidAmount: If an amount bound is not numeric
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be at least 1")
        search = filters or TransactionSearch()

        account_ids = self._search_account_ids(search)
        if account_ids is not None and not account_ids:
            return [], 0

        matched = []
        for data in self.storage.find(self.transactions_table, search.exact_filters()):
            transaction = Transaction.from_dict(data)
            if account_ids is not None and not (
                {transaction.source_account_id, transaction.destination_account_id} & account_ids
            ):
                continue
            if search.matches(transaction):
                matched.append(transaction)

        matched.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        offset = (page - 1) * limit
        return matched[offset:offset + limit], len(matched)

    def get_transaction_details(self, transaction_id: int) -> Dict[str, Any]:
        """
        A transaction together with the accounts on both of its sides.

        Raises:
            NotFound: If the transaction does not exist
        """
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=transaction_id)

        def describe(account_id):
            account = self.get_account(account_id) if account_id is not None else None
            if account is None:
                return None
            return {
                "id": account.id,
                "account_number": account.account_number,
                "currency": account.currency.code,
                "user_id": account.user_id,
            }

        details = transaction.to_dict()
        details["source_account"] = describe(transaction.source_account_id)
        details["destination_account"] = describe(transaction.destination_account_id)
        return details
