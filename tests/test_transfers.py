"""
Test suite for the transfer engine

Covers deposits, withdrawals, same-currency and cross-currency transfers:
balance non-negativity, atomicity, conservation, limit enforcement and
rollover, and the typed results handed back to callers.
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from fxledger.accounts import Account, AccountStatus
from fxledger.audit import ActivityLog, ActivityType
from fxledger.config import LedgerConfig
from fxledger.currency import Currency
from fxledger.errors import ErrorKind
from fxledger.exchange import CurrencyConversionService, ExchangeRateProvider, RateCache
from fxledger.ledger import LedgerStore
from fxledger.limits import LimitPolicy
from fxledger.storage import InMemoryStorage, SQLiteStorage
from fxledger.transactions import (
    Deposit, SameCurrencyTransfer, TransactionStatus, TransactionType,
)
from fxledger.transfers import OperationResult, OperationState, TransferEngine
from fxledger.users import UserDirectory


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class LedgerTestBase:
    """Builds an engine over fresh storage with a fixed limit clock"""

    def setup_method(self):
        self.build()

    def build(self, storage=None, config=None, conversion=None):
        self.storage = storage or InMemoryStorage()
        self.config = config or LedgerConfig()
        self.ledger = LedgerStore(self.storage)
        self.activity_log = ActivityLog(self.storage)
        self.users = UserDirectory(self.ledger, self.activity_log)
        self.conversion = conversion or CurrencyConversionService(config=self.config)
        self.engine = TransferEngine(
            self.ledger,
            LimitPolicy(clock=lambda: NOW),
            self.conversion,
            self.users,
            self.activity_log,
            self.config,
        )
        self.alice = self.users.create_user("Alice", "alice@example.com")
        self.bob = self.users.create_user("Bob", "bob@example.com")

    def open_account(self, user, currency=Currency.USD, balance="0", **overrides) -> Account:
        fields = dict(
            id=self.ledger.next_account_id(),
            created_at=NOW,
            updated_at=NOW,
            account_number=f"3000{self.ledger.count_accounts() + 1:06d}0000",
            user_id=user.id,
            currency=currency,
            balance=Decimal(balance),
            last_transfer_date=NOW,
            last_month_reset=NOW,
        )
        fields.update(overrides)
        return self.ledger.insert_account(Account(**fields))

    def balance(self, account: Account) -> Decimal:
        return self.ledger.get_account(account.id).balance

    def transactions(self):
        return [
            self.ledger.get_transaction(data["id"])
            for data in self.storage.load_all(self.ledger.transactions_table)
        ]


class TestDeposit(LedgerTestBase):
    """Administrative deposits"""

    def test_deposit_credits_account(self):
        account = self.open_account(self.alice, balance="10.00")

        result = self.engine.deposit(account.id, "90.50", description="Cash in")

        assert result.success
        assert result.state == OperationState.COMMITTED
        assert result.payload["balances"][account.id] == Decimal("100.50")
        assert self.balance(account) == Decimal("100.50")

        [transaction] = self.transactions()
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.destination_account_id == account.id
        assert transaction.source_account_id is None
        assert transaction.processed_at is not None
        assert transaction.reference.startswith("DEP-")

    def test_deposit_is_exempt_from_limits(self):
        account = self.open_account(self.alice, daily_transfer_limit=Decimal("100.00"))
        result = self.engine.deposit(account.id, "5000")
        assert result.success
        assert self.ledger.get_account(account.id).daily_transfer_total == Decimal("0.00")

    def test_missing_account(self):
        result = self.engine.deposit(999, "10")
        assert not result.success
        assert result.failure.kind == ErrorKind.NOT_FOUND
        assert self.transactions() == []

    @pytest.mark.parametrize("amount", [0, "-10", "abc", "NaN", None])
    def test_invalid_amount_rejected_before_account_read(self, amount):
        with patch.object(self.ledger, "lock_account") as lock_account:
            result = self.engine.deposit(1, amount)

        assert result.failure.kind == ErrorKind.INVALID_AMOUNT
        assert result.reached_state == OperationState.INITIATED
        lock_account.assert_not_called()

    @pytest.mark.parametrize("amount", ["1e30", 10 ** 40])
    def test_oversized_amount_is_a_typed_failure(self, amount):
        account = self.open_account(self.alice)

        result = self.engine.deposit(account.id, amount)

        assert not result.success
        assert result.failure.kind == ErrorKind.INVALID_AMOUNT
        assert result.reached_state == OperationState.INITIATED
        assert self.balance(account) == Decimal("0.00")

    def test_inactive_account(self):
        account = self.open_account(self.alice, status=AccountStatus.SUSPENDED)
        result = self.engine.deposit(account.id, "10")
        assert result.failure.kind == ErrorKind.INACTIVE_ACCOUNT
        assert self.balance(account) == Decimal("0.00")

    def test_non_internal_account(self):
        account = self.open_account(self.alice, is_internal=False)
        result = self.engine.deposit(account.id, "10")
        assert result.failure.kind == ErrorKind.INACTIVE_ACCOUNT


class TestWithdrawal(LedgerTestBase):
    """Administrative withdrawals"""

    def test_withdrawal_debits_account(self):
        account = self.open_account(self.alice, balance="100.00")

        result = self.engine.withdraw(account.id, "40")

        assert result.success
        assert self.balance(account) == Decimal("60.00")
        [transaction] = self.transactions()
        assert transaction.transaction_type == TransactionType.WITHDRAWAL
        assert transaction.source_account_id == account.id
        assert transaction.destination_account_id is None

    def test_withdraw_entire_balance(self):
        account = self.open_account(self.alice, balance="75.25")
        assert self.engine.withdraw(account.id, "75.25").success
        assert self.balance(account) == Decimal("0.00")

    def test_insufficient_funds_scenario(self):
        account = self.open_account(self.alice, balance="50.00")

        result = self.engine.withdraw(account.id, "100")

        assert result.failure.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert result.reached_state == OperationState.VALIDATED
        assert self.balance(account) == Decimal("50.00")
        statuses = [t.status for t in self.transactions()]
        assert TransactionStatus.COMPLETED not in statuses
        assert TransactionStatus.PENDING not in statuses
        assert statuses == [TransactionStatus.FAILED]

    def test_failed_rows_can_be_disabled(self):
        self.build(config=LedgerConfig(record_failed_transactions=False))
        account = self.open_account(self.alice, balance="50.00")

        self.engine.withdraw(account.id, "100")

        assert self.transactions() == []


class TestSameCurrencyTransfer(LedgerTestBase):
    """Transfers between accounts of one currency"""

    def setup_method(self):
        super().setup_method()
        self.source = self.open_account(self.alice, balance="1000.00")
        self.destination = self.open_account(self.bob, balance="200.00")

    def test_transfer_scenario(self):
        result = self.engine.transfer_same_currency(self.source.id, self.destination.id, "300")

        assert result.success
        source = self.ledger.get_account(self.source.id)
        assert source.balance == Decimal("700.00")
        assert source.daily_transfer_total == Decimal("300.00")
        assert self.balance(self.destination) == Decimal("500.00")

        [transaction] = self.transactions()
        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.source_account_id == self.source.id
        assert transaction.destination_account_id == self.destination.id
        assert transaction.reference.startswith("TRF-")

    def test_same_account_rejected_regardless_of_balance(self):
        result = self.engine.transfer_same_currency(self.source.id, self.source.id, "10")
        assert result.failure.kind == ErrorKind.SAME_ACCOUNT
        assert self.balance(self.source) == Decimal("1000.00")

        result = self.engine.transfer_same_currency(5, 5, "10")
        assert result.failure.kind == ErrorKind.SAME_ACCOUNT

    def test_oversized_amount_is_a_typed_failure(self):
        result = self.engine.transfer_same_currency(self.source.id, self.destination.id, 10 ** 40)

        assert result.failure.kind == ErrorKind.INVALID_AMOUNT
        assert self.balance(self.source) == Decimal("1000.00")
        assert self.balance(self.destination) == Decimal("200.00")

    def test_currency_mismatch(self):
        euro = self.open_account(self.bob, currency=Currency.EUR)
        result = self.engine.transfer_same_currency(self.source.id, euro.id, "10")
        assert result.failure.kind == ErrorKind.CURRENCY_MISMATCH
        assert self.balance(self.source) == Decimal("1000.00")

    def test_insufficient_funds_leaves_both_balances(self):
        result = self.engine.transfer_same_currency(self.source.id, self.destination.id, "1000.01")
        assert result.failure.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert self.balance(self.source) == Decimal("1000.00")
        assert self.balance(self.destination) == Decimal("200.00")

    def test_inactive_destination(self):
        closed = self.open_account(self.bob, status=AccountStatus.CLOSED)
        result = self.engine.transfer_same_currency(self.source.id, closed.id, "10")
        assert result.failure.kind == ErrorKind.INACTIVE_ACCOUNT

    def test_missing_destination(self):
        result = self.engine.transfer_same_currency(self.source.id, 404, "10")
        assert result.failure.kind == ErrorKind.NOT_FOUND
        assert self.balance(self.source) == Decimal("1000.00")

    def test_daily_limit_enforcement(self):
        source = self.open_account(
            self.alice, balance="20000.00",
            daily_transfer_limit=Decimal("10000.00"),
            daily_transfer_total=Decimal("9500.00"),
        )

        rejected = self.engine.transfer_same_currency(source.id, self.destination.id, "600")

        assert rejected.failure.kind == ErrorKind.DAILY_LIMIT_EXCEEDED
        context = rejected.failure.context
        assert context["limit"] == Decimal("10000.00")
        assert context["used"] == Decimal("9500.00")
        assert context["available"] == Decimal("500.00")
        unchanged = self.ledger.get_account(source.id)
        assert unchanged.daily_transfer_total == Decimal("9500.00")
        assert unchanged.balance == Decimal("20000.00")

        accepted = self.engine.transfer_same_currency(source.id, self.destination.id, "500")

        assert accepted.success
        assert self.ledger.get_account(source.id).daily_transfer_total == Decimal("10000.00")

    def test_monthly_limit_enforcement(self):
        source = self.open_account(
            self.alice, balance="5000.00",
            monthly_transfer_limit=Decimal("1000.00"),
            monthly_transfer_total=Decimal("950.00"),
        )
        result = self.engine.transfer_same_currency(source.id, self.destination.id, "100")
        assert result.failure.kind == ErrorKind.MONTHLY_LIMIT_EXCEEDED
        assert self.ledger.get_account(source.id).monthly_transfer_total == Decimal("950.00")

    def test_daily_rollover(self):
        source = self.open_account(
            self.alice, balance="500.00",
            daily_transfer_total=Decimal("9999.00"),
            last_transfer_date=NOW - timedelta(days=1),
        )

        result = self.engine.transfer_same_currency(source.id, self.destination.id, "100")

        assert result.success
        after = self.ledger.get_account(source.id)
        assert after.daily_transfer_total == Decimal("100.00")
        assert after.last_transfer_date == NOW

    def test_failure_mid_unit_rolls_back_everything(self):
        original_save = self.ledger.save_account
        calls = []

        def failing_save(account):
            calls.append(account.id)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original_save(account)

        with patch.object(self.ledger, "save_account", side_effect=failing_save):
            result = self.engine.transfer_same_currency(self.source.id, self.destination.id, "300")

        assert result.failure.kind == ErrorKind.PERSISTENCE_FAILURE
        assert result.reached_state == OperationState.FUNDS_RESERVED
        source = self.ledger.get_account(self.source.id)
        assert source.balance == Decimal("1000.00")
        assert source.daily_transfer_total == Decimal("0.00")
        assert self.balance(self.destination) == Decimal("200.00")
        assert all(t.status == TransactionStatus.FAILED for t in self.transactions())

    def test_concurrent_transfers_never_overdraw(self):
        source = self.open_account(self.alice, balance="50.00")
        results = []

        def transfer():
            results.append(self.engine.transfer_same_currency(source.id, self.destination.id, "10"))

        threads = [threading.Thread(target=transfer) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.success) == 5
        assert all(r.failure.kind == ErrorKind.INSUFFICIENT_FUNDS for r in results if not r.success)
        assert self.balance(source) == Decimal("0.00")
        assert self.balance(self.destination) == Decimal("250.00")

    def test_execute_dispatches_request_variants(self):
        request = SameCurrencyTransfer(
            source_account_id=self.source.id,
            destination_account_id=self.destination.id,
            amount="25",
            reference="TRF-CUSTOM",
        )
        result = self.engine.execute(request)
        assert result.success
        assert result.payload["reference"] == "TRF-CUSTOM"

        assert self.engine.execute(Deposit(account_id=self.destination.id, amount="5")).success
        assert self.balance(self.destination) == Decimal("230.00")

    def test_execute_rejects_unknown_request(self):
        with pytest.raises(TypeError):
            self.engine.execute(object())


class TestCrossCurrencyTransfer(LedgerTestBase):
    """Transfers with currency conversion"""

    def setup_method(self):
        super().setup_method()
        self.usd = self.open_account(self.alice, currency=Currency.USD, balance="1000.00")
        self.eur = self.open_account(self.alice, currency=Currency.EUR, balance="10.00")

    def test_oversized_amount_is_a_typed_failure(self):
        result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, self.eur.id, "1e30")

        assert result.failure.kind == ErrorKind.INVALID_AMOUNT
        assert self.balance(self.usd) == Decimal("1000.00")
        assert self.transactions() == []

    def test_conversion_with_static_rate(self):
        result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, self.eur.id, "100")

        assert result.success
        assert result.payload["exchange_rate"] == Decimal("0.92")
        assert result.payload["converted_amount"] == Decimal("92.00")
        source = self.ledger.get_account(self.usd.id)
        assert source.balance == Decimal("900.00")
        assert source.daily_transfer_total == Decimal("100.00")
        assert self.balance(self.eur) == Decimal("102.00")

        outgoing, incoming = self.transactions()
        assert outgoing.transaction_type == TransactionType.TRANSFER_OUT
        assert incoming.transaction_type == TransactionType.TRANSFER_IN
        assert outgoing.reference == incoming.reference
        assert outgoing.reference.startswith("FX-")
        assert outgoing.amount == Decimal("100.00")
        assert outgoing.currency == Currency.USD
        assert outgoing.metadata["converted_amount"] == "92.00"
        assert incoming.amount == Decimal("92.00")
        assert incoming.currency == Currency.EUR
        assert incoming.metadata["original_amount"] == "100.00"
        assert incoming.metadata["exchange_rate"] == "0.92"
        assert {outgoing.status, incoming.status} == {TransactionStatus.COMPLETED}

    def test_converted_amount_is_rounded(self):
        brl = self.open_account(self.alice, currency=Currency.BRL, balance="100.00")

        result = self.engine.transfer_cross_currency(self.alice.id, brl.id, self.usd.id, "10.01")

        assert result.success
        assert self.balance(brl) == Decimal("89.99")
        assert self.balance(self.usd) == Decimal("1001.98")

    @patch('httpx.Client.get')
    def test_live_rate_is_used(self, mock_get):
        response = mock_get.return_value
        response.status_code = 200
        response.json.return_value = {"rates": {"EUR": 0.9}}
        provider = ExchangeRateProvider("https://rates.example.com/latest")
        conversion = CurrencyConversionService(provider=provider, cache=RateCache(), config=self.config)
        self.build(conversion=conversion)
        usd = self.open_account(self.alice, currency=Currency.USD, balance="100.00")
        eur = self.open_account(self.alice, currency=Currency.EUR)

        result = self.engine.transfer_cross_currency(self.alice.id, usd.id, eur.id, "50")

        assert result.payload["converted_amount"] == Decimal("45.00")
        assert self.balance(eur) == Decimal("45.00")
        provider.close()

    @patch('httpx.Client.get')
    def test_provider_outage_uses_fallback(self, mock_get):
        mock_get.side_effect = httpx.ReadTimeout("slow")
        provider = ExchangeRateProvider("https://rates.example.com/latest")
        conversion = CurrencyConversionService(provider=provider, config=self.config)
        self.build(conversion=conversion)
        usd = self.open_account(self.alice, currency=Currency.USD, balance="100.00")
        brl = self.open_account(self.alice, currency=Currency.BRL)

        result = self.engine.transfer_cross_currency(self.alice.id, usd.id, brl.id, "10")

        assert result.success
        assert self.balance(brl) == Decimal("50.50")
        provider.close()

    def test_source_must_belong_to_user(self):
        bobs_eur = self.open_account(self.bob, currency=Currency.EUR)

        result = self.engine.transfer_cross_currency(self.bob.id, self.usd.id, bobs_eur.id, "10")

        assert result.failure.kind == ErrorKind.FORBIDDEN
        assert self.balance(self.usd) == Decimal("1000.00")
        assert self.transactions() == []

    def test_unknown_user(self):
        result = self.engine.transfer_cross_currency(404, self.usd.id, self.eur.id, "10")
        assert result.failure.kind == ErrorKind.NOT_FOUND

    def test_same_account(self):
        result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, self.usd.id, "10")
        assert result.failure.kind == ErrorKind.SAME_ACCOUNT

    def test_insufficient_funds(self):
        result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, self.eur.id, "1000.01")
        assert result.failure.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert self.balance(self.usd) == Decimal("1000.00")
        assert self.balance(self.eur) == Decimal("10.00")

    def test_limits_checked_in_source_currency(self):
        usd = self.open_account(
            self.alice, currency=Currency.USD, balance="5000.00",
            daily_transfer_limit=Decimal("1000.00"),
        )
        result = self.engine.transfer_cross_currency(self.alice.id, usd.id, self.eur.id, "1001")
        assert result.failure.kind == ErrorKind.DAILY_LIMIT_EXCEEDED

        assert self.engine.transfer_cross_currency(self.alice.id, usd.id, self.eur.id, "1000").success

    def test_same_currency_through_conversion_path(self):
        other_usd = self.open_account(self.bob, currency=Currency.USD)

        result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, other_usd.id, "10")

        assert result.success
        assert result.payload["exchange_rate"] == Decimal("1")
        assert self.balance(other_usd) == Decimal("10.00")
        assert len(self.transactions()) == 2

    def test_failure_after_first_leg_rolls_back(self):
        original_insert = self.ledger.insert_transaction
        calls = []

        def failing_insert(transaction):
            calls.append(transaction.transaction_type)
            if transaction.transaction_type == TransactionType.TRANSFER_IN:
                raise RuntimeError("connection lost")
            return original_insert(transaction)

        with patch.object(self.ledger, "insert_transaction", side_effect=failing_insert):
            result = self.engine.transfer_cross_currency(self.alice.id, self.usd.id, self.eur.id, "100")

        assert result.failure.kind == ErrorKind.PERSISTENCE_FAILURE
        assert self.balance(self.usd) == Decimal("1000.00")
        assert self.balance(self.eur) == Decimal("10.00")
        statuses = [t.status for t in self.transactions()]
        assert TransactionStatus.COMPLETED not in statuses
        assert TransactionStatus.PENDING not in statuses

    def test_amount_too_small_to_convert(self):
        brl = self.open_account(self.alice, currency=Currency.BRL, balance="1.00")
        result = self.engine.transfer_cross_currency(self.alice.id, brl.id, self.eur.id, "0.01")
        assert result.failure.kind == ErrorKind.INVALID_AMOUNT
        assert self.balance(brl) == Decimal("1.00")


class TestStatementsAndActivity(LedgerTestBase):
    """Read helpers, activity log and result serialization"""

    def test_account_statement(self):
        usd = self.open_account(self.alice, currency=Currency.USD)
        eur = self.open_account(self.alice, currency=Currency.EUR)
        other = self.open_account(self.bob, currency=Currency.USD)

        self.engine.deposit(usd.id, "500")
        self.engine.transfer_same_currency(usd.id, other.id, "100")
        self.engine.transfer_cross_currency(self.alice.id, usd.id, eur.id, "50")

        statement = self.engine.account_statement(usd.id)
        entries = statement["entries"]
        assert statement["balance"] == Decimal("350.00")
        assert [e["transaction_type"] for e in entries] == ["transfer_out", "transfer", "deposit"]
        assert [e["direction"] for e in entries] == ["outgoing", "outgoing", "incoming"]
        assert entries[1]["counterparty_account_number"] == other.account_number
        assert entries[2]["counterparty_account_number"] is None

        eur_entries = self.engine.account_statement(eur.id)["entries"]
        assert [e["transaction_type"] for e in eur_entries] == ["transfer_in"]
        assert eur_entries[0]["direction"] == "incoming"
        assert eur_entries[0]["counterparty_account_number"] == usd.account_number

        other_entries = self.engine.account_statement(other.id)["entries"]
        assert other_entries[0]["direction"] == "incoming"

    def test_statement_pagination(self):
        account = self.open_account(self.alice)
        for _ in range(5):
            self.engine.deposit(account.id, "1")

        page = self.engine.account_statement(account.id, limit=2, offset=1)["entries"]
        assert len(page) == 2

    def test_activity_logged_after_commit(self):
        account = self.open_account(self.alice)
        self.engine.deposit(account.id, "10")
        self.engine.withdraw(account.id, "20")

        types = [e.activity_type for e in self.activity_log.get_all_events()]
        assert ActivityType.DEPOSIT in types
        assert ActivityType.OPERATION_FAILED in types
        assert self.activity_log.verify_integrity()["valid"]

    def test_activity_log_failure_does_not_block(self):
        account = self.open_account(self.alice)
        with patch.object(self.activity_log, "log_event", side_effect=RuntimeError("log down")):
            result = self.engine.deposit(account.id, "10")
        assert result.success
        assert self.balance(account) == Decimal("10.00")

    def test_result_to_dict(self):
        account = self.open_account(self.alice)
        ok = self.engine.deposit(account.id, "10").to_dict()
        assert ok["success"] is True
        assert ok["state"] == "committed"
        assert ok["data"]["amount"] == "10.00"

        failed = self.engine.withdraw(account.id, "50").to_dict()
        assert failed["success"] is False
        assert failed["error"]["kind"] == "InsufficientFunds"
        assert failed["reached_state"] == "validated"

    def test_failed_result_factory(self):
        from fxledger.errors import NotFound
        result = OperationResult.failed("deposit", NotFound("Account 1 not found"))
        assert result.state == OperationState.FAILED
        assert not result.success
        assert result.failure.message == "Account 1 not found"


class TestSQLiteBackedTransfers(LedgerTestBase):
    """The engine on a file-backed SQLite ledger"""

    def setup_method(self):
        self.db_path = os.path.join(tempfile.mkdtemp(), "ledger.db")
        self.build(storage=SQLiteStorage(self.db_path))

    def teardown_method(self):
        self.storage.close()

    def test_transfer_and_rollback_persist_correctly(self):
        source = self.open_account(self.alice, balance="100.00")
        destination = self.open_account(self.bob)

        assert self.engine.transfer_same_currency(source.id, destination.id, "60").success
        assert not self.engine.transfer_same_currency(source.id, destination.id, "60").success

        self.storage.close()
        reopened = LedgerStore(SQLiteStorage(self.db_path))
        assert reopened.get_account(source.id).balance == Decimal("40.00")
        assert reopened.get_account(destination.id).balance == Decimal("60.00")
        assert len(reopened.get_account_transactions(source.id)) == 2
        reopened.storage.close()
        self.storage = SQLiteStorage(self.db_path)
