"""
Account Provisioning Module

Creates a user's currency accounts with unique account numbers, plus the
administrative status and limit updates on existing accounts. Creating a
user's default account set is all-or-nothing.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple, Union

from .accounts import Account, AccountStatus, AccountType
from .audit import ActivityLog, ActivityType
from .config import LedgerConfig, get_config
from .currency import Currency, ZERO, quantize_amount, to_decimal
from .errors import DuplicateAccount, InvalidAmount, InvalidState, PersistenceFailure
from .ledger import LedgerStore
from .logging_config import get_logger, log_action
from .users import User, UserDirectory, UserRole


ACCOUNT_NUMBER_PREFIXES = {
    AccountType.STANDARD: "1000",
    AccountType.SAVINGS: "2000",
    AccountType.INTERNAL: "3000",
    AccountType.BUSINESS: "4000",
}
UNKNOWN_PREFIX = "9000"


class AccountProvisioner:
    """Creates accounts and applies administrative account changes"""

    def __init__(
        self,
        ledger: LedgerStore,
        config: Optional[LedgerConfig] = None,
        activity_log: Optional[ActivityLog] = None,
        users: Optional[UserDirectory] = None,
        rng: Optional[random.Random] = None
    ):
        self.ledger = ledger
        self.config = config or get_config()
        self.activity_log = activity_log
        self.users = users
        self._rng = rng or random.SystemRandom()
        self.logger = get_logger("fxledger.provisioning")

    def _record(self, *args, **kwargs) -> None:
        if self.activity_log:
            self.activity_log.record(*args, **kwargs)

    def generate_account_number(self, account_type: Union[AccountType, str]) -> str:
        """
        Account number: 4-digit type prefix, running account count padded to
        6 digits, then 4 random digits. Regenerated on collision.

        Raises:
            PersistenceFailure: If no unused number was found within the
                configured number of attempts
        """
        try:
            prefix = ACCOUNT_NUMBER_PREFIXES[AccountType(account_type)]
        except ValueError:
            prefix = UNKNOWN_PREFIX

        count = self.ledger.count_accounts() + 1
        for _ in range(self.config.account_number_retries):
            random_digits = f"{self._rng.randrange(10000):04d}"
            account_number = f"{prefix}{count:06d}{random_digits}"
            if not self.ledger.account_number_exists(account_number):
                return account_number

        raise PersistenceFailure(
            "Could not generate a unique account number",
            account_type=str(account_type)
        )

    def _build_account(
        self,
        user_id: int,
        currency: Currency,
        account_type: AccountType,
        name: Optional[str],
        daily_limit: Optional[Decimal],
        monthly_limit: Optional[Decimal],
        is_internal: bool
    ) -> Account:
        default_daily, default_monthly = self.config.limits_for(currency.code)
        now = datetime.now(timezone.utc)
        return Account(
            id=self.ledger.next_account_id(),
            created_at=now,
            updated_at=now,
            account_number=self.generate_account_number(account_type),
            user_id=user_id,
            currency=currency,
            account_type=account_type,
            name=name,
            balance=ZERO,
            status=AccountStatus.ACTIVE,
            is_internal=is_internal,
            daily_transfer_limit=daily_limit if daily_limit is not None else default_daily,
            monthly_transfer_limit=monthly_limit if monthly_limit is not None else default_monthly,
        )

    def _log_created(self, accounts: List[Account]) -> None:
        if self.ledger.storage.in_transaction:
            # The enclosing unit logs once it has committed
            return
        for account in accounts:
            log_action(
                self.logger, "info", f"Account created: {account.account_number}",
                user_id=account.user_id, action="create_account",
                resource=f"account:{account.id}",
                extra={"currency": account.currency.code, "account_type": account.account_type.value}
            )
            self._record(
                ActivityType.ACCOUNT_CREATED, "account", account.id,
                {
                    "account_number": account.account_number,
                    "currency": account.currency.code,
                    "account_type": account.account_type,
                    "daily_transfer_limit": account.daily_transfer_limit,
                    "monthly_transfer_limit": account.monthly_transfer_limit,
                },
                user_id=account.user_id,
            )

    def _require_user(self, user_id: int) -> None:
        if self.users is not None:
            self.users.require_user(user_id)

    def create_account(
        self,
        user_id: int,
        currency: Union[Currency, str],
        account_type: AccountType = AccountType.INTERNAL,
        name: Optional[str] = None,
        daily_limit: Optional[Decimal] = None,
        monthly_limit: Optional[Decimal] = None,
        is_internal: bool = True
    ) -> Account:
        """Create a single account with a zero balance"""
        currency = Currency.from_code(currency)
        with self.ledger.atomic():
            self._require_user(user_id)
            account = self._build_account(
                user_id, currency, account_type, name,
                daily_limit, monthly_limit, is_internal
            )
            self.ledger.insert_account(account)

        self._log_created([account])
        return account

    def create_default_accounts(
        self,
        user_id: int,
        display_name: str,
        include_brl: bool = False
    ) -> List[Account]:
        """
        Create one internal account per default currency (USD, EUR, USDT and,
        when requested, BRL). Either every account is created or none is.

        Raises:
            NotFound: Unknown user (when a user directory is attached)
            DuplicateAccount: The user already holds one of the currencies
        """
        codes = list(self.config.default_currencies)
        if include_brl and Currency.BRL.code not in codes:
            codes.append(Currency.BRL.code)
        currencies = [Currency.from_code(code) for code in codes]

        with self.ledger.atomic():
            self._require_user(user_id)
            held = {account.currency for account in self.ledger.get_user_accounts(user_id)}
            duplicates = [currency.code for currency in currencies if currency in held]
            if duplicates:
                raise DuplicateAccount(
                    f"User {user_id} already holds accounts in {', '.join(duplicates)}",
                    user_id=user_id, currencies=duplicates
                )

            accounts = []
            for currency in currencies:
                account = self._build_account(
                    user_id, currency, AccountType.INTERNAL,
                    f"{currency.code} account of {display_name}",
                    None, None, True
                )
                accounts.append(self.ledger.insert_account(account))

        self._log_created(accounts)
        return accounts

    def create_brl_account(self, user_id: int, display_name: Optional[str] = None) -> Account:
        """
        Open the optional BRL account for a user who does not have one yet.

        Raises:
            DuplicateAccount: The user already holds a BRL account
        """
        with self.ledger.atomic():
            self._require_user(user_id)
            if any(a.currency == Currency.BRL for a in self.ledger.get_user_accounts(user_id)):
                raise DuplicateAccount(f"User {user_id} already has a BRL account", user_id=user_id)
            name = f"BRL account of {display_name}" if display_name else "BRL account"
            account = self._build_account(
                user_id, Currency.BRL, AccountType.STANDARD, name, None, None, True
            )
            self.ledger.insert_account(account)

        self._log_created([account])
        return account

    def register_user(
        self,
        display_name: str,
        email: str,
        include_brl: bool = False,
        role: UserRole = UserRole.CLIENT
    ) -> Tuple[User, List[Account]]:
        """Create a user together with its default accounts in one unit"""
        if self.users is None:
            raise RuntimeError("register_user requires a user directory")

        with self.ledger.atomic():
            user = self.users.create_user(display_name, email, role=role)
            accounts = self.create_default_accounts(user.id, user.display_name, include_brl)

        self._record(ActivityType.USER_CREATED, "user", user.id, {"email": user.email})
        self._log_created(accounts)
        return user, accounts

    def update_status(
        self,
        account_id: int,
        status: Union[AccountStatus, str],
        changed_by: Optional[int] = None
    ) -> Account:
        """Administrative status change (active/inactive/suspended/closed)"""
        try:
            new_status = AccountStatus(status)
        except ValueError:
            raise InvalidState(f"Invalid account status: {status!r}", status=str(status))

        with self.ledger.atomic():
            account = self.ledger.lock_account(account_id)
            old_status = account.status
            account.status = new_status
            self.ledger.save_account(account)

        self._record(
            ActivityType.ACCOUNT_STATUS_CHANGED, "account", account.id,
            {"old_status": old_status, "new_status": new_status},
            user_id=changed_by,
        )
        return account

    def update_limits(
        self,
        account_id: int,
        daily_limit: Optional[Any] = None,
        monthly_limit: Optional[Any] = None,
        changed_by: Optional[int] = None
    ) -> Account:
        """Administrative change of an account's daily and/or monthly caps"""
        daily = self._parse_limit(daily_limit) if daily_limit is not None else None
        monthly = self._parse_limit(monthly_limit) if monthly_limit is not None else None

        with self.ledger.atomic():
            account = self.ledger.lock_account(account_id)
            if daily is not None:
                account.daily_transfer_limit = daily
            if monthly is not None:
                account.monthly_transfer_limit = monthly
            self.ledger.save_account(account)

        self._record(
            ActivityType.ACCOUNT_LIMITS_CHANGED, "account", account.id,
            {
                "daily_transfer_limit": account.daily_transfer_limit,
                "monthly_transfer_limit": account.monthly_transfer_limit,
            },
            user_id=changed_by,
        )
        return account

    @staticmethod
    def _parse_limit(value: Any) -> Decimal:
        limit = to_decimal(value)
        if not limit.is_finite() or limit < ZERO:
            raise InvalidAmount("Transfer limit must be a non-negative number", limit=str(limit))
        return quantize_amount(limit)
