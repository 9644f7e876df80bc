"""
Transfer Limit Policy Module

Rolling daily and monthly transfer caps per account. Usage counters reset
when the calendar day (or month) of the policy clock moves past the account's
last recorded transfer (or last monthly reset).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .accounts import Account
from .currency import ZERO, quantize_amount
from .errors import DailyLimitExceeded, MonthlyLimitExceeded


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LimitUsage:
    """Snapshot of an account's limit consumption"""
    daily_limit: Decimal
    daily_used: Decimal
    monthly_limit: Decimal
    monthly_used: Decimal

    @property
    def daily_available(self) -> Decimal:
        return max(self.daily_limit - self.daily_used, ZERO)

    @property
    def monthly_available(self) -> Decimal:
        return max(self.monthly_limit - self.monthly_used, ZERO)


class LimitPolicy:
    """
    Evaluates proposed transfers against an account's rolling caps.

    The checks look at the totals as they will be once a pending calendar
    rollover is applied, so yesterday's usage never blocks today's transfer.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utc_now

    def _now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _align(value: datetime, now: datetime) -> datetime:
        """Express a stored timestamp in the clock's timezone"""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.astimezone(now.tzinfo)

    @staticmethod
    def start_of_day(now: datetime) -> datetime:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    @staticmethod
    def start_of_month(now: datetime) -> datetime:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def daily_reset_due(self, account: Account, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        if account.last_transfer_date is None:
            return True
        return self._align(account.last_transfer_date, now) < self.start_of_day(now)

    def monthly_reset_due(self, account: Account, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        if account.last_month_reset is None:
            return True
        return self._align(account.last_month_reset, now) < self.start_of_month(now)

    def usage(self, account: Account) -> LimitUsage:
        """Current limit consumption, with pending rollovers applied"""
        now = self._now()
        daily_used = ZERO if self.daily_reset_due(account, now) else account.daily_transfer_total
        monthly_used = ZERO if self.monthly_reset_due(account, now) else account.monthly_transfer_total
        return LimitUsage(
            daily_limit=account.daily_transfer_limit,
            daily_used=daily_used,
            monthly_limit=account.monthly_transfer_limit,
            monthly_used=monthly_used,
        )

    def check_daily_limit(self, account: Account, amount: Decimal) -> bool:
        usage = self.usage(account)
        return usage.daily_used + amount <= usage.daily_limit

    def check_monthly_limit(self, account: Account, amount: Decimal) -> bool:
        usage = self.usage(account)
        return usage.monthly_used + amount <= usage.monthly_limit

    def ensure_within_limits(self, account: Account, amount: Decimal) -> LimitUsage:
        """
        Raise if the transfer would break the daily or the monthly cap.

        Raises:
            DailyLimitExceeded: daily cap, checked first
            MonthlyLimitExceeded: monthly cap
        """
        usage = self.usage(account)
        if usage.daily_used + amount > usage.daily_limit:
            raise DailyLimitExceeded(
                f"Daily transfer limit exceeded. Limit: {usage.daily_limit}, "
                f"used: {usage.daily_used}",
                limit=usage.daily_limit,
                used=usage.daily_used,
                available=usage.daily_available,
                account_id=account.id,
            )
        if usage.monthly_used + amount > usage.monthly_limit:
            raise MonthlyLimitExceeded(
                f"Monthly transfer limit exceeded. Limit: {usage.monthly_limit}, "
                f"used: {usage.monthly_used}",
                limit=usage.monthly_limit,
                used=usage.monthly_used,
                available=usage.monthly_available,
                account_id=account.id,
            )
        return usage

    def apply_transfer_usage(self, account: Account, amount: Decimal) -> Account:
        """
        Add an accepted transfer to the running totals.

        Must be called only after the transfer is provisionally accepted and
        persisted in the same atomic unit as the balance change.
        """
        now = self._now()

        if self.daily_reset_due(account, now):
            account.daily_transfer_total = ZERO

        if self.monthly_reset_due(account, now):
            account.monthly_transfer_total = ZERO
            account.last_month_reset = now

        account.daily_transfer_total = quantize_amount(account.daily_transfer_total + amount)
        account.monthly_transfer_total = quantize_amount(account.monthly_transfer_total + amount)
        account.last_transfer_date = now
        return account
