"""
Configuration Management Module

Centralized configuration for the ledger core using pydantic-settings.
Every component receives a LedgerConfig explicitly; the module-level instance
only provides the default when a caller does not inject one.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings


DEFAULT_FALLBACK_RATES: Dict[str, Dict[str, str]] = {
    "USD": {"EUR": "0.92", "BRL": "5.05", "USDT": "1.0"},
    "EUR": {"USD": "1.09", "BRL": "5.50", "USDT": "1.09"},
    "BRL": {"USD": "0.198", "EUR": "0.182", "USDT": "0.198"},
    "USDT": {"USD": "1.0", "EUR": "0.92", "BRL": "5.05"},
}

# (daily, monthly) transfer limits for newly provisioned accounts
DEFAULT_ACCOUNT_LIMITS: Dict[str, Dict[str, str]] = {
    "USD": {"daily": "10000.00", "monthly": "50000.00"},
    "EUR": {"daily": "8000.00", "monthly": "40000.00"},
    "USDT": {"daily": "15000.00", "monthly": "75000.00"},
    "BRL": {"daily": "20000.00", "monthly": "100000.00"},
}


class LedgerConfig(BaseSettings):
    """Ledger core configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Exchange rate provider
    rate_provider_url: str = "https://api.exchangerate-api.com/v4/latest"
    rate_provider_timeout: float = 5.0
    rate_cache_ttl_seconds: int = 3600
    fallback_rates: Dict[str, Dict[str, str]] = DEFAULT_FALLBACK_RATES

    # Account provisioning
    default_currencies: List[str] = ["USD", "EUR", "USDT"]
    default_limits: Dict[str, Dict[str, str]] = DEFAULT_ACCOUNT_LIMITS
    fallback_daily_limit: str = "10000.00"
    fallback_monthly_limit: str = "50000.00"
    account_number_retries: int = 5

    # Transfer engine
    record_failed_transactions: bool = True

    # Security configuration (consumed by the excluded auth layer)
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24

    class Config:
        env_prefix = "FXLEDGER_"
        env_file = ".env"
        case_sensitive = False

    def limits_for(self, currency_code: str) -> Tuple[Decimal, Decimal]:
        """Default (daily, monthly) transfer limits for a currency"""
        limits = self.default_limits.get(currency_code)
        if not limits:
            return Decimal(self.fallback_daily_limit), Decimal(self.fallback_monthly_limit)
        return Decimal(limits["daily"]), Decimal(limits["monthly"])

    def fallback_rate(self, from_code: str, to_code: str) -> Optional[Decimal]:
        """Static rate for a currency pair, None if the table lacks it"""
        table = self.fallback_rates.get(from_code) or {}
        value = table.get(to_code)
        if value is None:
            return None
        return Decimal(str(value))


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
