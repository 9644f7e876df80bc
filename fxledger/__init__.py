"""
FX Ledger Core

Money-movement core for a multi-currency banking back office: deposits,
withdrawals, same-currency and cross-currency transfers with rolling
transfer limits, all amounts held as Decimal with 2 fractional digits.
"""

__version__ = "1.0.0"
