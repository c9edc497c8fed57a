"""
Simply Core

Ledger and accrual engine for the Simply wallet: balances, CVU/alias
identity, FCI investments with daily compounding returns, investment-backed
financing and transfers. All money math uses Decimal and every balance change
is paired with an immutable ledger entry.
"""

__version__ = "1.0.0"
