"""
Wallet Core

Per-account balances with an append-only transaction log. Deposits and
withdrawals are applied under an exclusive row lock, using Decimal math,
so concurrent requests never corrupt a balance.
"""

__version__ = "1.0.0"
