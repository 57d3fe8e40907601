"""
Banking Core

Ledger-backed account balances, transfers with compensation, deposits and
withdrawals, and interest-bearing loans issued through a request/approval
workflow. Every mutable record is updated by optimistic compare-and-swap.
"""

__version__ = "1.0.0"
