"""
Balance Checker

A small remote account-balance service: a threaded TCP server, a line-based
tagged response protocol, and per-user append-only ledger files whose
balance is always derived by replaying Decimal entries.
"""

__version__ = "1.0.0"
