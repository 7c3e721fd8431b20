"""
Loan Lifecycle & Ledger Engine

Cooperative-finance backend: multi-party loan approval, deterministic
repayment schedules and an auditable wallet ledger, with exact Decimal money
and hash-chained audit trails.
"""

__version__ = "1.0.0"
