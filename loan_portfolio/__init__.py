"""
Loan Portfolio Engine

Amortization schedule generation, payment reconciliation, schedule
synchronization and portfolio KPIs for a loan portfolio, with Decimal
money math and an append-only payment ledger.
"""

__version__ = "1.0.0"
