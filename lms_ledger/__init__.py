"""
LMS Ledger

Loan ledger and installment engine for the agency operations portal:
running-balance ledgers, installment schedules, amount reconciliation
and an append-only audit trail. All money uses Decimal precision.
"""

__version__ = "1.0.0"
