"""
Bank Ledger

Back-office banking ledger for savings/current accounts, fixed deposits,
recurring deposits and loans. Every balance mutation is paired with an
append-only transaction record inside a single unit of work, and all money
is handled as Decimal.
"""

__version__ = "1.0.0"
