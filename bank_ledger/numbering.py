"""
Numbering Service Module

Generates human-facing identifiers for accounts, deposits, loans and
transactions: a short type prefix, the trailing digits of a millisecond
timestamp and a random suffix, e.g. ``FD12345678042``. Each candidate is
checked against the rows already stored for that kind and regenerated on
collision, up to a bounded number of attempts.
"""

import secrets
import time
from enum import Enum
from typing import Callable, Optional

from .config import LedgerConfig, get_config
from .errors import NumberingExhaustedError
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class NumberKind(Enum):
    """Identifier kinds with their prefix, owning table and number field"""
    ACCOUNT = ("FP", "accounts", "account_number")
    FIXED_DEPOSIT = ("FD", "fixed_deposits", "fd_number")
    RECURRING_DEPOSIT = ("RD", "recurring_deposits", "rd_number")
    LOAN = ("LN", "loans", "loan_number")
    ACCOUNT_TRANSACTION = ("TXN", "account_transactions", "transaction_id")
    FD_TRANSACTION = ("FDTXN", "fd_transactions", "transaction_id")
    RD_TRANSACTION = ("RDTXN", "rd_transactions", "transaction_id")
    LOAN_TRANSACTION = ("LNTXN", "loan_transactions", "transaction_id")

    def __init__(self, prefix: str, table: str, number_field: str):
        self.prefix = prefix
        self.table = table
        self.number_field = number_field


class NumberingService:
    """
    Collision-checked identifier generator

    ``clock`` returns milliseconds and ``random_source`` returns an int in
    ``[0, bound)``; both are injectable so a degraded source can be simulated.
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        random_source: Optional[Callable[[int], int]] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock or (lambda: time.time_ns() // 1_000_000)
        self.random_source = random_source or secrets.randbelow
        self.logger = get_logger("bank_ledger.numbering")
        for kind in NumberKind:
            self.storage.create_index(kind.table, kind.number_field)

    def _candidate(self, kind: NumberKind) -> str:
        timestamp = str(self.clock())[-self.config.numbering_timestamp_digits:]
        digits = self.config.numbering_suffix_digits
        suffix = str(self.random_source(10 ** digits)).zfill(digits)
        return f"{kind.prefix}{timestamp}{suffix}"

    def is_taken(self, kind: NumberKind, number: str) -> bool:
        return self.storage.find_one(kind.table, {kind.number_field: number}) is not None

    def next_number(self, kind: NumberKind) -> str:
        """
        Produce an identifier not yet used by any stored row of ``kind``

        Raises:
            NumberingExhaustedError: every attempt within the retry cap collided
        """
        attempts = max(1, self.config.numbering_max_retries)
        for attempt in range(1, attempts + 1):
            candidate = self._candidate(kind)
            if not self.is_taken(kind, candidate):
                return candidate
            self.logger.debug(f"{kind.name} number collision on attempt {attempt}: {candidate}")

        log_action(
            self.logger, "error",
            f"Numbering exhausted for {kind.name} after {attempts} attempts",
            action="numbering_exhausted", resource=kind.table
        )
        raise NumberingExhaustedError(
            f"Could not generate a unique {kind.name.lower()} number after {attempts} attempts"
        )
