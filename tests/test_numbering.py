"""
Test suite for the numbering service

Tests identifier format, collision retry and exhaustion.
"""

import pytest

from bank_ledger.config import LedgerConfig
from bank_ledger.errors import NumberingExhaustedError
from bank_ledger.numbering import NumberingService, NumberKind
from bank_ledger.storage import InMemoryStorage


class TestNumberingService:
    """Test collision-checked identifier generation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.config = LedgerConfig(numbering_max_retries=3)

    def test_format(self):
        service = NumberingService(
            self.storage, self.config,
            clock=lambda: 1700000012345678, random_source=lambda bound: 42
        )
        assert service.next_number(NumberKind.FIXED_DEPOSIT) == "FD12345678042"
        assert service.next_number(NumberKind.LOAN_TRANSACTION).startswith("LNTXN")

    def test_prefixes(self):
        assert NumberKind.ACCOUNT.prefix == "FP"
        assert NumberKind.RECURRING_DEPOSIT.prefix == "RD"
        assert NumberKind.ACCOUNT_TRANSACTION.prefix == "TXN"

    def test_retries_on_collision(self):
        suffixes = iter([7, 7, 8])
        service = NumberingService(
            self.storage, self.config,
            clock=lambda: 12345678, random_source=lambda bound: next(suffixes)
        )
        self.storage.save("loans", "l1", {"id": "l1", "loan_number": "LN12345678007"})

        assert service.next_number(NumberKind.LOAN) == "LN12345678008"

    def test_numbers_are_scoped_by_kind(self):
        service = NumberingService(
            self.storage, self.config,
            clock=lambda: 12345678, random_source=lambda bound: 1
        )
        self.storage.save("loans", "l1", {"id": "l1", "loan_number": "LN12345678001"})

        # A taken loan number does not block an FD with the same digits
        assert service.next_number(NumberKind.FIXED_DEPOSIT) == "FD12345678001"

    def test_exhaustion_raises_integrity_failure(self):
        calls = []

        def stuck_source(bound):
            calls.append(bound)
            return 5

        service = NumberingService(self.storage, self.config, clock=lambda: 12345678, random_source=stuck_source)
        self.storage.save("accounts", "a1", {"id": "a1", "account_number": "FP12345678005"})

        with pytest.raises(NumberingExhaustedError, match="after 3 attempts"):
            service.next_number(NumberKind.ACCOUNT)
        assert len(calls) == 3

    def test_default_sources_produce_unique_numbers(self):
        service = NumberingService(self.storage, self.config)
        first = service.next_number(NumberKind.ACCOUNT_TRANSACTION)
        self.storage.save("account_transactions", "t1", {"id": "t1", "transaction_id": first})

        assert service.next_number(NumberKind.ACCOUNT_TRANSACTION) != first

    def test_collision_check_is_a_single_lookup(self, monkeypatch):
        service = NumberingService(self.storage, self.config, clock=lambda: 12345678, random_source=lambda bound: 3)

        def no_scan(table, filters):
            raise AssertionError(f"full scan of {table}")

        monkeypatch.setattr(self.storage, "find", no_scan)
        monkeypatch.setattr(self.storage, "load_all", lambda table: no_scan(table, {}))

        assert service.next_number(NumberKind.RECURRING_DEPOSIT) == "RD12345678003"
