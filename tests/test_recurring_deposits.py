"""
Test suite for recurring deposits

Tests installments, automatic completion and the closure paths.
"""

import pytest
from decimal import Decimal
from datetime import date

from bank_ledger.calculator import premature_closure_amount
from bank_ledger.config import LedgerConfig
from bank_ledger.errors import BusinessRuleError, InvalidStatusError, NotFoundError, ValidationError
from bank_ledger.recurring_deposits import RDStatus
from bank_ledger.service import LedgerService
from bank_ledger.storage import InMemoryStorage
from bank_ledger.transactions import ProductKind, TransactionType

START = date(2024, 1, 1)


class TestRecurringDeposits:
    """Test recurring deposit lifecycle"""

    def setup_method(self):
        self.ledger = LedgerService(LedgerConfig(enable_notifications=False), storage=InMemoryStorage())
        self.rds = self.ledger.recurring_deposits
        self.journal = self.ledger.journal
        self.customer = self.ledger.customers.create_customer("Asha Rao", "9876543210", "teller-1")

    def create(self, monthly=1000, rate=6, tenure=6):
        return self.rds.create_rd(self.customer.id, monthly, rate, tenure, "teller-1", start_date=START).entity

    def test_create_rd(self):
        posting = self.rds.create_rd(self.customer.id, 1000, 6, 6, "teller-1", start_date=START)
        rd = posting.entity

        assert rd.rd_number.startswith("RD")
        assert rd.status == RDStatus.ACTIVE
        assert rd.maturity_amount.amount == Decimal('6105.88')
        assert rd.maturity_date == date(2024, 7, 1)
        assert rd.total_paid.is_zero()

        txn = posting.transaction
        assert txn.transaction_type == TransactionType.RD_CREATE
        assert txn.balance_before.is_zero() and txn.balance_after.is_zero()

    def test_create_validation(self):
        with pytest.raises(ValidationError, match="Monthly amount must be positive"):
            self.rds.create_rd(self.customer.id, 0, 6, 6, "teller-1")
        with pytest.raises(ValidationError, match="Tenure must be positive"):
            self.rds.create_rd(self.customer.id, 1000, 6, 0, "teller-1")

    def test_full_payment_completes(self):
        rd = self.create()

        for number in range(1, 7):
            posting = self.rds.pay_installment(rd.id, "teller-1")
            assert posting.details["installment_number"] == number
            assert posting.transaction.balance_after.amount == Decimal(1000 * number)

        completed = self.rds.get_rd(rd.id)
        assert completed.status == RDStatus.COMPLETED
        assert completed.total_paid.amount == Decimal('6000.00')
        assert posting.details["completed"]
        assert posting.details["remaining_amount"].is_zero()

        with pytest.raises(InvalidStatusError, match="RD is not active"):
            self.rds.pay_installment(rd.id, "teller-1")
        assert self.rds.get_rd(rd.id).total_paid.amount == Decimal('6000.00')

    def test_duplicate_installment_number(self):
        rd = self.create()
        self.rds.pay_installment(rd.id, "teller-1", installment_number=3)

        with pytest.raises(BusinessRuleError, match="Installment #3 already paid"):
            self.rds.pay_installment(rd.id, "teller-1", installment_number=3)

        # Next default number follows the highest paid
        posting = self.rds.pay_installment(rd.id, "teller-1")
        assert posting.details["installment_number"] == 4

    def test_bad_installment_number(self):
        rd = self.create()
        with pytest.raises(ValidationError, match="Installment number must be a positive integer"):
            self.rds.pay_installment(rd.id, "teller-1", installment_number=0)

    def test_custom_amount(self):
        rd = self.create()
        posting = self.rds.pay_installment(rd.id, "teller-1", amount="2500")

        assert posting.entity.total_paid.amount == Decimal('2500.00')
        assert posting.details["remaining_amount"].amount == Decimal('3500.00')

    def test_paid_installments(self):
        rd = self.create()
        self.rds.pay_installment(rd.id, "teller-1")
        self.rds.pay_installment(rd.id, "teller-1")

        assert sorted(self.rds.paid_installments(rd.id)) == [1, 2]

    def test_close_completed_pays_maturity(self):
        rd = self.create()
        for _ in range(6):
            self.rds.pay_installment(rd.id, "teller-1")

        posting = self.rds.close_rd(rd.id, "teller-1", as_of=date(2024, 7, 1))

        assert posting.entity.status == RDStatus.CLOSED
        assert not posting.details["is_premature"]
        assert posting.details["payout"].amount == Decimal('6105.88')
        assert posting.transaction.transaction_type == TransactionType.RD_MATURE
        assert not posting.transaction.has_snapshot

    def test_premature_close(self):
        rd = self.create()
        for _ in range(3):
            self.rds.pay_installment(rd.id, "teller-1")

        posting = self.rds.close_rd(rd.id, "teller-1", as_of=date(2024, 4, 1))

        assert posting.details["is_premature"]
        assert posting.entity.closure_amount.amount == Decimal('3025.07')
        assert posting.transaction.transaction_type == TransactionType.RD_PREMATURE_CLOSE

    def test_past_maturity_with_missed_installments(self):
        rd = self.create()
        for _ in range(3):
            self.rds.pay_installment(rd.id, "teller-1")

        posting = self.rds.close_rd(rd.id, "teller-1", as_of=date(2024, 9, 1))

        expected = premature_closure_amount(3000, 6, 0, monthly_amount=1000, penalty=0)
        assert not posting.details["is_premature"]
        assert posting.details["payout"].amount == expected
        assert posting.transaction.transaction_type == TransactionType.RD_MATURE

    def test_cannot_close_twice(self):
        rd = self.create()
        self.rds.close_rd(rd.id, "teller-1", as_of=date(2024, 2, 1))

        with pytest.raises(InvalidStatusError, match="RD is not active or completed"):
            self.rds.close_rd(rd.id, "teller-1")
        with pytest.raises(InvalidStatusError):
            self.rds.pay_installment(rd.id, "teller-1")

    def test_missing_rd(self):
        with pytest.raises(NotFoundError, match="RD not found"):
            self.rds.pay_installment("missing", "teller-1")

    def test_snapshot_tracks_total_paid(self):
        rd = self.create()
        self.rds.pay_installment(rd.id, "teller-1")
        self.rds.pay_installment(rd.id, "teller-1", amount=1500)

        last = self.journal.last_with_snapshot(ProductKind.RECURRING_DEPOSIT, rd.id)
        assert last.balance_after == self.rds.get_rd(rd.id).total_paid

    def test_stats(self):
        rd = self.create()
        self.create(500, 7, 12)
        self.rds.pay_installment(rd.id, "teller-1")

        stats = self.rds.get_stats()
        assert stats['active_rds'] == 2
        assert stats['total_collected'] == Decimal('1000.00')
