"""
Test suite for all-or-nothing ledger mutations

A storage backend that fails on a chosen write simulates a crash between
the entity update and its history append. After every failure the entity
must be exactly as it was and no history record may remain.
"""

import pytest
from decimal import Decimal
from datetime import date

from bank_ledger.config import LedgerConfig
from bank_ledger.errors import FailureKind, PersistenceError
from bank_ledger.fixed_deposits import FDStatus
from bank_ledger.loans import LoanStatus, LoanType
from bank_ledger.recurring_deposits import RDStatus
from bank_ledger.service import LedgerService
from bank_ledger.storage import InMemoryStorage


class FailingStorage(InMemoryStorage):
    """In-memory storage that raises on the n-th save to an armed table"""

    def __init__(self):
        super().__init__()
        self.armed_table = None
        self.fail_on = 1
        self._seen = 0

    def arm(self, table, occurrence=1):
        self.armed_table = table
        self.fail_on = occurrence
        self._seen = 0

    def save(self, table, record_id, data):
        if table == self.armed_table:
            self._seen += 1
            if self._seen == self.fail_on:
                self.armed_table = None
                raise PersistenceError(f"Simulated write failure on {table}")
        super().save(table, record_id, data)


class TestAtomicity:
    """Failures mid-operation leave no partial state"""

    def setup_method(self):
        self.storage = FailingStorage()
        self.ledger = LedgerService(LedgerConfig(enable_notifications=False), storage=self.storage)
        self.customer = self.ledger.customers.create_customer("Asha Rao", "9876543210", "teller-1")
        self.account = self.ledger.accounts.create_account(
            self.customer.id, "teller-1", initial_balance=1000
        ).entity

    def history_count(self, table):
        return self.storage.count(table)

    def balance(self, account_id):
        return self.ledger.accounts.get_account(account_id).balance.amount

    @pytest.mark.parametrize("table", ["account_transactions", "audit_events"])
    def test_deposit_rolls_back(self, table):
        before = self.history_count("account_transactions")
        self.storage.arm(table)

        result = self.ledger.deposit(self.account.id, 500, "teller-1")

        assert not result.success
        assert result.failure.kind == FailureKind.INTEGRITY
        assert self.balance(self.account.id) == Decimal('1000.00')
        assert self.history_count("account_transactions") == before

    def test_withdraw_rolls_back(self):
        self.storage.arm("account_transactions")

        with pytest.raises(PersistenceError):
            self.ledger.accounts.withdraw(self.account.id, 200, "teller-1")

        assert self.balance(self.account.id) == Decimal('1000.00')

    def test_transfer_second_leg_failure_rolls_back_both(self):
        target = self.ledger.accounts.create_account(self.customer.id, "teller-1").entity
        before = self.history_count("account_transactions")
        self.storage.arm("account_transactions", occurrence=2)

        result = self.ledger.transfer(self.account.id, target.id, 400, "teller-1")

        assert not result.success
        assert self.balance(self.account.id) == Decimal('1000.00')
        assert self.balance(target.id) == Decimal('0.00')
        assert self.history_count("account_transactions") == before

    def test_interest_rolls_back_calculation_row(self):
        self.storage.arm("interest_calculations")

        with pytest.raises(PersistenceError):
            self.ledger.accounts.apply_interest(self.account.id, "system")

        assert self.balance(self.account.id) == Decimal('1000.00')
        assert self.history_count("interest_calculations") == 0

    def test_fd_close_rolls_back(self):
        fd = self.ledger.fixed_deposits.create_fd(
            self.customer.id, 10000, 7, 12, "teller-1", start_date=date(2024, 1, 1)
        ).entity
        self.storage.arm("fd_transactions")

        result = self.ledger.close_fd(fd.id, "teller-1", as_of=date(2025, 1, 1))

        assert not result.success
        assert self.ledger.fixed_deposits.get_fd(fd.id).status == FDStatus.ACTIVE
        assert self.history_count("fd_transactions") == 1

    def test_fd_create_leaves_nothing(self):
        self.storage.arm("fd_transactions")

        result = self.ledger.create_fd(self.customer.id, 10000, 7, 12, "teller-1")

        assert not result.success
        assert self.storage.count("fixed_deposits") == 0

    def test_rd_installment_rolls_back(self):
        rd = self.ledger.recurring_deposits.create_rd(self.customer.id, 1000, 6, 1, "teller-1").entity
        self.storage.arm("rd_transactions")

        result = self.ledger.pay_rd_installment(rd.id, "teller-1")

        assert not result.success
        reloaded = self.ledger.recurring_deposits.get_rd(rd.id)
        assert reloaded.total_paid.is_zero()
        assert reloaded.status == RDStatus.ACTIVE

    def test_loan_payment_rolls_back(self):
        loan = self.ledger.loans.create_loan(
            self.customer.id, LoanType.PERSONAL, 12000, 12, 12, "officer-1"
        ).entity
        self.storage.arm("loan_transactions")

        result = self.ledger.make_loan_payment(loan.id, "teller-1", amount=loan.total_amount.amount)

        assert not result.success
        reloaded = self.ledger.loans.get_loan(loan.id)
        assert reloaded.outstanding == loan.total_amount
        assert reloaded.status == LoanStatus.ACTIVE
        assert self.history_count("loan_transactions") == 1

    def test_account_opening_deposit_leaves_nothing(self):
        before = self.history_count("account_transactions")
        self.storage.arm("account_transactions")

        result = self.ledger.open_account(self.customer.id, "teller-1", initial_balance=2500)

        assert not result.success
        assert self.storage.count("accounts") == 1
        assert self.history_count("account_transactions") == before

    def test_reversal_rolls_back(self):
        deposit = self.ledger.accounts.deposit(self.account.id, 300, "teller-1").transaction
        before = self.history_count("account_transactions")
        self.storage.arm("account_transactions")

        result = self.ledger.reverse_transaction(deposit.transaction_id, "supervisor", "Keyed twice")

        assert not result.success
        assert self.balance(self.account.id) == Decimal('1300.00')
        assert self.history_count("account_transactions") == before
        # The failed attempt does not count as a reversal
        assert self.ledger.reverse_transaction(deposit.transaction_id, "supervisor").success

    def test_fd_principal_update_rolls_back(self):
        fd = self.ledger.fixed_deposits.create_fd(
            self.customer.id, 10000, 7, 12, "teller-1", start_date=date(2024, 1, 1)
        ).entity
        self.storage.arm("fd_transactions")

        result = self.ledger.update_fd(fd.id, "ops", principal=15000)

        assert not result.success
        reloaded = self.ledger.fixed_deposits.get_fd(fd.id)
        assert reloaded.principal == fd.principal
        assert reloaded.maturity_amount == fd.maturity_amount
        assert self.history_count("fd_transactions") == 1

    def test_rd_close_rolls_back(self):
        rd = self.ledger.recurring_deposits.create_rd(
            self.customer.id, 1000, 6, 6, "teller-1", start_date=date(2024, 1, 1)
        ).entity
        for _ in range(3):
            self.ledger.recurring_deposits.pay_installment(rd.id, "teller-1")
        self.storage.arm("rd_transactions")

        result = self.ledger.close_rd(rd.id, "teller-1", is_premature=True, as_of=date(2024, 4, 1))

        assert not result.success
        reloaded = self.ledger.recurring_deposits.get_rd(rd.id)
        assert reloaded.status == RDStatus.ACTIVE
        assert reloaded.total_paid.amount == Decimal('3000.00')
        assert reloaded.closure_amount is None
        assert self.history_count("rd_transactions") == 4

    def test_loan_foreclose_rolls_back(self):
        loan = self.ledger.loans.create_loan(
            self.customer.id, LoanType.PERSONAL, 12000, 12, 12, "officer-1"
        ).entity
        self.storage.arm("loan_transactions")

        result = self.ledger.foreclose_loan(loan.id, "teller-1")

        assert not result.success
        reloaded = self.ledger.loans.get_loan(loan.id)
        assert reloaded.status == LoanStatus.ACTIVE
        assert reloaded.outstanding == loan.total_amount
        assert self.history_count("loan_transactions") == 1

    def test_loan_update_rolls_back(self):
        loan = self.ledger.loans.create_loan(
            self.customer.id, LoanType.PERSONAL, 12000, 12, 12, "officer-1"
        ).entity
        self.storage.arm("loan_transactions")

        result = self.ledger.update_loan(loan.id, "officer-1", interest_rate=10)

        assert not result.success
        reloaded = self.ledger.loans.get_loan(loan.id)
        assert reloaded.interest_rate == loan.interest_rate
        assert reloaded.emi_amount == loan.emi_amount
        assert reloaded.total_amount == loan.total_amount
        assert reloaded.outstanding == loan.outstanding
        assert self.history_count("loan_transactions") == 1

    def test_interest_run_reports_failed_account(self):
        self.storage.arm("interest_calculations")

        results = self.ledger.accounts.apply_interest_to_all("system")

        assert len(results) == 1
        assert not results[0].applied
        assert "Simulated write failure" in results[0].message
        assert self.balance(self.account.id) == Decimal('1000.00')

    def test_ledger_usable_after_failure(self):
        self.storage.arm("account_transactions")
        assert not self.ledger.deposit(self.account.id, 500, "teller-1").success

        result = self.ledger.deposit(self.account.id, 500, "teller-1")

        assert result.success
        assert self.balance(self.account.id) == Decimal('1500.00')
        assert self.ledger.audit_trail.verify_integrity()['valid']
