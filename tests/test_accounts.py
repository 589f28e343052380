"""
Test suite for accounts module

Tests account lifecycle, deposits, withdrawals, transfers, daily interest and
reversals. Every balance change must be matched by exactly one history
record whose snapshot agrees with the stored balance.
"""

import pytest
from decimal import Decimal

from bank_ledger.accounts import AccountType
from bank_ledger.config import LedgerConfig
from bank_ledger.currency import Money
from bank_ledger.errors import (
    BusinessRuleError, InsufficientFundsError, NotFoundError, ValidationError
)
from bank_ledger.service import LedgerService
from bank_ledger.storage import InMemoryStorage
from bank_ledger.transactions import ProductKind, TransactionType


def inr(value) -> Money:
    return Money(Decimal(value))


class TestAccountBase:
    """Builds a ledger with one customer"""

    def setup_method(self):
        self.ledger = LedgerService(LedgerConfig(enable_notifications=False), storage=InMemoryStorage())
        self.accounts = self.ledger.accounts
        self.journal = self.ledger.journal
        self.customer = self.ledger.customers.create_customer("Asha Rao", "9876543210", "teller-1")

    def open_account(self, initial_balance=0, **kwargs):
        return self.accounts.create_account(self.customer.id, "teller-1",
                                            initial_balance=initial_balance, **kwargs).entity

    def balance(self, account_id) -> Decimal:
        return self.accounts.get_account(account_id).balance.amount


class TestCreateAccount(TestAccountBase):
    """Test account opening"""

    def test_create_defaults(self):
        posting = self.accounts.create_account(self.customer.id, "teller-1")
        account = posting.entity

        assert account.account_number.startswith("FP")
        assert account.account_type == AccountType.SAVINGS
        assert account.balance.is_zero()
        assert account.interest_rate == Decimal('4.00')
        assert posting.transactions == []

    def test_initial_balance_is_booked(self):
        posting = self.accounts.create_account(self.customer.id, "teller-1", initial_balance="1500")

        txn = posting.transaction
        assert txn.transaction_type == TransactionType.DEPOSIT
        assert txn.description == "Initial deposit"
        assert txn.balance_before.is_zero()
        assert txn.balance_after == inr('1500')

    def test_account_type_by_value(self):
        account = self.accounts.create_account(self.customer.id, "teller-1", account_type="current").entity
        assert account.account_type == AccountType.CURRENT

    def test_invalid_account_type(self):
        with pytest.raises(ValidationError, match="Invalid account type"):
            self.accounts.create_account(self.customer.id, "teller-1", account_type="crypto")

    def test_requires_active_customer(self):
        with pytest.raises(NotFoundError, match="Customer not found or inactive"):
            self.accounts.create_account("missing", "teller-1")
        assert self.ledger.storage.count("accounts") == 0

    def test_negative_initial_balance(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            self.accounts.create_account(self.customer.id, "teller-1", initial_balance=-1)

    def test_list_and_lookup(self):
        savings = self.open_account()
        current = self.accounts.create_account(self.customer.id, "teller-1", account_type=AccountType.CURRENT).entity

        assert self.accounts.get_account_by_number(savings.account_number).id == savings.id
        assert [a.id for a in self.accounts.list_accounts(customer_id=self.customer.id)] == [savings.id, current.id]
        assert [a.id for a in self.accounts.list_accounts(account_type=AccountType.CURRENT)] == [current.id]


class TestDepositWithdraw(TestAccountBase):
    """Test single-account balance mutations"""

    def test_deposit_then_withdraw(self):
        account = self.open_account()

        deposit = self.accounts.deposit(account.id, 500, "teller-1")
        assert deposit.entity.balance == inr('500')
        assert deposit.transaction.balance_before.is_zero()
        assert deposit.transaction.balance_after == inr('500')

        withdrawal = self.accounts.withdraw(account.id, 200, "teller-1")
        assert withdrawal.entity.balance == inr('300')
        assert withdrawal.transaction.balance_before == inr('500')
        assert withdrawal.transaction.balance_after == inr('300')

        with pytest.raises(InsufficientFundsError, match="Insufficient balance"):
            self.accounts.withdraw(account.id, 1000, "teller-1")

        assert self.balance(account.id) == Decimal('300.00')
        assert len(self.journal.entity_transactions(ProductKind.ACCOUNT, account.id)) == 2

    def test_withdraw_exact_balance(self):
        account = self.open_account(initial_balance=250)
        posting = self.accounts.withdraw(account.id, "250.00", "teller-1")
        assert posting.entity.balance.is_zero()

    @pytest.mark.parametrize("amount", [0, -10, "abc", "1.234"])
    def test_rejects_bad_amounts(self, amount):
        account = self.open_account(initial_balance=100)
        with pytest.raises(ValidationError):
            self.accounts.deposit(account.id, amount, "teller-1")
        with pytest.raises(ValidationError):
            self.accounts.withdraw(account.id, amount, "teller-1")
        assert self.balance(account.id) == Decimal('100.00')

    def test_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.accounts.deposit("missing", 100, "teller-1")

    def test_inactive_account_rejected(self):
        account = self.open_account()
        self.accounts.delete_account(account.id, "teller-1")
        with pytest.raises(NotFoundError):
            self.accounts.deposit(account.id, 100, "teller-1")

    def test_sequences_increase_per_account(self):
        account = self.open_account()
        for amount in (100, 200, 300):
            self.accounts.deposit(account.id, amount, "teller-1")

        sequences = [t.sequence for t in self.journal.entity_transactions(ProductKind.ACCOUNT, account.id)]
        assert sequences == [1, 2, 3]

    def test_history_filters(self):
        account = self.open_account()
        self.accounts.deposit(account.id, 100, "teller-1")
        self.accounts.deposit(account.id, 900, "teller-1")
        self.accounts.withdraw(account.id, 50, "teller-1")

        history = self.accounts.get_transaction_history(account.id)
        assert [t.amount.amount for t in history] == [Decimal('50.00'), Decimal('900.00'), Decimal('100.00')]

        deposits = self.accounts.get_transaction_history(account.id, transaction_type=TransactionType.DEPOSIT)
        assert len(deposits) == 2
        large = self.accounts.get_transaction_history(account.id, min_amount=Decimal('500'))
        assert len(large) == 1
        assert len(self.accounts.get_transaction_history(account.id, limit=1, offset=1)) == 1


class TestTransfer(TestAccountBase):
    """Test transfers between accounts"""

    def test_transfer_conserves_funds(self):
        source = self.open_account(initial_balance=1000)
        target = self.open_account(initial_balance=50)

        posting = self.accounts.transfer(source.id, target.id, 400, "teller-1", "Rent")

        assert posting.entity.balance == inr('600')
        assert posting.counterparty.balance == inr('450')
        assert self.balance(source.id) + self.balance(target.id) == Decimal('1050.00')

        out_txn, in_txn = posting.transactions
        assert out_txn.transaction_type == TransactionType.TRANSFER_OUT
        assert in_txn.transaction_type == TransactionType.TRANSFER_IN
        assert out_txn.reference == in_txn.reference == posting.details["reference"]
        assert out_txn.description == f"Rent to {target.account_number}"

    def test_same_account_rejected(self):
        account = self.open_account(initial_balance=100)
        with pytest.raises(BusinessRuleError, match="Cannot transfer to the same account"):
            self.accounts.transfer(account.id, account.id, 10, "teller-1")

    def test_insufficient_funds_changes_nothing(self):
        source = self.open_account(initial_balance=100)
        target = self.open_account()

        with pytest.raises(InsufficientFundsError):
            self.accounts.transfer(source.id, target.id, 101, "teller-1")

        assert self.balance(source.id) == Decimal('100.00')
        assert self.balance(target.id) == Decimal('0.00')
        assert self.journal.entity_transactions(ProductKind.ACCOUNT, target.id) == []

    def test_missing_target_changes_nothing(self):
        source = self.open_account(initial_balance=100)
        with pytest.raises(NotFoundError):
            self.accounts.transfer(source.id, "missing", 10, "teller-1")
        assert self.balance(source.id) == Decimal('100.00')


class TestInterest(TestAccountBase):
    """Test daily interest credit"""

    def test_apply_interest(self):
        account = self.open_account(initial_balance=10000)

        result = self.accounts.apply_interest(account.id, "system")

        assert result.applied
        assert result.interest_amount == inr('1.10')
        assert result.account.balance == inr('10001.10')
        assert result.transaction.transaction_type == TransactionType.INTEREST_CREDIT
        assert result.transaction.description == "Interest credit @ 4.00% p.a."

        calculation = self.accounts.interest_calculations(account.id)[0]
        assert calculation.opening_balance == inr('10000')
        assert calculation.closing_balance == inr('10001.10')
        assert calculation.transaction_id == result.transaction.transaction_id

    def test_nothing_to_apply(self):
        account = self.open_account(initial_balance=5)

        result = self.accounts.apply_interest(account.id, "system")

        assert not result.applied
        assert result.message == "No interest to apply"
        assert self.journal.count_by_type(ProductKind.ACCOUNT, account.id, TransactionType.INTEREST_CREDIT) == 0
        assert self.accounts.interest_calculations(account.id) == []

    def test_rate_override(self):
        account = self.open_account(initial_balance=36500)
        result = self.accounts.apply_interest(account.id, "system", rate_override=10)
        assert result.interest_amount == inr('10.00')

    def test_apply_to_all(self):
        rich = self.open_account(initial_balance=10000)
        self.open_account()

        results = self.accounts.apply_interest_to_all("system")

        assert len(results) == 2
        applied = [r for r in results if r.applied]
        assert [r.account_id for r in applied] == [rich.id]


class TestReversal(TestAccountBase):
    """Test transaction reversal"""

    def test_reverse_deposit(self):
        account = self.open_account()
        deposit = self.accounts.deposit(account.id, 300, "teller-1").transaction

        posting = self.accounts.reverse_transaction(deposit.transaction_id, "supervisor", "Keyed twice")

        reversal = posting.transaction
        assert reversal.transaction_type == TransactionType.DEPOSIT_REVERSAL
        assert reversal.reference == deposit.transaction_id
        assert reversal.description == f"Reversal of transaction {deposit.transaction_id} - Keyed twice"
        assert posting.entity.balance.is_zero()

        # Original record untouched
        original = self.journal.get_transaction(ProductKind.ACCOUNT, deposit.transaction_id)
        assert original.balance_after == inr('300')

    def test_reverse_withdrawal_credits_back(self):
        account = self.open_account(initial_balance=500)
        withdrawal = self.accounts.withdraw(account.id, 200, "teller-1").transaction

        posting = self.accounts.reverse_transaction(withdrawal.transaction_id, "supervisor")

        assert posting.transaction.transaction_type == TransactionType.WITHDRAWAL_REVERSAL
        assert posting.entity.balance == inr('500')

    def test_double_reversal_rejected(self):
        account = self.open_account()
        deposit = self.accounts.deposit(account.id, 300, "teller-1").transaction
        self.accounts.reverse_transaction(deposit.transaction_id, "supervisor")

        with pytest.raises(BusinessRuleError, match="Transaction already reversed"):
            self.accounts.reverse_transaction(deposit.transaction_id, "supervisor")

    def test_reversal_cannot_go_negative(self):
        account = self.open_account()
        deposit = self.accounts.deposit(account.id, 300, "teller-1").transaction
        self.accounts.withdraw(account.id, 250, "teller-1")

        with pytest.raises(InsufficientFundsError, match="would result in negative balance"):
            self.accounts.reverse_transaction(deposit.transaction_id, "supervisor")
        assert self.balance(account.id) == Decimal('50.00')

    def test_transfer_legs_not_reversible(self):
        source = self.open_account(initial_balance=100)
        target = self.open_account()
        out_txn = self.accounts.transfer(source.id, target.id, 10, "teller-1").transactions[0]

        with pytest.raises(BusinessRuleError, match="Cannot reverse a transfer_out transaction"):
            self.accounts.reverse_transaction(out_txn.transaction_id, "supervisor")

    def test_unknown_transaction(self):
        with pytest.raises(NotFoundError):
            self.accounts.reverse_transaction("TXN000", "supervisor")


class TestDeleteAccount(TestAccountBase):
    """Test soft deletion"""

    def test_delete_zero_balance(self):
        account = self.open_account()
        deleted = self.accounts.delete_account(account.id, "teller-1")

        assert not deleted.is_active
        assert self.accounts.get_account(account.id) is not None
        assert self.accounts.list_accounts() == []

    def test_non_zero_balance_rejected(self):
        account = self.open_account(initial_balance=1)
        with pytest.raises(BusinessRuleError, match="Cannot delete account with non-zero balance"):
            self.accounts.delete_account(account.id, "teller-1")

    def test_stats(self):
        self.open_account(initial_balance=100)
        self.open_account(initial_balance=300, account_type=AccountType.SALARY)

        stats = self.accounts.get_stats()
        assert stats['active_accounts'] == 2
        assert stats['total_balance'] == Decimal('400.00')
        assert stats['average_balance'] == Decimal('200.00')
        assert stats['salary_accounts'] == 1


class TestSnapshotInvariant(TestAccountBase):
    """Balance always equals the last history snapshot"""

    def test_balance_matches_last_snapshot(self):
        first = self.open_account(initial_balance=1000)
        second = self.open_account()
        self.accounts.deposit(first.id, 250, "teller-1")
        self.accounts.transfer(first.id, second.id, 600, "teller-1")
        self.accounts.withdraw(second.id, 100, "teller-1")
        self.accounts.apply_interest(first.id, "system")

        for account in (first, second):
            last = self.journal.last_with_snapshot(ProductKind.ACCOUNT, account.id)
            assert last.balance_after.amount == self.balance(account.id)
            assert not last.balance_after.is_negative()
