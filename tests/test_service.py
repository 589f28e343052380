"""
Test suite for the ledger service boundary

Every operation returns an OperationResult: the updated entity plus the
records it appended, or a typed failure. Alerts are queued only for
committed operations.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal

from bank_ledger.config import LedgerConfig
from bank_ledger.errors import FailureKind
from bank_ledger.fixed_deposits import FDStatus
from bank_ledger.loans import LoanStatus
from bank_ledger.notifications import NotificationType
from bank_ledger.reporting import ReportFormat
from bank_ledger.service import LedgerService, build_storage
from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.transactions import ProductKind


class TestLedgerService:
    """Test results and failures at the service boundary"""

    def setup_method(self):
        self.ledger = LedgerService(LedgerConfig(), storage=InMemoryStorage())
        result = self.ledger.create_customer("Asha Rao", "9876543210", "teller-1", email="asha@example.com")
        self.customer = result.data
        self.account = self.ledger.open_account(self.customer.id, "teller-1").data

    def test_success_carries_entity_and_transactions(self):
        result = self.ledger.deposit(self.account.id, 500, "teller-1")

        assert result.success
        assert result.failure is None
        assert result.data.balance.amount == Decimal('500.00')
        assert result.transaction.amount.amount == Decimal('500.00')

    @pytest.mark.parametrize("call, kind", [
        (lambda s: s.ledger.deposit(s.account.id, -5, "teller-1"), FailureKind.VALIDATION),
        (lambda s: s.ledger.deposit("missing", 5, "teller-1"), FailureKind.NOT_FOUND),
        (lambda s: s.ledger.withdraw(s.account.id, 5, "teller-1"), FailureKind.BUSINESS_RULE),
        (lambda s: s.ledger.transfer(s.account.id, s.account.id, 5, "teller-1"), FailureKind.BUSINESS_RULE),
        (lambda s: s.ledger.close_fd("missing", "teller-1"), FailureKind.NOT_FOUND),
        (lambda s: s.ledger.create_loan(s.customer.id, "yacht", 1000, 10, 12, "officer-1"),
         FailureKind.VALIDATION),
    ])
    def test_failures_by_kind(self, call, kind):
        result = call(self)

        assert not result.success
        assert result.failure.kind == kind
        assert result.data is None
        assert result.transactions == []

    def test_withdraw_message(self):
        self.ledger.deposit(self.account.id, 500, "teller-1")
        result = self.ledger.withdraw(self.account.id, 1000, "teller-1")

        assert "Insufficient balance" in result.failure.message
        assert result.failure.to_dict()["kind"] == "business_rule"
        assert self.ledger.get_account(self.account.id).data.balance.amount == Decimal('500.00')

    def test_unexpected_error_becomes_integrity_failure(self, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")
        monkeypatch.setattr(self.ledger.accounts, "deposit", explode)

        result = self.ledger.deposit(self.account.id, 5, "teller-1")

        assert result.failure.kind == FailureKind.INTEGRITY
        assert result.failure.message == "Internal ledger error"

    def test_alerts_queued_after_commit(self):
        self.ledger.deposit(self.account.id, 500, "teller-1")
        self.ledger.withdraw(self.account.id, 5000, "teller-1")

        alerts = [
            n for n in self.ledger.notifications.list_notifications(self.customer.id)
            if n.notification_type == NotificationType.TRANSACTION_ALERT
        ]
        assert len(alerts) == 1
        assert "deposit" in alerts[0].subject

    def test_welcome_queued_on_customer_create(self):
        notifications = self.ledger.notifications.list_notifications(self.customer.id)
        assert notifications[0].notification_type == NotificationType.WELCOME

    def test_transfer_alerts_both_owners(self):
        other = self.ledger.create_customer("Ravi", "9123456789", "teller-1", email="ravi@example.com").data
        target = self.ledger.open_account(other.id, "teller-1").data
        self.ledger.deposit(self.account.id, 500, "teller-1")

        result = self.ledger.transfer(self.account.id, target.id, 200, "teller-1")

        assert result.success
        assert len(result.transactions) == 2
        assert any(n.notification_type == NotificationType.TRANSACTION_ALERT
                   for n in self.ledger.notifications.list_notifications(other.id))

    def test_interest_result(self):
        self.ledger.deposit(self.account.id, 10000, "teller-1")
        applied = self.ledger.apply_interest(self.account.id, "system")
        assert applied.success
        assert applied.data.balance.amount == Decimal('10001.10')

        empty = self.ledger.open_account(self.customer.id, "teller-1").data
        skipped = self.ledger.apply_interest(empty.id, "system")
        assert skipped.success
        assert not skipped.data.applied

    def test_deactivate_customer_with_products(self):
        result = self.ledger.deactivate_customer(self.customer.id, "teller-1")
        assert result.failure.kind == FailureKind.BUSINESS_RULE

        self.ledger.close_account(self.account.id, "teller-1")
        assert self.ledger.deactivate_customer(self.customer.id, "teller-1").success

    def test_product_round_trip(self):
        fd = self.ledger.create_fd(self.customer.id, 10000, 7, 12, "teller-1", start_date=date(2024, 1, 1)).data
        closed = self.ledger.close_fd(fd.id, "teller-1", as_of=date(2025, 1, 1))
        assert closed.data.status == FDStatus.MATURED

        rd = self.ledger.create_rd(self.customer.id, 1000, 6, 2, "teller-1").data
        self.ledger.pay_rd_installment(rd.id, "teller-1")
        paid = self.ledger.pay_rd_installment(rd.id, "teller-1")
        assert paid.data.total_paid.amount == Decimal('2000.00')
        assert self.ledger.close_rd(rd.id, "teller-1").success

        loan = self.ledger.create_loan(self.customer.id, "personal", 12000, 12, 12, "officer-1").data
        self.ledger.make_loan_payment(loan.id, "teller-1")
        assert self.ledger.update_loan(loan.id, "officer-1", interest_rate=10).success
        foreclosed = self.ledger.foreclose_loan(loan.id, "teller-1")
        assert foreclosed.data.status == LoanStatus.FORECLOSED

    def test_reversal_and_history(self):
        deposit = self.ledger.deposit(self.account.id, 300, "teller-1").transaction
        reversed_result = self.ledger.reverse_transaction(deposit.transaction_id, "supervisor", "Duplicate")

        assert reversed_result.success
        history = self.ledger.account_history(self.account.id).data
        assert len(history) == 2
        assert history[0].reference == deposit.transaction_id

    def test_named_report(self):
        self.ledger.deposit(self.account.id, 300, "teller-1")

        result = self.ledger.report("account_statement", account_id=self.account.id)
        assert result.success
        assert result.data.totals['closing_balance'] == Decimal('300.00')

        exported = self.ledger.report("portfolio_stats", export_format=ReportFormat.JSON)
        assert '"report_type": "portfolio"' in exported.data

    @pytest.mark.parametrize("name", ["nonsense", "_list_result", "export_report"])
    def test_unknown_report(self, name):
        result = self.ledger.report(name)
        assert result.failure.kind == FailureKind.VALIDATION
        assert result.failure.message == f"Unknown report: {name}"

    def test_maturity_alerts_and_processing(self):
        fd = self.ledger.create_fd(self.customer.id, 10000, 7, 1, "teller-1", start_date=date(2024, 1, 1)).data

        queued = self.ledger.queue_maturity_alerts(days=30, as_of=date(2024, 1, 20))
        assert [row['fd_number'] for row in queued.data] == [fd.fd_number]

        results = asyncio.run(self.ledger.process_notifications(batch_size=50))
        assert results["failed"] == 0
        assert results["sent"] == results["processed"] > 0

    def test_audit_chain_stays_valid(self):
        self.ledger.deposit(self.account.id, 300, "teller-1")
        self.ledger.withdraw(self.account.id, 100, "teller-1")
        self.ledger.withdraw(self.account.id, 1000, "teller-1")

        assert self.ledger.audit_trail.verify_integrity()['valid']
        assert len(self.ledger.journal.entity_transactions(ProductKind.ACCOUNT, self.account.id)) == 2


class TestBuildStorage:
    """Backend selection from configuration"""

    def test_memory(self):
        assert isinstance(build_storage(LedgerConfig(storage_backend="memory")), InMemoryStorage)

    def test_sqlite_with_history_file(self, tmp_path):
        config = LedgerConfig(
            storage_backend="sqlite",
            database_path=str(tmp_path / "ledger.db"),
            history_database_path=str(tmp_path / "history.db")
        )
        ledger = LedgerService(config)
        assert isinstance(ledger.storage, SQLiteStorage)

        customer = ledger.create_customer("Asha Rao", "9876543210", "teller-1").data
        account = ledger.open_account(customer.id, "teller-1", initial_balance=100).data
        assert ledger.deposit(account.id, 50, "teller-1").data.balance.amount == Decimal('150.00')
        ledger.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            build_storage(LedgerConfig(storage_backend="redis"))
