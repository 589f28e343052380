"""
Ledger Service Module

The boundary consumed by an HTTP layer. Builds every component from
configuration and exposes each ledger operation as a call that takes the
target id(s), amount, description and operator, and returns an
``OperationResult``: the updated entity and the records it appended, or a
typed failure. Expected failures come back as results; integrity failures
are logged with their traceback and come back as results too.

Customer alerts are queued only after the operation has committed.
"""

from datetime import date
from typing import Any, Callable, Dict, List, Optional

from .accounts import AccountManager, AccountType
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .customers import CustomerManager
from .errors import FailureKind, IntegrityError, LedgerError, OperationResult, ValidationError
from .fixed_deposits import FixedDepositManager, FDStatus
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger, log_action, setup_logging
from .notifications import NotificationService
from .numbering import NumberingService
from .recurring_deposits import RecurringDepositManager, RDStatus
from .reporting import ReportFormat, ReportingEngine
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .transactions import HISTORY_TABLES, Posting, TransactionJournal


def build_storage(config: LedgerConfig) -> StorageInterface:
    """Storage backend selected by ``storage_backend``"""
    if config.storage_backend == "sqlite":
        return SQLiteStorage(
            config.database_path,
            history_path=config.history_database_path,
            history_tables=HISTORY_TABLES,
            timeout=config.database_timeout_seconds
        )
    if config.storage_backend == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class LedgerService:
    """Bank ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format)
        self.logger = get_logger("bank_ledger.service")

        self.storage = storage or build_storage(self.config)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.numbering = NumberingService(self.storage, self.config)
        self.journal = TransactionJournal(self.storage, self.numbering)

        self.customers = CustomerManager(self.storage, self.audit_trail)
        self.accounts = AccountManager(self.storage, self.journal, self.customers, self.audit_trail, self.config)
        self.fixed_deposits = FixedDepositManager(
            self.storage, self.journal, self.customers, self.audit_trail, self.config
        )
        self.recurring_deposits = RecurringDepositManager(
            self.storage, self.journal, self.customers, self.audit_trail, self.config
        )
        self.loans = LoanManager(self.storage, self.journal, self.customers, self.audit_trail, self.config)
        self.reporting = ReportingEngine(
            self.storage, self.journal, self.customers, self.accounts,
            self.fixed_deposits, self.recurring_deposits, self.loans, self.config
        )
        self.notifications = NotificationService(self.storage, self.customers, self.audit_trail, self.config)

    def close(self) -> None:
        self.storage.close()

    # Boundary plumbing

    def _run(self, action: str, user_id: Optional[str], operation: Callable[[], Any],
             alert_number: Optional[Callable[[Any], str]] = None) -> OperationResult:
        try:
            outcome = operation()
        except LedgerError as e:
            if e.kind == FailureKind.INTEGRITY:
                log_action(self.logger, "error", f"{action} failed: {e.message}",
                           user_id=user_id, action=action, exc_info=True)
            else:
                log_action(self.logger, "warning", f"{action} rejected: {e.message}",
                           user_id=user_id, action=action, extra={"kind": e.kind.value})
            return OperationResult.fail(e)
        except Exception as e:
            log_action(self.logger, "error", f"{action} failed unexpectedly: {e}",
                       user_id=user_id, action=action, exc_info=True)
            return OperationResult.fail(IntegrityError("Internal ledger error"))

        if not isinstance(outcome, Posting):
            return OperationResult.ok(outcome)

        if alert_number is not None:
            self._queue_alerts(outcome, alert_number(outcome))
        return OperationResult.ok(outcome.entity, outcome.transactions)

    def _queue_alerts(self, posting: Posting, reference_number: str) -> None:
        try:
            for txn in posting.transactions:
                self.notifications.queue_transaction_alert(txn, reference_number)
        except LedgerError as e:
            log_action(self.logger, "warning", f"Alert not queued: {e.message}", action="notification_queue")

    # Customers

    def create_customer(self, name: str, phone: str, created_by: str, **details: Any) -> OperationResult:
        def operation():
            customer = self.customers.create_customer(name, phone, created_by, **details)
            try:
                self.notifications.queue_welcome(customer.id)
            except LedgerError as e:
                log_action(self.logger, "warning", f"Welcome not queued: {e.message}",
                           action="notification_queue")
            return customer
        return self._run("customer_create", created_by, operation)

    def update_customer(self, customer_id: str, updated_by: str, **changes: Any) -> OperationResult:
        return self._run("customer_update", updated_by,
                         lambda: self.customers.update_customer(customer_id, updated_by, **changes))

    def deactivate_customer(self, customer_id: str, deactivated_by: str) -> OperationResult:
        def operation():
            with self.storage.atomic():
                open_products = (
                    len(self.accounts.list_accounts(customer_id=customer_id))
                    + len(self.fixed_deposits.list_fds(customer_id=customer_id, status=FDStatus.ACTIVE))
                    + sum(1 for rd in self.recurring_deposits.list_rds(customer_id=customer_id)
                          if rd.status != RDStatus.CLOSED)
                    + len(self.loans.list_loans(customer_id=customer_id, status=LoanStatus.ACTIVE))
                )
                return self.customers.deactivate_customer(customer_id, deactivated_by, open_products)
        return self._run("customer_deactivate", deactivated_by, operation)

    # Accounts

    def open_account(self, customer_id: str, created_by: str, account_type: Any = AccountType.SAVINGS,
                     initial_balance: Any = 0, interest_rate: Any = None) -> OperationResult:
        return self._run(
            "account_create", created_by,
            lambda: self.accounts.create_account(customer_id, created_by, account_type,
                                                 initial_balance, interest_rate),
            alert_number=lambda posting: posting.entity.account_number
        )

    def deposit(self, account_id: str, amount: Any, processed_by: str,
                description: Optional[str] = None) -> OperationResult:
        return self._run(
            "deposit", processed_by,
            lambda: self.accounts.deposit(account_id, amount, processed_by, description),
            alert_number=lambda posting: posting.entity.account_number
        )

    def withdraw(self, account_id: str, amount: Any, processed_by: str,
                 description: Optional[str] = None) -> OperationResult:
        return self._run(
            "withdrawal", processed_by,
            lambda: self.accounts.withdraw(account_id, amount, processed_by, description),
            alert_number=lambda posting: posting.entity.account_number
        )

    def transfer(self, from_account_id: str, to_account_id: str, amount: Any, processed_by: str,
                 description: Optional[str] = None) -> OperationResult:
        result = self._run(
            "transfer", processed_by,
            lambda: self.accounts.transfer(from_account_id, to_account_id, amount, processed_by, description)
        )
        if result.success:
            for txn in result.transactions:
                account = self.accounts.get_account(txn.entity_id)
                self._queue_alerts(Posting(account, [txn]), account.account_number)
        return result

    def apply_interest(self, account_id: str, processed_by: str,
                       rate_override: Optional[Any] = None) -> OperationResult:
        def operation():
            outcome = self.accounts.apply_interest(account_id, processed_by, rate_override)
            if not outcome.applied:
                return outcome
            return Posting(outcome.account, [outcome.transaction], details={"calculation": outcome.calculation})
        return self._run("interest_credit", processed_by, operation)

    def apply_interest_to_all(self, processed_by: str) -> OperationResult:
        return self._run("interest_run", processed_by, lambda: self.accounts.apply_interest_to_all(processed_by))

    def reverse_transaction(self, transaction_id: str, processed_by: str,
                            reason: Optional[str] = None) -> OperationResult:
        return self._run(
            "reversal", processed_by,
            lambda: self.accounts.reverse_transaction(transaction_id, processed_by, reason),
            alert_number=lambda posting: posting.entity.account_number
        )

    def close_account(self, account_id: str, processed_by: str) -> OperationResult:
        return self._run("account_delete", processed_by,
                         lambda: self.accounts.delete_account(account_id, processed_by))

    def get_account(self, account_id: str) -> OperationResult:
        return self._run("account_get", None, lambda: self.accounts.require_account(account_id))

    def account_history(self, account_id: str, **filters: Any) -> OperationResult:
        return self._run("account_history", None,
                         lambda: self.accounts.get_transaction_history(account_id, **filters))

    # Fixed deposits

    def create_fd(self, customer_id: str, principal: Any, interest_rate: Any, tenure_months: int,
                  created_by: str, start_date: Optional[date] = None) -> OperationResult:
        return self._run(
            "fd_create", created_by,
            lambda: self.fixed_deposits.create_fd(customer_id, principal, interest_rate, tenure_months,
                                                  created_by, start_date),
            alert_number=lambda posting: posting.entity.fd_number
        )

    def update_fd(self, fd_id: str, updated_by: str, **changes: Any) -> OperationResult:
        return self._run("fd_update", updated_by,
                         lambda: self.fixed_deposits.update_fd(fd_id, updated_by, **changes))

    def close_fd(self, fd_id: str, processed_by: str, is_premature: bool = False,
                 as_of: Optional[date] = None) -> OperationResult:
        return self._run(
            "fd_close", processed_by,
            lambda: self.fixed_deposits.close_fd(fd_id, processed_by, is_premature, as_of),
            alert_number=lambda posting: posting.entity.fd_number
        )

    # Recurring deposits

    def create_rd(self, customer_id: str, monthly_amount: Any, interest_rate: Any, tenure_months: int,
                  created_by: str, start_date: Optional[date] = None) -> OperationResult:
        return self._run(
            "rd_create", created_by,
            lambda: self.recurring_deposits.create_rd(customer_id, monthly_amount, interest_rate,
                                                      tenure_months, created_by, start_date)
        )

    def pay_rd_installment(self, rd_id: str, processed_by: str, amount: Optional[Any] = None,
                           installment_number: Optional[int] = None) -> OperationResult:
        return self._run(
            "rd_installment", processed_by,
            lambda: self.recurring_deposits.pay_installment(rd_id, processed_by, amount, installment_number),
            alert_number=lambda posting: posting.entity.rd_number
        )

    def close_rd(self, rd_id: str, processed_by: str, is_premature: bool = False,
                 as_of: Optional[date] = None) -> OperationResult:
        return self._run(
            "rd_close", processed_by,
            lambda: self.recurring_deposits.close_rd(rd_id, processed_by, is_premature, as_of),
            alert_number=lambda posting: posting.entity.rd_number
        )

    # Loans

    def create_loan(self, customer_id: str, loan_type: Any, principal: Any, interest_rate: Any,
                    tenure_months: int, created_by: str, start_date: Optional[date] = None) -> OperationResult:
        return self._run(
            "loan_disbursement", created_by,
            lambda: self.loans.create_loan(customer_id, loan_type, principal, interest_rate,
                                           tenure_months, created_by, start_date),
            alert_number=lambda posting: posting.entity.loan_number
        )

    def make_loan_payment(self, loan_id: str, processed_by: str, amount: Optional[Any] = None,
                          emi_number: Optional[int] = None) -> OperationResult:
        return self._run(
            "loan_payment", processed_by,
            lambda: self.loans.make_payment(loan_id, processed_by, amount, emi_number),
            alert_number=lambda posting: posting.entity.loan_number
        )

    def foreclose_loan(self, loan_id: str, processed_by: str) -> OperationResult:
        return self._run(
            "loan_foreclose", processed_by,
            lambda: self.loans.foreclose(loan_id, processed_by),
            alert_number=lambda posting: posting.entity.loan_number
        )

    def update_loan(self, loan_id: str, updated_by: str, **changes: Any) -> OperationResult:
        return self._run("loan_update", updated_by,
                         lambda: self.loans.update_loan(loan_id, updated_by, **changes))

    # Reports

    def report(self, name: str, export_format: Optional[ReportFormat] = None, **params: Any) -> OperationResult:
        """
        Run a named report (any public ReportingEngine method), optionally
        exported as dict, JSON or CSV
        """
        method = getattr(self.reporting, name, None)

        def operation():
            if name.startswith("_") or name == "export_report" or not callable(method):
                raise ValidationError(f"Unknown report: {name}")
            result = method(**params)
            return self.reporting.export_report(result, export_format) if export_format else result
        return self._run(f"report:{name}", None, operation)

    def queue_maturity_alerts(self, days: Optional[int] = None, as_of: Optional[date] = None) -> OperationResult:
        """Queue a maturity alert for every FD and RD on the maturity lists"""
        def operation():
            queued: List[Dict[str, Any]] = []
            for row in self.reporting.fd_maturity_list(days, as_of).data:
                if self.notifications.queue_maturity_alert(
                        row['customer_id'], "Fixed Deposit", row['fd_number'],
                        row['maturity_date'], row['maturity_amount'], self.config.default_currency):
                    queued.append(row)
            for row in self.reporting.rd_maturity_list(days, as_of).data:
                if self.notifications.queue_maturity_alert(
                        row['customer_id'], "Recurring Deposit", row['rd_number'],
                        row['maturity_date'], row['maturity_amount'], self.config.default_currency):
                    queued.append(row)
            return queued
        return self._run("maturity_alerts", "system", operation)

    async def process_notifications(self, batch_size: int = 10) -> Dict[str, int]:
        return await self.notifications.process_queue(batch_size)
