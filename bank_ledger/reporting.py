"""
Reporting Engine Module

Read-only views over the ledger: account and customer statements, replayed
FD/RD/loan schedules with paid status overlaid from recorded history,
maturity and due-soon lists, and daily and portfolio summaries.

Each report reads inside one ``storage.atomic()`` unit so it sees a
consistent snapshot, and writes nothing. An entity with no transactions
yields an empty report, never an error.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import csv
import io
import json

from .accounts import AccountManager
from .calculator import add_months, amortization_schedule, fd_accrual_schedule
from .config import LedgerConfig, get_config
from .customers import CustomerManager
from .errors import NotFoundError
from .fixed_deposits import FixedDepositManager, FDStatus
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger
from .recurring_deposits import RecurringDepositManager, RDStatus
from .storage import StorageInterface
from .transactions import BalanceEffect, ProductKind, TransactionJournal, TransactionType


class ReportType(Enum):
    """Available reports"""
    ACCOUNT_STATEMENT = "account_statement"
    CUSTOMER_STATEMENT = "customer_statement"
    FD_SCHEDULE = "fd_schedule"
    RD_SCHEDULE = "rd_schedule"
    LOAN_SCHEDULE = "loan_schedule"
    FD_MATURITY = "fd_maturity"
    RD_MATURITY = "rd_maturity"
    RD_DUE_INSTALLMENTS = "rd_due_installments"
    LOAN_DUE_EMIS = "loan_due_emis"
    OVERDUE_LOANS = "overdue_loans"
    DAILY_SUMMARY = "daily_summary"
    PORTFOLIO = "portfolio"


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_type: ReportType
    generated_at: datetime
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault('row_count', len(self.data))

    @property
    def is_empty(self) -> bool:
        return not self.data


class ReportingEngine:
    """
    Query and reporting layer over the ledger tables
    """

    def __init__(
        self,
        storage: StorageInterface,
        journal: TransactionJournal,
        customers: CustomerManager,
        accounts: AccountManager,
        fixed_deposits: FixedDepositManager,
        recurring_deposits: RecurringDepositManager,
        loans: LoanManager,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.journal = journal
        self.customers = customers
        self.accounts = accounts
        self.fixed_deposits = fixed_deposits
        self.recurring_deposits = recurring_deposits
        self.loans = loans
        self.config = config or get_config()
        self.logger = get_logger("bank_ledger.reporting")

    # Statements

    def account_statement(self, account_id: str, start_date: Optional[date] = None,
                          end_date: Optional[date] = None) -> ReportResult:
        """
        Passbook for one account over an inclusive date window

        Opening balance is the balance after the last transaction before the
        window (zero if there is none); closing balance is the running
        balance at the end of the window.
        """
        with self.storage.atomic():
            account = self.accounts.get_account(account_id)
            if not account:
                raise NotFoundError("account", account_id)
            history = self.journal.entity_transactions(ProductKind.ACCOUNT, account.id)

        zero = Decimal('0')
        opening = zero
        rows = []
        total_credits = zero
        total_debits = zero
        for txn in history:
            if start_date and txn.transaction_date < start_date:
                opening = txn.balance_after.amount
                continue
            if end_date and txn.transaction_date > end_date:
                break
            credit = txn.amount.amount if txn.is_credit else zero
            debit = zero if txn.is_credit else txn.amount.amount
            total_credits += credit
            total_debits += debit
            rows.append({
                'date': txn.transaction_date.isoformat(),
                'transaction_id': txn.transaction_id,
                'transaction_type': txn.transaction_type.tag,
                'description': txn.description,
                'reference': txn.reference,
                'credit': credit,
                'debit': debit,
                'balance': txn.balance_after.amount
            })

        closing = rows[-1]['balance'] if rows else opening
        self.logger.debug(f"Account statement for {account.account_number}: {len(rows)} rows")
        return ReportResult(
            report_type=ReportType.ACCOUNT_STATEMENT,
            generated_at=datetime.now(timezone.utc),
            period_start=start_date,
            period_end=end_date,
            data=rows,
            totals={
                'opening_balance': opening,
                'closing_balance': closing,
                'total_credits': total_credits,
                'total_debits': total_debits,
                'transaction_count': len(rows)
            },
            metadata={
                'account_number': account.account_number,
                'account_type': account.account_type.value,
                'customer_id': account.customer_id,
                'currency': account.currency.code
            }
        )

    def customer_statement(self, customer_id: str, transaction_limit: int = 50) -> ReportResult:
        """
        Every product a customer holds, one row each, with a summary of
        balances and the most recent account transactions
        """
        with self.storage.atomic():
            customer = self.customers.get_customer(customer_id)
            if not customer:
                raise NotFoundError("customer", customer_id)
            accounts = self.accounts.list_accounts(customer_id=customer_id, active_only=False)
            fds = self.fixed_deposits.list_fds(customer_id=customer_id)
            rds = self.recurring_deposits.list_rds(customer_id=customer_id)
            loans = self.loans.list_loans(customer_id=customer_id)
            transactions = []
            for account in accounts:
                transactions.extend(self.journal.entity_transactions(ProductKind.ACCOUNT, account.id))

        rows = []
        for account in accounts:
            rows.append({'product': 'account', 'number': account.account_number,
                         'status': 'active' if account.is_active else 'inactive',
                         'amount': account.balance.amount, 'rate': account.interest_rate})
        for fd in fds:
            rows.append({'product': 'fixed_deposit', 'number': fd.fd_number, 'status': fd.status.value,
                         'amount': fd.principal.amount, 'rate': fd.interest_rate})
        for rd in rds:
            rows.append({'product': 'recurring_deposit', 'number': rd.rd_number, 'status': rd.status.value,
                         'amount': rd.total_paid.amount, 'rate': rd.interest_rate})
        for loan in loans:
            rows.append({'product': 'loan', 'number': loan.loan_number, 'status': loan.status.value,
                         'amount': loan.outstanding.amount, 'rate': loan.interest_rate})

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        zero = Decimal('0')
        return ReportResult(
            report_type=ReportType.CUSTOMER_STATEMENT,
            generated_at=datetime.now(timezone.utc),
            data=rows,
            totals={
                'total_account_balance': sum((a.balance.amount for a in accounts if a.is_active), zero),
                'total_fd_amount': sum((fd.principal.amount for fd in fds if fd.status == FDStatus.ACTIVE), zero),
                'total_rd_deposited': sum(
                    (rd.total_paid.amount for rd in rds if rd.status == RDStatus.ACTIVE), zero
                ),
                'total_loan_outstanding': sum(
                    (loan.outstanding.amount for loan in loans if loan.status == LoanStatus.ACTIVE), zero
                )
            },
            metadata={
                'customer': self.customers.to_dict(customer),
                'recent_transactions': [self.journal.to_dict(t) for t in transactions[:transaction_limit]]
            }
        )

    # Schedules

    def fd_schedule(self, fd_id: str) -> ReportResult:
        """Month-by-month accrued value of an FD up to its maturity amount"""
        with self.storage.atomic():
            fd = self.fixed_deposits.require_fd(fd_id)

        rows = [
            {
                'month': entry.number,
                'date': entry.due_date.isoformat(),
                'interest': entry.interest,
                'value': entry.balance
            }
            for entry in fd_accrual_schedule(fd.principal.amount, fd.interest_rate,
                                             fd.tenure_months, fd.start_date)
        ]
        return ReportResult(
            report_type=ReportType.FD_SCHEDULE,
            generated_at=datetime.now(timezone.utc),
            period_start=fd.start_date,
            period_end=fd.maturity_date,
            data=rows,
            totals={'principal': fd.principal.amount, 'maturity_amount': fd.maturity_amount.amount},
            metadata={'fd_number': fd.fd_number, 'status': fd.status.value}
        )

    def rd_schedule(self, rd_id: str) -> ReportResult:
        """Installment plan of an RD; installment i falls due i - 1 months after the start"""
        with self.storage.atomic():
            rd = self.recurring_deposits.require_rd(rd_id)
            paid = self.recurring_deposits.paid_installments(rd.id)

        rows = []
        for number in range(1, rd.tenure_months + 1):
            payment = paid.get(number)
            rows.append({
                'installment_number': number,
                'due_date': add_months(rd.start_date, number - 1).isoformat(),
                'amount': rd.monthly_amount.amount,
                'status': 'paid' if payment else 'pending',
                'paid_date': payment.transaction_date.isoformat() if payment else None,
                'paid_amount': payment.amount.amount if payment else None
            })
        return ReportResult(
            report_type=ReportType.RD_SCHEDULE,
            generated_at=datetime.now(timezone.utc),
            period_start=rd.start_date,
            period_end=rd.maturity_date,
            data=rows,
            totals={
                'installments_paid': len(paid),
                'total_paid': rd.total_paid.amount,
                'remaining_amount': rd.remaining_amount.amount,
                'maturity_amount': rd.maturity_amount.amount
            },
            metadata={'rd_number': rd.rd_number, 'status': rd.status.value}
        )

    def loan_schedule(self, loan_id: str) -> ReportResult:
        """
        Amortization schedule replayed from the start date with each EMI's
        interest/principal split; paid EMIs are matched by EMI number
        """
        with self.storage.atomic():
            loan = self.loans.require_loan(loan_id)
            paid = self.loans.paid_emis(loan.id)

        rows = []
        for entry in amortization_schedule(loan.principal.amount, loan.interest_rate, loan.tenure_months,
                                           loan.start_date, installment=loan.emi_amount.amount):
            payment = paid.get(entry.number)
            rows.append({
                'emi_number': entry.number,
                'due_date': entry.due_date.isoformat(),
                'emi_amount': entry.amount,
                'principal': entry.principal,
                'interest': entry.interest,
                'balance': entry.balance,
                'status': 'paid' if payment else 'pending',
                'paid_date': payment.transaction_date.isoformat() if payment else None,
                'paid_amount': payment.amount.amount if payment else None
            })
        return ReportResult(
            report_type=ReportType.LOAN_SCHEDULE,
            generated_at=datetime.now(timezone.utc),
            period_start=loan.start_date,
            period_end=loan.end_date,
            data=rows,
            totals={
                'emis_paid': len(paid),
                'total_amount': loan.total_amount.amount,
                'outstanding': loan.outstanding.amount
            },
            metadata={'loan_number': loan.loan_number, 'status': loan.status.value}
        )

    # Due and maturity lists

    def fd_maturity_list(self, days: Optional[int] = None, as_of: Optional[date] = None) -> ReportResult:
        """Active FDs maturing within ``days`` (already-due ones included)"""
        today = as_of or date.today()
        horizon = today + timedelta(days=self.config.maturity_horizon_days if days is None else days)

        with self.storage.atomic():
            due = [fd for fd in self.fixed_deposits.list_fds(status=FDStatus.ACTIVE) if fd.maturity_date <= horizon]
            rows = [
                dict(self._customer_columns(fd.customer_id),
                     fd_number=fd.fd_number,
                     principal=fd.principal.amount,
                     maturity_amount=fd.maturity_amount.amount,
                     maturity_date=fd.maturity_date.isoformat(),
                     days_to_maturity=(fd.maturity_date - today).days)
                for fd in sorted(due, key=lambda fd: fd.maturity_date)
            ]
        return self._list_result(ReportType.FD_MATURITY, today, horizon, rows, 'maturity_amount')

    def rd_maturity_list(self, days: Optional[int] = None, as_of: Optional[date] = None) -> ReportResult:
        """Active or completed RDs maturing within ``days``"""
        today = as_of or date.today()
        horizon = today + timedelta(days=self.config.maturity_horizon_days if days is None else days)

        with self.storage.atomic():
            due = [
                rd for rd in self.recurring_deposits.list_rds()
                if rd.status in (RDStatus.ACTIVE, RDStatus.COMPLETED) and rd.maturity_date <= horizon
            ]
            rows = [
                dict(self._customer_columns(rd.customer_id),
                     rd_number=rd.rd_number,
                     status=rd.status.value,
                     total_paid=rd.total_paid.amount,
                     maturity_amount=rd.maturity_amount.amount,
                     maturity_date=rd.maturity_date.isoformat(),
                     days_to_maturity=(rd.maturity_date - today).days)
                for rd in sorted(due, key=lambda rd: rd.maturity_date)
            ]
        return self._list_result(ReportType.RD_MATURITY, today, horizon, rows, 'maturity_amount')

    def rd_due_installments(self, days: Optional[int] = None, as_of: Optional[date] = None) -> ReportResult:
        """Active RDs whose next unpaid installment falls due within ``days``"""
        today = as_of or date.today()
        horizon = today + timedelta(days=self.config.due_horizon_days if days is None else days)

        rows = []
        with self.storage.atomic():
            for rd in self.recurring_deposits.list_rds(status=RDStatus.ACTIVE):
                next_number = max(self.recurring_deposits.paid_installments(rd.id), default=0) + 1
                if next_number > rd.tenure_months:
                    continue
                due_date = add_months(rd.start_date, next_number - 1)
                if due_date <= horizon:
                    rows.append(dict(self._customer_columns(rd.customer_id),
                                     rd_number=rd.rd_number,
                                     next_installment_number=next_number,
                                     due_date=due_date.isoformat(),
                                     due_amount=rd.monthly_amount.amount))
        rows.sort(key=lambda row: row['due_date'])
        return self._list_result(ReportType.RD_DUE_INSTALLMENTS, today, horizon, rows, 'due_amount')

    def loan_due_emis(self, days: Optional[int] = None, as_of: Optional[date] = None) -> ReportResult:
        """Active loans whose next unpaid EMI falls due within ``days``"""
        today = as_of or date.today()
        horizon = today + timedelta(days=self.config.due_horizon_days if days is None else days)

        rows = []
        with self.storage.atomic():
            for loan, next_number, due_date in self._next_emis():
                if due_date <= horizon:
                    rows.append(dict(self._customer_columns(loan.customer_id),
                                     loan_number=loan.loan_number,
                                     next_emi_number=next_number,
                                     due_date=due_date.isoformat(),
                                     due_amount=loan.emi_amount.amount))
        rows.sort(key=lambda row: row['due_date'])
        return self._list_result(ReportType.LOAN_DUE_EMIS, today, horizon, rows, 'due_amount')

    def overdue_loans(self, as_of: Optional[date] = None) -> ReportResult:
        """Active loans whose next unpaid EMI is past due"""
        today = as_of or date.today()

        rows = []
        with self.storage.atomic():
            for loan, next_number, due_date in self._next_emis():
                if due_date < today:
                    rows.append(dict(self._customer_columns(loan.customer_id),
                                     loan_number=loan.loan_number,
                                     next_emi_number=next_number,
                                     due_date=due_date.isoformat(),
                                     days_overdue=(today - due_date).days,
                                     emi_amount=loan.emi_amount.amount,
                                     outstanding=loan.outstanding.amount))
        rows.sort(key=lambda row: row['days_overdue'], reverse=True)
        return self._list_result(ReportType.OVERDUE_LOANS, None, today, rows, 'outstanding')

    def _next_emis(self):
        for loan in self.loans.list_loans(status=LoanStatus.ACTIVE):
            next_number = self.loans.next_emi_number(loan.id)
            if next_number <= loan.tenure_months:
                yield loan, next_number, add_months(loan.start_date, next_number)

    # Summaries

    def daily_summary(self, on_date: Optional[date] = None) -> ReportResult:
        """Count and volume per product and transaction type for one day"""
        day = on_date or date.today()

        with self.storage.atomic():
            transactions = {product: self.journal.transactions_on(product, day) for product in ProductKind}

        rows = []
        total_credits = Decimal('0')
        total_debits = Decimal('0')
        for product, txns in transactions.items():
            by_type: Dict[TransactionType, List] = {}
            for txn in txns:
                by_type.setdefault(txn.transaction_type, []).append(txn)
            for transaction_type, group in by_type.items():
                amount = sum((t.amount.amount for t in group), Decimal('0'))
                if product == ProductKind.ACCOUNT:
                    if transaction_type.effect == BalanceEffect.CREDIT:
                        total_credits += amount
                    else:
                        total_debits += amount
                rows.append({
                    'product': product.label,
                    'transaction_type': transaction_type.tag,
                    'count': len(group),
                    'total_amount': amount
                })

        return ReportResult(
            report_type=ReportType.DAILY_SUMMARY,
            generated_at=datetime.now(timezone.utc),
            period_start=day,
            period_end=day,
            data=rows,
            totals={
                'transaction_count': sum(row['count'] for row in rows),
                'account_credits': total_credits,
                'account_debits': total_debits,
                'net_account_flow': total_credits - total_debits
            }
        )

    def portfolio_stats(self) -> ReportResult:
        """Headline statistics of every product book"""
        with self.storage.atomic():
            stats = {
                'accounts': self.accounts.get_stats(),
                'fixed_deposits': self.fixed_deposits.get_stats(),
                'recurring_deposits': self.recurring_deposits.get_stats(),
                'loans': self.loans.get_stats()
            }
        rows = [
            {'product': 'accounts', 'count': stats['accounts']['active_accounts'],
             'amount': stats['accounts']['total_balance']},
            {'product': 'fixed_deposits', 'count': stats['fixed_deposits']['active_fds'],
             'amount': stats['fixed_deposits']['total_active_amount']},
            {'product': 'recurring_deposits', 'count': stats['recurring_deposits']['active_rds'],
             'amount': stats['recurring_deposits']['total_collected']},
            {'product': 'loans', 'count': stats['loans']['active_loans'],
             'amount': stats['loans']['total_outstanding']},
        ]
        return ReportResult(
            report_type=ReportType.PORTFOLIO,
            generated_at=datetime.now(timezone.utc),
            data=rows,
            totals={
                'total_deposits': (
                    stats['accounts']['total_balance']
                    + stats['fixed_deposits']['total_active_amount']
                    + stats['recurring_deposits']['total_collected']
                ),
                'total_loan_outstanding': stats['loans']['total_outstanding']
            },
            metadata={'stats': stats}
        )

    # Export

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_type': result.report_type.value,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat() if result.period_start else None,
                'period_end': result.period_end.isoformat() if result.period_end else None,
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()
                for row in result.data:
                    writer.writerow(row)

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")

    # Helpers

    def _customer_columns(self, customer_id: str) -> Dict[str, Any]:
        customer = self.customers.get_customer(customer_id)
        return {
            'customer_id': customer_id,
            'customer_name': customer.name if customer else None,
            'customer_phone': customer.phone if customer else None,
            'customer_email': customer.email if customer else None
        }

    def _list_result(self, report_type: ReportType, start: Optional[date], end: date,
                     rows: List[Dict[str, Any]], amount_key: str) -> ReportResult:
        return ReportResult(
            report_type=report_type,
            generated_at=datetime.now(timezone.utc),
            period_start=start,
            period_end=end,
            data=rows,
            totals={'count': len(rows), amount_key: sum((row[amount_key] for row in rows), Decimal('0'))}
        )
