"""
Recurring Deposit Module

Fixed monthly installments for a contracted tenure. ``total_paid`` is the
RD's balance: every installment credits it and carries a before/after
snapshot. Once the contracted total has been paid the RD moves to
``completed`` by itself; explicit closure moves an active or completed RD
to ``closed``, paying either the contracted maturity amount or the
penalized amount for the whole installments actually paid.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import (
    add_months, parse_rate, parse_tenure, premature_closure_amount, rd_maturity
)
from .config import LedgerConfig, get_config
from .currency import Money, Currency, parse_money
from .customers import CustomerManager
from .errors import BusinessRuleError, InvalidStatusError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .numbering import NumberKind
from .storage import StorageInterface, StorageRecord
from .transactions import Posting, ProductKind, TransactionJournal, TransactionType


class RDStatus(Enum):
    """Recurring deposit lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"  # Contracted total paid, awaiting closure
    CLOSED = "closed"


@dataclass
class RecurringDeposit(StorageRecord):
    """
    Recurring deposit instrument
    """
    rd_number: str
    customer_id: str
    monthly_amount: Money
    interest_rate: Decimal
    tenure_months: int
    maturity_amount: Money
    total_paid: Money
    start_date: date
    maturity_date: date
    status: RDStatus = RDStatus.ACTIVE
    is_premature: bool = False
    closure_amount: Optional[Money] = None
    closed_date: Optional[date] = None
    created_by: Optional[str] = None

    @property
    def contracted_total(self) -> Money:
        return self.monthly_amount * self.tenure_months

    @property
    def remaining_amount(self) -> Money:
        remaining = self.contracted_total - self.total_paid
        return remaining if remaining.is_positive() else Money.zero(remaining.currency)


class RecurringDepositManager:
    """
    Recurring deposit lifecycle operations
    """

    def __init__(
        self,
        storage: StorageInterface,
        journal: TransactionJournal,
        customers: CustomerManager,
        audit_trail: AuditTrail,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.journal = journal
        self.customers = customers
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.table_name = "recurring_deposits"
        self.currency = Currency[self.config.default_currency]
        self.logger = get_logger("bank_ledger.recurring_deposits")

    def create_rd(
        self,
        customer_id: str,
        monthly_amount: Any,
        interest_rate: Any,
        tenure_months: int,
        created_by: str,
        start_date: Optional[date] = None
    ) -> Posting:
        """Open an RD; the ``rd_create`` record opens the paid-total snapshot at zero"""
        monthly = parse_money(monthly_amount, self.currency, "Monthly amount")
        rate = parse_rate(interest_rate)
        tenure = parse_tenure(tenure_months)
        start = start_date or date.today()

        with self.storage.atomic():
            self.customers.require_active(customer_id)

            now = datetime.now(timezone.utc)
            zero = Money.zero(self.currency)
            rd = RecurringDeposit(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                rd_number=self.journal.numbering.next_number(NumberKind.RECURRING_DEPOSIT),
                customer_id=customer_id,
                monthly_amount=monthly,
                interest_rate=rate,
                tenure_months=tenure,
                maturity_amount=Money(rd_maturity(monthly.amount, rate, tenure), self.currency),
                total_paid=zero,
                start_date=start,
                maturity_date=add_months(start, tenure),
                created_by=created_by
            )
            self._save_rd(rd)

            txn = self.journal.append(
                ProductKind.RECURRING_DEPOSIT, rd.id, customer_id, TransactionType.RD_CREATE,
                amount=zero,
                processed_by=created_by,
                description=f"RD created - {rd.rd_number}",
                balance_before=zero,
                balance_after=zero
            )
            self.audit_trail.log_event(
                AuditEventType.RD_CREATED, "recurring_deposit", rd.id,
                description=f"Created RD {rd.rd_number}: {monthly.to_string()} x {tenure} @ {rate}%",
                metadata={"customer_id": customer_id, "maturity_amount": rd.maturity_amount.amount},
                user_id=created_by
            )

        log_action(self.logger, "info", f"RD {rd.rd_number} created",
                   user_id=created_by, action="rd_create", resource=f"recurring_deposit:{rd.id}")
        return Posting(rd, [txn])

    def get_rd(self, rd_id: str) -> Optional[RecurringDeposit]:
        data = self.storage.load(self.table_name, rd_id)
        return self._rd_from_dict(data) if data else None

    def require_rd(self, rd_id: str) -> RecurringDeposit:
        rd = self.get_rd(rd_id)
        if not rd:
            raise NotFoundError("recurring_deposit", rd_id, "RD not found")
        return rd

    def get_rd_by_number(self, rd_number: str) -> Optional[RecurringDeposit]:
        row = self.storage.find_one(self.table_name, {'rd_number': rd_number})
        return self._rd_from_dict(row) if row else None

    def list_rds(self, customer_id: Optional[str] = None,
                 status: Optional[RDStatus] = None) -> List[RecurringDeposit]:
        filters: Dict[str, Any] = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = status.value
        rds = [self._rd_from_dict(row) for row in self.storage.find(self.table_name, filters)]
        rds.sort(key=lambda rd: rd.created_at, reverse=True)
        return rds

    def paid_installments(self, rd_id: str) -> Dict[int, Any]:
        """Installment number -> its ``rd_installment`` record"""
        return {
            txn.installment_number: txn
            for txn in self.journal.entity_transactions(ProductKind.RECURRING_DEPOSIT, rd_id)
            if txn.transaction_type == TransactionType.RD_INSTALLMENT
        }

    def pay_installment(self, rd_id: str, processed_by: str, amount: Optional[Any] = None,
                        installment_number: Optional[int] = None) -> Posting:
        """
        Credit one installment to an active RD

        ``amount`` defaults to the monthly amount and ``installment_number``
        to one past the highest already paid. Reaching the contracted total
        completes the RD in the same unit of work.
        """
        if installment_number is not None and (
                isinstance(installment_number, bool) or not isinstance(installment_number, int)
                or installment_number <= 0):
            raise ValidationError("Installment number must be a positive integer")

        with self.storage.atomic():
            rd = self.require_rd(rd_id)
            if rd.status != RDStatus.ACTIVE:
                raise InvalidStatusError("RD is not active")

            payment = (
                parse_money(amount, self.currency, "Installment amount")
                if amount is not None else rd.monthly_amount
            )
            paid = self.paid_installments(rd.id)
            number = installment_number or max(paid, default=0) + 1
            if number in paid:
                raise BusinessRuleError(f"Installment #{number} already paid")

            before = rd.total_paid
            rd.total_paid = before + payment
            completed = rd.total_paid >= rd.contracted_total
            if completed:
                rd.status = RDStatus.COMPLETED
            rd.updated_at = datetime.now(timezone.utc)
            self._save_rd(rd)

            txn = self.journal.append(
                ProductKind.RECURRING_DEPOSIT, rd.id, rd.customer_id, TransactionType.RD_INSTALLMENT,
                amount=payment,
                processed_by=processed_by,
                description=f"RD installment #{number} - {rd.rd_number}",
                balance_before=before,
                balance_after=rd.total_paid,
                installment_number=number
            )
            self.audit_trail.log_event(
                AuditEventType.RD_INSTALLMENT_PAID, "recurring_deposit", rd.id,
                description=f"Installment #{number} of {payment.to_string()} paid to {rd.rd_number}",
                metadata={"transaction_id": txn.transaction_id, "total_paid": rd.total_paid.amount},
                user_id=processed_by
            )
            if completed:
                self.audit_trail.log_event(
                    AuditEventType.RD_COMPLETED, "recurring_deposit", rd.id,
                    description=f"RD {rd.rd_number} fully paid",
                    user_id=processed_by
                )

        log_action(self.logger, "info", f"RD installment #{number} posted to {rd.rd_number}",
                   user_id=processed_by, action="rd_installment", resource=f"recurring_deposit:{rd.id}",
                   extra={"amount": str(payment.amount), "total_paid": str(rd.total_paid.amount)})
        return Posting(rd, [txn], details={
            "installment_number": number,
            "remaining_amount": rd.remaining_amount,
            "completed": completed
        })

    def close_rd(self, rd_id: str, processed_by: str, is_premature: bool = False,
                 as_of: Optional[date] = None) -> Posting:
        """
        Close an active or completed RD

        A completed RD, or an active one past its maturity date, closes
        normally. Anything else (or ``is_premature``) pays the whole
        installments covered by ``total_paid`` at the penalized rate, plus
        any excess unpenalized.
        """
        closing_date = as_of or date.today()

        with self.storage.atomic():
            rd = self.require_rd(rd_id)
            if rd.status not in (RDStatus.ACTIVE, RDStatus.COMPLETED):
                raise InvalidStatusError("RD is not active or completed")

            premature = is_premature or (
                closing_date < rd.maturity_date and rd.status != RDStatus.COMPLETED
            )
            if premature:
                payout = Money(
                    premature_closure_amount(rd.total_paid.amount, rd.interest_rate, 0,
                                             monthly_amount=rd.monthly_amount.amount,
                                             penalty=self.config.penalty_rate),
                    self.currency
                )
                txn_type = TransactionType.RD_PREMATURE_CLOSE
                description = f"RD closed prematurely - {rd.rd_number}"
            elif rd.status == RDStatus.COMPLETED:
                payout = rd.maturity_amount
                txn_type = TransactionType.RD_MATURE
                description = f"RD matured - {rd.rd_number}"
            else:
                # Past maturity with installments missing: no penalty, only what was paid earns
                payout = Money(
                    premature_closure_amount(rd.total_paid.amount, rd.interest_rate, 0,
                                             monthly_amount=rd.monthly_amount.amount, penalty=0),
                    self.currency
                )
                txn_type = TransactionType.RD_MATURE
                description = f"RD matured - {rd.rd_number}"

            rd.status = RDStatus.CLOSED
            rd.is_premature = premature
            rd.closure_amount = payout
            rd.closed_date = closing_date
            rd.updated_at = datetime.now(timezone.utc)
            self._save_rd(rd)

            txn = self.journal.append(
                ProductKind.RECURRING_DEPOSIT, rd.id, rd.customer_id, txn_type,
                amount=payout,
                processed_by=processed_by,
                description=description
            )
            self.audit_trail.log_event(
                AuditEventType.RD_CLOSED, "recurring_deposit", rd.id,
                description=f"{description}, payout {payout.to_string()}",
                metadata={"transaction_id": txn.transaction_id, "is_premature": premature,
                          "total_paid": rd.total_paid.amount},
                user_id=processed_by
            )

        log_action(self.logger, "info", description,
                   user_id=processed_by, action=txn_type.tag, resource=f"recurring_deposit:{rd.id}",
                   extra={"payout": str(payout.amount)})
        return Posting(rd, [txn], details={"is_premature": premature, "payout": payout})

    def get_stats(self) -> Dict[str, Any]:
        rds = [self._rd_from_dict(row) for row in self.storage.load_all(self.table_name)]
        open_rds = [rd for rd in rds if rd.status in (RDStatus.ACTIVE, RDStatus.COMPLETED)]
        return {
            'total_rds': len(rds),
            'active_rds': sum(1 for rd in rds if rd.status == RDStatus.ACTIVE),
            'completed_rds': sum(1 for rd in rds if rd.status == RDStatus.COMPLETED),
            'closed_rds': sum(1 for rd in rds if rd.status == RDStatus.CLOSED),
            'total_collected': sum((rd.total_paid.amount for rd in open_rds), Decimal('0')),
            'total_maturity_amount': sum((rd.maturity_amount.amount for rd in open_rds), Decimal('0')),
            'avg_interest_rate': (
                (sum(rd.interest_rate for rd in open_rds) / len(open_rds)).quantize(Decimal('0.01'))
                if open_rds else Decimal('0')
            )
        }

    def _save_rd(self, rd: RecurringDeposit) -> None:
        self.storage.save(self.table_name, rd.id, self._rd_to_dict(rd))

    def _rd_to_dict(self, rd: RecurringDeposit) -> Dict:
        return {
            'id': rd.id,
            'created_at': rd.created_at.isoformat(),
            'updated_at': rd.updated_at.isoformat(),
            'rd_number': rd.rd_number,
            'customer_id': rd.customer_id,
            'currency': rd.monthly_amount.currency.code,
            'monthly_amount': str(rd.monthly_amount.amount),
            'interest_rate': str(rd.interest_rate),
            'tenure_months': rd.tenure_months,
            'maturity_amount': str(rd.maturity_amount.amount),
            'total_paid': str(rd.total_paid.amount),
            'start_date': rd.start_date.isoformat(),
            'maturity_date': rd.maturity_date.isoformat(),
            'status': rd.status.value,
            'is_premature': rd.is_premature,
            'closure_amount': str(rd.closure_amount.amount) if rd.closure_amount else None,
            'closed_date': rd.closed_date.isoformat() if rd.closed_date else None,
            'created_by': rd.created_by
        }

    def _rd_from_dict(self, data: Dict) -> RecurringDeposit:
        currency = Currency[data['currency']]
        return RecurringDeposit(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            rd_number=data['rd_number'],
            customer_id=data['customer_id'],
            monthly_amount=Money(Decimal(data['monthly_amount']), currency),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=data['tenure_months'],
            maturity_amount=Money(Decimal(data['maturity_amount']), currency),
            total_paid=Money(Decimal(data['total_paid']), currency),
            start_date=date.fromisoformat(data['start_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            status=RDStatus(data['status']),
            is_premature=data.get('is_premature', False),
            closure_amount=(
                Money(Decimal(data['closure_amount']), currency) if data.get('closure_amount') else None
            ),
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None,
            created_by=data.get('created_by')
        )

    def to_dict(self, rd: RecurringDeposit) -> Dict:
        return self._rd_to_dict(rd)
