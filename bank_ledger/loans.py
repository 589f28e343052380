"""
Loan Module

Equal-installment loans. The outstanding amount starts at the total payable
(EMI x tenure) and every payment, foreclosure or term change moves it
through a ``loan_transactions`` record carrying the before/after snapshot.
A loan closes by itself once a payment leaves no more than the configured
rounding tolerance outstanding; the residual is written off on that
payment's record so the stored outstanding is exactly zero.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import add_months, emi, loan_payment_split, parse_rate, parse_tenure
from .config import LedgerConfig, get_config
from .currency import Money, Currency, parse_money
from .customers import CustomerManager
from .errors import BusinessRuleError, InvalidStatusError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .numbering import NumberKind
from .storage import StorageInterface, StorageRecord
from .transactions import Posting, ProductKind, TransactionJournal, TransactionType


class LoanType(Enum):
    """Loan products"""
    PERSONAL = "personal"
    HOME = "home"
    VEHICLE = "vehicle"
    BUSINESS = "business"
    EDUCATION = "education"
    GOLD = "gold"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"          # Repaid through scheduled payments
    FORECLOSED = "foreclosed"  # Settled early in one payment


@dataclass
class Loan(StorageRecord):
    """
    Loan account; outstanding never negative
    """
    loan_number: str
    customer_id: str
    loan_type: LoanType
    principal: Money
    interest_rate: Decimal
    tenure_months: int
    emi_amount: Money
    total_amount: Money
    outstanding: Money
    start_date: date
    end_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    closed_date: Optional[date] = None
    created_by: Optional[str] = None

    @property
    def amount_paid(self) -> Money:
        return self.total_amount - self.outstanding


class LoanManager:
    """
    Loan origination, repayment and closure
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
        self.table_name = "loans"
        self.currency = Currency[self.config.default_currency]
        self.logger = get_logger("bank_ledger.loans")

    def create_loan(
        self,
        customer_id: str,
        loan_type: Any,
        principal: Any,
        interest_rate: Any,
        tenure_months: int,
        created_by: str,
        start_date: Optional[date] = None
    ) -> Posting:
        """
        Originate and disburse a loan

        The disbursement record opens the outstanding snapshot at the total
        payable, split into the principal and the scheduled interest.
        """
        if not isinstance(loan_type, LoanType):
            try:
                loan_type = LoanType(loan_type)
            except ValueError:
                raise ValidationError("Invalid loan type")
        principal = parse_money(principal, self.currency, "Principal amount")
        rate = parse_rate(interest_rate)
        tenure = parse_tenure(tenure_months)
        start = start_date or date.today()

        installment = Money(emi(principal.amount, rate, tenure), self.currency)
        total = installment * tenure

        with self.storage.atomic():
            self.customers.require_active(customer_id)

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self.journal.numbering.next_number(NumberKind.LOAN),
                customer_id=customer_id,
                loan_type=loan_type,
                principal=principal,
                interest_rate=rate,
                tenure_months=tenure,
                emi_amount=installment,
                total_amount=total,
                outstanding=total,
                start_date=start,
                end_date=add_months(start, tenure),
                created_by=created_by
            )
            self._save_loan(loan)

            txn = self.journal.append(
                ProductKind.LOAN, loan.id, customer_id, TransactionType.LOAN_DISBURSEMENT,
                amount=total,
                processed_by=created_by,
                description=f"Loan disbursed - {loan.loan_number}",
                balance_before=Money.zero(self.currency),
                balance_after=total,
                principal_component=principal,
                interest_component=total - principal
            )
            self.audit_trail.log_event(
                AuditEventType.LOAN_DISBURSED, "loan", loan.id,
                description=(
                    f"Disbursed {loan_type.value} loan {loan.loan_number}: "
                    f"{principal.to_string()} @ {rate}% for {tenure} months"
                ),
                metadata={"customer_id": customer_id, "emi_amount": installment.amount,
                          "total_amount": total.amount},
                user_id=created_by
            )

        log_action(self.logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=created_by, action="loan_disbursement", resource=f"loan:{loan.id}",
                   extra={"principal": str(principal.amount), "emi_amount": str(installment.amount)})
        return Posting(loan, [txn])

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return self._loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id, "Loan not found")
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        row = self.storage.find_one(self.table_name, {'loan_number': loan_number})
        return self._loan_from_dict(row) if row else None

    def list_loans(self, customer_id: Optional[str] = None, status: Optional[LoanStatus] = None,
                   loan_type: Optional[LoanType] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = status.value
        if loan_type:
            filters['loan_type'] = loan_type.value
        loans = [self._loan_from_dict(row) for row in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def paid_emis(self, loan_id: str) -> Dict[int, Any]:
        """EMI number -> its ``loan_payment`` record"""
        return {
            txn.installment_number: txn
            for txn in self.journal.entity_transactions(ProductKind.LOAN, loan_id)
            if txn.transaction_type == TransactionType.LOAN_PAYMENT
        }

    def make_payment(self, loan_id: str, processed_by: str, amount: Optional[Any] = None,
                     emi_number: Optional[int] = None) -> Posting:
        """
        Apply a repayment to an active loan

        Interest is one month on the outstanding amount; the rest of the
        payment is principal, floored at zero. The payment may not exceed
        the outstanding amount.
        """
        if emi_number is not None and (
                isinstance(emi_number, bool) or not isinstance(emi_number, int) or emi_number <= 0):
            raise ValidationError("EMI number must be a positive integer")

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStatusError("Loan is not active")

            payment = (
                parse_money(amount, self.currency, "Payment amount")
                if amount is not None else loan.emi_amount
            )
            before = loan.outstanding
            if payment > before:
                raise BusinessRuleError("Payment amount cannot exceed outstanding amount")

            interest, principal_part = loan_payment_split(before.amount, loan.interest_rate, payment.amount)
            paid = self.paid_emis(loan.id)
            number = emi_number or max(paid, default=0) + 1
            if number in paid:
                raise BusinessRuleError(f"EMI #{number} already paid")

            residual = before - payment
            closed = residual.amount <= self.config.closure_tolerance
            adjustment = residual if closed and not residual.is_zero() else None
            if closed:
                loan.outstanding = Money.zero(self.currency)
                loan.status = LoanStatus.CLOSED
                loan.closed_date = date.today()
            else:
                loan.outstanding = residual
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            txn = self.journal.append(
                ProductKind.LOAN, loan.id, loan.customer_id, TransactionType.LOAN_PAYMENT,
                amount=payment,
                processed_by=processed_by,
                description=f"Loan payment EMI #{number} - {loan.loan_number}",
                balance_before=before,
                balance_after=loan.outstanding,
                installment_number=number,
                principal_component=Money(principal_part, self.currency),
                interest_component=Money(interest, self.currency),
                rounding_adjustment=adjustment
            )
            self.audit_trail.log_event(
                AuditEventType.LOAN_PAYMENT_MADE, "loan", loan.id,
                description=f"EMI #{number} of {payment.to_string()} received for {loan.loan_number}",
                metadata={"transaction_id": txn.transaction_id, "outstanding": loan.outstanding.amount},
                user_id=processed_by
            )
            if closed:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_CLOSED, "loan", loan.id,
                    description=f"Loan {loan.loan_number} fully repaid",
                    metadata={"written_off": adjustment.amount if adjustment else Decimal('0')},
                    user_id=processed_by
                )

        log_action(self.logger, "info", f"Loan payment EMI #{number} posted to {loan.loan_number}",
                   user_id=processed_by, action="loan_payment", resource=f"loan:{loan.id}",
                   extra={"amount": str(payment.amount), "outstanding": str(loan.outstanding.amount)})
        return Posting(loan, [txn], details={
            "emi_number": number,
            "principal_paid": Money(principal_part, self.currency),
            "interest_paid": Money(interest, self.currency),
            "loan_closed": closed
        })

    def foreclose(self, loan_id: str, processed_by: str) -> Posting:
        """Settle the whole outstanding amount and close the loan as foreclosed"""
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStatusError("Loan is not active")
            if not loan.outstanding.is_positive():
                raise BusinessRuleError("Loan is already fully paid")

            settlement = loan.outstanding
            loan.outstanding = Money.zero(self.currency)
            loan.status = LoanStatus.FORECLOSED
            loan.closed_date = date.today()
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            txn = self.journal.append(
                ProductKind.LOAN, loan.id, loan.customer_id, TransactionType.LOAN_FORECLOSE,
                amount=settlement,
                processed_by=processed_by,
                description=f"Loan foreclosed - {loan.loan_number}",
                balance_before=settlement,
                balance_after=loan.outstanding,
                principal_component=settlement,
                interest_component=Money.zero(self.currency)
            )
            self.audit_trail.log_event(
                AuditEventType.LOAN_FORECLOSED, "loan", loan.id,
                description=f"Foreclosed loan {loan.loan_number} for {settlement.to_string()}",
                metadata={"transaction_id": txn.transaction_id},
                user_id=processed_by
            )

        log_action(self.logger, "info", f"Loan {loan.loan_number} foreclosed",
                   user_id=processed_by, action="loan_foreclose", resource=f"loan:{loan.id}",
                   extra={"settlement": str(settlement.amount)})
        return Posting(loan, [txn], details={"foreclosure_amount": settlement})

    def update_loan(self, loan_id: str, updated_by: str, interest_rate: Optional[Any] = None,
                    emi_amount: Optional[Any] = None) -> Posting:
        """
        Reprice an active loan

        A new rate recomputes the EMI from the original principal and
        tenure; otherwise a new EMI is taken as given. Either way the total
        payable becomes EMI x tenure and the outstanding moves by the same
        difference (never below zero) through a ``loan_adjustment`` record.
        """
        if interest_rate is None and emi_amount is None:
            raise ValidationError("No fields to update")
        new_rate = parse_rate(interest_rate) if interest_rate is not None else None
        new_emi = (
            parse_money(emi_amount, self.currency, "EMI amount")
            if emi_amount is not None and new_rate is None else None
        )

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidStatusError("Can only update active loans")

            paid = loan.amount_paid
            before = loan.outstanding
            if new_rate is not None:
                loan.interest_rate = new_rate
                loan.emi_amount = Money(emi(loan.principal.amount, new_rate, loan.tenure_months), self.currency)
            else:
                loan.emi_amount = new_emi
            loan.total_amount = loan.emi_amount * loan.tenure_months

            after = loan.total_amount - paid
            if after.is_negative():
                after = Money.zero(self.currency)
            loan.outstanding = after
            if after.is_zero():
                loan.status = LoanStatus.CLOSED
                loan.closed_date = date.today()
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            delta = after - before
            txn = self.journal.append(
                ProductKind.LOAN, loan.id, loan.customer_id, TransactionType.LOAN_ADJUSTMENT,
                amount=Money(abs(delta.amount), self.currency),
                processed_by=updated_by,
                description=(
                    f"Loan terms updated: EMI {loan.emi_amount.amount} @ {loan.interest_rate}% "
                    f"- {loan.loan_number}"
                ),
                balance_before=before,
                balance_after=after
            )
            self.audit_trail.log_event(
                AuditEventType.LOAN_UPDATED, "loan", loan.id,
                description=f"Updated loan {loan.loan_number}",
                metadata={"interest_rate": loan.interest_rate, "emi_amount": loan.emi_amount.amount,
                          "total_amount": loan.total_amount.amount, "outstanding": after.amount},
                user_id=updated_by
            )

        log_action(self.logger, "info", f"Loan {loan.loan_number} updated",
                   user_id=updated_by, action="loan_update", resource=f"loan:{loan.id}")
        return Posting(loan, [txn])

    def next_emi_number(self, loan_id: str) -> int:
        return max(self.paid_emis(loan_id), default=0) + 1

    def get_stats(self) -> Dict[str, Any]:
        loans = [self._loan_from_dict(row) for row in self.storage.load_all(self.table_name)]
        active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]

        loan_types = []
        for loan_type in LoanType:
            of_type = [loan for loan in active if loan.loan_type == loan_type]
            if of_type:
                loan_types.append({
                    'loan_type': loan_type.value,
                    'count': len(of_type),
                    'total_amount': sum((loan.principal.amount for loan in of_type), Decimal('0'))
                })

        return {
            'total_loans': len(loans),
            'active_loans': len(active),
            'closed_loans': sum(1 for loan in loans if loan.status == LoanStatus.CLOSED),
            'foreclosed_loans': sum(1 for loan in loans if loan.status == LoanStatus.FORECLOSED),
            'total_disbursed': sum((loan.principal.amount for loan in active), Decimal('0')),
            'total_outstanding': sum((loan.outstanding.amount for loan in active), Decimal('0')),
            'avg_interest_rate': (
                (sum(loan.interest_rate for loan in active) / len(active)).quantize(Decimal('0.01'))
                if active else Decimal('0')
            ),
            'loan_types': loan_types
        }

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.table_name, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'customer_id': loan.customer_id,
            'loan_type': loan.loan_type.value,
            'currency': loan.principal.currency.code,
            'principal': str(loan.principal.amount),
            'interest_rate': str(loan.interest_rate),
            'tenure_months': loan.tenure_months,
            'emi_amount': str(loan.emi_amount.amount),
            'total_amount': str(loan.total_amount.amount),
            'outstanding': str(loan.outstanding.amount),
            'start_date': loan.start_date.isoformat(),
            'end_date': loan.end_date.isoformat(),
            'status': loan.status.value,
            'closed_date': loan.closed_date.isoformat() if loan.closed_date else None,
            'created_by': loan.created_by
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        currency = Currency[data['currency']]
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            loan_type=LoanType(data['loan_type']),
            principal=Money(Decimal(data['principal']), currency),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=data['tenure_months'],
            emi_amount=Money(Decimal(data['emi_amount']), currency),
            total_amount=Money(Decimal(data['total_amount']), currency),
            outstanding=Money(Decimal(data['outstanding']), currency),
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            status=LoanStatus(data['status']),
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None,
            created_by=data.get('created_by')
        )

    def to_dict(self, loan: Loan) -> Dict:
        return self._loan_to_dict(loan)
