"""
Fixed Deposit Module

Lump-sum deposits compounded monthly for a contracted tenure. An FD is
created active and leaves that state exactly once: ``matured`` when closed
on or after its maturity date, or ``closed`` when broken early at the
penalized rate. Principal, rate and tenure can only change while active,
and every change recomputes the maturity amount and date.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import (
    add_months, compound_maturity, elapsed_months, parse_rate, parse_tenure,
    penalized_rate, premature_closure_amount
)
from .config import LedgerConfig, get_config
from .currency import Money, Currency, parse_money
from .customers import CustomerManager
from .errors import InvalidStatusError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .numbering import NumberKind
from .storage import StorageInterface, StorageRecord
from .transactions import Posting, ProductKind, TransactionJournal, TransactionType


class FDStatus(Enum):
    """Fixed deposit lifecycle states"""
    ACTIVE = "active"
    MATURED = "matured"    # Paid the contracted maturity amount
    CLOSED = "closed"      # Broken before maturity


@dataclass
class FixedDeposit(StorageRecord):
    """
    Fixed deposit instrument
    """
    fd_number: str
    customer_id: str
    principal: Money
    interest_rate: Decimal
    tenure_months: int
    maturity_amount: Money
    start_date: date
    maturity_date: date
    status: FDStatus = FDStatus.ACTIVE
    is_premature: bool = False
    premature_date: Optional[date] = None
    premature_amount: Optional[Money] = None
    closed_date: Optional[date] = None
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == FDStatus.ACTIVE

    @property
    def payout_amount(self) -> Optional[Money]:
        if self.status == FDStatus.MATURED:
            return self.maturity_amount
        return self.premature_amount


class FixedDepositManager:
    """
    Fixed deposit lifecycle operations
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
        self.table_name = "fixed_deposits"
        self.currency = Currency[self.config.default_currency]
        self.logger = get_logger("bank_ledger.fixed_deposits")

    def create_fd(
        self,
        customer_id: str,
        principal: Any,
        interest_rate: Any,
        tenure_months: int,
        created_by: str,
        start_date: Optional[date] = None
    ) -> Posting:
        """Book a new FD and its ``fd_create`` record"""
        principal = parse_money(principal, self.currency, "Principal amount")
        rate = parse_rate(interest_rate)
        tenure = parse_tenure(tenure_months)
        start = start_date or date.today()

        with self.storage.atomic():
            self.customers.require_active(customer_id)

            now = datetime.now(timezone.utc)
            fd = FixedDeposit(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                fd_number=self.journal.numbering.next_number(NumberKind.FIXED_DEPOSIT),
                customer_id=customer_id,
                principal=principal,
                interest_rate=rate,
                tenure_months=tenure,
                maturity_amount=Money(compound_maturity(principal.amount, rate, tenure), self.currency),
                start_date=start,
                maturity_date=add_months(start, tenure),
                created_by=created_by
            )
            self._save_fd(fd)

            txn = self.journal.append(
                ProductKind.FIXED_DEPOSIT, fd.id, customer_id, TransactionType.FD_CREATE,
                amount=principal,
                processed_by=created_by,
                description=f"FD created - {fd.fd_number}"
            )
            self.audit_trail.log_event(
                AuditEventType.FD_CREATED, "fixed_deposit", fd.id,
                description=f"Created FD {fd.fd_number} for {principal.to_string()} @ {rate}%",
                metadata={"customer_id": customer_id, "maturity_amount": fd.maturity_amount.amount},
                user_id=created_by
            )

        log_action(self.logger, "info", f"FD {fd.fd_number} created",
                   user_id=created_by, action="fd_create", resource=f"fixed_deposit:{fd.id}")
        return Posting(fd, [txn])

    def get_fd(self, fd_id: str) -> Optional[FixedDeposit]:
        data = self.storage.load(self.table_name, fd_id)
        return self._fd_from_dict(data) if data else None

    def require_fd(self, fd_id: str) -> FixedDeposit:
        fd = self.get_fd(fd_id)
        if not fd:
            raise NotFoundError("fixed_deposit", fd_id, "FD not found")
        return fd

    def get_fd_by_number(self, fd_number: str) -> Optional[FixedDeposit]:
        row = self.storage.find_one(self.table_name, {'fd_number': fd_number})
        return self._fd_from_dict(row) if row else None

    def list_fds(self, customer_id: Optional[str] = None,
                 status: Optional[FDStatus] = None) -> List[FixedDeposit]:
        filters: Dict[str, Any] = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = status.value
        fds = [self._fd_from_dict(row) for row in self.storage.find(self.table_name, filters)]
        fds.sort(key=lambda fd: fd.created_at, reverse=True)
        return fds

    def close_fd(self, fd_id: str, processed_by: str, is_premature: bool = False,
                 as_of: Optional[date] = None) -> Posting:
        """
        Close an active FD

        Closing before the maturity date (or with ``is_premature``) pays the
        principal compounded over the elapsed months at the penalized rate
        and moves the FD to ``closed``. Otherwise it matures and pays the
        contracted maturity amount.
        """
        closing_date = as_of or date.today()

        with self.storage.atomic():
            fd = self.require_fd(fd_id)
            if fd.status != FDStatus.ACTIVE:
                raise InvalidStatusError("FD is not active")

            premature = is_premature or closing_date < fd.maturity_date
            if premature:
                months = elapsed_months(fd.start_date, closing_date, self.config.days_per_month)
                payout = Money(
                    premature_closure_amount(fd.principal.amount, fd.interest_rate, months,
                                             penalty=self.config.penalty_rate),
                    self.currency
                )
                fd.status = FDStatus.CLOSED
                fd.is_premature = True
                fd.premature_date = closing_date
                fd.premature_amount = payout
                txn_type = TransactionType.FD_PREMATURE_CLOSE
                description = f"FD closed prematurely - {fd.fd_number}"
                event_type = AuditEventType.FD_CLOSED_PREMATURE
            else:
                payout = fd.maturity_amount
                fd.status = FDStatus.MATURED
                txn_type = TransactionType.FD_MATURE
                description = f"FD matured - {fd.fd_number}"
                event_type = AuditEventType.FD_MATURED

            fd.closed_date = closing_date
            fd.updated_at = datetime.now(timezone.utc)
            self._save_fd(fd)

            txn = self.journal.append(
                ProductKind.FIXED_DEPOSIT, fd.id, fd.customer_id, txn_type,
                amount=payout,
                processed_by=processed_by,
                description=description
            )
            self.audit_trail.log_event(
                event_type, "fixed_deposit", fd.id,
                description=f"{description}, payout {payout.to_string()}",
                metadata={
                    "transaction_id": txn.transaction_id,
                    "is_premature": premature,
                    "effective_rate": (
                        penalized_rate(fd.interest_rate, self.config.penalty_rate)
                        if premature else fd.interest_rate
                    )
                },
                user_id=processed_by
            )

        log_action(self.logger, "info", description,
                   user_id=processed_by, action=txn_type.tag, resource=f"fixed_deposit:{fd.id}",
                   extra={"payout": str(payout.amount)})
        return Posting(fd, [txn], details={"is_premature": premature, "payout": payout})

    def update_fd(self, fd_id: str, updated_by: str, interest_rate: Optional[Any] = None,
                  tenure_months: Optional[int] = None, principal: Optional[Any] = None) -> Posting:
        """
        Change rate, tenure or principal of an active FD

        Maturity amount and date are recomputed from the start date. A
        principal change is recorded as an ``fd_adjustment`` for the
        difference.
        """
        if interest_rate is None and tenure_months is None and principal is None:
            raise ValidationError("No fields to update")
        new_rate = parse_rate(interest_rate) if interest_rate is not None else None
        new_tenure = parse_tenure(tenure_months) if tenure_months is not None else None
        new_principal = parse_money(principal, self.currency, "Principal amount") if principal is not None else None

        with self.storage.atomic():
            fd = self.require_fd(fd_id)
            if fd.status != FDStatus.ACTIVE:
                raise InvalidStatusError("Can only update active FDs")

            old_principal = fd.principal
            if new_rate is not None:
                fd.interest_rate = new_rate
            if new_tenure is not None:
                fd.tenure_months = new_tenure
            if new_principal is not None:
                fd.principal = new_principal

            fd.maturity_amount = Money(
                compound_maturity(fd.principal.amount, fd.interest_rate, fd.tenure_months), self.currency
            )
            fd.maturity_date = add_months(fd.start_date, fd.tenure_months)
            fd.updated_at = datetime.now(timezone.utc)
            self._save_fd(fd)

            transactions = []
            if fd.principal != old_principal:
                delta = fd.principal - old_principal
                transactions.append(self.journal.append(
                    ProductKind.FIXED_DEPOSIT, fd.id, fd.customer_id, TransactionType.FD_ADJUSTMENT,
                    amount=Money(abs(delta.amount), self.currency),
                    processed_by=updated_by,
                    description=(
                        f"FD principal changed from {old_principal.amount} "
                        f"to {fd.principal.amount} - {fd.fd_number}"
                    )
                ))

            self.audit_trail.log_event(
                AuditEventType.FD_UPDATED, "fixed_deposit", fd.id,
                description=f"Updated FD {fd.fd_number}",
                metadata={
                    "interest_rate": fd.interest_rate,
                    "tenure_months": fd.tenure_months,
                    "principal": fd.principal.amount,
                    "maturity_amount": fd.maturity_amount.amount
                },
                user_id=updated_by
            )

        log_action(self.logger, "info", f"FD {fd.fd_number} updated",
                   user_id=updated_by, action="fd_update", resource=f"fixed_deposit:{fd.id}")
        return Posting(fd, transactions)

    def get_stats(self) -> Dict[str, Any]:
        fds = [self._fd_from_dict(row) for row in self.storage.load_all(self.table_name)]
        active = [fd for fd in fds if fd.status == FDStatus.ACTIVE]
        return {
            'total_fds': len(fds),
            'active_fds': len(active),
            'matured_fds': sum(1 for fd in fds if fd.status == FDStatus.MATURED),
            'premature_closed': sum(1 for fd in fds if fd.status == FDStatus.CLOSED and fd.is_premature),
            'total_active_amount': sum((fd.principal.amount for fd in active), Decimal('0')),
            'total_maturity_amount': sum((fd.maturity_amount.amount for fd in active), Decimal('0')),
            'avg_interest_rate': (
                (sum(fd.interest_rate for fd in active) / len(active)).quantize(Decimal('0.01'))
                if active else Decimal('0')
            )
        }

    def _save_fd(self, fd: FixedDeposit) -> None:
        self.storage.save(self.table_name, fd.id, self._fd_to_dict(fd))

    def _fd_to_dict(self, fd: FixedDeposit) -> Dict:
        return {
            'id': fd.id,
            'created_at': fd.created_at.isoformat(),
            'updated_at': fd.updated_at.isoformat(),
            'fd_number': fd.fd_number,
            'customer_id': fd.customer_id,
            'currency': fd.principal.currency.code,
            'principal': str(fd.principal.amount),
            'interest_rate': str(fd.interest_rate),
            'tenure_months': fd.tenure_months,
            'maturity_amount': str(fd.maturity_amount.amount),
            'start_date': fd.start_date.isoformat(),
            'maturity_date': fd.maturity_date.isoformat(),
            'status': fd.status.value,
            'is_premature': fd.is_premature,
            'premature_date': fd.premature_date.isoformat() if fd.premature_date else None,
            'premature_amount': str(fd.premature_amount.amount) if fd.premature_amount else None,
            'closed_date': fd.closed_date.isoformat() if fd.closed_date else None,
            'created_by': fd.created_by
        }

    def _fd_from_dict(self, data: Dict) -> FixedDeposit:
        currency = Currency[data['currency']]
        return FixedDeposit(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            fd_number=data['fd_number'],
            customer_id=data['customer_id'],
            principal=Money(Decimal(data['principal']), currency),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=data['tenure_months'],
            maturity_amount=Money(Decimal(data['maturity_amount']), currency),
            start_date=date.fromisoformat(data['start_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            status=FDStatus(data['status']),
            is_premature=data['is_premature'],
            premature_date=date.fromisoformat(data['premature_date']) if data.get('premature_date') else None,
            premature_amount=(
                Money(Decimal(data['premature_amount']), currency) if data.get('premature_amount') else None
            ),
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None,
            created_by=data.get('created_by')
        )

    def to_dict(self, fd: FixedDeposit) -> Dict:
        return self._fd_to_dict(fd)
