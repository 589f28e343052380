"""
Transaction Journal Module

Append-only history of every balance-affecting event, one history table per
product. Each record carries the amount, the before/after snapshot of the
entity's balance (or loan outstanding) where one applies, a reference tying
related records together (both legs of a transfer, a reversal and its
original) and the operator who processed it.

Records are never updated or deleted here. Callers append inside the same
``storage.atomic()`` unit as the entity write they describe.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .errors import IntegrityError, NotFoundError
from .logging_config import get_logger
from .numbering import NumberingService, NumberKind
from .storage import StorageInterface, StorageRecord


class ProductKind(Enum):
    """Ledger products, each with its own history table"""
    ACCOUNT = ("account", "account_transactions", NumberKind.ACCOUNT_TRANSACTION)
    FIXED_DEPOSIT = ("fixed_deposit", "fd_transactions", NumberKind.FD_TRANSACTION)
    RECURRING_DEPOSIT = ("recurring_deposit", "rd_transactions", NumberKind.RD_TRANSACTION)
    LOAN = ("loan", "loan_transactions", NumberKind.LOAN_TRANSACTION)

    def __init__(self, label: str, table: str, number_kind: NumberKind):
        self.label = label
        self.table = table
        self.number_kind = number_kind


HISTORY_TABLES = tuple(product.table for product in ProductKind) + ("interest_calculations",)


class BalanceEffect(Enum):
    """How a transaction type moves the entity's balance snapshot"""
    CREDIT = "credit"
    DEBIT = "debit"
    ADJUSTMENT = "adjustment"  # Either direction
    NONE = "none"              # No snapshot recorded


class TransactionType(Enum):
    """Transaction type tags"""
    # Accounts
    DEPOSIT = ("deposit", BalanceEffect.CREDIT)
    WITHDRAWAL = ("withdrawal", BalanceEffect.DEBIT)
    TRANSFER_IN = ("transfer_in", BalanceEffect.CREDIT)
    TRANSFER_OUT = ("transfer_out", BalanceEffect.DEBIT)
    INTEREST_CREDIT = ("interest_credit", BalanceEffect.CREDIT)
    DEPOSIT_REVERSAL = ("deposit_reversal", BalanceEffect.DEBIT)
    WITHDRAWAL_REVERSAL = ("withdrawal_reversal", BalanceEffect.CREDIT)
    INTEREST_REVERSAL = ("interest_reversal", BalanceEffect.DEBIT)

    # Fixed deposits
    FD_CREATE = ("fd_create", BalanceEffect.NONE)
    FD_ADJUSTMENT = ("fd_adjustment", BalanceEffect.NONE)
    FD_MATURE = ("fd_mature", BalanceEffect.NONE)
    FD_PREMATURE_CLOSE = ("fd_premature_close", BalanceEffect.NONE)

    # Recurring deposits (snapshot tracks total paid)
    RD_CREATE = ("rd_create", BalanceEffect.CREDIT)
    RD_INSTALLMENT = ("rd_installment", BalanceEffect.CREDIT)
    RD_MATURE = ("rd_mature", BalanceEffect.NONE)
    RD_PREMATURE_CLOSE = ("rd_premature_close", BalanceEffect.NONE)

    # Loans (snapshot tracks outstanding)
    LOAN_DISBURSEMENT = ("loan_disbursement", BalanceEffect.CREDIT)
    LOAN_PAYMENT = ("loan_payment", BalanceEffect.DEBIT)
    LOAN_ADJUSTMENT = ("loan_adjustment", BalanceEffect.ADJUSTMENT)
    LOAN_FORECLOSE = ("loan_foreclose", BalanceEffect.DEBIT)

    def __init__(self, tag: str, effect: BalanceEffect):
        self.tag = tag
        self.effect = effect

    @classmethod
    def from_tag(cls, tag: str) -> 'TransactionType':
        for member in cls:
            if member.tag == tag:
                return member
        raise ValueError(f"Unknown transaction type: {tag}")


@dataclass
class LedgerTransaction(StorageRecord):
    """
    Immutable history record
    """
    transaction_id: str
    product: ProductKind
    entity_id: str
    customer_id: str
    transaction_type: TransactionType
    amount: Money
    sequence: int
    description: str
    processed_by: str
    balance_before: Optional[Money] = None
    balance_after: Optional[Money] = None
    reference: Optional[str] = None
    installment_number: Optional[int] = None
    principal_component: Optional[Money] = None
    interest_component: Optional[Money] = None
    rounding_adjustment: Optional[Money] = None

    @property
    def has_snapshot(self) -> bool:
        return self.balance_after is not None

    @property
    def is_credit(self) -> bool:
        return self.transaction_type.effect == BalanceEffect.CREDIT

    @property
    def transaction_date(self) -> date:
        return self.created_at.date()


class TransactionJournal:
    """
    Appends and queries per-product transaction history
    """

    def __init__(
        self,
        storage: StorageInterface,
        numbering: NumberingService,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.numbering = numbering
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("bank_ledger.transactions")
        for product in ProductKind:
            self.storage.create_index(product.table, 'entity_id')

    def append(
        self,
        product: ProductKind,
        entity_id: str,
        customer_id: str,
        transaction_type: TransactionType,
        amount: Money,
        processed_by: str,
        description: str,
        balance_before: Optional[Money] = None,
        balance_after: Optional[Money] = None,
        reference: Optional[str] = None,
        installment_number: Optional[int] = None,
        principal_component: Optional[Money] = None,
        interest_component: Optional[Money] = None,
        rounding_adjustment: Optional[Money] = None
    ) -> LedgerTransaction:
        """
        Append one record to the product's history table

        The snapshot must agree with the type's sign convention; a mismatch
        is a programming error surfaced as IntegrityError so the enclosing
        unit of work rolls back.
        """
        self._check_snapshot(transaction_type, amount, balance_before, balance_after, rounding_adjustment)

        now = self.clock()
        txn = LedgerTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=self.numbering.next_number(product.number_kind),
            product=product,
            entity_id=entity_id,
            customer_id=customer_id,
            transaction_type=transaction_type,
            amount=amount,
            sequence=self._next_sequence(product, entity_id),
            description=description,
            processed_by=processed_by,
            balance_before=balance_before,
            balance_after=balance_after,
            reference=reference,
            installment_number=installment_number,
            principal_component=principal_component,
            interest_component=interest_component,
            rounding_adjustment=rounding_adjustment
        )
        self.storage.save(product.table, txn.id, self._transaction_to_dict(txn))
        self.logger.debug(f"Appended {transaction_type.tag} {txn.transaction_id} for {product.label} {entity_id}")
        return txn

    def _check_snapshot(
        self,
        transaction_type: TransactionType,
        amount: Money,
        before: Optional[Money],
        after: Optional[Money],
        rounding_adjustment: Optional[Money]
    ) -> None:
        effect = transaction_type.effect
        if effect == BalanceEffect.NONE:
            return
        if before is None or after is None:
            raise IntegrityError(f"{transaction_type.tag} requires a balance snapshot")

        adjustment = rounding_adjustment or Money.zero(amount.currency)
        if effect == BalanceEffect.CREDIT:
            consistent = after == before + amount
        elif effect == BalanceEffect.DEBIT:
            consistent = after == before - amount - adjustment
        else:
            consistent = after in (before + amount, before - amount)

        if not consistent or after.is_negative():
            raise IntegrityError(
                f"Inconsistent {transaction_type.tag} snapshot: "
                f"{before.amount} -> {after.amount} for amount {amount.amount}"
            )

    def _next_sequence(self, product: ProductKind, entity_id: str) -> int:
        last = self.storage.latest(product.table, 'sequence', {'entity_id': entity_id})
        return last['sequence'] + 1 if last else 1

    # Queries

    def get_transaction(self, product: ProductKind, transaction_id: str) -> LedgerTransaction:
        """Look up by human-facing transaction id"""
        row = self.storage.find_one(product.table, {'transaction_id': transaction_id})
        if row is None:
            raise NotFoundError("transaction", transaction_id)
        return self._transaction_from_dict(row)

    def entity_transactions(self, product: ProductKind, entity_id: str) -> List[LedgerTransaction]:
        """Full history of one entity, oldest first"""
        txns = [
            self._transaction_from_dict(row)
            for row in self.storage.find(product.table, {'entity_id': entity_id})
        ]
        txns.sort(key=lambda t: t.sequence)
        return txns

    def history(
        self,
        product: ProductKind,
        entity_id: str,
        transaction_type: Optional[TransactionType] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[LedgerTransaction]:
        """
        Filtered history of one entity, newest first

        Args:
            product: Product whose history table is queried
            entity_id: Owning entity
            transaction_type: Only this type
            start_date: Inclusive lower bound on transaction date
            end_date: Inclusive upper bound on transaction date
            min_amount: Inclusive lower bound on amount
            max_amount: Inclusive upper bound on amount
            limit: Page size
            offset: Records to skip
        """
        txns = self.entity_transactions(product, entity_id)

        if transaction_type:
            txns = [t for t in txns if t.transaction_type == transaction_type]
        if start_date:
            txns = [t for t in txns if t.transaction_date >= start_date]
        if end_date:
            txns = [t for t in txns if t.transaction_date <= end_date]
        if min_amount is not None:
            txns = [t for t in txns if t.amount.amount >= min_amount]
        if max_amount is not None:
            txns = [t for t in txns if t.amount.amount <= max_amount]

        txns.reverse()
        if limit is not None:
            return txns[offset:offset + limit]
        return txns[offset:]

    def last_with_snapshot(self, product: ProductKind, entity_id: str) -> Optional[LedgerTransaction]:
        """Most recent record that carries a balance snapshot"""
        for txn in reversed(self.entity_transactions(product, entity_id)):
            if txn.has_snapshot:
                return txn
        return None

    def find_by_reference(self, product: ProductKind, reference: str) -> List[LedgerTransaction]:
        txns = [
            self._transaction_from_dict(row)
            for row in self.storage.find(product.table, {'reference': reference})
        ]
        txns.sort(key=lambda t: (t.created_at, t.sequence))
        return txns

    def transactions_on(self, product: ProductKind, on_date: date) -> List[LedgerTransaction]:
        """All records of a product dated ``on_date``"""
        txns = [self._transaction_from_dict(row) for row in self.storage.load_all(product.table)]
        return [t for t in txns if t.transaction_date == on_date]

    def count_by_type(self, product: ProductKind, entity_id: str, transaction_type: TransactionType) -> int:
        return len(self.storage.find(
            product.table, {'entity_id': entity_id, 'transaction_type': transaction_type.tag}
        ))

    # Serialization

    def _transaction_to_dict(self, txn: LedgerTransaction) -> Dict:
        result = {
            'id': txn.id,
            'created_at': txn.created_at.isoformat(),
            'updated_at': txn.updated_at.isoformat(),
            'transaction_id': txn.transaction_id,
            'product': txn.product.label,
            'entity_id': txn.entity_id,
            'customer_id': txn.customer_id,
            'transaction_type': txn.transaction_type.tag,
            'currency': txn.amount.currency.code,
            'amount': str(txn.amount.amount),
            'sequence': txn.sequence,
            'description': txn.description,
            'processed_by': txn.processed_by,
            'reference': txn.reference,
            'installment_number': txn.installment_number
        }
        for name in ('balance_before', 'balance_after', 'principal_component',
                     'interest_component', 'rounding_adjustment'):
            value = getattr(txn, name)
            result[name] = str(value.amount) if value is not None else None
        return result

    def _transaction_from_dict(self, data: Dict) -> LedgerTransaction:
        currency = Currency[data['currency']]

        def money(key: str) -> Optional[Money]:
            raw = data.get(key)
            return Money(Decimal(raw), currency) if raw is not None else None

        product = next(p for p in ProductKind if p.label == data['product'])
        return LedgerTransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            product=product,
            entity_id=data['entity_id'],
            customer_id=data['customer_id'],
            transaction_type=TransactionType.from_tag(data['transaction_type']),
            amount=money('amount'),
            sequence=data['sequence'],
            description=data['description'],
            processed_by=data['processed_by'],
            balance_before=money('balance_before'),
            balance_after=money('balance_after'),
            reference=data.get('reference'),
            installment_number=data.get('installment_number'),
            principal_component=money('principal_component'),
            interest_component=money('interest_component'),
            rounding_adjustment=money('rounding_adjustment')
        )

    def to_dict(self, txn: LedgerTransaction) -> Dict:
        """Public JSON-safe view of a record"""
        return self._transaction_to_dict(txn)


@dataclass
class Posting:
    """
    Result of a ledger mutation: the entity as stored after the operation
    and the history records appended by it (in append order)
    """
    entity: Any
    transactions: List[LedgerTransaction] = field(default_factory=list)
    counterparty: Any = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction(self) -> Optional[LedgerTransaction]:
        return self.transactions[-1] if self.transactions else None
