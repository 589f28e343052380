"""
Account Ledger Module

Savings, current and salary accounts. The balance is only ever changed by
the operations below, each of which writes the account and appends the
matching history record inside one ``storage.atomic()`` unit: deposit,
withdraw, transfer, interest credit and reversal. Accounts are never hard
deleted; a zero-balance account can be deactivated.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import daily_interest, parse_rate
from .config import LedgerConfig, get_config
from .currency import Money, Currency, parse_money
from .customers import CustomerManager
from .errors import (
    BusinessRuleError, FailureKind, InsufficientFundsError, LedgerError, NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action
from .numbering import NumberKind
from .storage import StorageInterface, StorageRecord
from .transactions import (
    LedgerTransaction, Posting, ProductKind, TransactionJournal, TransactionType
)


class AccountType(Enum):
    """Deposit account products"""
    SAVINGS = "savings"
    CURRENT = "current"
    SALARY = "salary"


REVERSIBLE_TYPES = {
    TransactionType.DEPOSIT: TransactionType.DEPOSIT_REVERSAL,
    TransactionType.WITHDRAWAL: TransactionType.WITHDRAWAL_REVERSAL,
    TransactionType.INTEREST_CREDIT: TransactionType.INTEREST_REVERSAL,
}


@dataclass
class Account(StorageRecord):
    """
    Deposit account; balance never negative
    """
    account_number: str
    customer_id: str
    account_type: AccountType
    balance: Money
    interest_rate: Decimal
    is_active: bool = True
    created_by: Optional[str] = None
    last_transaction_at: Optional[datetime] = None

    @property
    def currency(self) -> Currency:
        return self.balance.currency


@dataclass
class InterestCalculation(StorageRecord):
    """Audit row written alongside every interest credit"""
    account_id: str
    customer_id: str
    calculation_date: date
    opening_balance: Money
    closing_balance: Money
    interest_rate: Decimal
    interest_amount: Money
    days_count: int
    transaction_id: str
    processed_by: str


@dataclass
class InterestResult:
    """Outcome of applying interest to one account"""
    account_id: str
    applied: bool
    interest_amount: Money
    account: Optional[Account] = None
    transaction: Optional[LedgerTransaction] = None
    calculation: Optional[InterestCalculation] = None
    message: str = ""


class AccountManager:
    """
    Account lifecycle and balance-mutating operations
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
        self.accounts_table = "accounts"
        self.interest_table = "interest_calculations"
        self.currency = Currency[self.config.default_currency]
        self.logger = get_logger("bank_ledger.accounts")

    def create_account(
        self,
        customer_id: str,
        created_by: str,
        account_type: AccountType = AccountType.SAVINGS,
        initial_balance: Any = 0,
        interest_rate: Optional[Any] = None
    ) -> Posting:
        """
        Open an account for an active customer

        A positive initial balance is booked as an "Initial deposit"
        transaction so history and balance agree from the start.
        """
        if not isinstance(account_type, AccountType):
            try:
                account_type = AccountType(account_type)
            except ValueError:
                raise ValidationError("Invalid account type")
        opening = parse_money(initial_balance, self.currency, "Initial balance", allow_zero=True)
        rate = (
            parse_rate(interest_rate, allow_zero=True)
            if interest_rate is not None else self.config.account_interest_rate
        )

        with self.storage.atomic():
            self.customers.require_active(customer_id)

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=self.journal.numbering.next_number(NumberKind.ACCOUNT),
                customer_id=customer_id,
                account_type=account_type,
                balance=opening,
                interest_rate=rate,
                created_by=created_by,
                last_transaction_at=now if opening.is_positive() else None
            )
            self._save_account(account)

            transactions = []
            if opening.is_positive():
                transactions.append(self.journal.append(
                    ProductKind.ACCOUNT, account.id, customer_id, TransactionType.DEPOSIT,
                    amount=opening,
                    processed_by=created_by,
                    description="Initial deposit",
                    balance_before=Money.zero(self.currency),
                    balance_after=opening
                ))

            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account.id,
                description=f"Opened {account_type.value} account {account.account_number}",
                metadata={"customer_id": customer_id, "initial_balance": opening.amount},
                user_id=created_by
            )

        log_action(self.logger, "info", f"Account {account.account_number} created",
                   user_id=created_by, action="account_create", resource=f"account:{account.id}")
        return Posting(account, transactions)

    # Lookups

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return self._account_from_dict(data) if data else None

    def require_account(self, account_id: str) -> Account:
        """Active account or NotFoundError"""
        account = self.get_account(account_id)
        if not account or not account.is_active:
            raise NotFoundError("account", account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        row = self.storage.find_one(self.accounts_table, {'account_number': account_number})
        return self._account_from_dict(row) if row else None

    def list_accounts(
        self,
        customer_id: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        active_only: bool = True
    ) -> List[Account]:
        filters: Dict[str, Any] = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if account_type:
            filters['account_type'] = account_type.value
        accounts = [self._account_from_dict(row) for row in self.storage.find(self.accounts_table, filters)]
        if active_only:
            accounts = [a for a in accounts if a.is_active]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def get_transaction_history(self, account_id: str, **filters: Any) -> List[LedgerTransaction]:
        """Newest-first history; see TransactionJournal.history for filters"""
        if not self.get_account(account_id):
            raise NotFoundError("account", account_id)
        return self.journal.history(ProductKind.ACCOUNT, account_id, **filters)

    # Balance-mutating operations

    def deposit(self, account_id: str, amount: Any, processed_by: str,
                description: Optional[str] = None) -> Posting:
        """Credit an account"""
        money = parse_money(amount, self.currency)

        with self.storage.atomic():
            account = self.require_account(account_id)
            txn = self._post(account, TransactionType.DEPOSIT, money, processed_by,
                             description or "Cash deposit")
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_DEPOSIT, "account", account.id,
                description=f"Deposited {money.to_string()} to {account.account_number}",
                metadata={"transaction_id": txn.transaction_id, "amount": money.amount},
                user_id=processed_by
            )

        self._log_posting(txn, processed_by)
        return Posting(account, [txn])

    def withdraw(self, account_id: str, amount: Any, processed_by: str,
                 description: Optional[str] = None) -> Posting:
        """Debit an account; the balance may not go below zero"""
        money = parse_money(amount, self.currency)

        with self.storage.atomic():
            account = self.require_account(account_id)
            self._check_funds(account, money)
            txn = self._post(account, TransactionType.WITHDRAWAL, money, processed_by,
                             description or "Cash withdrawal")
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_WITHDRAWAL, "account", account.id,
                description=f"Withdrew {money.to_string()} from {account.account_number}",
                metadata={"transaction_id": txn.transaction_id, "amount": money.amount},
                user_id=processed_by
            )

        self._log_posting(txn, processed_by)
        return Posting(account, [txn])

    def transfer(self, from_account_id: str, to_account_id: str, amount: Any,
                 processed_by: str, description: Optional[str] = None) -> Posting:
        """
        Move funds between two distinct active accounts

        Both legs share one reference and are written in a single unit of
        work; every precondition is checked before either account changes.
        """
        if from_account_id == to_account_id:
            raise BusinessRuleError("Cannot transfer to the same account")
        money = parse_money(amount, self.currency)

        with self.storage.atomic():
            source = self.require_account(from_account_id)
            target = self.require_account(to_account_id)
            if source.currency != target.currency:
                raise ValidationError("Cannot transfer between accounts in different currencies")
            self._check_funds(source, money)

            reference = f"TRF{uuid.uuid4().hex[:12].upper()}"
            note = description or "Fund transfer"
            out_txn = self._post(
                source, TransactionType.TRANSFER_OUT, money, processed_by,
                f"{note} to {target.account_number}", reference=reference
            )
            in_txn = self._post(
                target, TransactionType.TRANSFER_IN, money, processed_by,
                f"{note} from {source.account_number}", reference=reference
            )
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_TRANSFER, "account", source.id,
                description=(
                    f"Transferred {money.to_string()} from {source.account_number} "
                    f"to {target.account_number}"
                ),
                metadata={"reference": reference, "to_account_id": target.id, "amount": money.amount},
                user_id=processed_by
            )

        log_action(self.logger, "info", f"Transfer {reference} posted",
                   user_id=processed_by, action="transfer", resource=f"account:{source.id}",
                   extra={"to_account_id": target.id, "amount": str(money.amount)})
        return Posting(source, [out_txn, in_txn], counterparty=target, details={"reference": reference})

    def apply_interest(self, account_id: str, processed_by: str,
                       rate_override: Optional[Any] = None) -> InterestResult:
        """
        Credit one day of interest at annual_rate / days_per_year / 100

        When the computed amount rounds to zero or less nothing is written
        and the result says so.
        """
        rate_override = parse_rate(rate_override, allow_zero=True) if rate_override is not None else None

        with self.storage.atomic():
            account = self.require_account(account_id)
            rate = rate_override if rate_override is not None else account.interest_rate
            interest = Money(
                daily_interest(account.balance.amount, rate, self.config.interest_days_per_year),
                account.currency
            )
            if not interest.is_positive():
                return InterestResult(account.id, False, Money.zero(account.currency),
                                      account=account, message="No interest to apply")

            opening = account.balance
            txn = self._post(account, TransactionType.INTEREST_CREDIT, interest, processed_by,
                             f"Interest credit @ {rate}% p.a.")

            now = datetime.now(timezone.utc)
            calculation = InterestCalculation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                customer_id=account.customer_id,
                calculation_date=txn.transaction_date,
                opening_balance=opening,
                closing_balance=account.balance,
                interest_rate=rate,
                interest_amount=interest,
                days_count=1,
                transaction_id=txn.transaction_id,
                processed_by=processed_by
            )
            self.storage.save(self.interest_table, calculation.id, self._calculation_to_dict(calculation))
            self.audit_trail.log_event(
                AuditEventType.INTEREST_CREDITED, "account", account.id,
                description=f"Credited interest {interest.to_string()} @ {rate}% p.a.",
                metadata={"transaction_id": txn.transaction_id, "opening_balance": opening.amount},
                user_id=processed_by
            )

        self._log_posting(txn, processed_by)
        return InterestResult(account.id, True, interest, account=account,
                              transaction=txn, calculation=calculation)

    def apply_interest_to_all(self, processed_by: str) -> List[InterestResult]:
        """
        Daily interest run over every active account

        Each account is its own unit of work. A failure on one account
        does not undo the others; it is logged and reported as a result
        with ``applied`` False and the error message.
        """
        results = []
        for account in self.list_accounts():
            try:
                results.append(self.apply_interest(account.id, processed_by))
            except LedgerError as e:
                level = "error" if e.kind == FailureKind.INTEGRITY else "warning"
                log_action(self.logger, level, f"Interest skipped for {account.id}: {e}",
                           user_id=processed_by, action="interest_credit", resource=f"account:{account.id}")
                results.append(InterestResult(account.id, False, Money.zero(account.currency),
                                              account=account, message=e.message))
        return results

    def reverse_transaction(self, transaction_id: str, processed_by: str,
                            reason: Optional[str] = None) -> Posting:
        """
        Book the opposite of a deposit, withdrawal or interest credit

        The original record is left untouched; the reversal references it
        and a second reversal of the same record is refused.
        """
        original = self.journal.get_transaction(ProductKind.ACCOUNT, transaction_id)
        reversal_type = REVERSIBLE_TYPES.get(original.transaction_type)
        if reversal_type is None:
            raise BusinessRuleError(f"Cannot reverse a {original.transaction_type.tag} transaction")
        reason = reason or "No reason provided"

        with self.storage.atomic():
            if any(t.transaction_type in REVERSIBLE_TYPES.values()
                   for t in self.journal.find_by_reference(ProductKind.ACCOUNT, original.transaction_id)):
                raise BusinessRuleError("Transaction already reversed")

            account = self.require_account(original.entity_id)
            if reversal_type.effect.value == "debit" and account.balance < original.amount:
                raise InsufficientFundsError("Cannot reverse: would result in negative balance")

            txn = self._post(
                account, reversal_type, original.amount, processed_by,
                f"Reversal of transaction {original.transaction_id} - {reason}",
                reference=original.transaction_id
            )
            self.audit_trail.log_event(
                AuditEventType.TRANSACTION_REVERSED, "account", account.id,
                description=f"Reversed transaction {original.transaction_id} - Reason: {reason}",
                metadata={"original_transaction_id": original.transaction_id,
                          "reversal_transaction_id": txn.transaction_id},
                user_id=processed_by
            )

        self._log_posting(txn, processed_by)
        return Posting(account, [txn], details={"original_transaction_id": original.transaction_id})

    def delete_account(self, account_id: str, processed_by: str) -> Account:
        """Soft delete: only an account whose balance is exactly zero"""
        with self.storage.atomic():
            account = self.require_account(account_id)
            if not account.balance.is_zero():
                raise BusinessRuleError("Cannot delete account with non-zero balance")

            account.is_active = False
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_DEACTIVATED, "account", account.id,
                description=f"Deactivated account {account.account_number}",
                user_id=processed_by
            )

        log_action(self.logger, "info", f"Account {account.account_number} deactivated",
                   user_id=processed_by, action="account_delete", resource=f"account:{account.id}")
        return account

    def get_stats(self) -> Dict[str, Any]:
        accounts = [self._account_from_dict(row) for row in self.storage.load_all(self.accounts_table)]
        active = [a for a in accounts if a.is_active]
        total_balance = sum((a.balance.amount for a in active), Decimal('0'))
        stats: Dict[str, Any] = {
            'total_accounts': len(accounts),
            'active_accounts': len(active),
            'total_balance': total_balance,
            'average_balance': (total_balance / len(active)).quantize(Decimal('0.01')) if active else Decimal('0'),
        }
        for account_type in AccountType:
            stats[f'{account_type.value}_accounts'] = sum(1 for a in active if a.account_type == account_type)
        return stats

    def interest_calculations(self, account_id: str) -> List[InterestCalculation]:
        rows = self.storage.find(self.interest_table, {'account_id': account_id})
        calculations = [self._calculation_from_dict(row) for row in rows]
        calculations.sort(key=lambda c: c.created_at)
        return calculations

    # Internals

    def _check_funds(self, account: Account, amount: Money) -> None:
        if amount > account.balance:
            raise InsufficientFundsError(
                f"Insufficient balance: available {account.balance.to_string()}, "
                f"requested {amount.to_string()}"
            )

    def _post(self, account: Account, transaction_type: TransactionType, amount: Money,
              processed_by: str, description: str, reference: Optional[str] = None) -> LedgerTransaction:
        """Apply the signed amount, persist the account, append its history record"""
        before = account.balance
        if transaction_type.effect.value == "credit":
            after = before + amount
        else:
            after = before - amount

        now = datetime.now(timezone.utc)
        account.balance = after
        account.updated_at = now
        account.last_transaction_at = now
        self._save_account(account)

        return self.journal.append(
            ProductKind.ACCOUNT, account.id, account.customer_id, transaction_type,
            amount=amount,
            processed_by=processed_by,
            description=description,
            balance_before=before,
            balance_after=after,
            reference=reference
        )

    def _log_posting(self, txn: LedgerTransaction, processed_by: str) -> None:
        log_action(
            self.logger, "info",
            f"{txn.transaction_type.tag} {txn.transaction_id} posted",
            user_id=processed_by, action=txn.transaction_type.tag,
            resource=f"account:{txn.entity_id}",
            extra={"amount": str(txn.amount.amount), "balance_after": str(txn.balance_after.amount)}
        )

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'account_number': account.account_number,
            'customer_id': account.customer_id,
            'account_type': account.account_type.value,
            'currency': account.currency.code,
            'balance': str(account.balance.amount),
            'interest_rate': str(account.interest_rate),
            'is_active': account.is_active,
            'created_by': account.created_by,
            'last_transaction_at': account.last_transaction_at.isoformat() if account.last_transaction_at else None
        }

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            account_type=AccountType(data['account_type']),
            balance=Money(Decimal(data['balance']), Currency[data['currency']]),
            interest_rate=Decimal(data['interest_rate']),
            is_active=data['is_active'],
            created_by=data.get('created_by'),
            last_transaction_at=(
                datetime.fromisoformat(data['last_transaction_at']) if data.get('last_transaction_at') else None
            )
        )

    def _calculation_to_dict(self, calculation: InterestCalculation) -> Dict:
        return {
            'id': calculation.id,
            'created_at': calculation.created_at.isoformat(),
            'updated_at': calculation.updated_at.isoformat(),
            'account_id': calculation.account_id,
            'customer_id': calculation.customer_id,
            'calculation_date': calculation.calculation_date.isoformat(),
            'currency': calculation.interest_amount.currency.code,
            'opening_balance': str(calculation.opening_balance.amount),
            'closing_balance': str(calculation.closing_balance.amount),
            'interest_rate': str(calculation.interest_rate),
            'interest_amount': str(calculation.interest_amount.amount),
            'days_count': calculation.days_count,
            'transaction_id': calculation.transaction_id,
            'processed_by': calculation.processed_by
        }

    def _calculation_from_dict(self, data: Dict) -> InterestCalculation:
        currency = Currency[data['currency']]
        return InterestCalculation(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            customer_id=data['customer_id'],
            calculation_date=date.fromisoformat(data['calculation_date']),
            opening_balance=Money(Decimal(data['opening_balance']), currency),
            closing_balance=Money(Decimal(data['closing_balance']), currency),
            interest_rate=Decimal(data['interest_rate']),
            interest_amount=Money(Decimal(data['interest_amount']), currency),
            days_count=data['days_count'],
            transaction_id=data['transaction_id'],
            processed_by=data['processed_by']
        )

    def to_dict(self, account: Account) -> Dict:
        return self._account_to_dict(account)
