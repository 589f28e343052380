"""
Error Taxonomy Module

Typed failures raised by ledger operations and the structured result the
service boundary hands back to callers. Validation, not-found and
business-rule failures are expected conditions; integrity failures abort the
operation (everything rolls back) but never the process.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FailureKind(Enum):
    """Failure categories reported to callers"""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    BUSINESS_RULE = "business_rule"
    INTEGRITY = "integrity"


class LedgerError(Exception):
    """Base class for all ledger failures"""

    kind = FailureKind.INTEGRITY
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input; nothing was attempted"""
    kind = FailureKind.VALIDATION


class NotFoundError(LedgerError):
    """Referenced entity does not exist or is inactive"""
    kind = FailureKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str, message: Optional[str] = None):
        super().__init__(message or f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class BusinessRuleError(LedgerError):
    """Request is well-formed but violates a ledger rule"""
    kind = FailureKind.BUSINESS_RULE


class InsufficientFundsError(BusinessRuleError):
    """Debit would drive a balance below zero"""


class InvalidStatusError(BusinessRuleError):
    """Entity is not in a status that allows the requested transition"""


class IntegrityError(LedgerError):
    """Infrastructure failure; the operation is rolled back"""
    kind = FailureKind.INTEGRITY


class NumberingExhaustedError(IntegrityError):
    """Numbering service could not find a free identifier within its retry cap"""


class PersistenceError(IntegrityError):
    """Storage backend failed mid-operation"""


@dataclass
class Failure:
    """Structured failure description"""
    kind: FailureKind
    message: str
    retryable: bool = False

    @classmethod
    def from_error(cls, error: LedgerError) -> 'Failure':
        return cls(kind=error.kind, message=error.message, retryable=error.retryable)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}


@dataclass
class OperationResult:
    """
    Outcome of a ledger operation at the service boundary

    On success ``data`` holds the updated entity (or report) and
    ``transactions`` the records appended by the operation. On failure only
    ``failure`` is set.
    """
    success: bool
    data: Any = None
    transactions: List[Any] = field(default_factory=list)
    failure: Optional[Failure] = None

    @property
    def transaction(self) -> Any:
        return self.transactions[0] if self.transactions else None

    @classmethod
    def ok(cls, data: Any = None, transactions: Optional[List[Any]] = None) -> 'OperationResult':
        return cls(success=True, data=data, transactions=list(transactions or []))

    @classmethod
    def fail(cls, error: LedgerError) -> 'OperationResult':
        return cls(success=False, failure=Failure.from_error(error))
