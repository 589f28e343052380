"""
Customer Management Module

Customer registry. Every account, deposit and loan belongs to an active
customer; deactivated customers cannot open new products.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid
import re

from .audit import AuditTrail, AuditEventType
from .errors import BusinessRuleError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

PHONE_PATTERN = r'^[6-9]\d{9}$'
EMAIL_PATTERN = r'^[^\s@]+@[^\s@]+\.[^\s@]+$'
PAN_PATTERN = r'^[A-Z]{5}[0-9]{4}[A-Z]$'
AADHAAR_PATTERN = r'^\d{12}$'

UPDATABLE_FIELDS = ('name', 'phone', 'email', 'address', 'date_of_birth', 'pan', 'aadhaar')


@dataclass
class Customer(StorageRecord):
    """
    Customer profile
    """
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[date] = None
    pan: Optional[str] = None
    aadhaar: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Name and phone are required")
        if not self.phone or not re.match(PHONE_PATTERN, self.phone):
            raise ValidationError("Invalid phone number format")
        if self.email and not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("Invalid email format")
        if self.pan and not re.match(PAN_PATTERN, self.pan):
            raise ValidationError("Invalid PAN format")
        if self.aadhaar and not re.match(AADHAAR_PATTERN, self.aadhaar):
            raise ValidationError("Invalid Aadhaar number format")


class CustomerManager:
    """
    Customer lifecycle: registration, lookup, profile updates and deactivation
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "customers"
        self.logger = get_logger("bank_ledger.customers")

    def create_customer(
        self,
        name: str,
        phone: str,
        created_by: str,
        email: Optional[str] = None,
        address: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        pan: Optional[str] = None,
        aadhaar: Optional[str] = None
    ) -> Customer:
        """
        Register a new customer

        Phone, PAN and Aadhaar must be unique among active customers.
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip() if name else name,
            phone=phone,
            email=email,
            address=address,
            date_of_birth=date_of_birth,
            pan=pan,
            aadhaar=aadhaar,
            created_by=created_by
        )

        with self.storage.atomic():
            self._check_unique(customer)
            self._save_customer(customer)
            self.audit_trail.log_event(
                AuditEventType.CUSTOMER_CREATED, "customer", customer.id,
                description=f"Created customer {customer.name}",
                metadata={"phone": customer.phone},
                user_id=created_by
            )

        log_action(self.logger, "info", f"Customer {customer.id} created",
                   user_id=created_by, action="customer_create", resource=f"customer:{customer.id}")
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.table_name, customer_id)
        return self._customer_from_dict(data) if data else None

    def require_active(self, customer_id: str) -> Customer:
        """Return the customer or raise NotFoundError if missing or inactive"""
        customer = self.get_customer(customer_id)
        if not customer or not customer.is_active:
            raise NotFoundError("customer", customer_id, "Customer not found or inactive")
        return customer

    def list_customers(self, active_only: bool = True, search: Optional[str] = None) -> List[Customer]:
        customers = [self._customer_from_dict(row) for row in self.storage.load_all(self.table_name)]
        if active_only:
            customers = [c for c in customers if c.is_active]
        if search:
            term = search.lower()
            customers = [
                c for c in customers
                if term in c.name.lower() or term in c.phone or (c.email and term in c.email.lower())
            ]
        customers.sort(key=lambda c: c.created_at)
        return customers

    def update_customer(self, customer_id: str, updated_by: str, **changes: Any) -> Customer:
        """Update profile fields; unknown fields are a validation error"""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("No fields to update")

        with self.storage.atomic():
            current = self.require_active(customer_id)
            data = self._customer_to_dict(current)
            data.update({k: (v.isoformat() if isinstance(v, date) else v) for k, v in changes.items()})
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            customer = self._customer_from_dict(data)

            self._check_unique(customer)
            self._save_customer(customer)
            self.audit_trail.log_event(
                AuditEventType.CUSTOMER_UPDATED, "customer", customer.id,
                description=f"Updated customer fields: {', '.join(sorted(changes))}",
                user_id=updated_by
            )
        return customer

    def deactivate_customer(self, customer_id: str, deactivated_by: str,
                            open_products: int = 0) -> Customer:
        """Soft-delete a customer that holds no open products"""
        if open_products:
            raise BusinessRuleError("Cannot deactivate customer with open accounts, deposits or loans")

        with self.storage.atomic():
            customer = self.require_active(customer_id)
            customer.is_active = False
            customer.updated_at = datetime.now(timezone.utc)
            self._save_customer(customer)
            self.audit_trail.log_event(
                AuditEventType.CUSTOMER_DEACTIVATED, "customer", customer.id,
                description=f"Deactivated customer {customer.name}",
                user_id=deactivated_by
            )
        return customer

    def _check_unique(self, customer: Customer) -> None:
        for field_name, label in (('phone', 'Phone number'), ('pan', 'PAN'), ('aadhaar', 'Aadhaar number')):
            value = getattr(customer, field_name)
            if not value:
                continue
            clashes = [
                row for row in self.storage.find(self.table_name, {field_name: value, 'is_active': True})
                if row['id'] != customer.id
            ]
            if clashes:
                raise BusinessRuleError(f"{label} already exists")

    def _save_customer(self, customer: Customer) -> None:
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def _customer_to_dict(self, customer: Customer) -> Dict:
        result = customer.to_dict()
        if customer.date_of_birth:
            result['date_of_birth'] = customer.date_of_birth.isoformat()
        return result

    def _customer_from_dict(self, data: Dict) -> Customer:
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if data.get('date_of_birth'):
            data['date_of_birth'] = date.fromisoformat(data['date_of_birth'])
        return Customer(**data)

    def to_dict(self, customer: Customer) -> Dict:
        return self._customer_to_dict(customer)
