"""
Test suite for customer management
"""

import pytest
from datetime import date

from bank_ledger.audit import AuditTrail, AuditEventType
from bank_ledger.customers import CustomerManager
from bank_ledger.errors import BusinessRuleError, NotFoundError, ValidationError
from bank_ledger.storage import InMemoryStorage


class TestCustomerManager:
    """Test customer registration and lifecycle"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.customers = CustomerManager(self.storage, self.audit)

    def test_create_customer(self):
        customer = self.customers.create_customer(
            "  Asha Rao ", "9876543210", "teller-1",
            email="asha@example.com", pan="ABCDE1234F", date_of_birth=date(1990, 5, 17)
        )

        assert customer.name == "Asha Rao"
        assert customer.is_active
        loaded = self.customers.get_customer(customer.id)
        assert loaded.date_of_birth == date(1990, 5, 17)
        assert loaded.pan == "ABCDE1234F"

        events = self.audit.get_events_for_entity("customer", customer.id)
        assert events[0].event_type == AuditEventType.CUSTOMER_CREATED

    @pytest.mark.parametrize("kwargs, message", [
        ({"name": "", "phone": "9876543210"}, "Name and phone are required"),
        ({"name": "Asha", "phone": "12345"}, "Invalid phone number format"),
        ({"name": "Asha", "phone": "9876543210", "email": "not-an-email"}, "Invalid email format"),
        ({"name": "Asha", "phone": "9876543210", "pan": "abcde1234f"}, "Invalid PAN format"),
        ({"name": "Asha", "phone": "9876543210", "aadhaar": "1234"}, "Invalid Aadhaar number format"),
    ])
    def test_validation(self, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            self.customers.create_customer(created_by="teller-1", **kwargs)
        assert self.storage.count("customers") == 0

    def test_phone_must_be_unique(self):
        self.customers.create_customer("Asha", "9876543210", "teller-1")
        with pytest.raises(BusinessRuleError, match="Phone number already exists"):
            self.customers.create_customer("Ravi", "9876543210", "teller-1")

    def test_phone_reusable_after_deactivation(self):
        first = self.customers.create_customer("Asha", "9876543210", "teller-1")
        self.customers.deactivate_customer(first.id, "teller-1")

        second = self.customers.create_customer("Ravi", "9876543210", "teller-1")
        assert second.is_active

    def test_update_customer(self):
        customer = self.customers.create_customer("Asha", "9876543210", "teller-1")
        updated = self.customers.update_customer(customer.id, "teller-2", address="12 MG Road")

        assert updated.address == "12 MG Road"
        assert self.customers.get_customer(customer.id).address == "12 MG Road"

    def test_update_rejects_unknown_and_empty(self):
        customer = self.customers.create_customer("Asha", "9876543210", "teller-1")
        with pytest.raises(ValidationError, match="Cannot update fields: balance"):
            self.customers.update_customer(customer.id, "teller-1", balance=5)
        with pytest.raises(ValidationError, match="No fields to update"):
            self.customers.update_customer(customer.id, "teller-1")

    def test_invalid_update_leaves_customer_unchanged(self):
        customer = self.customers.create_customer("Asha", "9876543210", "teller-1")
        with pytest.raises(ValidationError):
            self.customers.update_customer(customer.id, "teller-1", phone="123")
        assert self.customers.get_customer(customer.id).phone == "9876543210"

    def test_deactivate(self):
        customer = self.customers.create_customer("Asha", "9876543210", "teller-1")

        with pytest.raises(BusinessRuleError, match="open accounts"):
            self.customers.deactivate_customer(customer.id, "teller-1", open_products=2)

        self.customers.deactivate_customer(customer.id, "teller-1")
        with pytest.raises(NotFoundError, match="Customer not found or inactive"):
            self.customers.require_active(customer.id)
        assert self.customers.list_customers() == []
        assert len(self.customers.list_customers(active_only=False)) == 1

    def test_search(self):
        self.customers.create_customer("Asha Rao", "9876543210", "teller-1")
        self.customers.create_customer("Ravi Kumar", "9123456789", "teller-1", email="ravi@example.com")

        assert [c.name for c in self.customers.list_customers(search="ravi@")] == ["Ravi Kumar"]
        assert [c.name for c in self.customers.list_customers(search="98765")] == ["Asha Rao"]
