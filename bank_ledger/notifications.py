"""
Notification Module

Customer alerts for ledger events: welcome messages, transaction alerts and
maturity alerts. Alerts are rendered from templates and written to an
outbox table as pending rows; ``process_queue()`` later hands them to a
channel provider, counting attempts and giving up after a cap. Ledger
operations never wait on delivery.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .customers import CustomerManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .transactions import LedgerTransaction


class NotificationChannel(Enum):
    """Available notification channels"""
    EMAIL = "email"
    WEBHOOK = "webhook"
    LOG = "log"


class NotificationType(Enum):
    """Template keys"""
    WELCOME = "welcome"
    TRANSACTION_ALERT = "transaction_alert"
    MATURITY_ALERT = "maturity_alert"


class NotificationStatus(Enum):
    """Outbox row status"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


TEMPLATES = {
    NotificationType.WELCOME: (
        "Welcome to FinancePlus",
        "Dear {customer_name},\n\n"
        "Your customer profile has been created. You can now open accounts, "
        "deposits and loans with us.\n\nRegards,\nFinancePlus"
    ),
    NotificationType.TRANSACTION_ALERT: (
        "Transaction Alert - {transaction_type}",
        "Dear {customer_name},\n\n"
        "A {transaction_type} of {currency} {amount} was recorded on {reference_number}.\n"
        "Transaction ID: {transaction_id}\n"
        "Balance before: {balance_before}\n"
        "Balance after: {balance_after}\n"
        "Description: {description}\n\nRegards,\nFinancePlus"
    ),
    NotificationType.MATURITY_ALERT: (
        "Maturity Alert - {product}",
        "Dear {customer_name},\n\n"
        "Your {product} {reference_number} matures on {maturity_date}.\n"
        "Maturity amount: {currency} {maturity_amount}\n\nRegards,\nFinancePlus"
    ),
}


@dataclass
class Notification(StorageRecord):
    """Outbox row"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_id: str
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""


class LogChannelProvider(ChannelProvider):
    """Writes the notification to the log instead of delivering it"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("bank_ledger.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.channel.value.upper()} to {notification.recipient_address}: "
            f"{notification.subject}"
        )
        return True


class EmailOutboxProvider(ChannelProvider):
    """
    Hands rendered mail to the ``email_outbox`` table, from which the mail
    relay picks it up
    """

    def __init__(self, storage: StorageInterface, table: str = "email_outbox"):
        self.storage = storage
        self.table = table

    async def send(self, notification: Notification) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, notification.id, {
            "id": notification.id,
            "created_at": now,
            "updated_at": now,
            "to_email": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body
        })
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    async def send(self, notification: Notification) -> bool:
        """POST the notification as JSON; any 2xx counts as delivered"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "recipient_address": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


class NotificationService:
    """
    Template rendering, outbox queueing and queue processing
    """

    def __init__(
        self,
        storage: StorageInterface,
        customers: CustomerManager,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LedgerConfig] = None,
        providers: Optional[Dict[NotificationChannel, ChannelProvider]] = None
    ):
        self.storage = storage
        self.customers = customers
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.table_name = "notifications"
        self.logger = get_logger("bank_ledger.notifications")

        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.EMAIL: EmailOutboxProvider(storage),
            NotificationChannel.LOG: LogChannelProvider(self.logger),
        }
        if self.config.notification_webhook_url:
            self.providers[NotificationChannel.WEBHOOK] = WebhookChannelProvider(
                self.config.notification_webhook_url, self.config.notification_timeout_seconds
            )
        if providers:
            self.providers.update(providers)

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        self.providers[channel] = provider

    # Queueing

    def queue_welcome(self, customer_id: str) -> Optional[Notification]:
        customer = self.customers.get_customer(customer_id)
        if not customer:
            return None
        return self._queue(NotificationType.WELCOME, customer_id, {"customer_name": customer.name})

    def queue_transaction_alert(self, txn: LedgerTransaction, reference_number: str) -> Optional[Notification]:
        """Alert the owning customer about one history record"""
        customer = self.customers.get_customer(txn.customer_id)
        if not customer:
            return None
        data = {
            "customer_name": customer.name,
            "transaction_id": txn.transaction_id,
            "transaction_type": txn.transaction_type.tag,
            "reference_number": reference_number,
            "currency": txn.amount.currency.code,
            "amount": str(txn.amount.amount),
            "balance_before": str(txn.balance_before.amount) if txn.balance_before else "-",
            "balance_after": str(txn.balance_after.amount) if txn.balance_after else "-",
            "description": txn.description
        }
        return self._queue(NotificationType.TRANSACTION_ALERT, txn.customer_id, data)

    def queue_maturity_alert(self, customer_id: str, product: str, reference_number: str,
                             maturity_date: Any, maturity_amount: Any,
                             currency: str = "INR") -> Optional[Notification]:
        customer = self.customers.get_customer(customer_id)
        if not customer:
            return None
        data = {
            "customer_name": customer.name,
            "product": product,
            "reference_number": reference_number,
            "maturity_date": str(maturity_date),
            "maturity_amount": str(maturity_amount),
            "currency": currency
        }
        return self._queue(NotificationType.MATURITY_ALERT, customer_id, data)

    def _queue(self, notification_type: NotificationType, customer_id: str,
               data: Dict[str, Any]) -> Optional[Notification]:
        if not self.config.enable_notifications:
            return None

        customer = self.customers.get_customer(customer_id)
        if customer and customer.email:
            channel, address = NotificationChannel.EMAIL, customer.email
        elif NotificationChannel.WEBHOOK in self.providers:
            channel, address = NotificationChannel.WEBHOOK, customer_id
        else:
            self.logger.debug(f"No delivery address for customer {customer_id}, {notification_type.value} skipped")
            return None

        subject_template, body_template = TEMPLATES[notification_type]
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            recipient_id=customer_id,
            recipient_address=address,
            subject=subject_template.format(**data),
            body=body_template.format(**data),
            max_attempts=self.config.notification_max_retries,
            metadata=data
        )
        self._save(notification)
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.NOTIFICATION_QUEUED, "notification", notification.id,
                description=f"Queued {notification_type.value} for customer {customer_id}",
                metadata={"channel": channel.value},
                user_id="system"
            )
        return notification

    # Delivery

    async def process_queue(self, batch_size: int = 10) -> Dict[str, int]:
        """
        Deliver up to ``batch_size`` pending rows, oldest first

        A failed attempt leaves the row pending until ``max_attempts`` is
        reached, after which it is marked failed.
        """
        results = {"processed": 0, "sent": 0, "failed": 0}
        pending = [
            self._from_dict(row)
            for row in self.storage.find(self.table_name, {"status": NotificationStatus.PENDING.value})
        ]
        pending = [n for n in pending if n.attempts < n.max_attempts]
        pending.sort(key=lambda n: n.created_at)

        for notification in pending[:batch_size]:
            results["processed"] += 1
            notification.attempts += 1
            provider = self.providers.get(notification.channel)
            try:
                if provider is None:
                    raise LookupError(f"No provider registered for channel: {notification.channel.value}")
                delivered = await provider.send(notification)
                error = None if delivered else "Provider send failed"
            except (requests.RequestException, LookupError, OSError) as e:
                delivered, error = False, str(e)

            notification.updated_at = datetime.now(timezone.utc)
            if delivered:
                notification.status = NotificationStatus.SENT
                notification.sent_at = notification.updated_at
                notification.error_message = None
                results["sent"] += 1
            else:
                notification.error_message = error
                if notification.attempts >= notification.max_attempts:
                    notification.status = NotificationStatus.FAILED
                    results["failed"] += 1
                log_action(self.logger, "warning",
                           f"Notification {notification.id} attempt {notification.attempts} failed: {error}",
                           action="notification_send", resource=f"notification:{notification.id}")
            self._save(notification)

        return results

    def retry_failed(self) -> int:
        """Return failed rows to the queue with a fresh attempt budget"""
        count = 0
        for row in self.storage.find(self.table_name, {"status": NotificationStatus.FAILED.value}):
            notification = self._from_dict(row)
            notification.status = NotificationStatus.PENDING
            notification.attempts = 0
            notification.error_message = None
            notification.updated_at = datetime.now(timezone.utc)
            self._save(notification)
            count += 1
        return count

    def get_queue_status(self) -> Dict[str, int]:
        rows = self.storage.load_all(self.table_name)
        status = {s.value: 0 for s in NotificationStatus}
        for row in rows:
            status[row["status"]] += 1
        status["total"] = len(rows)
        return status

    def clear_old(self, days_old: int = 30) -> int:
        """Delete sent rows older than ``days_old`` days"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        removed = 0
        for row in self.storage.find(self.table_name, {"status": NotificationStatus.SENT.value}):
            if datetime.fromisoformat(row["created_at"]) < cutoff:
                self.storage.delete(self.table_name, row["id"])
                removed += 1
        return removed

    def list_notifications(self, recipient_id: Optional[str] = None) -> List[Notification]:
        filters = {"recipient_id": recipient_id} if recipient_id else {}
        notifications = [self._from_dict(row) for row in self.storage.find(self.table_name, filters)]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def _save(self, notification: Notification) -> None:
        self.storage.save(self.table_name, notification.id, self._to_dict(notification))

    def _to_dict(self, notification: Notification) -> Dict:
        return {
            "id": notification.id,
            "created_at": notification.created_at.isoformat(),
            "updated_at": notification.updated_at.isoformat(),
            "notification_type": notification.notification_type.value,
            "channel": notification.channel.value,
            "recipient_id": notification.recipient_id,
            "recipient_address": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "status": notification.status.value,
            "attempts": notification.attempts,
            "max_attempts": notification.max_attempts,
            "sent_at": notification.sent_at.isoformat() if notification.sent_at else None,
            "error_message": notification.error_message,
            "metadata": notification.metadata
        }

    def _from_dict(self, data: Dict) -> Notification:
        return Notification(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            notification_type=NotificationType(data["notification_type"]),
            channel=NotificationChannel(data["channel"]),
            recipient_id=data["recipient_id"],
            recipient_address=data["recipient_address"],
            subject=data["subject"],
            body=data["body"],
            status=NotificationStatus(data["status"]),
            attempts=data["attempts"],
            max_attempts=data["max_attempts"],
            sent_at=datetime.fromisoformat(data["sent_at"]) if data.get("sent_at") else None,
            error_message=data.get("error_message"),
            metadata=data.get("metadata") or {}
        )
