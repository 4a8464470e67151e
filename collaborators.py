"""
External collaborators the settlement core talks to.

Only the interfaces matter to the core. The implementations here are the
defaults the app wires up: in-app notifications stored in MongoDB, emails
written to the log, and a payment gateway that turns online payments away
until a real one is configured.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from database import Storage
from errors import PaymentVerificationError
from schemas import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify_user(self, user_id: str, notification: Dict[str, Any]) -> None:
        ...


class EmailService(Protocol):
    def send_order_placed_emails(self, order: Dict[str, Any], sub_orders: List[Dict[str, Any]]) -> None:
        ...

    def send_order_shipped_emails(self, order: Dict[str, Any], sub_order: Dict[str, Any]) -> None:
        ...

    def send_order_cancelled_emails(self, order: Dict[str, Any], sub_order: Optional[Dict[str, Any]] = None) -> None:
        ...


class PaymentGateway(Protocol):
    def create_order(self, amount_minor_units: int, receipt_id: str, notes: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {"id", "amount", "currency"}."""
        ...

    def verify_payment(self, payment_id: str, order_id: str, signature: str) -> Dict[str, Any]:
        """Returns {"success": bool}."""
        ...


class StoredNotifier:
    """Writes notifications to the `notification` collection for the app to poll."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def notify_user(self, user_id: str, notification: Dict[str, Any]) -> None:
        doc = Notification(user_id=user_id, **notification)
        self.storage.create_document("notification", doc.model_dump())


class LoggingEmailService:
    """Records which emails would go out; rendering and delivery live elsewhere."""

    def send_order_placed_emails(self, order, sub_orders):
        logger.info(
            "Order placed email: order=%s buyer=%s sellers=%s",
            order.get("id"), order.get("buyer_id"), [s.get("seller_id") for s in sub_orders],
        )

    def send_order_shipped_emails(self, order, sub_order):
        logger.info("Order shipped email: order=%s sub_order=%s", order.get("id"), sub_order.get("id"))

    def send_order_cancelled_emails(self, order, sub_order=None):
        logger.info(
            "Order cancelled email: order=%s sub_order=%s",
            order.get("id"), sub_order.get("id") if sub_order else None,
        )


class UnconfiguredGateway:
    def create_order(self, amount_minor_units, receipt_id, notes):
        raise PaymentVerificationError("Online payments are not available", receipt_id=receipt_id)

    def verify_payment(self, payment_id, order_id, signature):
        return {"success": False}
