import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import resend
from pymongo.database import Database

from database import parse_object_id
from errors import InvalidIdError

logger = logging.getLogger(__name__)

SHOP_NAME = "Storefront"


@dataclass(frozen=True)
class Message:
    subject: str
    text: str


class Notifier(Protocol):
    def send(self, to: str, subject: str, text: str) -> None: ...


class ResendNotifier:
    def __init__(self, api_key: str, sender: str):
        self._api_key = api_key
        self._sender = sender

    def send(self, to: str, subject: str, text: str) -> None:
        resend.api_key = self._api_key
        response = resend.Emails.send({
            "from": self._sender,
            "to": [to],
            "subject": subject,
            "text": text,
        })
        if not isinstance(response, dict) or not response.get("id"):
            raise RuntimeError(f"Resend rejected the message: {response}")
        logger.info("Email %r sent to %s", subject, to)


class LogNotifier:
    """Used when no mail provider is configured."""

    def send(self, to: str, subject: str, text: str) -> None:
        logger.info("Email to %s: %s\n%s", to, subject, text)


def _money(amount: Any) -> str:
    return f"₹{float(amount or 0):.2f}"


def order_confirmation(order: Dict[str, Any]) -> Message:
    lines = [
        "Thank you for your order!",
        f"Order ID: {order['_id']}",
        f"Total: {_money(order.get('total_price'))}",
    ]
    if order.get("estimated_delivery"):
        lines.append(f"Estimated Delivery: {order['estimated_delivery']:%a %b %d %Y}")
    return Message(f"{SHOP_NAME} - Order Confirmation", "\n".join(lines))


def payment_success(order: Dict[str, Any]) -> Message:
    return Message(
        f"{SHOP_NAME} - Payment Successful",
        f"Your payment for Order {order['_id']} was successful. "
        f"Total Paid: {_money(order.get('total_price'))}",
    )


def status_update(order: Dict[str, Any]) -> Message:
    text = f"Your order {order['_id']} is now {order['status']}"
    if order.get("estimated_delivery") and order["status"] != "Cancelled":
        text += f"\nEstimated Delivery: {order['estimated_delivery']:%a %b %d %Y}"
    return Message(f"{SHOP_NAME} - Order {order['status']}", text)


class Dispatcher:
    """Sends customer emails without ever failing the caller."""

    def __init__(self, db: Database, notifier: Notifier):
        self._users = db["user"]
        self._notifier = notifier

    def _recipient(self, user_id: str) -> Optional[str]:
        try:
            user = self._users.find_one({"_id": parse_object_id(user_id)}, {"email": 1})
        except InvalidIdError:
            return None
        return user.get("email") if user else None

    def notify_user(self, user_id: str, message: Message) -> bool:
        try:
            to = self._recipient(user_id)
            if not to:
                logger.info("No email on file for user %s, skipping %r", user_id, message.subject)
                return False
            self._notifier.send(to, message.subject, message.text)
            return True
        except Exception:
            logger.exception("Failed to send %r to user %s", message.subject, user_id)
            return False
