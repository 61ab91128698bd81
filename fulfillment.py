import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from auth import Actor
from database import now_utc, parse_object_id, serialize_doc
from errors import InvalidIdError, NotAuthorizedError, OrderNotFoundError, TransitionNotAllowedError
from notifications import Dispatcher, status_update
from schemas import HAPPY_PATH, TERMINAL_STATUSES, OrderStatus

logger = logging.getLogger(__name__)


def check_transition(order: Dict[str, Any], target: OrderStatus, actor: Actor) -> None:
    """Raise unless ``actor`` may move ``order`` into ``target``."""
    current = OrderStatus(order["status"])
    is_owner = actor.owns(order)

    if target is OrderStatus.CANCELLED:
        if not actor.is_admin and not is_owner:
            raise NotAuthorizedError("Not authorized to cancel this order")
        if current is OrderStatus.DELIVERED:
            raise TransitionNotAllowedError(current.value, target.value, "Delivered orders cannot be cancelled")
        if current is OrderStatus.CANCELLED:
            raise TransitionNotAllowedError(current.value, target.value, "Order is already cancelled")
        if not actor.is_admin and current is not OrderStatus.PROCESSING:
            raise TransitionNotAllowedError(current.value, target.value,
                                            "Order cannot be cancelled at this stage")
        return

    if not actor.is_admin:
        raise NotAuthorizedError("Admin access required")
    if current in TERMINAL_STATUSES:
        raise TransitionNotAllowedError(current.value, target.value, f"Order is already {current.value}")
    if HAPPY_PATH.index(target) <= HAPPY_PATH.index(current):
        raise TransitionNotAllowedError(current.value, target.value)


class FulfillmentService:
    def __init__(self, db: Database, dispatcher: Optional[Dispatcher] = None,
                 clock: Callable[[], datetime] = now_utc):
        self._orders = db["order"]
        self._dispatcher = dispatcher
        self._clock = clock

    def _load(self, order_id: str) -> Dict[str, Any]:
        try:
            oid = parse_object_id(order_id)
        except InvalidIdError:
            raise OrderNotFoundError(order_id)
        order = self._orders.find_one({"_id": oid})
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def change_status(self, order_id: str, target: OrderStatus, actor: Actor) -> Dict[str, Any]:
        target = OrderStatus(target)
        order = self._load(order_id)
        check_transition(order, target, actor)

        now = self._clock()
        changes: Dict[str, Any] = {"status": target.value, "updated_at": now}
        if target is OrderStatus.DELIVERED:
            changes.update({"is_delivered": True, "delivered_at": now})
        elif target is OrderStatus.CANCELLED:
            changes.update({"is_delivered": False, "delivered_at": None})

        updated = self._orders.find_one_and_update(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # someone else moved it first
            latest = self._load(order_id)
            raise TransitionNotAllowedError(latest["status"], target.value,
                                            f"Order status changed to {latest['status']} meanwhile")

        logger.info("Order %s moved %s -> %s by %s", order_id, order["status"], target.value,
                    "admin" if actor.is_admin else actor.user_id)
        if self._dispatcher is not None:
            self._dispatcher.notify_user(updated["user_id"], status_update(updated))
        return serialize_doc(updated)

    def cancel(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        return self.change_status(order_id, OrderStatus.CANCELLED, actor)

    def mark_delivered(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        return self.change_status(order_id, OrderStatus.DELIVERED, actor)
