"""Payment confirmation.

A payment can be confirmed by two independent routes: the client posts the
gateway's order/payment ids plus their signature right after checkout, and
the gateway itself pushes a signed webhook. Both end in ``_apply``, which
marks the order paid with one conditional update guarded by the payment
transition table, so whichever arrives first wins and the other sees
``ALREADY_CONFIRMED``. Coupon redemption is recorded only by the winner.

A payment only counts for a gateway order that was issued for that very
order, and one gateway payment settles at most one order. Orders with
nothing to charge are confirmed without the gateway through the same write.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import Actor
from database import now_utc, parse_object_id, serialize_doc
from discounts import DiscountEvaluator
from errors import (
    InvalidIdError,
    InvalidSignatureError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentMismatchError,
    PaymentStateError,
    ValidationFailedError,
)
from gateway import PaymentGateway
from notifications import Dispatcher, payment_success
from schemas import OrderStatus, PaymentResult, PaymentSource, PaymentStatus, payment_sources

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {"payment.captured", "order.paid"}


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def payment_signature(gateway_order_ref: str, gateway_payment_ref: str, secret: str) -> str:
    return _hmac_hex(secret, f"{gateway_order_ref}|{gateway_payment_ref}".encode())


def webhook_signature(raw_body: bytes, secret: str) -> str:
    return _hmac_hex(secret, raw_body)


def verify_payment_signature(gateway_order_ref: str, gateway_payment_ref: str,
                             signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    expected = payment_signature(gateway_order_ref, gateway_payment_ref, secret)
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(webhook_signature(raw_body, secret), signature)


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    order: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None


class PaymentReconciler:
    def __init__(self, db: Database, gateway: PaymentGateway, evaluator: DiscountEvaluator,
                 key_secret: str, webhook_secret: str, currency: str = "INR",
                 dispatcher: Optional[Dispatcher] = None,
                 clock: Callable[[], datetime] = now_utc):
        self._orders = db["order"]
        self._gateway = gateway
        self._evaluator = evaluator
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._currency = currency
        self._dispatcher = dispatcher
        self._clock = clock

    # ---------------------- Intents ----------------------

    def create_payment_intent(self, order_id: str, actor: Actor) -> Optional[Dict[str, Any]]:
        """Open a gateway order for ``order_id``.

        Returns None when nothing is owed: such an order is confirmed on the
        spot without a gateway round trip.
        """
        order = self._load(order_id)
        if not actor.owns(order) and not actor.is_admin:
            raise NotAuthorizedError("Not authorized to pay for this order")
        if order.get("payment_status") not in payment_sources(PaymentStatus.PAID):
            raise PaymentStateError("Order is already paid")
        if order.get("status") == OrderStatus.CANCELLED.value:
            raise PaymentStateError("Order has been cancelled")

        amount = to_minor_units(order["total_price"])
        if amount <= 0:
            self._settle_without_charge(order)
            return None

        remote = self._gateway.create_order(
            amount=amount,
            currency=self._currency,
            receipt=f"order_rcpt_{order['_id']}",
            notes={"orderId": str(order["_id"]), "userId": order["user_id"]},
        )
        # earlier gateway orders stay payable, a reopened checkout only adds one
        self._orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"gateway_order_id": remote["id"], "updated_at": self._clock()},
             "$addToSet": {"gateway_order_ids": remote["id"]}},
        )
        logger.info("Gateway order %s opened for order %s (%s minor units)",
                    remote["id"], order["_id"], remote.get("amount"))
        return remote

    def refund(self, payment_id: str, amount: Optional[float] = None) -> Dict[str, Any]:
        minor = None if amount is None else to_minor_units(amount)
        refund = self._gateway.refund(payment_id, minor)
        logger.info("Refund %s issued for payment %s", refund.get("id"), payment_id)
        return refund

    # ---------------------- Reconciliation ----------------------

    def reconcile(self, order_id: str, gateway_order_ref: str, gateway_payment_ref: str,
                  signature: str, source: PaymentSource = PaymentSource.CLIENT_CALLBACK) -> ReconcileResult:
        if not verify_payment_signature(gateway_order_ref, gateway_payment_ref, signature, self._key_secret):
            logger.warning("Payment signature mismatch for order %s (gateway order %s, payment %s): "
                           "possible tampering", order_id, gateway_order_ref, gateway_payment_ref)
            raise InvalidSignatureError()
        return self._apply(order_id, gateway_order_ref, gateway_payment_ref, signature, source)

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> ReconcileResult:
        """Apply a gateway event. ``raw_body`` must be the bytes exactly as received."""
        if not verify_webhook_signature(raw_body, signature, self._webhook_secret):
            logger.warning("Webhook signature mismatch: possible tampering")
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationFailedError("Malformed webhook body")
        if not isinstance(event, dict):
            raise ValidationFailedError("Malformed webhook body")

        event_type = event.get("event")
        if event_type not in WEBHOOK_EVENTS:
            logger.debug("Ignoring webhook event %s", event_type)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail=f"event {event_type} not handled")

        payload = event.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        gateway_order = (payload.get("order") or {}).get("entity") or {}
        payment_ref = payment.get("id")
        order_ref = payment.get("order_id") or gateway_order.get("id")
        if not payment_ref or not order_ref:
            logger.warning("Webhook %s without payment or order reference", event_type)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="missing references")

        notes = payment.get("notes") or gateway_order.get("notes") or {}
        order_id = notes.get("orderId") if isinstance(notes, dict) else None
        if not order_id:
            match = self._orders.find_one(_issued(order_ref), {"_id": 1})
            order_id = str(match["_id"]) if match else None
        if not order_id:
            logger.warning("Webhook for unknown gateway order %s", order_ref)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="order not found")

        try:
            return self._apply(order_id, order_ref, payment_ref, None, PaymentSource.WEBHOOK)
        except (OrderNotFoundError, PaymentMismatchError) as exc:
            logger.warning("Webhook for gateway order %s not applied: %s", order_ref, exc)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail=str(exc))

    def _load(self, order_id: str) -> Dict[str, Any]:
        try:
            oid = parse_object_id(order_id)
        except InvalidIdError:
            raise OrderNotFoundError(order_id)
        order = self._orders.find_one({"_id": oid})
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def _mark_paid(self, oid, match: Dict[str, Any], result: PaymentResult,
                   extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """The single unpaid -> paid write. None if ``oid`` is not in a payable state matching ``match``."""
        changes = {
            "payment_status": PaymentStatus.PAID.value,
            "is_paid": True,
            "paid_at": result.update_time,
            "payment_result": result.model_dump(),
            "updated_at": result.update_time,
        }
        changes.update(extra or {})
        filt = {"_id": oid, "payment_status": {"$in": payment_sources(PaymentStatus.PAID)}}
        filt.update(match)
        return self._orders.find_one_and_update(filt, {"$set": changes}, return_document=ReturnDocument.AFTER)

    def _apply(self, order_id: str, gateway_order_ref: str, gateway_payment_ref: str,
               signature: Optional[str], source: PaymentSource) -> ReconcileResult:
        try:
            oid = parse_object_id(order_id)
        except InvalidIdError:
            raise OrderNotFoundError(order_id)

        elsewhere = self._orders.find_one(
            {"_id": {"$ne": oid}, "payment_result.gateway_payment_id": gateway_payment_ref}, {"_id": 1})
        if elsewhere is not None:
            logger.warning("Payment %s already settles order %s, refusing it for order %s",
                           gateway_payment_ref, elsewhere["_id"], order_id)
            raise PaymentMismatchError(order_id, gateway_order_ref)

        result = PaymentResult(
            gateway_order_id=gateway_order_ref,
            gateway_payment_id=gateway_payment_ref,
            signature=signature,
            source=source,
            update_time=self._clock(),
        )
        updated = self._mark_paid(oid, _issued(gateway_order_ref), result,
                                  {"gateway_order_id": gateway_order_ref})

        if updated is None:
            existing = self._orders.find_one({"_id": oid})
            if existing is None:
                raise OrderNotFoundError(order_id)
            if gateway_order_ref not in _issued_refs(existing):
                logger.warning("Gateway order %s was never issued for order %s (issued: %s)",
                               gateway_order_ref, order_id, sorted(_issued_refs(existing)))
                raise PaymentMismatchError(order_id, gateway_order_ref)
            if existing.get("payment_status") != PaymentStatus.PAID.value:
                raise PaymentStateError(f"Order {order_id} cannot be marked paid")
            settled_by = (existing.get("payment_result") or {}).get("gateway_payment_id")
            if settled_by != gateway_payment_ref:
                logger.warning("Order %s already settled by payment %s, payment %s needs a refund",
                               order_id, settled_by, gateway_payment_ref)
            else:
                logger.info("Order %s already paid, %s delivery of payment %s ignored",
                            order_id, source.value, gateway_payment_ref)
            return ReconcileResult(ReconcileOutcome.ALREADY_CONFIRMED, serialize_doc(existing))

        logger.info("Order %s paid via %s (payment %s)", order_id, source.value, gateway_payment_ref)
        if updated.get("status") == OrderStatus.CANCELLED.value:
            logger.warning("Payment %s captured for cancelled order %s, refund required",
                           gateway_payment_ref, order_id)
        self._after_paid(updated)
        return ReconcileResult(ReconcileOutcome.CONFIRMED, serialize_doc(updated))

    def _settle_without_charge(self, order: Dict[str, Any]) -> ReconcileResult:
        result = PaymentResult(source=PaymentSource.NO_CHARGE, status="Not charged", update_time=self._clock())
        updated = self._mark_paid(order["_id"], {"total_price": {"$lte": 0}}, result)
        if updated is None:
            return ReconcileResult(ReconcileOutcome.ALREADY_CONFIRMED, serialize_doc(self._load(str(order["_id"]))))
        logger.info("Order %s has nothing to charge, confirmed without the gateway", order["_id"])
        self._after_paid(updated)
        return ReconcileResult(ReconcileOutcome.CONFIRMED, serialize_doc(updated))

    def _after_paid(self, order: Dict[str, Any]) -> None:
        if order.get("coupon"):
            try:
                self._evaluator.record_redemption(order["coupon"], order["user_id"])
            except PyMongoError:
                logger.error("Order %s is paid but redemption of coupon %s by %s was not recorded",
                             order["_id"], order["coupon"], order["user_id"], exc_info=True)
        if self._dispatcher is not None:
            self._dispatcher.notify_user(order["user_id"], payment_success(order))


def _issued(gateway_order_ref: str) -> Dict[str, Any]:
    return {"$or": [{"gateway_order_ids": gateway_order_ref}, {"gateway_order_id": gateway_order_ref}]}


def _issued_refs(order: Dict[str, Any]) -> set:
    refs = set(order.get("gateway_order_ids") or [])
    if order.get("gateway_order_id"):
        refs.add(order["gateway_order_id"])
    return refs
