"""Tests for payment reconciliation."""

import json

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from auth import Actor
from conftest import KEY_SECRET, WEBHOOK_SECRET, RecordingNotifier, sign_payment, sign_webhook
from discounts import DiscountEvaluator
from errors import (
    InvalidSignatureError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentMismatchError,
    PaymentStateError,
    ValidationFailedError,
)
from gateway import MockGateway
from notifications import Dispatcher
from payments import (
    PaymentReconciler,
    ReconcileOutcome,
    payment_signature,
    to_minor_units,
    verify_payment_signature,
    verify_webhook_signature,
)
from schemas import PaymentSource


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def reconciler(db, gateway, notifier, clock, coupons):
    return PaymentReconciler(db, gateway, DiscountEvaluator(db, clock), KEY_SECRET, WEBHOOK_SECRET,
                             dispatcher=Dispatcher(db, notifier), clock=clock)


@pytest.fixture
def make_order(db, users):
    def _make(gateway_refs=(), **extra):
        doc = {
            "user_id": users["customer"],
            "status": "Processing",
            "payment_status": "unpaid",
            "is_paid": False,
            "coupon": "SAVE10",
            "items_price": 2000.0,
            "discount_amount": 200.0,
            "total_price": 1800.0,
            "gateway_order_id": gateway_refs[-1] if gateway_refs else None,
            "gateway_order_ids": list(gateway_refs),
        }
        doc.update(extra)
        return str(db["order"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def order_id(make_order):
    return make_order(("order_A",))


class Interleaved:
    """Wraps a collection and runs ``before_update`` once, just before the next find_one_and_update."""

    def __init__(self, inner, before_update):
        self._inner = inner
        self._before_update = before_update

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def find_one_and_update(self, *args, **kwargs):
        hook, self._before_update = self._before_update, None
        if hook is not None:
            hook()
        return self._inner.find_one_and_update(*args, **kwargs)


def _order(db, order_id):
    return db["order"].find_one({"_id": ObjectId(order_id)})


def _webhook_body(order_ref, payment_ref, order_id=None, event="payment.captured"):
    notes = {"orderId": order_id} if order_id else {}
    return json.dumps({
        "entity": "event",
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_ref, "order_id": order_ref, "status": "captured", "notes": notes,
        }}},
    }).encode()


class TestSignatures:
    def test_round_trip(self):
        sig = payment_signature("order_A", "pay_B", "secret")
        assert verify_payment_signature("order_A", "pay_B", sig, "secret")

    def test_mismatch(self):
        sig = payment_signature("order_A", "pay_B", "secret")
        assert not verify_payment_signature("order_A", "pay_C", sig, "secret")
        assert not verify_payment_signature("order_A", "pay_B", sig, "other-secret")
        assert not verify_payment_signature("order_A", "pay_B", None, "secret")

    def test_webhook_signature_is_over_raw_bytes(self):
        raw = b'{"event": "payment.captured",  "payload": {}}'
        sig = sign_webhook(raw)
        assert verify_webhook_signature(raw, sig, WEBHOOK_SECRET)
        reserialized = json.dumps(json.loads(raw)).encode()
        assert not verify_webhook_signature(reserialized, sig, WEBHOOK_SECRET)

    def test_minor_units(self):
        assert to_minor_units(1800) == 180000
        assert to_minor_units(19.99) == 1999


class TestReconcile:
    def test_confirms_once(self, db, reconciler, order_id, users, clock):
        result = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        assert result.outcome is ReconcileOutcome.CONFIRMED

        stored = _order(db, order_id)
        assert stored["is_paid"] is True
        assert stored["payment_status"] == "paid"
        assert stored["paid_at"] is not None
        assert stored["payment_result"]["gateway_payment_id"] == "pay_B"
        assert stored["payment_result"]["source"] == "client_callback"
        assert stored["gateway_order_id"] == "order_A"
        assert db["coupon"].find_one({"code": "SAVE10"})["used_by"] == [users["customer"]]

    def test_invalid_signature_mutates_nothing(self, db, reconciler, order_id):
        with pytest.raises(InvalidSignatureError):
            reconciler.reconcile(order_id, "order_A", "pay_B", "deadbeef")
        stored = _order(db, order_id)
        assert stored["is_paid"] is False
        assert stored["payment_status"] == "unpaid"
        assert db["coupon"].find_one({"code": "SAVE10"})["used_by"] == []

    def test_unknown_order(self, reconciler):
        with pytest.raises(OrderNotFoundError):
            reconciler.reconcile(str(ObjectId()), "order_A", "pay_B", sign_payment("order_A", "pay_B"))

    def test_callback_then_webhook(self, db, reconciler, order_id, users, notifier):
        first = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        raw = _webhook_body("order_A", "pay_B", order_id)
        second = reconciler.handle_webhook(raw, sign_webhook(raw))

        assert first.outcome is ReconcileOutcome.CONFIRMED
        assert second.outcome is ReconcileOutcome.ALREADY_CONFIRMED
        stored = _order(db, order_id)
        assert stored["payment_result"]["source"] == "client_callback"
        assert db["coupon"].find_one({"code": "SAVE10"})["used_by"] == [users["customer"]]
        assert [m["subject"] for m in notifier.sent].count("Storefront - Payment Successful") == 1

    def test_webhook_then_callback(self, db, reconciler, order_id, users):
        raw = _webhook_body("order_A", "pay_B", order_id)
        first = reconciler.handle_webhook(raw, sign_webhook(raw))
        second = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))

        assert first.outcome is ReconcileOutcome.CONFIRMED
        assert second.outcome is ReconcileOutcome.ALREADY_CONFIRMED
        assert _order(db, order_id)["payment_result"]["source"] == "webhook"
        assert db["coupon"].find_one({"code": "SAVE10"})["used_by"] == [users["customer"]]

    def test_duplicate_webhook_delivery(self, db, reconciler, order_id):
        raw = _webhook_body("order_A", "pay_B", order_id)
        outcomes = [reconciler.handle_webhook(raw, sign_webhook(raw)).outcome for _ in range(3)]
        assert outcomes == [ReconcileOutcome.CONFIRMED] + [ReconcileOutcome.ALREADY_CONFIRMED] * 2

    def test_payment_for_another_gateway_order(self, db, reconciler, order_id):
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"gateway_order_id": "order_REAL"}})
        with pytest.raises(PaymentMismatchError):
            reconciler.reconcile(order_id, "order_OTHER", "pay_X", sign_payment("order_OTHER", "pay_X"))
        assert _order(db, order_id)["is_paid"] is False

    def test_signature_cannot_pay_another_order(self, db, reconciler, order_id, make_order):
        signature = sign_payment("order_A", "pay_B")
        assert reconciler.reconcile(order_id, "order_A", "pay_B", signature).outcome is ReconcileOutcome.CONFIRMED

        pricey = make_order(("order_P",), total_price=90000.0, coupon=None)
        fresh = make_order(coupon=None)
        for target in (pricey, fresh):
            with pytest.raises(PaymentMismatchError):
                reconciler.reconcile(target, "order_A", "pay_B", signature)
            assert _order(db, target)["is_paid"] is False

    def test_order_without_intent_accepts_no_payment(self, db, reconciler, make_order):
        fresh = make_order()
        with pytest.raises(PaymentMismatchError):
            reconciler.reconcile(fresh, "order_A", "pay_C", sign_payment("order_A", "pay_C"))
        assert _order(db, fresh)["is_paid"] is False

    def test_payment_settles_only_one_order(self, db, reconciler, order_id, make_order):
        reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        twin = make_order(("order_A",), coupon=None)
        with pytest.raises(PaymentMismatchError):
            reconciler.reconcile(twin, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        assert _order(db, twin)["is_paid"] is False

    def test_concurrent_confirmation_applies_once(self, db, reconciler, order_id, users, notifier):
        def webhook_lands_first():
            raw = _webhook_body("order_A", "pay_B", order_id)
            assert reconciler.handle_webhook(raw, sign_webhook(raw)).outcome is ReconcileOutcome.CONFIRMED

        orders = reconciler._orders
        reconciler._orders = Interleaved(orders, webhook_lands_first)
        result = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))

        assert result.outcome is ReconcileOutcome.ALREADY_CONFIRMED
        assert _order(db, order_id)["payment_result"]["source"] == "webhook"
        assert db["coupon"].find_one({"code": "SAVE10"})["used_by"] == [users["customer"]]
        assert [m["subject"] for m in notifier.sent].count("Storefront - Payment Successful") == 1

    def test_redemption_failure_keeps_payment(self, db, gateway, clock, order_id):
        class BrokenEvaluator(DiscountEvaluator):
            def record_redemption(self, coupon_code, user_id):
                raise PyMongoError("write failed")

        reconciler = PaymentReconciler(db, gateway, BrokenEvaluator(db, clock), KEY_SECRET, WEBHOOK_SECRET,
                                       clock=clock)
        result = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        assert result.outcome is ReconcileOutcome.CONFIRMED
        assert _order(db, order_id)["is_paid"] is True

    def test_email_failure_does_not_undo_payment(self, db, gateway, clock, order_id, coupons):
        reconciler = PaymentReconciler(db, gateway, DiscountEvaluator(db, clock), KEY_SECRET, WEBHOOK_SECRET,
                                       dispatcher=Dispatcher(db, RecordingNotifier(fail=True)), clock=clock)
        result = reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        assert result.outcome is ReconcileOutcome.CONFIRMED
        assert _order(db, order_id)["is_paid"] is True


class TestWebhook:
    def test_tampered_body_rejected(self, db, reconciler, order_id):
        raw = _webhook_body("order_A", "pay_B", order_id)
        signature = sign_webhook(raw)
        tampered = raw.replace(b"pay_B", b"pay_Z")
        with pytest.raises(InvalidSignatureError):
            reconciler.handle_webhook(tampered, signature)
        with pytest.raises(InvalidSignatureError):
            reconciler.handle_webhook(raw, None)
        assert _order(db, order_id)["is_paid"] is False

    def test_resolves_order_by_gateway_order_id(self, db, reconciler, order_id):
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"gateway_order_id": "order_A"}})
        raw = _webhook_body("order_A", "pay_B")
        result = reconciler.handle_webhook(raw, sign_webhook(raw))
        assert result.outcome is ReconcileOutcome.CONFIRMED
        assert _order(db, order_id)["payment_result"]["source"] == PaymentSource.WEBHOOK.value

    def test_unknown_order_is_acknowledged(self, reconciler):
        raw = _webhook_body("order_NOPE", "pay_B")
        assert reconciler.handle_webhook(raw, sign_webhook(raw)).outcome is ReconcileOutcome.IGNORED

    def test_other_events_ignored(self, db, reconciler, order_id):
        raw = _webhook_body("order_A", "pay_B", order_id, event="payment.failed")
        assert reconciler.handle_webhook(raw, sign_webhook(raw)).outcome is ReconcileOutcome.IGNORED
        assert _order(db, order_id)["is_paid"] is False

    def test_malformed_body(self, reconciler):
        raw = b"not json"
        with pytest.raises(ValidationFailedError):
            reconciler.handle_webhook(raw, sign_webhook(raw))


class TestPaymentIntent:
    def test_amount_in_minor_units(self, db, reconciler, gateway, order_id, users):
        remote = reconciler.create_payment_intent(order_id, Actor(users["customer"]))
        assert remote["amount"] == 180000
        assert remote["currency"] == "INR"
        assert remote["notes"] == {"orderId": order_id, "userId": users["customer"]}
        stored = _order(db, order_id)
        assert stored["gateway_order_id"] == remote["id"]
        assert stored["gateway_order_ids"] == ["order_A", remote["id"]]

    def test_first_of_two_intents_can_still_be_paid(self, db, reconciler, make_order, users):
        order_id = make_order()
        customer = Actor(users["customer"])
        first = reconciler.create_payment_intent(order_id, customer)
        second = reconciler.create_payment_intent(order_id, customer)
        assert first["id"] != second["id"]

        raw = _webhook_body(first["id"], "pay_1", order_id)
        assert reconciler.handle_webhook(raw, sign_webhook(raw)).outcome is ReconcileOutcome.CONFIRMED
        stored = _order(db, order_id)
        assert stored["is_paid"] is True
        assert stored["gateway_order_id"] == first["id"]

    def test_nothing_to_charge(self, db, reconciler, gateway, make_order, users, notifier):
        order_id = make_order(coupon="FLAT5000", items_price=3000.0, discount_amount=3000.0, total_price=0.0)
        assert reconciler.create_payment_intent(order_id, Actor(users["customer"])) is None

        assert gateway.orders == {}
        stored = _order(db, order_id)
        assert stored["is_paid"] is True
        assert stored["payment_result"]["source"] == PaymentSource.NO_CHARGE.value
        assert db["coupon"].find_one({"code": "FLAT5000"})["used_by"] == [users["customer"]]
        assert [m["subject"] for m in notifier.sent] == ["Storefront - Payment Successful"]

        with pytest.raises(PaymentStateError):
            reconciler.create_payment_intent(order_id, Actor(users["customer"]))

    def test_only_owner_or_admin(self, reconciler, order_id, users):
        with pytest.raises(NotAuthorizedError):
            reconciler.create_payment_intent(order_id, Actor(users["other"]))

    def test_refuses_paid_order(self, reconciler, order_id, users):
        reconciler.reconcile(order_id, "order_A", "pay_B", sign_payment("order_A", "pay_B"))
        with pytest.raises(PaymentStateError):
            reconciler.create_payment_intent(order_id, Actor(users["customer"]))

    def test_refuses_cancelled_order(self, db, reconciler, order_id, users):
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "Cancelled"}})
        with pytest.raises(PaymentStateError):
            reconciler.create_payment_intent(order_id, Actor(users["customer"]))

    def test_refund(self, reconciler, gateway):
        refund = reconciler.refund("pay_B", 150.5)
        assert refund["amount"] == 15050
        assert refund["id"] in gateway.refunds
