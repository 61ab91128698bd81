"""Order placement and order queries.

An order is validated in full (every product, every variant, every stock
count, the coupon) before anything is written. Only after the single order
insert succeeds is stock taken from the ledger; a reservation that fails at
that point is recorded on the order as a stock exception for an operator to
resolve, and the order is still returned to the caller.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import Actor
from catalog import Catalog
from database import now_utc, parse_object_id, serialize_doc
from discounts import DiscountEvaluator
from errors import EmptyOrderError, InvalidIdError, NotAuthorizedError, OrderNotFoundError
from inventory import InventoryLedger, ReservationOutcome, check_available
from schemas import Order, OrderItem, OrderRequest, OrderStatus, StockException

logger = logging.getLogger(__name__)

VariantKey = Tuple[str, Optional[str], Optional[str]]


def _snapshot(product: Dict[str, Any], product_id: str, qty: int,
              size: Optional[str], color: Optional[str]) -> OrderItem:
    price = float(product["price"])
    images = product.get("images") or []
    return OrderItem(
        product_id=product_id,
        name=product["name"],
        qty=qty,
        price=price,
        # discounts apply to the order total, never per line
        discounted_price=price,
        image=images[0] if images else product.get("image"),
        size=size,
        color=color,
    )


class OrderAssemblyService:
    def __init__(self, db: Database, catalog: Catalog, ledger: InventoryLedger,
                 evaluator: DiscountEvaluator, estimated_delivery_days: int = 7,
                 clock: Callable[[], datetime] = now_utc):
        self._orders = db["order"]
        self._users = db["user"]
        self._catalog = catalog
        self._ledger = ledger
        self._evaluator = evaluator
        self._delivery_days = estimated_delivery_days
        self._clock = clock

    def create_order(self, user_id: str, request: OrderRequest) -> Dict[str, Any]:
        if not request.order_items:
            raise EmptyOrderError()

        # several lines may draw on the same variant
        requested: "OrderedDict[VariantKey, int]" = OrderedDict()
        products: Dict[str, Dict[str, Any]] = {}
        for item in request.order_items:
            if item.product_id not in products:
                products[item.product_id] = self._catalog.get_product(item.product_id)
            key = (item.product_id, item.size, item.color)
            requested[key] = requested.get(key, 0) + item.qty

        for (product_id, size, color), qty in requested.items():
            check_available(products[product_id], size, color, qty)

        snapshots = [
            _snapshot(products[item.product_id], item.product_id, item.qty, item.size, item.color)
            for item in request.order_items
        ]
        items_price = round(sum(s.price * s.qty for s in snapshots), 2)

        discount = self._evaluator.evaluate(request.coupon_code, items_price)
        total_price = round(items_price - discount.discount_amount, 2)

        now = self._clock()
        order = Order(
            user_id=user_id,
            order_items=snapshots,
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            items_price=items_price,
            discount_amount=discount.discount_amount,
            total_price=total_price,
            coupon=discount.applied_coupon_code,
            estimated_delivery=now + timedelta(days=self._delivery_days),
            created_at=now,
            updated_at=now,
        )
        doc = order.model_dump()
        res = self._orders.insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info("Order %s created for user %s: items=%.2f discount=%.2f total=%.2f",
                    res.inserted_id, user_id, items_price, discount.discount_amount, total_price)

        exceptions = self._reserve_all(res.inserted_id, requested)
        if exceptions:
            doc["stock_exceptions"] = exceptions
        return serialize_doc(doc)

    def _reserve_all(self, order_oid, requested: "OrderedDict[VariantKey, int]") -> List[Dict[str, Any]]:
        exceptions = []
        for (product_id, size, color), qty in requested.items():
            try:
                outcome = self._ledger.reserve_stock(product_id, size, color, qty)
            except PyMongoError as exc:
                logger.error("Stock update for product %s on order %s failed",
                             product_id, order_oid, exc_info=True)
                outcome = None
                reason = f"error: {exc}"
            else:
                reason = outcome.value
            if outcome is ReservationOutcome.COMMITTED:
                continue
            logger.warning("Order %s committed but stock for %s (%s/%s) not deducted: %s",
                           order_oid, product_id, size, color, reason)
            exceptions.append(StockException(
                product_id=product_id, size=size, color=color, qty=qty,
                reason=reason, recorded_at=self._clock(),
            ).model_dump())

        if exceptions:
            try:
                self._orders.update_one({"_id": order_oid},
                                        {"$push": {"stock_exceptions": {"$each": exceptions}}})
            except PyMongoError:
                logger.error("Could not record stock exceptions on order %s", order_oid, exc_info=True)
        return exceptions

    # ---------------------- Queries ----------------------

    def _load(self, order_id: str) -> Dict[str, Any]:
        try:
            oid = parse_object_id(order_id)
        except InvalidIdError:
            raise OrderNotFoundError(order_id)
        order = self._orders.find_one({"_id": oid})
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def get_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        order = self._load(order_id)
        if not actor.owns(order) and not actor.is_admin:
            raise NotAuthorizedError("Not authorized to view this order")
        return serialize_doc(order)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        out = []
        for o in self._orders.find({"user_id": user_id}).sort("created_at", -1):
            o["total"] = o.get("total_price")
            out.append(serialize_doc(o))
        return out

    def list_all(self) -> List[Dict[str, Any]]:
        return [serialize_doc(o) for o in self._orders.find().sort("created_at", -1)]

    def list_by_status(self, status: OrderStatus) -> List[Dict[str, Any]]:
        cur = self._orders.find({"status": status.value}).sort("created_at", -1)
        return [serialize_doc(o) for o in cur]

    def track(self, order_id: str, email: str) -> Dict[str, Any]:
        order = self._load(order_id)
        try:
            user = self._users.find_one({"_id": parse_object_id(order.get("user_id"))}, {"email": 1})
        except InvalidIdError:
            user = None
        if not user or (user.get("email") or "").lower() != email.strip().lower():
            raise NotAuthorizedError("Email does not match the order record.")
        order = serialize_doc(order)
        order.pop("user_id", None)
        return {"status": order["status"], "estimated_delivery": order.get("estimated_delivery"), "order": order}
