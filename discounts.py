import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_utc, now_utc, parse_object_id, serialize_doc
from errors import CouponNotFoundError, CouponRejectedError, DuplicateError
from schemas import Coupon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountResult:
    discount_amount: float
    applied_coupon_code: Optional[str]


NO_DISCOUNT = DiscountResult(0.0, None)


def compute_discount(coupon: Dict[str, Any], items_price: float) -> float:
    """Discount for ``items_price``, never more than ``items_price`` itself."""
    value = float(coupon["discount_value"])
    if coupon["discount_type"] in ("percent", "percentage"):
        discount = items_price * value / 100
    else:
        discount = value
    return round(min(discount, items_price), 2)


class DiscountEvaluator:
    def __init__(self, db: Database, clock: Callable[[], datetime] = now_utc):
        self._coupons = db["coupon"]
        self._clock = clock

    def _check(self, code: str, items_price: float) -> Dict[str, Any]:
        coupon = self._coupons.find_one({"code": code.strip().upper()})
        if not coupon or not coupon.get("is_active"):
            raise CouponRejectedError("Invalid coupon")
        expiry = as_utc(coupon.get("expiry_date"))
        if expiry is not None and expiry < self._clock():
            raise CouponRejectedError("Coupon expired")
        min_purchase = float(coupon.get("min_purchase") or 0)
        if items_price < min_purchase:
            raise CouponRejectedError(f"Minimum purchase of {min_purchase:g} required")
        return coupon

    def evaluate(self, coupon_code: Optional[str], items_price: float) -> DiscountResult:
        """Price an order total against a coupon.

        Raises CouponRejectedError when the coupon does not apply. The
        coupon's redeemer list is neither consulted nor touched here.
        """
        if not coupon_code:
            return NO_DISCOUNT
        coupon = self._check(coupon_code, items_price)
        return DiscountResult(compute_discount(coupon, items_price), coupon["code"])

    def preview(self, coupon_code: str, total_price: float) -> Dict[str, Any]:
        coupon = self._check(coupon_code, total_price)
        discount = compute_discount(coupon, total_price)
        return {
            "valid": True,
            "discount": discount,
            "final_price": round(total_price - discount, 2),
            "coupon": serialize_doc(coupon),
        }

    def record_redemption(self, coupon_code: str, user_id: str) -> bool:
        res = self._coupons.update_one({"code": coupon_code}, {"$addToSet": {"used_by": user_id}})
        if res.matched_count == 0:
            logger.warning("Coupon %s vanished before redemption by %s could be recorded", coupon_code, user_id)
        return res.modified_count == 1

    # ---------------------- Admin ----------------------

    def create_coupon(self, coupon: Coupon) -> Dict[str, Any]:
        if self._coupons.find_one({"code": coupon.code}):
            raise DuplicateError("Coupon code already exists")
        doc = coupon.model_dump()
        doc["used_by"] = []
        doc["created_at"] = doc["updated_at"] = self._clock()
        try:
            res = self._coupons.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateError("Coupon code already exists")
        doc["_id"] = res.inserted_id
        return serialize_doc(doc)

    def list_coupons(self) -> List[Dict[str, Any]]:
        return [serialize_doc(c) for c in self._coupons.find().sort("created_at", -1)]

    def delete_coupon(self, coupon_id: str) -> None:
        res = self._coupons.delete_one({"_id": parse_object_id(coupon_id)})
        if res.deleted_count == 0:
            raise CouponNotFoundError(coupon_id)
