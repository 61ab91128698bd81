"""Per-variant stock counts.

Stock is only ever decremented through a conditional update whose filter
carries the ``stock >= quantity`` check, so two reservations racing for the
last unit cannot both succeed and a count can never go negative. Restocking
and variant edits use the same field-level updates and never rewrite the
product document.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pymongo.database import Database

from database import parse_object_id
from errors import (
    DuplicateError,
    InsufficientStockError,
    InvalidIdError,
    ProductNotFoundError,
    StockConflictError,
    ValidationFailedError,
    VariantNotFoundError,
)

logger = logging.getLogger(__name__)

GLOBAL_STOCK_FIELD = "count_in_stock"


class ReservationOutcome(str, Enum):
    COMMITTED = "committed"
    INSUFFICIENT = "insufficient"
    VARIANT_NOT_FOUND = "variant_not_found"
    PRODUCT_NOT_FOUND = "product_not_found"
    CONFLICT = "conflict"


def find_variant(product: Dict[str, Any], size: Optional[str],
                 color: Optional[str]) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
    for index, variant in enumerate(product.get("variants") or []):
        if variant.get("size") == size and variant.get("color") == color:
            return index, variant
    return None, None


def available_stock(product: Dict[str, Any], size: Optional[str], color: Optional[str]) -> Optional[int]:
    """Units on hand for the requested variant, or None if it does not exist."""
    if not product.get("variants"):
        return int(product.get(GLOBAL_STOCK_FIELD) or 0)
    _, variant = find_variant(product, size, color)
    if variant is None:
        return None
    return int(variant.get("stock") or 0)


def check_available(product: Dict[str, Any], size: Optional[str], color: Optional[str], quantity: int) -> None:
    product_id = str(product.get("_id"))
    available = available_stock(product, size, color)
    if available is None:
        raise VariantNotFoundError(product_id, size, color)
    if available < quantity:
        raise InsufficientStockError(product_id, quantity, available)


class InventoryLedger:
    def __init__(self, db: Database, max_attempts: int = 3):
        self._products = db["product"]
        self._max_attempts = max_attempts

    def reserve_stock(self, product_id: str, size: Optional[str], color: Optional[str],
                      quantity: int) -> ReservationOutcome:
        outcome, _ = self._apply_delta(product_id, size, color, -quantity)
        return outcome

    def _apply_delta(self, product_id: str, size: Optional[str], color: Optional[str],
                     delta: int) -> Tuple[ReservationOutcome, Optional[int]]:
        """Move one stock counter by ``delta``; returns the outcome and the level seen last."""
        try:
            pid = parse_object_id(product_id)
        except InvalidIdError:
            return ReservationOutcome.PRODUCT_NOT_FOUND, None

        for _ in range(self._max_attempts):
            product = self._products.find_one({"_id": pid}, {"variants": 1, GLOBAL_STOCK_FIELD: 1})
            if product is None:
                return ReservationOutcome.PRODUCT_NOT_FOUND, None

            if product.get("variants"):
                index, variant = find_variant(product, size, color)
                if variant is None:
                    return ReservationOutcome.VARIANT_NOT_FOUND, None
                level = int(variant.get("stock") or 0)
                prefix = f"variants.{index}"
                # removing a variant shifts the array, so pin the variant
                # identity at that index as well
                filt = {"_id": pid, f"{prefix}.size": size, f"{prefix}.color": color}
                field = f"{prefix}.stock"
            else:
                level = int(product.get(GLOBAL_STOCK_FIELD) or 0)
                filt = {"_id": pid}
                field = GLOBAL_STOCK_FIELD

            if level + delta < 0:
                return ReservationOutcome.INSUFFICIENT, level
            if delta < 0:
                filt[field] = {"$gte": -delta}

            res = self._products.update_one(filt, {"$inc": {field: delta}})
            if res.modified_count == 1:
                return ReservationOutcome.COMMITTED, level + delta
            logger.debug("Stock for %s changed during update, re-reading", product_id)

        logger.warning("Gave up moving stock of %s (%s/%s) by %d after %d attempts",
                       product_id, size, color, delta, self._max_attempts)
        return ReservationOutcome.CONFLICT, None

    # ---------------------- Stock administration ----------------------

    def stock_levels(self, product_id: str) -> Dict[str, Any]:
        try:
            pid = parse_object_id(product_id)
        except InvalidIdError:
            raise ProductNotFoundError(product_id)
        product = self._products.find_one({"_id": pid}, {"variants": 1, GLOBAL_STOCK_FIELD: 1})
        if product is None:
            raise ProductNotFoundError(product_id)
        variants = [
            {"size": v.get("size"), "color": v.get("color"), "stock": int(v.get("stock") or 0)}
            for v in product.get("variants") or []
        ]
        return {
            "product_id": product_id,
            "count_in_stock": int(product.get(GLOBAL_STOCK_FIELD) or 0),
            "variants": variants,
            "total": sum(v["stock"] for v in variants) if variants
            else int(product.get(GLOBAL_STOCK_FIELD) or 0),
        }

    def adjust_stock(self, product_id: str, size: Optional[str], color: Optional[str], delta: int) -> int:
        """Restock (positive ``delta``) or write off stock; returns the new level."""
        if delta == 0:
            raise ValidationFailedError("Stock adjustment must not be zero")
        outcome, level = self._apply_delta(product_id, size, color, delta)
        if outcome is ReservationOutcome.COMMITTED:
            logger.info("Stock of %s (%s/%s) adjusted by %+d to %d", product_id, size, color, delta, level)
            return level
        if outcome is ReservationOutcome.PRODUCT_NOT_FOUND:
            raise ProductNotFoundError(product_id)
        if outcome is ReservationOutcome.VARIANT_NOT_FOUND:
            raise VariantNotFoundError(product_id, size, color)
        if outcome is ReservationOutcome.INSUFFICIENT:
            raise InsufficientStockError(product_id, -delta, level)
        raise StockConflictError(product_id)

    def add_variant(self, product_id: str, size: str, color: str, stock: int = 0) -> Dict[str, Any]:
        pid = parse_object_id(product_id)
        res = self._products.update_one(
            {"_id": pid, "variants": {"$not": {"$elemMatch": {"size": size, "color": color}}}},
            {"$push": {"variants": {"size": size, "color": color, "stock": stock}}},
        )
        if res.matched_count == 0:
            if self._products.find_one({"_id": pid}, {"_id": 1}) is None:
                raise ProductNotFoundError(product_id)
            raise DuplicateError(f"Variant {size}/{color} already exists")
        return self.stock_levels(product_id)

    def remove_variant(self, product_id: str, size: str, color: str) -> Dict[str, Any]:
        pid = parse_object_id(product_id)
        res = self._products.update_one({"_id": pid}, {"$pull": {"variants": {"size": size, "color": color}}})
        if res.matched_count == 0:
            raise ProductNotFoundError(product_id)
        if res.modified_count == 0:
            raise VariantNotFoundError(product_id, size, color)
        return self.stock_levels(product_id)
