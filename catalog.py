import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import AliasChoices, ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, parse_object_id, serialize_doc
from errors import DuplicateError, InvalidIdError, ProductNotFoundError, ValidationFailedError
from schemas import Product, Review

logger = logging.getLogger(__name__)

# moved only through the inventory ledger
STOCK_FIELDS = {"variants", "count_in_stock"}
# derived from submitted reviews
REVIEW_FIELDS = {"reviews", "average_rating", "num_reviews"}


def _edits(changes: Dict[str, Any]) -> Dict[str, Any]:
    """``changes`` keyed by Product field name, whichever accepted spelling was sent."""
    edits = {}
    for name, field in Product.model_fields.items():
        names = [name]
        if isinstance(field.validation_alias, AliasChoices):
            names.extend(a for a in field.validation_alias.choices if isinstance(a, str) and a != name)
        for key in names:
            if key in changes:
                edits[name] = changes[key]
                break
    return edits


class Catalog:
    """Product lookups and the admin catalog operations."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = now_utc):
        self._products = db["product"]
        self._clock = clock

    def get_product(self, product_id: str) -> Dict[str, Any]:
        try:
            pid = parse_object_id(product_id)
        except InvalidIdError:
            raise ProductNotFoundError(product_id)
        product = self._products.find_one({"_id": pid})
        if not product:
            raise ProductNotFoundError(product_id)
        return product

    def list_products(self, q: Optional[str] = None, category: Optional[str] = None,
                      brand: Optional[str] = None, min_price: Optional[float] = None,
                      max_price: Optional[float] = None, featured: Optional[bool] = None,
                      limit: int = 50) -> List[Dict[str, Any]]:
        filt: Dict[str, Any] = {"active": True}
        if q:
            filt["name"] = {"$regex": q, "$options": "i"}
        if category:
            filt["category"] = category
        if brand:
            filt["brand"] = brand
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        if price_cond:
            filt["price"] = price_cond
        if featured is not None:
            filt["is_featured"] = featured
        return [serialize_doc(p) for p in self._products.find(filt).limit(limit)]

    def create_product(self, product: Product) -> str:
        doc = product.model_dump()
        if doc["image"] is None and doc["images"]:
            doc["image"] = doc["images"][0]
        doc.update({"reviews": [], "average_rating": 0.0, "num_reviews": 0})
        doc.update({"created_at": self._clock(), "updated_at": self._clock()})
        res = self._products.insert_one(doc)
        return str(res.inserted_id)

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply descriptive edits; only the fields named in ``changes`` are written."""
        edits = _edits(changes)
        locked = edits.keys() & (STOCK_FIELDS | REVIEW_FIELDS)
        if locked:
            raise ValidationFailedError(
                f"{', '.join(sorted(locked))} cannot be edited here; use the stock and review operations"
            )
        current = self.get_product(product_id)
        # validate the edit against the whole product, then write only the edited fields
        try:
            merged = Product(**{**current, **edits}).model_dump()
        except ValidationError as exc:
            raise ValidationFailedError(f"Invalid product update: {exc.errors()[0]['msg']}")
        update = {name: merged[name] for name in edits}
        update["updated_at"] = self._clock()
        updated = self._products.find_one_and_update(
            {"_id": current["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ProductNotFoundError(product_id)
        return serialize_doc(updated)

    def delete_product(self, product_id: str) -> None:
        res = self._products.delete_one({"_id": parse_object_id(product_id)})
        if res.deleted_count == 0:
            raise ProductNotFoundError(product_id)

    # ---------------------- Reviews ----------------------

    def add_review(self, product_id: str, user_id: str, name: Optional[str], rating: int,
                   comment: str = "") -> Dict[str, Any]:
        product = self.get_product(product_id)
        review = Review(user_id=user_id, name=name or "", rating=rating, comment=comment,
                        created_at=self._clock()).model_dump()
        res = self._products.update_one(
            {"_id": product["_id"], "reviews": {"$not": {"$elemMatch": {"user_id": user_id}}}},
            {"$push": {"reviews": review}},
        )
        if res.modified_count == 0:
            raise DuplicateError("You already reviewed this product")
        logger.info("User %s reviewed product %s (%d stars)", user_id, product_id, rating)
        self._refresh_rating(product["_id"])
        return serialize_doc(self._products.find_one({"_id": product["_id"]}))

    def _refresh_rating(self, pid) -> None:
        reviews = (self._products.find_one({"_id": pid}, {"reviews": 1}) or {}).get("reviews") or []
        count = len(reviews)
        average = round(sum(r["rating"] for r in reviews) / count, 2) if count else 0.0
        # a miss means another review landed; its own refresh sees the longer list
        self._products.update_one(
            {"_id": pid, "reviews": {"$size": count}},
            {"$set": {"average_rating": average, "num_reviews": count}},
        )
