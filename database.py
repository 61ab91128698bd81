from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import InvalidIdError


def create_client(settings: Settings) -> MongoClient:
    return MongoClient(settings.DATABASE_URL, tz_aware=True)


def get_database(client: MongoClient, settings: Settings) -> Database:
    return client[settings.DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index([("status", ASCENDING)])
    db["order"].create_index([("gateway_order_id", ASCENDING)])
    db["order"].create_index([("gateway_order_ids", ASCENDING)])
    db["order"].create_index([("payment_result.gateway_payment_id", ASCENDING)])


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the store as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_object_id(id_str: str) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    # ObjectId(None) would mint a fresh id
    if not id_str:
        raise InvalidIdError(str(id_str))
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdError(str(id_str))


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc
