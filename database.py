"""
MongoDB access for the storefront.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; routes
check for that through `main.get_db`.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, TEXT

from config import DATABASE_NAME, DATABASE_URL
from errors import InvalidInput

logger = logging.getLogger(__name__)

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception as e:
        logger.error("Could not create MongoDB client: %s", e)
        client = None
        db = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; they are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(id_str) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise InvalidInput("Invalid id")


def serialize_doc(doc):
    if not doc:
        return doc
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def paginate(collection, query: dict, limit: int, skip: int, sort_by: str = "created_at", sort_order: int = -1):
    limit = max(int(limit), 1)
    skip = max(int(skip), 0)
    cursor = collection.find(query).sort([(sort_by, DESCENDING if int(sort_order) < 0 else ASCENDING)])
    docs = list(cursor.skip(skip).limit(limit))
    total = collection.count_documents(query)
    return {
        "items": docs,
        "total": total,
        "page": skip // limit + 1,
        "total_pages": -(-total // limit),
    }


def ensure_indexes(database=None):
    database = db if database is None else database
    if database is None:
        return
    database["user"].create_index("username", unique=True)
    database["user"].create_index("email", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user", ASCENDING), ("status", ASCENDING)])
    database["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["contact"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["contact"].create_index("email")
    database["product"].create_index([("name", TEXT), ("description", TEXT), ("category", TEXT)])
    database["slider"].create_index([("order", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured")
