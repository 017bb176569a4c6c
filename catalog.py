"""
Product catalog.

Stock and status are kept in step: whenever stock is touched the product is
reconciled so that stock == 0 <=> status == "out-of-stock".
"""
import logging
from typing import List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument

from database import paginate, serialize_doc, to_object_id, utcnow
from errors import InvalidInput, NotFound
from schemas import IN_STOCK, OUT_OF_STOCK, Product, ProductUpdate, normalize_images

logger = logging.getLogger(__name__)

IMAGE_FLAGS = ("existing_images", "replace_images", "remove_all_images")

SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating_desc": [("rating.average", -1)],
    "best_selling": [("sales", -1)],
    "newest": [("created_at", -1)],
}


def _flag(value) -> bool:
    return str(value or "").strip().lower() == "true"


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ())) or "product"
    return f"Invalid {field}: {first.get('msg')}"


def parse_product(fields: dict) -> Product:
    try:
        return Product.model_validate(fields)
    except ValidationError as e:
        raise InvalidInput(_validation_message(e))


def parse_product_update(fields: dict) -> dict:
    try:
        return ProductUpdate.model_validate(fields).model_dump(exclude_none=True)
    except ValidationError as e:
        raise InvalidInput(_validation_message(e))


def stock_status(stock: int, status: Optional[str]):
    """Return (status, availability) consistent with the stock level."""
    if stock <= 0:
        return "out-of-stock", OUT_OF_STOCK
    if status in (None, "out-of-stock"):
        return "active", IN_STOCK
    return status, IN_STOCK


def sync_stock_status(db, product_id) -> None:
    oid = to_object_id(product_id)
    now = utcnow()
    db["product"].update_one(
        {"_id": oid, "stock": {"$lte": 0}},
        {"$set": {"status": "out-of-stock", "availability": OUT_OF_STOCK, "updated_at": now}},
    )
    db["product"].update_one(
        {"_id": oid, "stock": {"$gt": 0}, "status": "out-of-stock"},
        {"$set": {"status": "active", "availability": IN_STOCK, "updated_at": now}},
    )


def reserve_stock(db, product_id, units: int) -> bool:
    """Atomically take `units` from stock (and count them as sold) if enough is left."""
    doc = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id), "stock": {"$gte": units}},
        {"$inc": {"stock": -units, "sales": units}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return False
    sync_stock_status(db, doc["_id"])
    return True


def release_stock(db, product_id, units: int) -> None:
    doc = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id)},
        {"$inc": {"stock": units, "sales": -units}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        logger.warning("Cannot restore %s units: product %s no longer exists", units, product_id)
        return
    sync_stock_status(db, doc["_id"])


def _new_product_doc(product: Product) -> dict:
    doc = product.model_dump()
    doc["status"], doc["availability"] = stock_status(doc["stock"], doc["status"])
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    return doc


def list_products(db, q=None, category=None, min_price=None, max_price=None, status=None,
                  featured=None, page: int = 1, limit: int = 12, sort: Optional[str] = None):
    filter_q = {}
    if q:
        filter_q["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
            {"category": {"$regex": q, "$options": "i"}},
            {"brand": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filter_q["category"] = category
    if status:
        filter_q["status"] = status
    if featured is not None:
        filter_q["is_featured"] = featured
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        filter_q["price"] = price_filter

    page = max(page, 1)
    limit = max(limit, 1)
    cursor = db["product"].find(filter_q).sort(SORTS.get(sort, SORTS["newest"]))
    total = db["product"].count_documents(filter_q)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    items = [serialize_doc(doc) for doc in cursor]
    return {"items": items, "page": page, "limit": limit, "total": total}


def get_product(db, product_id, count_view: bool = True):
    if count_view:
        doc = db["product"].find_one_and_update(
            {"_id": to_object_id(product_id)},
            {"$inc": {"views": 1}},
            return_document=ReturnDocument.AFTER,
        )
    else:
        doc = db["product"].find_one({"_id": to_object_id(product_id)})
    if not doc:
        raise NotFound("Product not found")
    return serialize_doc(doc)


def create_product(db, fields: dict):
    doc = _new_product_doc(parse_product(fields))
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    logger.info("Created product %s (%s)", doc["_id"], doc["name"])
    return serialize_doc(doc)


def create_product_from_upload(db, storage, fields: dict, files) -> dict:
    """Create from a multipart form: client image references first, uploads appended."""
    fields = {k: v for k, v in fields.items() if k not in IMAGE_FLAGS}
    body_images = normalize_images(fields.pop("image", None) or fields.pop("images", None))
    uploaded = storage.store_many(files, folder="products")
    fields["image"] = body_images + uploaded
    try:
        return create_product(db, fields)
    except Exception:
        for locator in uploaded:
            storage.discard(locator)
        raise


def insert_many_products(db, products: List[dict]):
    if not isinstance(products, list) or not products:
        raise InvalidInput("Expected a non-empty list of products")
    docs = []
    for index, fields in enumerate(products):
        try:
            docs.append(_new_product_doc(Product.model_validate(fields)))
        except ValidationError as e:
            raise InvalidInput(f"Product #{index + 1}: {_validation_message(e)}")
    result = db["product"].insert_many(docs)
    logger.info("Bulk inserted %s products", len(result.inserted_ids))
    return {"message": "Products added", "inserted": len(result.inserted_ids), "ids": [str(i) for i in result.inserted_ids]}


def update_product(db, product_id, fields: dict):
    changes = parse_product_update(fields)
    current = db["product"].find_one({"_id": to_object_id(product_id)})
    if not current:
        raise NotFound("Product not found")
    if "stock" in changes or "status" in changes:
        stock = changes.get("stock", current.get("stock", 0))
        changes["status"], changes["availability"] = stock_status(stock, changes.get("status", current.get("status")))
    changes["updated_at"] = utcnow()
    doc = db["product"].find_one_and_update(
        {"_id": current["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound("Product not found")
    return serialize_doc(doc)


def update_product_from_upload(db, storage, product_id, fields: dict, files):
    """
    Update from a multipart form. Image handling is controlled by flags:

    - remove_all_images=true: clear the list
    - replace_images=true: keep only the files uploaded with this request
    - otherwise: existing_images (or the stored list when absent) + uploads

    Stored images that drop out of the list are deleted best-effort.
    """
    current = db["product"].find_one({"_id": to_object_id(product_id)})
    if not current:
        raise NotFound("Product not found")
    previous = list(current.get("image") or [])

    remove_all = _flag(fields.get("remove_all_images"))
    replace = _flag(fields.get("replace_images"))
    has_existing = "existing_images" in fields
    existing = normalize_images(fields.get("existing_images"))
    fields = {k: v for k, v in fields.items() if k not in IMAGE_FLAGS}

    uploaded = storage.store_many(files, folder="products") if not remove_all else []
    if remove_all:
        fields["image"] = []
    elif replace:
        fields["image"] = uploaded
    elif uploaded or has_existing:
        fields["image"] = (existing if has_existing else previous) + uploaded
    elif fields.get("image") or fields.get("images"):
        fields["image"] = normalize_images(fields.pop("image", None) or fields.pop("images", None))

    try:
        updated = update_product(db, product_id, fields)
    except Exception:
        for locator in uploaded:
            storage.discard(locator)
        raise

    kept = set(updated.get("image") or [])
    for locator in previous:
        if locator not in kept:
            storage.discard(locator)
    return updated


def delete_product(db, storage, product_id):
    doc = db["product"].find_one_and_delete({"_id": to_object_id(product_id)})
    if not doc:
        raise NotFound("Product not found")
    for locator in doc.get("image") or []:
        if not storage.discard(locator):
            logger.info("Image %s of product %s was not removed from storage", locator, product_id)
    logger.info("Deleted product %s", product_id)
    return {"message": "Product deleted successfully"}
