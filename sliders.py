import logging

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING

from database import serialize_doc, to_object_id, utcnow
from errors import InvalidInput, NotFound
from schemas import Slider, SliderUpdate
from storage import has_content

logger = logging.getLogger(__name__)

FOLDER = "sliders"


def list_sliders(db, active_only: bool = False):
    query = {"is_active": True} if active_only else {}
    cursor = db["slider"].find(query).sort([("order", ASCENDING), ("created_at", DESCENDING)])
    return serialize_doc(list(cursor))


def get_slider(db, slider_id):
    doc = db["slider"].find_one({"_id": to_object_id(slider_id)})
    if not doc:
        raise NotFound("Slider not found")
    return serialize_doc(doc)


def create_slider(db, storage, fields: dict, upload=None):
    fields = dict(fields)
    stored = None
    if has_content(upload):
        stored = storage.store(upload, folder=FOLDER)
        fields["image"] = stored
    try:
        slider = Slider.model_validate(fields)
    except ValidationError as e:
        storage.discard(stored)
        if not str(fields.get("image") or "").strip():
            raise InvalidInput("An image file or image URL is required")
        raise InvalidInput(f"Invalid slider data: {e.errors()[0].get('msg')}")

    doc = slider.model_dump()
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    doc["_id"] = db["slider"].insert_one(doc).inserted_id
    return serialize_doc(doc)


def update_slider(db, storage, slider_id, fields: dict, upload=None):
    current = db["slider"].find_one({"_id": to_object_id(slider_id)})
    if not current:
        raise NotFound("Slider not found")
    try:
        changes = SliderUpdate.model_validate(fields).model_dump(exclude_none=True)
    except ValidationError as e:
        raise InvalidInput(f"Invalid slider data: {e.errors()[0].get('msg')}")

    stored = storage.store(upload, folder=FOLDER) if has_content(upload) else None
    if stored:
        changes["image"] = stored

    changes["updated_at"] = utcnow()
    try:
        db["slider"].update_one({"_id": current["_id"]}, {"$set": changes})
    except Exception:
        storage.discard(stored)
        raise
    # the previous image goes only once the record points at its replacement
    previous = current.get("image")
    if "image" in changes and changes["image"] != previous:
        storage.discard(previous)
    return serialize_doc(db["slider"].find_one({"_id": current["_id"]}))


def delete_slider(db, storage, slider_id):
    doc = db["slider"].find_one_and_delete({"_id": to_object_id(slider_id)})
    if not doc:
        raise NotFound("Slider not found")
    storage.discard(doc.get("image"))
    logger.info("Deleted slider %s", slider_id)
    return {"message": "Slider deleted"}
