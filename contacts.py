import logging
import re

from pymongo import ReturnDocument

from database import paginate, serialize_doc, to_object_id, utcnow
from errors import InvalidInput, NotFound
from schemas import CONTACT_STATUSES, Contact

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _update(db, contact_id, changes: dict) -> dict:
    changes["updated_at"] = utcnow()
    doc = db["contact"].find_one_and_update(
        {"_id": to_object_id(contact_id)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound("Contact not found")
    return serialize_doc(doc)


def create_contact(db, name, email, message, phone=None, subject=None) -> dict:
    name = (name or "").strip()
    email = (email or "").strip().lower()
    message = (message or "").strip()
    if not name or not email or not message:
        raise InvalidInput("Name, email, and message are required")
    if not EMAIL_RE.match(email):
        raise InvalidInput("Invalid email format")

    contact = Contact(name=name, email=email, phone=phone, subject=subject, message=message)
    doc = contact.model_dump()
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    contact_id = db["contact"].insert_one(doc).inserted_id
    logger.info("New contact message %s from %s", contact_id, email)
    return {
        "message": "Your message has been sent successfully. We will get back to you soon!",
        "contact": {
            "id": str(contact_id),
            "name": contact.name,
            "email": contact.email,
            "subject": contact.subject,
            "created_at": now,
        },
    }


def list_contacts(db, status=None, replied=None, search=None, limit=50, skip=0, sort_by="created_at", sort_order=-1):
    query = {}
    if status:
        query["status"] = status
    if replied is not None:
        query["replied"] = replied is True or str(replied).lower() == "true"
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"subject": pattern}, {"message": pattern}]
    page = paginate(db["contact"], query, limit, skip, sort_by, sort_order)
    return {
        "contacts": serialize_doc(page["items"]),
        "total": page["total"],
        "page": page["page"],
        "total_pages": page["total_pages"],
    }


def get_contact(db, contact_id) -> dict:
    doc = db["contact"].find_one({"_id": to_object_id(contact_id)})
    if not doc:
        raise NotFound("Contact not found")
    return serialize_doc(doc)


def update_contact_status(db, contact_id, status) -> dict:
    if status not in CONTACT_STATUSES:
        raise InvalidInput("Invalid status")
    return _update(db, contact_id, {"status": status})


def reply_to_contact(db, contact_id, reply_message, admin_id) -> dict:
    reply_message = (reply_message or "").strip()
    if not reply_message:
        raise InvalidInput("Reply message is required")
    # TODO: email the reply to the sender once a reply template exists in notifications
    return _update(db, contact_id, {
        "replied": True,
        "reply_message": reply_message,
        "replied_at": utcnow(),
        "replied_by": admin_id,
        "status": "resolved",
    })


def update_contact_notes(db, contact_id, notes) -> dict:
    return _update(db, contact_id, {"notes": (notes or "").strip()})


def delete_contact(db, contact_id) -> dict:
    result = db["contact"].delete_one({"_id": to_object_id(contact_id)})
    if result.deleted_count == 0:
        raise NotFound("Contact not found")
    return {"message": "Contact deleted successfully"}


def contact_stats(db) -> dict:
    stats = {"total": db["contact"].count_documents({})}
    for status in CONTACT_STATUSES:
        stats[status.replace("-", "_")] = db["contact"].count_documents({"status": status})
    stats["replied"] = db["contact"].count_documents({"replied": True})
    stats["not_replied"] = stats["total"] - stats["replied"]
    return stats
